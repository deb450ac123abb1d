from app.models.customer import Customer
from app.models.bill import Bill

__all__ = ["Customer", "Bill"]
