"""Bills: every write goes through the billing service so balances follow."""
from fastapi import APIRouter, Depends, Query

from app.api.deps import get_business_id, get_billing_service
from app.core.exceptions import BusinessError
from app.schemas.bill import BillCreate, BillMutationResponse, BillResponse, BillUpdate
from app.schemas.customer import CustomerResponse
from app.services.billing_service import BillChanges, BillDraft, BillingService

router = APIRouter()


def _with_customer(service: BillingService, business_id: str, bill) -> BillMutationResponse:
    cached = service.cache.get(business_id, bill.customer_id)
    return BillMutationResponse(
        bill=BillResponse.of(bill),
        customer=CustomerResponse.of(cached) if cached else None,
    )


@router.get("", response_model=list[BillResponse])
def list_bills(
    phone: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    business_id: str = Depends(get_business_id),
    service: BillingService = Depends(get_billing_service),
):
    """Newest first, paged with limit (max 500) and offset. Filter by customer phone."""
    bills = service.ledger.list_bills(business_id, phone=phone, limit=limit, offset=offset)
    return [BillResponse.of(b) for b in bills]


@router.get("/{bill_id}", response_model=BillResponse)
def get_bill(
    bill_id: int,
    business_id: str = Depends(get_business_id),
    service: BillingService = Depends(get_billing_service),
):
    bill = service.ledger.get_bill(business_id, bill_id)
    if not bill:
        raise BusinessError.not_found("Bill", reason=f"{business_id}/{bill_id}")
    return BillResponse.of(bill)


@router.post("", response_model=BillMutationResponse)
def create_bill(
    data: BillCreate,
    business_id: str = Depends(get_business_id),
    service: BillingService = Depends(get_billing_service),
):
    draft = BillDraft(**{**data.model_dump(exclude={"items"}), "items": [i.model_dump() for i in data.items]})
    bill = service.create_bill(business_id, draft)
    return _with_customer(service, business_id, bill)


@router.put("/{bill_id}", response_model=BillMutationResponse)
def update_bill(
    bill_id: int,
    data: BillUpdate,
    business_id: str = Depends(get_business_id),
    service: BillingService = Depends(get_billing_service),
):
    fields = data.model_dump(exclude={"items"})
    items = [i.model_dump() for i in data.items] if data.items is not None else None
    bill = service.update_bill(business_id, bill_id, BillChanges(**fields, items=items))
    return _with_customer(service, business_id, bill)


@router.delete("/{bill_id}", response_model=BillMutationResponse)
def delete_bill(
    bill_id: int,
    business_id: str = Depends(get_business_id),
    service: BillingService = Depends(get_billing_service),
):
    bill = service.ledger.get_bill(business_id, bill_id)
    customer_id = bill.customer_id if bill else None
    service.delete_bill(business_id, bill_id)
    cached = service.cache.get(business_id, customer_id) if customer_id is not None else None
    return BillMutationResponse(customer=CustomerResponse.of(cached) if cached else None)
