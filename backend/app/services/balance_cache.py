"""Last-known customer balances, as a screen or report would hold them.

Only BillingService.refresh_customer writes here, right after it re-reads
the customer from the store. Entries are never used as a previous balance.
"""
from typing import Optional

from app.services.customer_service import AccountSnapshot, CustomerKey


class BalanceCache:
    def __init__(self):
        self._accounts: dict[tuple[str, int], AccountSnapshot] = {}

    def put(self, snapshot: AccountSnapshot) -> None:
        self._accounts[(snapshot.business_id, snapshot.customer_id)] = snapshot

    def get(self, business_id: str, customer_id: int) -> Optional[AccountSnapshot]:
        return self._accounts.get((business_id, customer_id))

    def invalidate(self, key: CustomerKey) -> None:
        if key.customer_id is not None:
            self._accounts.pop((key.business_id, key.customer_id), None)
            return
        # Name/phone keys: drop whatever matches
        for k, snap in list(self._accounts.items()):
            if snap.business_id == key.business_id and (
                (key.phone and snap.phone == key.phone) or (not key.phone and snap.name == key.name)
            ):
                del self._accounts[k]

    def __len__(self) -> int:
        return len(self._accounts)
