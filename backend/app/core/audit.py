"""
Audit logging for balance-affecting operations.

Every bill mutation and customer balance write is logged as one JSON line on
the "audit" logger, so a ledger/balance divergence can be traced and
reconciled after the fact.
"""
import logging
import json
from datetime import datetime, timezone
from typing import Any, Optional, Dict

# Separate logger for audit events (can be shipped to centralized logging)
audit_logger = logging.getLogger("audit")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditLog:
    """Central audit logging for ledger events."""

    @staticmethod
    def log_bill_event(
        action: str,  # "create", "update", "delete"
        business_id: str,
        bill_id: Optional[int],
        customer: str,
        changes: Optional[Dict[str, Any]] = None,
    ):
        """
        Log a bill mutation.

        Usage:
            AuditLog.log_bill_event("create", "shop1", 42, "customer#7", changes={"balance_amount": 57000})
        """
        log_entry = {
            "timestamp": _now(),
            "event_type": f"bill.{action}",
            "business_id": business_id,
            "bill_id": bill_id,
            "customer": customer,
        }

        if changes:
            log_entry["changes"] = changes

        audit_logger.info(json.dumps(log_entry, default=str))

    @staticmethod
    def log_balance_change(
        business_id: str,
        customer: str,
        old_balance: int,
        new_balance: int,
        reason: str,
    ):
        """
        Log a customer balance write (amounts in cents).

        Usage:
            AuditLog.log_balance_change("shop1", "customer#7", 0, 57000, reason="bill.create:42")
        """
        log_entry = {
            "timestamp": _now(),
            "event_type": "customer.balance",
            "business_id": business_id,
            "customer": customer,
            "old_balance": old_balance,
            "new_balance": new_balance,
            "reason": reason,
        }

        audit_logger.info(json.dumps(log_entry))

    @staticmethod
    def log_consistency_failure(
        business_id: str,
        bill_id: Optional[int],
        customer: str,
        attempted_balance: Optional[int],
        error: str,
    ):
        """
        Log a ledger write whose balance propagation failed.

        Carries everything needed to reconcile by hand or by job:
        which bill, which customer, and what the balance should have become.
        """
        log_entry = {
            "timestamp": _now(),
            "event_severity": "ERROR",
            "event_type": "balance.inconsistent",
            "business_id": business_id,
            "bill_id": bill_id,
            "customer": customer,
            "attempted_balance": attempted_balance,
            "error": error,
        }

        audit_logger.error(json.dumps(log_entry))
