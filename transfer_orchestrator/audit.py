"""
Audit trail for banking operations.

One structured record per event on the dedicated audit logger. Account
numbers are masked to their last four digits and nothing secret is logged.
"""
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

audit_logger = logging.getLogger("transfer_orchestrator.audit")

ACCOUNT_NUMBER_KEYS = {"account_number", "recipient_account_number", "source_account_number"}

def mask_account_number(account_number: Optional[str]) -> Optional[str]:
    if not account_number:
        return account_number
    account_number = str(account_number)
    if len(account_number) <= 4:
        return account_number
    return "*" * (len(account_number) - 4) + account_number[-4:]

def _scrub(metadata: Dict[str, Any]) -> Dict[str, Any]:
    scrubbed = {}
    for key, value in metadata.items():
        if key in ACCOUNT_NUMBER_KEYS:
            scrubbed[key] = mask_account_number(value)
        elif isinstance(value, Decimal):
            scrubbed[key] = str(value)
        else:
            scrubbed[key] = value
    return scrubbed

def build_audit_entry(user_id: str, action: str, status: str, amount: Optional[Decimal] = None,
                      metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "type": "banking_operation",
        "user_id": user_id,
        "action": action,
        "amount": str(amount) if amount is not None else None,
        "status": status,
        "metadata": _scrub(metadata or {}),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

def log_banking_operation(user_id: str, action: str, status: str, amount: Optional[Decimal] = None,
                          metadata: Optional[Dict[str, Any]] = None, correlation_id: str = None) -> Dict[str, Any]:
    entry = build_audit_entry(user_id, action, status, amount, metadata)
    audit_logger.info(json.dumps(entry, default=str), extra={"correlation_id": correlation_id or "N/A"})
    return entry
