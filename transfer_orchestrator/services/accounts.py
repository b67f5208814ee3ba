"""
Linked-account reads and the account-linking handshake.

These back the non-transfer banking tools. Results are plain dicts meant for
the summary call, with balances already converted to naira.
"""
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from transfer_orchestrator.audit import mask_account_number
from transfer_orchestrator.errors import ProviderUnavailable
from transfer_orchestrator.middleware import get_logger
from transfer_orchestrator.money import from_minor_units
from transfer_orchestrator.schemas import (
    AccountLinkInitiated, AccountSnapshot, LinkedAccount, MandateStatus, Session, TransactionList,
)

LINK_REFERENCE_PREFIX = "user_"
INSIGHT_WINDOWS = {"week": 7, "month": 30, "year": 365}
MAX_TRANSACTIONS = 20

def _customer_id(customer) -> Optional[str]:
    if isinstance(customer, dict):
        return customer.get("id")
    return customer

def link_reference(user_id: str) -> str:
    return f"{LINK_REFERENCE_PREFIX}{user_id}"

def connection_message(link_url: str) -> str:
    return (
        "Let's connect your bank account. Open this secure link to continue:\n\n"
        f"{link_url}\n\n"
        "Come back here once you're done and I'll take it from there."
    )

class AccountService:
    def __init__(self, db, mono, redirect_url: str, default_address: str = "Lagos, Nigeria"):
        self.db = db
        self.mono = mono
        self.redirect_url = redirect_url
        self.default_address = default_address

    def status(self, user_id: str) -> Dict[str, Any]:
        accounts = self.db.list_accounts(user_id)
        return {
            "connected": bool(accounts),
            "accounts": [
                {
                    "bank_name": account.bank_name,
                    "account_number": mask_account_number(account.account_number),
                    "transfers_authorized": account.mandate_status == MandateStatus.ACTIVE,
                }
                for account in accounts
            ],
        }

    async def initiate_connection(self, session: Session, correlation_id: str = None) -> Dict[str, Any]:
        logger = get_logger(correlation_id, __name__)
        if self.db.get_active_account(session.user_id):
            return {"already_connected": True}

        customer = {
            "name": session.user_id,
            "phone": session.phone_number,
            "address": self.default_address,
        }
        result = await self.mono.initiate_account_linking(
            customer, self.redirect_url, link_reference(session.user_id), correlation_id=correlation_id
        )
        if not isinstance(result, AccountLinkInitiated):
            logger.error(f"Account linking could not be started: {result.message}")
            return {"error": "Account linking is unavailable right now."}
        logger.info(f"Account linking started for user {session.user_id}")
        return {"link_url": result.link_url}

    async def _snapshot(self, account: LinkedAccount, correlation_id: str = None) -> Optional[AccountSnapshot]:
        logger = get_logger(correlation_id, __name__)
        try:
            result = await self.mono.get_account_details(account.provider_account_id, correlation_id=correlation_id)
        except ProviderUnavailable as e:
            logger.warning(f"Balance for account {account.id} unavailable: {e.detail}")
            return None
        if not isinstance(result, AccountSnapshot):
            logger.warning(f"Balance for account {account.id} failed: {result.message}")
            return None
        return result

    async def balances(self, user_id: str, primary_only: bool = False, correlation_id: str = None) -> Dict[str, Any]:
        accounts = self.db.list_accounts(user_id)
        if primary_only:
            accounts = accounts[:1]
        entries: List[Dict[str, Any]] = []
        total_minor = 0
        for account in accounts:
            snapshot = await self._snapshot(account, correlation_id)
            entry = {
                "bank_name": account.bank_name,
                "account_number": mask_account_number(account.account_number),
            }
            if snapshot is None or snapshot.balance_minor is None:
                entry["balance_naira"] = None
                entry["note"] = "balance unavailable right now"
            else:
                entry["balance_naira"] = str(from_minor_units(snapshot.balance_minor))
                total_minor += snapshot.balance_minor
            entries.append(entry)
        return {"accounts": entries, "total_balance_naira": str(from_minor_units(total_minor))}

    async def transactions(self, user_id: str, days: int = 7, correlation_id: str = None) -> Dict[str, Any]:
        account = self.db.get_active_account(user_id)
        days = max(1, min(int(days), 365))
        start = (date.today() - timedelta(days=days)).strftime("%d-%m-%Y")
        end = date.today().strftime("%d-%m-%Y")
        result = await self.mono.get_transactions(
            account.provider_account_id, start=start, end=end, correlation_id=correlation_id
        )
        if not isinstance(result, TransactionList):
            return {"error": "Transactions are unavailable right now."}
        recent = []
        for item in result.transactions[:MAX_TRANSACTIONS]:
            amount = item.get("amount")
            recent.append({
                "date": item.get("date"),
                "type": item.get("type"),
                "narration": item.get("narration"),
                "amount_naira": str(from_minor_units(int(amount))) if isinstance(amount, (int, float)) else None,
            })
        return {"days": days, "bank_name": account.bank_name, "transactions": recent}

    async def spending(self, user_id: str, timeframe: str, category: Optional[str] = None,
                       correlation_id: str = None) -> Dict[str, Any]:
        data = await self.transactions(user_id, INSIGHT_WINDOWS.get(timeframe, 30), correlation_id)
        if "transactions" in data:
            data["transactions"] = [item for item in data["transactions"] if item.get("type") == "debit"]
        data["timeframe"] = timeframe
        if category:
            data["category"] = category
        return data

    async def link_from_webhook(self, data: Dict[str, Any], correlation_id: str = None) -> Optional[LinkedAccount]:
        """Stores the account the provider reports as connected for the user named in the link reference."""
        logger = get_logger(correlation_id, __name__)
        account_ref = data.get("account")
        account_id = account_ref if isinstance(account_ref, str) else (account_ref or {}).get("id") or data.get("id")
        reference = (data.get("meta") or {}).get("ref") or data.get("reference")
        if not account_id or not reference or not reference.startswith(LINK_REFERENCE_PREFIX):
            logger.warning("Account connection webhook without an account id or user reference")
            return None
        user_id = reference[len(LINK_REFERENCE_PREFIX):]

        existing = [account for account in self.db.list_accounts(user_id) if account.provider_account_id == account_id]
        if existing:
            return existing[0]

        try:
            details = await self.mono.get_account_details(account_id, correlation_id=correlation_id)
        except ProviderUnavailable as e:
            logger.warning(f"Connected account {account_id} unavailable: {e.detail}")
            return None
        if not isinstance(details, AccountSnapshot):
            logger.error(f"Could not load connected account {account_id}: {details.message}")
            return None

        session = self.db.get_or_create_session(user_id)
        has_accounts = bool(self.db.list_accounts(user_id))
        return self.db.add_linked_account(LinkedAccount(
            user_id=user_id,
            provider_account_id=account_id,
            provider_customer_id=details.customer_id or _customer_id(data.get("customer")),
            account_number=details.account_number,
            account_name=details.account_name,
            bank_name=details.bank_name,
            bank_code=details.bank_code,
            phone_number=session.phone_number,
            is_primary=not has_accounts,
        ))
