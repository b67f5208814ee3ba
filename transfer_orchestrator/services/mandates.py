"""
Standing debit authorization (mandate) lifecycle per linked account.

absent -> pending -> active. A pending mandate whose re-initiation fails hard
drops back to absent. Activation is observed through the webhook, through a
one-off sync with the provider before initiating, or simply on the next
attempt; nothing here polls.
"""
from typing import Optional

from transfer_orchestrator.clients import REASON_MANDATE_NOT_READY, REASON_MISSING_CUSTOMER_PROFILE
from transfer_orchestrator.errors import ErrorKind, GENERIC_FAILURE_MESSAGE, ProviderUnavailable
from transfer_orchestrator.middleware import get_logger
from transfer_orchestrator.money import generate_reference
from transfer_orchestrator.schemas import (
    AuthorizationOutcome, BalanceReport, CustomerUpdated, LinkedAccount, MandateInitiated,
    MandateList, MandateStatus,
)
from transfer_orchestrator.audit import log_banking_operation

RELINK_MISSING_CUSTOMER_MESSAGE = (
    "Unable to set up authorization because your account is missing a customer ID. "
    "Please re-link your bank account first."
)
RELINK_PROFILE_MESSAGE = (
    "To enable transfers, please re-link your bank account. This will update your account information. "
    "Say 'connect account' to get started."
)
MANDATE_NOT_READY_MESSAGE = (
    "Your authorization just went through. The bank needs a few minutes before we can process the transfer. "
    "Please try again in about 5 minutes."
)
INSUFFICIENT_FUNDS_MESSAGE = "Insufficient funds. Your account balance is too low for this transfer."
AUTHORIZATION_FAILED_MESSAGE = "I couldn't set up transfer authorization right now. Please try again later."

def authorization_required_message(authorization_url: str) -> str:
    return (
        "Authorization required.\n\n"
        "To securely process this transfer, you need to authorize us with your bank once.\n\n"
        f"Please open this link: {authorization_url}\n\n"
        "After authorizing, please request the transfer again."
    )

class MandateManager:
    def __init__(self, db, mono, default_address: str = "Lagos, Nigeria",
                 description: str = "Transfer Authorization"):
        self.db = db
        self.mono = mono
        self.default_address = default_address
        self.description = description

    async def sync_status(self, account: LinkedAccount, correlation_id: str = None) -> LinkedAccount:
        """
        Asks the provider once whether an approved mandate already exists for this account.

        A match on the stored reference or on the account number activates the record.
        """
        logger = get_logger(correlation_id, __name__)
        if account.mandate_status == MandateStatus.ACTIVE or not account.provider_customer_id:
            return account

        try:
            result = await self.mono.list_mandates(account.provider_customer_id, correlation_id=correlation_id)
        except ProviderUnavailable as e:
            logger.warning(f"Mandate sync for account {account.id} skipped: {e.detail}")
            return account
        if not isinstance(result, MandateList):
            logger.warning(f"Mandate sync for account {account.id} failed: {result.message}")
            return account

        for mandate in result.mandates:
            if not mandate.is_approved or not mandate.id:
                continue
            same_reference = bool(account.mandate_reference) and mandate.reference == account.mandate_reference.strip()
            same_account = (
                bool(account.account_number) and bool(mandate.account_number)
                and str(mandate.account_number).strip() == str(account.account_number).strip()
            )
            if same_reference or same_account:
                reference = mandate.reference or account.mandate_reference
                self.db.update_mandate(account.id, MandateStatus.ACTIVE, mandate_id=mandate.id, reference=reference)
                logger.info(f"Synced approved mandate {mandate.id} for account {account.id}")
                return account.model_copy(update={
                    "mandate_status": MandateStatus.ACTIVE,
                    "mandate_id": mandate.id,
                    "mandate_reference": reference,
                    "mandate_url": None,
                })
        return account

    async def ensure_authorized(self, account: LinkedAccount, amount_minor: int, user_id: str,
                                phone_number: Optional[str] = None,
                                correlation_id: str = None) -> AuthorizationOutcome:
        logger = get_logger(correlation_id, __name__)

        if account.mandate_status != MandateStatus.ACTIVE:
            account = await self.sync_status(account, correlation_id)

        if account.mandate_status == MandateStatus.ACTIVE and account.mandate_id:
            return await self._check_balance(account, amount_minor, correlation_id)

        logger.info(f"No active mandate for account {account.id}; initiating authorization")
        return await self._initiate(account, user_id, phone_number, correlation_id)

    async def _check_balance(self, account: LinkedAccount, amount_minor: int,
                             correlation_id: str = None) -> AuthorizationOutcome:
        logger = get_logger(correlation_id, __name__)
        result = await self.mono.balance_inquiry(account.mandate_id, amount_minor, correlation_id=correlation_id)

        if isinstance(result, BalanceReport):
            if not result.has_sufficient_balance:
                logger.info(f"Balance check declined {amount_minor} kobo on account {account.id}")
                return AuthorizationOutcome(
                    status="insufficient_balance",
                    message=INSUFFICIENT_FUNDS_MESSAGE,
                    error_kind=ErrorKind.USER_INPUT,
                )
            return AuthorizationOutcome(status="authorized")

        if result.reason == REASON_MANDATE_NOT_READY:
            logger.info(f"Mandate {account.mandate_id} is not ready to debit yet")
            return AuthorizationOutcome(
                status="mandate_not_ready",
                message=MANDATE_NOT_READY_MESSAGE,
                error_kind=ErrorKind.AUTHORIZATION_REQUIRED,
            )

        logger.error(f"Balance inquiry failed for mandate {account.mandate_id}: {result.message}")
        return AuthorizationOutcome(status="failed", message=GENERIC_FAILURE_MESSAGE, error_kind=ErrorKind.PROVIDER_FAULT)

    async def _initiate(self, account: LinkedAccount, user_id: str, phone_number: Optional[str],
                        correlation_id: str = None) -> AuthorizationOutcome:
        logger = get_logger(correlation_id, __name__)

        if not account.provider_customer_id:
            logger.error(f"Account {account.id} has no provider customer id; cannot initiate mandate")
            return AuthorizationOutcome(
                status="relink_required",
                message=RELINK_MISSING_CUSTOMER_MESSAGE,
                error_kind=ErrorKind.AUTHORIZATION_REQUIRED,
            )

        result = await self._request_mandate(account, user_id, correlation_id)

        if not isinstance(result, MandateInitiated) and result.reason == REASON_MISSING_CUSTOMER_PROFILE:
            logger.warning(f"Customer profile for account {account.id} lacks phone/address; updating once")
            update = await self.mono.update_customer(
                account.provider_customer_id,
                phone=phone_number or account.phone_number,
                address=self.default_address,
                correlation_id=correlation_id,
            )
            if not isinstance(update, CustomerUpdated):
                logger.error(f"Customer update failed for account {account.id}: {update.message}")
                return AuthorizationOutcome(
                    status="relink_required",
                    message=RELINK_PROFILE_MESSAGE,
                    error_kind=ErrorKind.AUTHORIZATION_REQUIRED,
                )
            logger.info(f"Customer updated for account {account.id}; retrying mandate initiation")
            result = await self._request_mandate(account, user_id, correlation_id)

        if isinstance(result, MandateInitiated):
            self.db.update_mandate(
                account.id, MandateStatus.PENDING,
                reference=result.reference, authorization_url=result.authorization_url,
            )
            log_banking_operation(
                user_id, "mandate_initiated", "pending",
                metadata={"account_id": account.id, "reference": result.reference},
                correlation_id=correlation_id,
            )
            return AuthorizationOutcome(
                status="authorization_required",
                message=authorization_required_message(result.authorization_url),
                authorization_url=result.authorization_url,
                error_kind=ErrorKind.AUTHORIZATION_REQUIRED,
            )

        logger.error(f"Mandate initiation failed for account {account.id}: {result.reason} {result.message}")
        if account.mandate_status == MandateStatus.PENDING:
            self.db.update_mandate(account.id, MandateStatus.ABSENT)
        return AuthorizationOutcome(
            status="failed",
            message=AUTHORIZATION_FAILED_MESSAGE,
            error_kind=ErrorKind.PROVIDER_FAULT,
        )

    async def _request_mandate(self, account: LinkedAccount, user_id: str, correlation_id: str = None):
        return await self.mono.initiate_mandate(
            account.provider_customer_id,
            reference=generate_reference("auth", user_id),
            description=self.description,
            correlation_id=correlation_id,
        )

    def activate_from_webhook(self, reference: Optional[str], mandate_id: Optional[str],
                              correlation_id: str = None) -> Optional[LinkedAccount]:
        """Marks the account whose mandate the provider reports as approved."""
        logger = get_logger(correlation_id, __name__)
        account = self.db.find_account_by_mandate(reference=reference, mandate_id=mandate_id)
        if account is None:
            logger.warning(f"Mandate webhook for reference {reference} matched no account")
            return None
        self.db.update_mandate(account.id, MandateStatus.ACTIVE, mandate_id=mandate_id or account.mandate_id,
                               reference=reference or account.mandate_reference)
        logger.info(f"Mandate activated for account {account.id}")
        return account.model_copy(update={"mandate_status": MandateStatus.ACTIVE,
                                          "mandate_id": mandate_id or account.mandate_id})
