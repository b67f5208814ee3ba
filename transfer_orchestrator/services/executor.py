"""
Runs a confirmed transfer: source account, recipient re-verification,
authorization, then a single debit. Every step fails fast with one
user-facing message. The debit itself is never retried.
"""
from typing import Any, Dict, Optional

from transfer_orchestrator.audit import log_banking_operation
from transfer_orchestrator.clients import REASON_MANDATE_NOT_READY, REASON_TEST_MODE_RESTRICTED
from transfer_orchestrator.errors import ErrorKind, GENERIC_FAILURE_MESSAGE, ProviderUnavailable
from transfer_orchestrator.middleware import get_logger
from transfer_orchestrator.money import format_naira, generate_reference, to_minor_units
from transfer_orchestrator.schemas import (
    DebitAccepted, ExecutionOutcome, ResolvedRecipient, TransferArguments,
)
from transfer_orchestrator.services.confirmation import missing_transfer_fields
from transfer_orchestrator.services.mandates import MANDATE_NOT_READY_MESSAGE

NO_LINKED_ACCOUNT_MESSAGE = (
    "You need to link a bank account before you can send money. Say 'connect account' to get started."
)

def success_message(amount, recipient_name: str, bank_name: str) -> str:
    return f"✅ Transfer complete! {format_naira(amount)} sent to {recipient_name} at {bank_name}."

def unverified_recipient_message(account_number: str) -> str:
    return f"Could not verify recipient account {account_number}. Please check the details and try again."

class TransferExecutor:
    def __init__(self, db, resolver, mandates, mono, registry):
        self.db = db
        self.resolver = resolver
        self.mandates = mandates
        self.mono = mono
        self.registry = registry

    def _fail(self, user_id: str, arguments: TransferArguments, stage: str, message: str,
              error_kind: ErrorKind, detail: Optional[str] = None, correlation_id: str = None,
              status: str = "failed", audit_status: str = "failed", extra: Optional[Dict[str, Any]] = None) -> ExecutionOutcome:
        metadata = {
            "stage": stage,
            "recipient_account_number": arguments.recipient_account_number,
            "recipient_bank_code": arguments.recipient_bank_code,
            "error_kind": error_kind.value,
        }
        if detail:
            metadata["provider_error"] = detail
        metadata.update(extra or {})
        log_banking_operation(user_id, "transfer_failed", audit_status, arguments.amount, metadata,
                              correlation_id=correlation_id)
        return ExecutionOutcome(status=status, message=message, error_kind=error_kind)

    async def execute(self, user_id: str, arguments: TransferArguments, phone_number: Optional[str] = None,
                      correlation_id: str = None) -> ExecutionOutcome:
        logger = get_logger(correlation_id, __name__)

        missing = missing_transfer_fields(arguments)
        if missing:
            logger.error(f"Refusing to execute transfer with invalid fields: {', '.join(missing)}")
            return self._fail(user_id, arguments, "guard", GENERIC_FAILURE_MESSAGE, ErrorKind.USER_INPUT,
                              correlation_id=correlation_id)

        # 1. Source account
        account = self.db.get_active_account(user_id)
        if account is None:
            return self._fail(user_id, arguments, "source_account", NO_LINKED_ACCOUNT_MESSAGE,
                              ErrorKind.AUTHORIZATION_REQUIRED, correlation_id=correlation_id)

        # 2. Re-verify the recipient; any earlier lookup was advisory
        resolution = await self.resolver.resolve(
            arguments.recipient_account_number, arguments.recipient_bank_code, correlation_id=correlation_id
        )
        if not isinstance(resolution, ResolvedRecipient):
            message = (
                resolution.message if resolution.reason == REASON_TEST_MODE_RESTRICTED
                else unverified_recipient_message(arguments.recipient_account_number)
            )
            return self._fail(user_id, arguments, "recipient_verification", message, resolution.error_kind,
                              detail=resolution.reason, correlation_id=correlation_id)

        amount_minor = to_minor_units(arguments.amount)
        bank_name = resolution.bank.name or arguments.bank_name or resolution.bank.code

        # 3. Authorization
        try:
            authorization = await self.mandates.ensure_authorized(
                account, amount_minor, user_id, phone_number=phone_number, correlation_id=correlation_id
            )
        except ProviderUnavailable as e:
            logger.error(f"Authorization step unavailable: {e}")
            return self._fail(user_id, arguments, "authorization", GENERIC_FAILURE_MESSAGE,
                              ErrorKind.PROVIDER_FAULT, detail=str(e), correlation_id=correlation_id)

        if authorization.status == "authorization_required":
            return self._fail(user_id, arguments, "authorization", authorization.message,
                              ErrorKind.AUTHORIZATION_REQUIRED, correlation_id=correlation_id,
                              status="authorization_required", audit_status="authorization_required")
        if authorization.status != "authorized":
            return self._fail(user_id, arguments, "authorization", authorization.message,
                              authorization.error_kind or ErrorKind.PROVIDER_FAULT,
                              detail=authorization.status, correlation_id=correlation_id)

        # 4. Debit
        reference = generate_reference("trn", user_id)
        try:
            nip_code = await self.registry.nip_code_for(resolution.bank.code)
            debit = await self.mono.debit_mandate(
                account.mandate_id,
                amount_minor,
                reference,
                narration=f"Transfer to {resolution.account_name}",
                beneficiary_account_number=resolution.account_number,
                beneficiary_nip_code=nip_code,
                correlation_id=correlation_id,
            )
        except ProviderUnavailable as e:
            logger.error(f"Debit {reference} outcome unknown, provider unavailable: {e}")
            return self._fail(user_id, arguments, "debit", GENERIC_FAILURE_MESSAGE, ErrorKind.PROVIDER_FAULT,
                              detail=str(e), correlation_id=correlation_id, audit_status="unknown",
                              extra={"reference": reference})

        # 5. Outcome
        if not isinstance(debit, DebitAccepted):
            if debit.reason == REASON_MANDATE_NOT_READY:
                message = MANDATE_NOT_READY_MESSAGE
            else:
                message = f"Transfer failed: {debit.message}"
            return self._fail(user_id, arguments, "debit", message, ErrorKind.PROVIDER_FAULT,
                              detail=debit.message, correlation_id=correlation_id, extra={"reference": reference})

        self.db.record_transfer(
            user_id=user_id,
            amount=arguments.amount,
            amount_minor=amount_minor,
            recipient_account_number=resolution.account_number,
            recipient_bank_code=resolution.bank.code,
            recipient_name=resolution.account_name,
            reference=debit.reference,
            status="success",
            provider_status=debit.provider_status,
        )
        log_banking_operation(
            user_id, "transfer_completed", "success", arguments.amount,
            {
                "recipient_account_number": resolution.account_number,
                "recipient_bank_code": resolution.bank.code,
                "recipient_name": resolution.account_name,
                "reference": debit.reference,
            },
            correlation_id=correlation_id,
        )
        logger.info(f"Transfer {debit.reference} completed")
        return ExecutionOutcome(
            status="success",
            message=success_message(arguments.amount, resolution.account_name, bank_name),
            reference=debit.reference,
        )
