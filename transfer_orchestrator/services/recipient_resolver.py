"""
Recipient resolution: bank lookup plus account-holder verification.

The primary aggregation provider is asked first; the fallback verification
provider gets exactly one attempt when the primary fails or is unreachable.
A name is only ever returned when one of them verified it.
"""
import re
from typing import Optional

from transfer_orchestrator.audit import mask_account_number
from transfer_orchestrator.clients import REASON_NOT_CONFIGURED, REASON_TEST_MODE_RESTRICTED
from transfer_orchestrator.errors import ErrorKind, ProviderUnavailable
from transfer_orchestrator.middleware import get_logger
from transfer_orchestrator.schemas import (
    BankIdentity, LookupSuccess, RecipientResolution, ResolvedRecipient, UnresolvedRecipient,
)
from transfer_orchestrator.services.bank_registry import BankRegistry

ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d{10}$")

INVALID_ACCOUNT_MESSAGE = "Invalid account number. Nigerian account numbers are 10 digits."
UNVERIFIED_MESSAGE = "Could not verify account holder name. Please check the account number and bank."
TEST_MODE_MESSAGE = (
    "Recipient verification is running in test mode, where only Access Bank (044) accounts can be verified. "
    "Please try an Access Bank account or contact support."
)

def unknown_bank_message(bank_input: str, suggestions) -> str:
    message = f"Unknown bank: {bank_input}. Please specify a valid Nigerian bank."
    if suggestions:
        message += f" Did you mean {' or '.join(suggestions)}?"
    return message

class RecipientResolver:
    def __init__(self, registry: BankRegistry, primary, fallback):
        self.registry = registry
        self.primary = primary
        self.fallback = fallback

    def resolve_bank(self, bank_name_or_code: str) -> Optional[BankIdentity]:
        return self.registry.resolve(bank_name_or_code)

    async def resolve(self, account_number: str, bank_name_or_code: str,
                      correlation_id: str = None) -> RecipientResolution:
        logger = get_logger(correlation_id, __name__)
        account_number = (account_number or "").strip()

        if not ACCOUNT_NUMBER_PATTERN.match(account_number):
            logger.info("Rejected malformed account number before lookup")
            return UnresolvedRecipient(
                account_number=account_number or None,
                error_kind=ErrorKind.USER_INPUT,
                reason="invalid_account_number",
                message=INVALID_ACCOUNT_MESSAGE,
            )

        bank = self.resolve_bank(bank_name_or_code)
        if bank is None:
            suggestions = self.registry.suggestions(bank_name_or_code or "")
            logger.info(f"No bank matched '{bank_name_or_code}'")
            return UnresolvedRecipient(
                account_number=account_number,
                error_kind=ErrorKind.USER_INPUT,
                reason="unknown_bank",
                message=unknown_bank_message(bank_name_or_code, suggestions),
                suggestions=suggestions,
            )

        masked = mask_account_number(account_number)
        primary_result = None
        try:
            primary_result = await self.primary.lookup_account(account_number, bank.code, correlation_id=correlation_id)
        except ProviderUnavailable as e:
            logger.warning(f"Primary lookup unavailable for {masked} at {bank.code}: {e.detail}")

        if isinstance(primary_result, LookupSuccess):
            return ResolvedRecipient(
                account_number=account_number, bank=bank,
                account_name=primary_result.account_name, source=primary_result.source,
            )
        if primary_result is not None:
            logger.warning(f"Primary lookup failed for {masked} at {bank.code}: {primary_result.reason} {primary_result.message}")

        try:
            fallback_result = await self.fallback.resolve_account(account_number, bank.code, correlation_id=correlation_id)
        except ProviderUnavailable as e:
            logger.error(f"Fallback lookup unavailable for {masked} at {bank.code}: {e.detail}")
            fallback_result = None

        if isinstance(fallback_result, LookupSuccess):
            logger.info(f"Recipient {masked} verified by fallback provider")
            return ResolvedRecipient(
                account_number=account_number, bank=bank,
                account_name=fallback_result.account_name, source=fallback_result.source,
            )

        if fallback_result is not None and fallback_result.reason == REASON_TEST_MODE_RESTRICTED:
            logger.warning("Fallback verification is restricted to test-mode bank codes")
            return UnresolvedRecipient(
                account_number=account_number, bank=bank,
                error_kind=ErrorKind.VERIFICATION_FAILURE,
                reason=REASON_TEST_MODE_RESTRICTED,
                message=TEST_MODE_MESSAGE,
            )

        if fallback_result is not None and fallback_result.reason != REASON_NOT_CONFIGURED:
            logger.warning(f"Fallback lookup failed for {masked} at {bank.code}: {fallback_result.message}")

        return UnresolvedRecipient(
            account_number=account_number, bank=bank,
            error_kind=ErrorKind.VERIFICATION_FAILURE,
            reason="unverified",
            message=UNVERIFIED_MESSAGE,
        )
