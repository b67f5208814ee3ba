import re
from decimal import Decimal
from typing import Any, Dict

from transfer_orchestrator.audit import log_banking_operation
from transfer_orchestrator.errors import CorruptStateError, ErrorKind, GENERIC_FAILURE_MESSAGE, ProviderUnavailable
from transfer_orchestrator.middleware import get_logger
from transfer_orchestrator.money import format_naira, parse_amount
from transfer_orchestrator.schemas import (
    ChatMessage, InboundMessage, ResolvedRecipient, Session, TextReply, ToolInvocation,
    TransferArguments, TurnReply,
)
from transfer_orchestrator.services.accounts import connection_message
from transfer_orchestrator.services.confirmation import (
    MISSING_ACCOUNT_MESSAGE, MISSING_AMOUNT_MESSAGE, NO_PENDING_MESSAGE, is_placeholder, normalize_reply,
)
from transfer_orchestrator.services.interpreter import interpret, sanitize
from transfer_orchestrator.services.recipient_resolver import (
    ACCOUNT_NUMBER_PATTERN, INVALID_ACCOUNT_MESSAGE, unknown_bank_message,
)

MINIMUM_TRANSFER = 100
NOT_CONNECTED_MESSAGE = (
    "You haven't connected a bank account yet. Would you like to connect one now? Say 'connect account' to start."
)
ALREADY_CONNECTED_MESSAGE = "Your bank account is already connected! You can check balances and send money."
EMPTY_REPLY_MESSAGE = "I'm here to help! Could you please rephrase your request?"
UNSUPPORTED_TOOL_MESSAGE = "Sorry, I can't help with that yet."
SUMMARY_FALLBACK_MESSAGE = "Here's what I found, but I couldn't put it into words just now. Please ask again in a moment."
STANDALONE_CONFIRMATION_WORDS = frozenset({"confirm", "cancel"})

ACCOUNT_TOOLS = frozenset({"get_all_accounts", "get_total_balance", "check_balance", "get_transactions", "get_spending_insights"})

class ConversationFlow:
    """One inbound message in, one reply out."""

    def __init__(self, db, ai, confirmation, resolver, accounts, max_conversation_turns: int = 20,
                 session_ttl_seconds: int = 86400):
        self.db = db
        self.ai = ai
        self.confirmation = confirmation
        self.resolver = resolver
        self.accounts = accounts
        self.max_messages = max_conversation_turns * 2
        self.session_ttl_seconds = session_ttl_seconds

    async def handle_message(self, event: InboundMessage, correlation_id: str = None) -> TurnReply:
        logger = get_logger(correlation_id, __name__)
        text = event.text.strip()

        try:
            session = self.db.get_or_create_session(event.user_id, event.phone_number, self.session_ttl_seconds)
        except CorruptStateError as e:
            logger.error(f"Discarding unreadable session state: {e}")
            self.db.reset_session(event.user_id)
            return TurnReply(text=GENERIC_FAILURE_MESSAGE, outcome=ErrorKind.PROVIDER_FAULT.value)

        try:
            if session.pending_transaction is not None:
                reply = await self.confirmation.handle_reply(session, text, correlation_id)
            elif normalize_reply(text) in STANDALONE_CONFIRMATION_WORDS:
                reply = TurnReply(text=NO_PENDING_MESSAGE, outcome="no_pending")
            else:
                reply = await self._converse(session, text, correlation_id)
        except ProviderUnavailable as e:
            logger.error(f"Turn failed on an unavailable provider: {e}")
            reply = TurnReply(text=GENERIC_FAILURE_MESSAGE, outcome=ErrorKind.PROVIDER_FAULT.value)

        session.history.append(ChatMessage(role="user", content=text))
        session.history.append(ChatMessage(role="assistant", content=reply.text))
        self.db.save_history(session, self.max_messages)
        return reply

    async def _converse(self, session: Session, text: str, correlation_id: str = None) -> TurnReply:
        logger = get_logger(correlation_id, __name__)
        raw = await self.ai.generate(session.history[-self.max_messages:], text, correlation_id=correlation_id)
        interpreted = interpret(raw)

        if isinstance(interpreted, TextReply):
            return TurnReply(text=interpreted.content or EMPTY_REPLY_MESSAGE, outcome="text")

        logger.info(f"Dispatching tool {interpreted.name} (recovered={interpreted.recovered})")
        return await self.dispatch(session, interpreted, correlation_id)

    async def dispatch(self, session: Session, invocation: ToolInvocation, correlation_id: str = None) -> TurnReply:
        name = invocation.name
        args = invocation.arguments

        if name == "transfer_money":
            return await self._propose_transfer(session, args, correlation_id)

        if name == "lookup_recipient":
            data = await self._lookup(session, args, correlation_id)
            return await self._summarize(name, data, correlation_id)

        if name == "check_account_status":
            return await self._summarize(name, self.accounts.status(session.user_id), correlation_id)

        if name == "initiate_account_connection":
            data = await self.accounts.initiate_connection(session, correlation_id)
            if data.get("already_connected"):
                return TurnReply(text=ALREADY_CONNECTED_MESSAGE, outcome="tool")
            if data.get("link_url"):
                return TurnReply(text=connection_message(data["link_url"]), outcome="tool")
            return TurnReply(text=GENERIC_FAILURE_MESSAGE, outcome=ErrorKind.PROVIDER_FAULT.value)

        if name in ACCOUNT_TOOLS:
            if self.db.get_active_account(session.user_id) is None:
                return TurnReply(text=NOT_CONNECTED_MESSAGE, outcome="not_connected")
            if name == "get_all_accounts" or name == "get_total_balance":
                data = await self.accounts.balances(session.user_id, correlation_id=correlation_id)
            elif name == "check_balance":
                data = await self.accounts.balances(session.user_id, primary_only=args.get("account_type") != "all",
                                                    correlation_id=correlation_id)
            elif name == "get_transactions":
                days = parse_amount(args.get("days")) or 7
                data = await self.accounts.transactions(session.user_id, int(days), correlation_id=correlation_id)
            else:
                data = await self.accounts.spending(session.user_id, str(args.get("timeframe") or "month"),
                                                    args.get("category"), correlation_id=correlation_id)
            return await self._summarize(name, data, correlation_id)

        get_logger(correlation_id, __name__).warning(f"Model requested unknown tool {name}")
        return TurnReply(text=UNSUPPORTED_TOOL_MESSAGE, outcome="text")

    async def _lookup(self, session: Session, args: Dict[str, Any], correlation_id: str = None) -> Dict[str, Any]:
        account_number = str(args.get("account_number") or "").strip()
        bank_name = str(args.get("bank_name") or args.get("bank_code") or "").strip()
        resolution = await self.resolver.resolve(account_number, bank_name, correlation_id=correlation_id)
        verified = isinstance(resolution, ResolvedRecipient)
        log_banking_operation(
            session.user_id, "recipient_lookup", "success" if verified else "failed",
            metadata={
                "account_number": account_number,
                "bank_code": resolution.bank.code if resolution.bank else None,
                "source": resolution.source if verified else None,
                "reason": None if verified else resolution.reason,
            },
            correlation_id=correlation_id,
        )
        if verified:
            return {
                "verified": True,
                "account_name": resolution.account_name,
                "account_number": resolution.account_number,
                "bank_name": resolution.bank.name,
                "bank_code": resolution.bank.code,
            }
        return {"verified": False, "error": resolution.message}

    async def _propose_transfer(self, session: Session, args: Dict[str, Any], correlation_id: str = None) -> TurnReply:
        logger = get_logger(correlation_id, __name__)
        account_number = re.sub(r"\s", "", str(args.get("recipient_account_number") or ""))
        bank_input = str(args.get("recipient_bank_code") or args.get("bank_name") or "").strip()
        amount = parse_amount(args.get("amount"))

        if is_placeholder(account_number) or is_placeholder(bank_input):
            logger.info("Transfer request missing recipient account or bank")
            return TurnReply(text=MISSING_ACCOUNT_MESSAGE, outcome=ErrorKind.USER_INPUT.value)
        if amount is None or amount <= 0:
            logger.info("Transfer request missing a positive amount")
            return TurnReply(text=MISSING_AMOUNT_MESSAGE, outcome=ErrorKind.USER_INPUT.value)
        if amount < MINIMUM_TRANSFER:
            return TurnReply(text=f"The minimum transfer amount is {format_naira(Decimal(MINIMUM_TRANSFER))}.",
                             outcome=ErrorKind.USER_INPUT.value)
        if not ACCOUNT_NUMBER_PATTERN.match(account_number):
            return TurnReply(text=INVALID_ACCOUNT_MESSAGE, outcome=ErrorKind.USER_INPUT.value)

        bank = self.resolver.resolve_bank(bank_input)
        if bank is None:
            suggestions = self.resolver.registry.suggestions(bank_input)
            return TurnReply(text=unknown_bank_message(bank_input, suggestions), outcome=ErrorKind.USER_INPUT.value)

        # Advisory only; the executor verifies again before any debit
        resolution = await self.resolver.resolve(account_number, bank.code, correlation_id=correlation_id)
        log_banking_operation(
            session.user_id, "recipient_lookup", "success" if isinstance(resolution, ResolvedRecipient) else "failed",
            metadata={"account_number": account_number, "bank_code": bank.code},
            correlation_id=correlation_id,
        )
        if not isinstance(resolution, ResolvedRecipient):
            return TurnReply(text=resolution.message, outcome=resolution.error_kind.value)

        arguments = TransferArguments(
            recipient_account_number=account_number,
            recipient_bank_code=bank.code,
            amount=amount,
            recipient_name=resolution.account_name,
            bank_name=bank.name,
        )
        return self.confirmation.propose(session, arguments, correlation_id)

    async def _summarize(self, name: str, data: Dict[str, Any], correlation_id: str = None) -> TurnReply:
        logger = get_logger(correlation_id, __name__)
        try:
            summary = sanitize(await self.ai.summarize(name, data, correlation_id=correlation_id))
        except ProviderUnavailable as e:
            logger.warning(f"Summary for {name} unavailable: {e}")
            summary = ""
        return TurnReply(text=summary or SUMMARY_FALLBACK_MESSAGE, outcome="tool")
