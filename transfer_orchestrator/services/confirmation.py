"""
Confirmation gate in front of every transfer.

    NoPending -> AwaitingConfirmation -> Executing -> Terminal
                                      -> Cancelled
                                      -> Expired

Expiry is checked lazily when the next message for the session arrives.
Every transition of the pending transaction goes through the store's
compare-and-set, and execution only starts after the pending transaction
has been cleared, so one confirmation executes at most once.
"""
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from transfer_orchestrator.audit import log_banking_operation
from transfer_orchestrator.errors import ErrorKind
from transfer_orchestrator.middleware import get_logger
from transfer_orchestrator.money import format_naira
from transfer_orchestrator.schemas import PendingTransaction, Session, TransferArguments, TurnReply

AFFIRMATIVE_REPLIES = frozenset({"confirm", "yes", "y"})
NEGATIVE_REPLIES = frozenset({"cancel", "no", "n"})

PLACEHOLDER_VALUES = frozenset({
    "", "null", "none", "nil", "undefined", "unknown", "n/a", "na", "tbd",
    "account_number", "recipient_account_number", "bank_code", "recipient_bank_code",
})
PLACEHOLDER_PATTERN = re.compile(r"^(<.*>|\{.*\}|\[.*\]|x+|\?+)$", re.IGNORECASE)

CANCELLED_MESSAGE = "Transfer cancelled. Is there anything else I can help you with?"
EXPIRED_MESSAGE = "Transaction confirmation expired. Please try again."
INVALID_REPLY_MESSAGE = 'Please reply "confirm" to proceed or "cancel" to cancel the transfer.'
NO_PENDING_MESSAGE = "There's no transfer waiting for confirmation. Tell me how much to send and to whom."
RACE_LOST_MESSAGE = "Your transfer request changed while I was processing it. Please send it again."
MISSING_ACCOUNT_MESSAGE = "I need a bit more detail. What is the recipient's account number and bank?"
MISSING_AMOUNT_MESSAGE = "How much would you like to send? Please give an amount greater than zero."

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def is_placeholder(value: Optional[str]) -> bool:
    if value is None:
        return True
    normalized = str(value).strip().lower()
    return normalized in PLACEHOLDER_VALUES or bool(PLACEHOLDER_PATTERN.match(normalized))

def missing_transfer_fields(arguments: TransferArguments) -> List[str]:
    missing = []
    if is_placeholder(arguments.recipient_account_number):
        missing.append("recipient_account_number")
    if is_placeholder(arguments.recipient_bank_code):
        missing.append("recipient_bank_code")
    if arguments.amount is None or arguments.amount <= 0:
        missing.append("amount")
    return missing

def normalize_reply(text: str) -> str:
    return re.sub(r"[^\w\s]", "", text or "").strip().lower()

def confirmation_prompt(arguments: TransferArguments) -> str:
    recipient = arguments.recipient_name or f"Account {arguments.recipient_account_number}"
    bank = arguments.bank_name or arguments.recipient_bank_code
    return f'Transfer {format_naira(arguments.amount)} to {recipient} at {bank}? Reply "confirm" or "cancel".'

class ConfirmationStateMachine:
    def __init__(self, db, executor, window_seconds: int = 300, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.executor = executor
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock

    @staticmethod
    def is_confirmation_word(text: str) -> bool:
        reply = normalize_reply(text)
        return reply in AFFIRMATIVE_REPLIES or reply in NEGATIVE_REPLIES

    def propose(self, session: Session, arguments: TransferArguments, correlation_id: str = None) -> TurnReply:
        """Entry guard, then persist the pending transfer and ask for confirmation."""
        logger = get_logger(correlation_id, __name__)

        missing = missing_transfer_fields(arguments)
        if missing:
            logger.info(f"Transfer request incomplete, missing: {', '.join(missing)}")
            if "recipient_account_number" in missing or "recipient_bank_code" in missing:
                return TurnReply(text=MISSING_ACCOUNT_MESSAGE, outcome=ErrorKind.USER_INPUT.value)
            return TurnReply(text=MISSING_AMOUNT_MESSAGE, outcome=ErrorKind.USER_INPUT.value)

        now = self.clock()
        pending = PendingTransaction(arguments=arguments, created_at=now, expires_at=now + self.window)
        if session.pending_transaction is not None:
            logger.info("Replacing an earlier pending transfer with the new request")

        if not self.db.compare_and_set_pending(session, pending):
            logger.warning(f"Lost the race creating a pending transfer ({ErrorKind.CONCURRENCY_HAZARD.value})")
            return TurnReply(text=RACE_LOST_MESSAGE, outcome=ErrorKind.CONCURRENCY_HAZARD.value)

        log_banking_operation(
            session.user_id, "transfer_initiated", "pending", arguments.amount,
            {
                "recipient_account_number": arguments.recipient_account_number,
                "recipient_bank_code": arguments.recipient_bank_code,
                "recipient_name": arguments.recipient_name,
                "expires_at": pending.expires_at.isoformat(),
            },
            correlation_id=correlation_id,
        )
        return TurnReply(text=confirmation_prompt(arguments), awaiting_confirmation=True, outcome="awaiting_confirmation")

    async def handle_reply(self, session: Session, text: str, correlation_id: str = None) -> TurnReply:
        """Routes a message that arrived while a transfer may be awaiting confirmation."""
        logger = get_logger(correlation_id, __name__)
        pending = session.pending_transaction
        if pending is None:
            return TurnReply(text=NO_PENDING_MESSAGE, outcome="no_pending")

        if self.clock() > pending.expires_at:
            if self.db.compare_and_set_pending(session, None):
                log_banking_operation(
                    session.user_id, "transfer_expired", "expired", pending.arguments.amount,
                    {"recipient_account_number": pending.arguments.recipient_account_number},
                    correlation_id=correlation_id,
                )
                logger.info("Pending transfer expired before confirmation")
            return TurnReply(text=EXPIRED_MESSAGE, outcome="expired")

        reply = normalize_reply(text)

        if reply in AFFIRMATIVE_REPLIES:
            if not self.db.compare_and_set_pending(session, None):
                logger.warning("Confirmation arrived for a transfer another turn already handled")
                return TurnReply(text=NO_PENDING_MESSAGE, outcome="no_pending")
            logger.info("Transfer confirmed; executing")
            outcome = await self.executor.execute(
                session.user_id, pending.arguments, phone_number=session.phone_number, correlation_id=correlation_id
            )
            return TurnReply(text=outcome.message, outcome=outcome.status)

        if reply in NEGATIVE_REPLIES:
            if self.db.compare_and_set_pending(session, None):
                log_banking_operation(
                    session.user_id, "transfer_cancelled", "cancelled", pending.arguments.amount,
                    {"recipient_account_number": pending.arguments.recipient_account_number},
                    correlation_id=correlation_id,
                )
                logger.info("Transfer cancelled by user")
            return TurnReply(text=CANCELLED_MESSAGE, outcome="cancelled")

        return TurnReply(text=INVALID_REPLY_MESSAGE, awaiting_confirmation=True, outcome="awaiting_confirmation")
