from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from transfer_orchestrator.errors import ErrorKind

# --- Conversation ---

class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str

# --- Provider Response Interpreter ---

class RawToolCall(BaseModel):
    """A tool call as the inference provider emitted it; arguments may still be an encoded string."""
    name: str
    arguments: Union[Dict[str, Any], str, None] = None

class RawProviderResponse(BaseModel):
    tool_calls: List[RawToolCall] = Field(default_factory=list)
    content: Optional[str] = None
    failed_generation: Optional[str] = None

class ToolInvocation(BaseModel):
    kind: Literal["tool"] = "tool"
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    recovered: bool = False

class TextReply(BaseModel):
    kind: Literal["text"] = "text"
    content: str

InterpretedResponse = Union[ToolInvocation, TextReply]

# --- Sessions and pending transactions ---

class TransferArguments(BaseModel):
    recipient_account_number: str
    recipient_bank_code: str
    amount: Decimal
    recipient_name: Optional[str] = None
    bank_name: Optional[str] = None

class PendingTransaction(BaseModel):
    kind: Literal["transfer"] = "transfer"
    arguments: TransferArguments
    created_at: datetime
    expires_at: datetime

class Session(BaseModel):
    user_id: str
    phone_number: Optional[str] = None
    history: List[ChatMessage] = Field(default_factory=list)
    pending_transaction: Optional[PendingTransaction] = None
    version: int = 0
    last_activity: Optional[datetime] = None

# --- Banks and linked accounts ---

class BankIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    name: Optional[str] = None
    nip_code: Optional[str] = None

class MandateStatus(str, Enum):
    ABSENT = "absent"
    PENDING = "pending"
    ACTIVE = "active"

class LinkedAccount(BaseModel):
    id: Optional[int] = None
    user_id: str
    provider_account_id: str
    provider_customer_id: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    bank_name: Optional[str] = None
    bank_code: Optional[str] = None
    phone_number: Optional[str] = None
    is_primary: bool = False
    mandate_status: MandateStatus = MandateStatus.ABSENT
    mandate_id: Optional[str] = None
    mandate_reference: Optional[str] = None
    mandate_url: Optional[str] = None

# --- Provider call results ---

class ProviderFailure(BaseModel):
    status: Literal["failed"] = "failed"
    reason: str
    message: str = ""

class LookupSuccess(BaseModel):
    status: Literal["success"] = "success"
    account_name: str
    source: str

class BankList(BaseModel):
    status: Literal["success"] = "success"
    banks: List[BankIdentity]

class AccountSnapshot(BaseModel):
    status: Literal["success"] = "success"
    account_id: str
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    balance_minor: Optional[int] = None
    currency: str = "NGN"
    bank_name: Optional[str] = None
    bank_code: Optional[str] = None
    customer_id: Optional[str] = None

class TransactionList(BaseModel):
    status: Literal["success"] = "success"
    transactions: List[Dict[str, Any]]

class AccountLinkInitiated(BaseModel):
    status: Literal["success"] = "success"
    link_url: str
    customer_id: Optional[str] = None
    reference: Optional[str] = None

class MandateInitiated(BaseModel):
    status: Literal["initiated"] = "initiated"
    authorization_url: str
    reference: str

class CustomerUpdated(BaseModel):
    status: Literal["success"] = "success"

class ProviderMandate(BaseModel):
    id: Optional[str] = None
    reference: Optional[str] = None
    status: Optional[str] = None
    approved: bool = False
    ready_to_debit: bool = False
    account_number: Optional[str] = None

    @property
    def is_approved(self) -> bool:
        return self.status == "approved" or self.approved or self.ready_to_debit

class MandateList(BaseModel):
    status: Literal["success"] = "success"
    mandates: List[ProviderMandate]

class BalanceReport(BaseModel):
    status: Literal["success"] = "success"
    has_sufficient_balance: bool
    account_balance_minor: Optional[int] = None

class DebitAccepted(BaseModel):
    status: Literal["success"] = "success"
    reference: str
    provider_status: Optional[str] = None

# --- Domain outcomes ---

class ResolvedRecipient(BaseModel):
    status: Literal["resolved"] = "resolved"
    account_number: str
    bank: BankIdentity
    account_name: str
    verified: bool = True
    source: str

class UnresolvedRecipient(BaseModel):
    status: Literal["unresolved"] = "unresolved"
    account_number: Optional[str] = None
    bank: Optional[BankIdentity] = None
    account_name: Optional[str] = None
    verified: bool = False
    error_kind: ErrorKind
    reason: str
    message: str
    suggestions: List[str] = Field(default_factory=list)

RecipientResolution = Union[ResolvedRecipient, UnresolvedRecipient]

class AuthorizationOutcome(BaseModel):
    status: Literal[
        "authorized",
        "authorization_required",
        "insufficient_balance",
        "relink_required",
        "mandate_not_ready",
        "failed",
    ]
    message: Optional[str] = None
    authorization_url: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

class ExecutionOutcome(BaseModel):
    status: Literal["success", "failed", "authorization_required"]
    message: str
    reference: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

# --- HTTP surface ---

class InboundMessage(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    text: str = Field(..., min_length=1, max_length=1000)
    phone_number: Optional[str] = None

class MessageReply(BaseModel):
    user_id: str
    reply: str
    awaiting_confirmation: bool = False

class MonoWebhook(BaseModel):
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)

class WebhookAck(BaseModel):
    status: Literal["processed", "ignored"]
    detail: Optional[str] = None

class HealthResponse(BaseModel):
    status: str
    service: str
    timestamp: str
    version: str = "1.0.0"
    dependencies: Dict[str, Any] = Field(default_factory=dict)

# --- Turn results ---

class TurnReply(BaseModel):
    text: str
    awaiting_confirmation: bool = False
    outcome: Optional[str] = None
