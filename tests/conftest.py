from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from transfer_orchestrator.clients import FlutterwaveClient, MonoClient
from transfer_orchestrator.db import OrchestratorDb
from transfer_orchestrator.schemas import (
    LinkedAccount, MandateStatus, RawProviderResponse, RawToolCall, TransferArguments,
)
from transfer_orchestrator.services.bank_registry import BankRegistry
from transfer_orchestrator.services.confirmation import ConfirmationStateMachine
from transfer_orchestrator.services.executor import TransferExecutor
from transfer_orchestrator.services.mandates import MandateManager
from transfer_orchestrator.services.recipient_resolver import RecipientResolver

MONO_URL = "https://mono.test"
FLUTTERWAVE_URL = "https://flutterwave.test"

class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int):
        self.now += timedelta(seconds=seconds)

class FakeAI:
    """Stands in for the inference provider; replies are queued per test."""

    def __init__(self):
        self.responses = []
        self.generate_calls = []
        self.summaries = []

    def reply_with_tool(self, name, arguments):
        self.responses.append(RawProviderResponse(tool_calls=[RawToolCall(name=name, arguments=arguments)]))

    def reply_with_text(self, content):
        self.responses.append(RawProviderResponse(content=content))

    async def generate(self, history, user_text, correlation_id=None):
        self.generate_calls.append((list(history), user_text))
        if self.responses:
            return self.responses.pop(0)
        return RawProviderResponse(content="How can I help you today?")

    async def summarize(self, function_name, data, correlation_id=None):
        self.summaries.append((function_name, data))
        return f"Summary of {function_name}"

@pytest.fixture
def anyio_backend():
    return "asyncio"

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def db(clock):
    return OrchestratorDb("sqlite://", clock=clock)

@pytest.fixture
def fake_ai():
    return FakeAI()

@pytest.fixture
def mono():
    return MonoClient(MONO_URL, "test_mono_key")

@pytest.fixture
def flutterwave():
    return FlutterwaveClient(FLUTTERWAVE_URL, "test_flw_key")

@pytest.fixture
def registry():
    return BankRegistry()

@pytest.fixture
def resolver(registry, mono, flutterwave):
    return RecipientResolver(registry, mono, flutterwave)

@pytest.fixture
def mandates(db, mono):
    return MandateManager(db, mono)

@pytest.fixture
def executor(db, resolver, mandates, mono, registry):
    return TransferExecutor(db, resolver, mandates, mono, registry)

@pytest.fixture
def confirmation(db, executor, clock):
    return ConfirmationStateMachine(db, executor, window_seconds=300, clock=clock)

@pytest.fixture
def transfer_args():
    return TransferArguments(
        recipient_account_number="1234567890",
        recipient_bank_code="044",
        amount=Decimal("5000"),
        recipient_name="John Doe",
        bank_name="Access Bank",
    )

def make_account(db, user_id="user-1", mandate_status=MandateStatus.ACTIVE, mandate_id="mmc_1",
                 customer_id="cus_1", **overrides) -> LinkedAccount:
    values = dict(
        user_id=user_id,
        provider_account_id="acc_1",
        provider_customer_id=customer_id,
        account_number="0123456789",
        account_name="Ada Obi",
        bank_name="Guaranty Trust Bank",
        bank_code="058",
        phone_number="08030000000",
        is_primary=True,
        mandate_status=mandate_status,
        mandate_id=mandate_id,
    )
    values.update(overrides)
    return db.add_linked_account(LinkedAccount(**values))

@pytest.fixture
def linked_account(db):
    return make_account(db)
