import pytest
import respx
from httpx import Response

from transfer_orchestrator.errors import GENERIC_FAILURE_MESSAGE, ProviderUnavailable
from transfer_orchestrator.schemas import InboundMessage
from transfer_orchestrator.services.accounts import AccountService
from transfer_orchestrator.services.confirmation import MISSING_ACCOUNT_MESSAGE, MISSING_AMOUNT_MESSAGE, NO_PENDING_MESSAGE
from transfer_orchestrator.services.flow import ConversationFlow, NOT_CONNECTED_MESSAGE
from transfer_orchestrator.services.recipient_resolver import INVALID_ACCOUNT_MESSAGE
from tests.conftest import MONO_URL

LOOKUP_URL = f"{MONO_URL}/v2/lookup/account"

@pytest.fixture
def accounts(db, mono):
    return AccountService(db, mono, "https://app.test/callback")

@pytest.fixture
def flow(db, fake_ai, confirmation, resolver, accounts):
    return ConversationFlow(db, fake_ai, confirmation, resolver, accounts, max_conversation_turns=20)

def message(text, user_id="user-1"):
    return InboundMessage(user_id=user_id, text=text, phone_number="08030000000")

@pytest.mark.anyio
async def test_text_reply_is_returned_and_remembered(db, flow, fake_ai):
    fake_ai.reply_with_text("Hello! How can I help?")

    reply = await flow.handle_message(message("hi"))

    assert reply.text == "Hello! How can I help?"
    history = db.get_or_create_session("user-1").history
    assert [(item.role, item.content) for item in history] == [
        ("user", "hi"), ("assistant", "Hello! How can I help?"),
    ]

@pytest.mark.anyio
async def test_history_is_bounded(db, fake_ai, confirmation, resolver, accounts):
    flow = ConversationFlow(db, fake_ai, confirmation, resolver, accounts, max_conversation_turns=2)
    for text in ("one", "two", "three"):
        await flow.handle_message(message(text))

    history = db.get_or_create_session("user-1").history
    assert len(history) == 4
    assert history[0].content == "two"
    assert len(fake_ai.generate_calls[-1][0]) == 4

@pytest.mark.anyio
@pytest.mark.parametrize("text", ["confirm", "Cancel", "confirm."])
async def test_standalone_confirmation_word_without_pending(flow, fake_ai, text):
    reply = await flow.handle_message(message(text))

    assert reply.text == NO_PENDING_MESSAGE
    assert fake_ai.generate_calls == []

@pytest.mark.anyio
async def test_other_short_replies_go_to_the_model(flow, fake_ai):
    fake_ai.reply_with_text("Yes to what?")

    reply = await flow.handle_message(message("yes"))

    assert reply.text == "Yes to what?"
    assert len(fake_ai.generate_calls) == 1

@pytest.mark.anyio
@pytest.mark.parametrize("arguments,expected", [
    ({"recipient_account_number": "<account_number>", "recipient_bank_code": "044", "amount": 5000},
     MISSING_ACCOUNT_MESSAGE),
    ({"recipient_account_number": "1234567890", "recipient_bank_code": "null", "amount": 5000},
     MISSING_ACCOUNT_MESSAGE),
    ({"recipient_account_number": "1234567890", "recipient_bank_code": "044"}, MISSING_AMOUNT_MESSAGE),
    ({"recipient_account_number": "1234567890", "recipient_bank_code": "044", "amount": "lots"},
     MISSING_AMOUNT_MESSAGE),
    ({"recipient_account_number": "1234567890", "recipient_bank_code": "044", "amount": 50},
     "The minimum transfer amount is ₦100."),
    ({"recipient_account_number": "12345", "recipient_bank_code": "044", "amount": 5000}, INVALID_ACCOUNT_MESSAGE),
])
async def test_incomplete_transfer_requests_never_create_pending(db, flow, fake_ai, arguments, expected):
    fake_ai.reply_with_tool("transfer_money", arguments)

    reply = await flow.handle_message(message("send money"))

    assert reply.text == expected
    assert reply.awaiting_confirmation is False
    assert db.get_or_create_session("user-1").pending_transaction is None

@pytest.mark.anyio
async def test_unknown_bank_in_transfer(db, flow, fake_ai):
    fake_ai.reply_with_tool("transfer_money", {
        "recipient_account_number": "1234567890", "recipient_bank_code": "Zenit Bnak", "amount": 5000,
    })

    reply = await flow.handle_message(message("send 5000 to 1234567890 zenit bnak"))

    assert reply.text.startswith("Unknown bank: Zenit Bnak.")
    assert "Zenith Bank" in reply.text
    assert db.get_or_create_session("user-1").pending_transaction is None

@pytest.mark.anyio
@respx.mock
async def test_transfer_request_awaits_confirmation(db, flow, fake_ai):
    respx.post(LOOKUP_URL).mock(return_value=Response(200, json={"data": {"name": "John Doe"}}))
    fake_ai.reply_with_tool("transfer_money", {
        "recipient_account_number": "1234567890", "recipient_bank_code": "Access Bank", "amount": "₦5,000",
    })

    reply = await flow.handle_message(message("transfer 5000 to 1234567890 Access Bank"))

    assert reply.awaiting_confirmation is True
    assert reply.text == 'Transfer ₦5,000 to John Doe at Access Bank? Reply "confirm" or "cancel".'
    pending = db.get_or_create_session("user-1").pending_transaction
    assert pending.arguments.recipient_bank_code == "044"
    assert pending.arguments.recipient_name == "John Doe"

@pytest.mark.anyio
@respx.mock
async def test_recovered_tool_call_in_free_text(db, flow, fake_ai):
    respx.post(LOOKUP_URL).mock(return_value=Response(200, json={"data": {"name": "John Doe"}}))
    fake_ai.reply_with_text('<|python_tag|>lookup_recipient("1234567890", "GTBank")')

    reply = await flow.handle_message(message("who owns 1234567890 at gtbank?"))

    assert reply.text == "Summary of lookup_recipient"
    name, data = fake_ai.summaries[0]
    assert name == "lookup_recipient"
    assert data["verified"] is True
    assert data["account_name"] == "John Doe"
    assert data["bank_code"] == "058"

@pytest.mark.anyio
@pytest.mark.parametrize("tool", ["get_total_balance", "check_balance", "get_transactions", "get_spending_insights"])
async def test_account_tools_require_a_linked_account(flow, fake_ai, tool):
    fake_ai.reply_with_tool(tool, {})

    reply = await flow.handle_message(message("how much do I have?"))

    assert reply.text == NOT_CONNECTED_MESSAGE
    assert fake_ai.summaries == []

@pytest.mark.anyio
async def test_account_status_is_summarized(flow, fake_ai, linked_account):
    fake_ai.reply_with_tool("check_account_status", None)

    reply = await flow.handle_message(message("is my account connected?"))

    assert reply.text == "Summary of check_account_status"
    name, data = fake_ai.summaries[0]
    assert data["connected"] is True
    assert data["accounts"][0]["account_number"] == "******6789"

@pytest.mark.anyio
async def test_unknown_tool(flow, fake_ai):
    fake_ai.reply_with_tool("open_the_vault", {})

    reply = await flow.handle_message(message("do something"))

    assert reply.text == "Sorry, I can't help with that yet."

@pytest.mark.anyio
async def test_unavailable_model_gets_generic_reply(flow, fake_ai, monkeypatch):
    async def unavailable(*args, **kwargs):
        raise ProviderUnavailable("Gemini", "deadline exceeded")
    monkeypatch.setattr(fake_ai, "generate", unavailable)

    reply = await flow.handle_message(message("hello"))

    assert reply.text == GENERIC_FAILURE_MESSAGE

@pytest.mark.anyio
async def test_corrupt_session_is_reset(db, flow, fake_ai):
    db.get_or_create_session("user-1")
    with db.engine.begin() as conn:
        conn.execute(db.sessions_table.update().values(pending_transaction={"kind": "transfer"}))

    reply = await flow.handle_message(message("confirm"))

    assert reply.text == GENERIC_FAILURE_MESSAGE
    session = db.get_or_create_session("user-1")
    assert session.pending_transaction is None
    assert session.history == []
