import pytest

from transfer_orchestrator.schemas import RawProviderResponse, RawToolCall, TextReply, ToolInvocation
from transfer_orchestrator.services.interpreter import (
    GLITCH_MESSAGE, NAMED_ARGUMENT_FUNCTIONS, POSITIONAL_SIGNATURES, interpret, recover_tool_call, sanitize,
)
from transfer_orchestrator.tool_spec import TOOL_DECLARATIONS, TOOL_PARAMETERS

# --- Structured calls ---

def test_structured_call_with_dict_arguments():
    response = RawProviderResponse(tool_calls=[RawToolCall(name="check_balance", arguments={"account_type": "all"})])
    result = interpret(response)
    assert isinstance(result, ToolInvocation)
    assert result.name == "check_balance"
    assert result.arguments == {"account_type": "all"}
    assert result.recovered is False

def test_structured_call_with_encoded_arguments():
    response = RawProviderResponse(tool_calls=[
        RawToolCall(name="lookup_recipient", arguments='{"account_number": "1234567890", "bank_name": "GTBank"}')
    ])
    result = interpret(response)
    assert result.arguments == {"account_number": "1234567890", "bank_name": "GTBank"}

def test_structured_call_without_arguments():
    response = RawProviderResponse(tool_calls=[RawToolCall(name="get_total_balance", arguments=None)])
    result = interpret(response)
    assert isinstance(result, ToolInvocation)
    assert result.arguments == {}

def test_only_first_structured_call_is_used():
    response = RawProviderResponse(tool_calls=[
        RawToolCall(name="get_total_balance", arguments={}),
        RawToolCall(name="check_account_status", arguments={}),
    ])
    assert interpret(response).name == "get_total_balance"

def test_undecodable_structured_arguments_fall_back_to_content():
    response = RawProviderResponse(
        tool_calls=[RawToolCall(name="transfer_money", arguments="{not json")],
        content="Let me check that for you.",
    )
    result = interpret(response)
    assert isinstance(result, TextReply)
    assert result.content == "Let me check that for you."

# --- Recovery from free text ---

@pytest.mark.parametrize("content", [
    '<function=lookup_recipient>{"account_number": "1234567890", "bank_name": "Access Bank"}</function>',
    '<function=lookup_recipient({"account_number": "1234567890", "bank_name": "Access Bank"})></function>',
    '<function=lookup_recipient{"account_number": "1234567890", "bank_name": "Access Bank"}</function>',
    'Sure! <function=lookup_recipient>{"account_number": "1234567890", "bank_name": "Access Bank"}</function> one moment',
])
def test_recovers_json_tag_shapes(content):
    result = interpret(RawProviderResponse(content=content))
    assert isinstance(result, ToolInvocation)
    assert result.recovered is True
    assert result.name == "lookup_recipient"
    assert result.arguments == {"account_number": "1234567890", "bank_name": "Access Bank"}

def test_recovers_positional_python_tag():
    result = recover_tool_call('<|python_tag|>lookup_recipient("1234567890", "Access Bank")')
    assert result.name == "lookup_recipient"
    assert result.arguments == {"account_number": "1234567890", "bank_name": "Access Bank"}

def test_recovers_positional_call_without_spaces():
    result = interpret(RawProviderResponse(content='<|python_tag|>lookup_recipient("1234567890","Zenith")'))
    assert isinstance(result, ToolInvocation)
    assert result.arguments == {"account_number": "1234567890", "bank_name": "Zenith"}

def test_recovers_named_python_tag():
    result = recover_tool_call('<|python_tag|>transfer_money(recipient_account_number="1234567890", '
                               'recipient_bank_code="044", amount="5000")')
    assert result.name == "transfer_money"
    assert result.arguments == {
        "recipient_account_number": "1234567890",
        "recipient_bank_code": "044",
        "amount": "5000",
    }

def test_named_recovery_drops_undeclared_parameters():
    result = recover_tool_call('<|python_tag|>check_balance(account_type="all", pin="1234")')
    assert result.arguments == {"account_type": "all"}

def test_empty_python_tag_call_for_declared_tool():
    result = recover_tool_call("<|python_tag|>get_total_balance()")
    assert result.name == "get_total_balance"
    assert result.arguments == {}

def test_positional_values_for_transfer_are_not_guessed():
    content = '<|python_tag|>transfer_money("1234567890", "044", "5000")'
    assert recover_tool_call(content) is None
    result = interpret(RawProviderResponse(content=content))
    assert isinstance(result, TextReply)
    assert result.content == GLITCH_MESSAGE

def test_unknown_tool_with_empty_call_is_not_recovered():
    assert recover_tool_call("<|python_tag|>delete_everything()") is None

def test_failed_generation_is_searched():
    response = RawProviderResponse(
        content=None,
        failed_generation='<function=get_transactions>{"days": 30}</function>',
    )
    result = interpret(response)
    assert isinstance(result, ToolInvocation)
    assert result.name == "get_transactions"
    assert result.arguments == {"days": 30}

def test_plain_text_passes_through():
    result = interpret(RawProviderResponse(content="Your balance is looking healthy."))
    assert result == TextReply(content="Your balance is looking healthy.")

# --- Sanitizing ---

@pytest.mark.parametrize("content,expected", [
    ("Hello there", "Hello there"),
    ("Checking now <function=lookup_recipient>", "Checking now"),
    ("Checking now <function=lookup_recipient", "Checking now"),
    ("All done </function>", "All done"),
    ("<function=x>{broken</function> Here you go", "Here you go"),
])
def test_sanitize_strips_tag_fragments(content, expected):
    assert sanitize(content) == expected

def test_sanitize_replaces_tag_only_content_with_glitch_message():
    assert sanitize("<|python_tag|>transfer_money(") == GLITCH_MESSAGE
    assert sanitize("<function=transfer_money>") == GLITCH_MESSAGE

def test_sanitize_empty():
    assert sanitize("") == ""

# --- Tool tables ---

def test_positional_signatures_match_declared_parameters():
    for name, signature in POSITIONAL_SIGNATURES.items():
        assert name in TOOL_PARAMETERS
        assert set(signature) <= set(TOOL_PARAMETERS[name])

def test_named_recovery_covers_every_declared_tool():
    declared = {tool["name"] for tool in TOOL_DECLARATIONS}
    assert set(NAMED_ARGUMENT_FUNCTIONS) == declared
