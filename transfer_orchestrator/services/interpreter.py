"""
Turns one raw inference reply into either a ToolInvocation or a TextReply.

Structured tool calls are used when they decode. Otherwise the free text is
searched for tool calls the model wrote out by hand, and whatever remains is
scrubbed of tag fragments before it can reach the user. Nothing here raises
on malformed input.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from transfer_orchestrator.schemas import (
    InterpretedResponse, RawProviderResponse, TextReply, ToolInvocation,
)
from transfer_orchestrator.tool_spec import TOOL_PARAMETERS

logger = logging.getLogger(__name__)

GLITCH_MESSAGE = "I encountered a technical glitch. Could you rephrase your request?"

# <function=name>{json}</function>, <function=name({json})></function>, <function=name{json}</function> ...
FUNCTION_JSON_PATTERN = re.compile(r"<function=([\w_]+)[^>]*?>?.*?(\{.*?\}).*?</function>", re.DOTALL)
# <|python_tag|>name(arg, arg) or name(key=value, ...)
PYTHON_TAG_PATTERN = re.compile(r"<\|python_tag\|>\s*([\w_]+)\((.*?)\)", re.DOTALL)

SANITIZE_PATTERNS = (
    re.compile(r"<\|python_tag\|>[\s\S]*?(\)|$)", re.IGNORECASE),
    re.compile(r"<function=[\s\S]*?>[\s\S]*?</function>", re.IGNORECASE),
    re.compile(r"<function=[\s\S]*?>", re.IGNORECASE),
    re.compile(r"<function=[^>]*$", re.IGNORECASE),
    re.compile(r"</function>", re.IGNORECASE),
)
TAG_MARKERS = ("python_tag", "<function=")

# Functions whose arguments may be recovered from bare positional values, in declared order.
POSITIONAL_SIGNATURES: Dict[str, tuple] = {
    "lookup_recipient": ("account_number", "bank_name"),
}

# Functions that accept key=value recovery, limited to their declared parameter names.
NAMED_ARGUMENT_FUNCTIONS: Dict[str, tuple] = dict(TOOL_PARAMETERS)

def interpret(response: RawProviderResponse) -> InterpretedResponse:
    if response.tool_calls:
        invocation = _from_structured_call(response)
        if invocation:
            return invocation

    content = response.content or ""
    recovered = recover_tool_call(content)
    if recovered:
        return recovered

    if response.failed_generation:
        recovered = recover_tool_call(response.failed_generation)
        if recovered:
            logger.info(f"Recovered tool call {recovered.name} from a rejected generation")
            return recovered
        if not content:
            content = response.failed_generation

    return TextReply(content=sanitize(content))

def _from_structured_call(response: RawProviderResponse) -> Optional[ToolInvocation]:
    if len(response.tool_calls) > 1:
        logger.info(f"Provider returned {len(response.tool_calls)} tool calls, honoring the first")
    call = response.tool_calls[0]
    arguments = call.arguments
    if arguments is None:
        arguments = {}
    elif isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except ValueError as e:
            logger.warning(f"Structured tool call {call.name} carried undecodable arguments: {e}")
            return None
    if not isinstance(arguments, dict):
        logger.warning(f"Structured tool call {call.name} arguments are not an object")
        return None
    return ToolInvocation(name=call.name, arguments=arguments)

def recover_tool_call(content: str) -> Optional[ToolInvocation]:
    """Recovers a tool call written into free text, or None when no shape matches."""
    if not content:
        return None

    json_match = FUNCTION_JSON_PATTERN.search(content)
    if json_match:
        name, raw = json_match.group(1), json_match.group(2)
        try:
            arguments = json.loads(raw)
        except ValueError:
            logger.warning(f"Tag for {name} held JSON that did not decode")
        else:
            if isinstance(arguments, dict):
                logger.warning(f"Recovered JSON tool call {name} from free text")
                return ToolInvocation(name=name, arguments=arguments, recovered=True)

    tag_match = PYTHON_TAG_PATTERN.search(content)
    if tag_match:
        name, raw = tag_match.group(1), tag_match.group(2)
        arguments = _parse_call_arguments(name, raw)
        if arguments is not None:
            logger.warning(f"Recovered python-tag tool call {name} from free text")
            return ToolInvocation(name=name, arguments=arguments, recovered=True)
        logger.warning(f"Unrecoverable python-tag call to {name}")

    return None

def _split_arguments(raw: str) -> List[str]:
    return [_unquote(part) for part in raw.split(",") if part.strip()]

def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value.strip("\"'")

def _parse_call_arguments(name: str, raw: str) -> Optional[Dict[str, Any]]:
    if not raw.strip():
        return {} if name in NAMED_ARGUMENT_FUNCTIONS else None

    if "=" in raw:
        named = _parse_named(name, raw)
        if named:
            return named

    signature = POSITIONAL_SIGNATURES.get(name)
    if not signature:
        return None
    values = _split_arguments(raw)
    if len(values) < len(signature):
        return None
    return dict(zip(signature, values))

def _parse_named(name: str, raw: str) -> Optional[Dict[str, Any]]:
    allowed = NAMED_ARGUMENT_FUNCTIONS.get(name)
    if not allowed:
        return None
    named = {}
    for pair in raw.split(","):
        if "=" not in pair:
            continue
        key, value = pair.split("=", 1)
        key = key.strip()
        if key in allowed and value.strip():
            named[key] = _unquote(value)
    return named or None

def sanitize(content: str) -> str:
    """Strips tool-call tag fragments, falling back to a fixed message if nothing readable is left."""
    if not content:
        return ""
    clean = content
    for pattern in SANITIZE_PATTERNS:
        clean = pattern.sub("", clean)
    clean = clean.strip()
    if not clean and any(marker in content for marker in TAG_MARKERS):
        return GLITCH_MESSAGE
    return clean
