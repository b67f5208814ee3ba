import json
from typing import Any, Dict, List

import google.generativeai as genai
from google.generativeai.types import FunctionDeclaration, Tool

from transfer_orchestrator.errors import ProviderUnavailable
from transfer_orchestrator.middleware import get_logger
from transfer_orchestrator.schemas import ChatMessage, RawProviderResponse, RawToolCall
from transfer_orchestrator.tool_spec import SUMMARY_PROMPT, SYSTEM_PROMPT, TOOL_DECLARATIONS

def create_gemini_tools() -> Tool:
    """Builds the banking tool set from the declared schemas."""
    declarations = []
    for tool in TOOL_DECLARATIONS:
        if tool["parameters"]:
            declarations.append(FunctionDeclaration(
                name=tool["name"], description=tool["description"], parameters=tool["parameters"]
            ))
        else:
            declarations.append(FunctionDeclaration(name=tool["name"], description=tool["description"]))
    return Tool(function_declarations=declarations)

def to_gemini_history(history: List[ChatMessage]) -> List[Dict[str, Any]]:
    return [
        {"role": "user" if message.role == "user" else "model", "parts": [{"text": message.content}]}
        for message in history
    ]

class GeminiAdapter:
    """Function-calling inference on Gemini, normalized into RawProviderResponse."""

    def __init__(self, api_key: str, model_name: str = "gemini-1.5-pro", timeout: int = 15):
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self.timeout = timeout

    async def generate(self, history: List[ChatMessage], user_text: str, correlation_id: str = None) -> RawProviderResponse:
        logger = get_logger(correlation_id)
        logger.info(f"Sending turn to Gemini with {len(history)} history messages")
        try:
            model = genai.GenerativeModel(
                self.model_name,
                tools=[create_gemini_tools()],
                system_instruction=SYSTEM_PROMPT,
            )
            chat = model.start_chat(history=to_gemini_history(history))
            response = await chat.send_message_async(user_text, request_options={"timeout": self.timeout})
        except Exception as e:
            logger.error(f"Gemini call failed: {e}", exc_info=True)
            raise ProviderUnavailable("Gemini", str(e)) from e

        tool_calls = []
        text_parts = []
        for candidate in response.candidates[:1]:
            for part in candidate.content.parts:
                function_call = getattr(part, "function_call", None)
                if function_call and function_call.name:
                    tool_calls.append(RawToolCall(
                        name=function_call.name,
                        arguments={key: value for key, value in function_call.args.items()} if function_call.args else {},
                    ))
                elif getattr(part, "text", None):
                    text_parts.append(part.text)

        return RawProviderResponse(tool_calls=tool_calls, content="".join(text_parts) or None)

    async def summarize(self, function_name: str, data: Dict[str, Any], correlation_id: str = None) -> str:
        """Tool-less follow-up call that phrases a function result for the user."""
        logger = get_logger(correlation_id)
        prompt = f"{SUMMARY_PROMPT}\nFunction: {function_name}\nData:\n{json.dumps(data, default=str)}"
        try:
            model = genai.GenerativeModel(self.model_name)
            response = await model.generate_content_async(prompt, request_options={"timeout": self.timeout})
            return response.text
        except Exception as e:
            logger.error(f"Gemini summary call failed: {e}", exc_info=True)
            raise ProviderUnavailable("Gemini", str(e)) from e
