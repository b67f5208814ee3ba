from types import SimpleNamespace

import pytest

from transfer_orchestrator import adk_adapter
from transfer_orchestrator.adk_adapter import GeminiAdapter
from transfer_orchestrator.errors import ProviderUnavailable

def text_response(text):
    part = SimpleNamespace(text=text, function_call=None)
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))], text=text)

class RecordingModel:
    calls = []

    def __init__(self, model_name, **kwargs):
        self.model_name = model_name

    def start_chat(self, history=None):
        return self

    async def send_message_async(self, content, **kwargs):
        RecordingModel.calls.append(("send_message_async", kwargs))
        return text_response("Hello there")

    async def generate_content_async(self, prompt, **kwargs):
        RecordingModel.calls.append(("generate_content_async", kwargs))
        return text_response("You have ₦5,000")

@pytest.fixture
def adapter(monkeypatch):
    RecordingModel.calls = []
    monkeypatch.setattr(adk_adapter.genai, "GenerativeModel", RecordingModel)
    monkeypatch.setattr(adk_adapter, "create_gemini_tools", lambda: None)
    return GeminiAdapter("test_key", "gemini-test", timeout=12)

@pytest.mark.anyio
async def test_turn_call_carries_timeout(adapter):
    response = await adapter.generate([], "hi")

    assert response.content == "Hello there"
    assert RecordingModel.calls == [("send_message_async", {"request_options": {"timeout": 12}})]

@pytest.mark.anyio
async def test_summary_call_carries_timeout(adapter):
    summary = await adapter.summarize("check_balance", {"total": "5000"})

    assert summary == "You have ₦5,000"
    assert RecordingModel.calls == [("generate_content_async", {"request_options": {"timeout": 12}})]

@pytest.mark.anyio
async def test_timed_out_turn_is_provider_unavailable(adapter, monkeypatch):
    async def stalled(self, content, **kwargs):
        raise TimeoutError("deadline exceeded")
    monkeypatch.setattr(RecordingModel, "send_message_async", stalled)

    with pytest.raises(ProviderUnavailable):
        await adapter.generate([], "hi")
