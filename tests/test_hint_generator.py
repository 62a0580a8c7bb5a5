"""Test cases for the hint generator HTTP client."""

from __future__ import annotations

import json
import types

import pytest

from engines import hint_generator as generator_module
from engines.hint_generator import HintGeneratorClient, HintGeneratorError
from schemas import GeneratorRequest


@pytest.fixture
def llm_stub(monkeypatch):
    """Patch the httpx client used by the hint generator with a controllable stub."""

    calls = []
    responses: list[tuple[int, dict]] = []

    class _StubHTTPStatusError(Exception):
        def __init__(self, message: str, *, request=None, response=None):
            super().__init__(message)
            self.request = request
            self.response = response

    class _StubTimeoutError(Exception):
        pass

    class _StubRequestError(Exception):
        pass

    class _StubResponse:
        def __init__(self, status_code: int, payload: dict):
            self.status_code = status_code
            self._payload = payload

        def raise_for_status(self):
            if self.status_code >= 400:
                raise _StubHTTPStatusError(f"HTTP {self.status_code}", response=self)

        def json(self):
            return self._payload

    class _StubAsyncClient:
        def __init__(self, *args, **kwargs):
            self.kwargs = kwargs

        async def post(self, url, json=None, headers=None):
            if not responses:
                raise AssertionError("Hint generator stub has no queued responses")
            calls.append({"url": url, "json": json, "headers": headers, "client_kwargs": self.kwargs})
            status_code, payload = responses.pop(0)
            return _StubResponse(status_code, payload)

        async def aclose(self):
            return None

    stub_module = types.SimpleNamespace(
        AsyncClient=_StubAsyncClient,
        HTTPStatusError=_StubHTTPStatusError,
        TimeoutException=_StubTimeoutError,
        RequestError=_StubRequestError,
    )
    monkeypatch.setattr(generator_module, "httpx", stub_module)
    return {"calls": calls, "responses": responses}


def _client(**overrides):
    config = {
        "api_url": "https://llm.example.test/v1/chat/completions",
        "model_id": "hint-model",
        "api_key": "secret",
        "timeout": 3.0,
        "max_retries": 1,
        "retry_backoff": 0.0,
    }
    config.update(overrides)
    return HintGeneratorClient(model_config=config)


def _chat_payload(content: str) -> dict:
    return {"choices": [{"message": {"content": content}}]}


def _request(**overrides):
    values = {"question": "Berapa 12 / 4?", "subject": "Matematika", "attempt_count": 2}
    values.update(overrides)
    return GeneratorRequest(**values)


@pytest.mark.anyio
async def test_generate_parses_json_reply(llm_stub):
    reply = json.dumps({"hint": "Pikirkan pembagian sebagai pengelompokan.", "level": 2, "nextStep": "Kelompokkan 12"})
    llm_stub["responses"].append((200, _chat_payload(reply)))

    result = await _client().generate(_request())

    assert result.success
    assert result.hint == "Pikirkan pembagian sebagai pengelompokan."
    assert result.level == 2
    assert result.next_step == "Kelompokkan 12"

    call = llm_stub["calls"][0]
    assert call["url"] == "https://llm.example.test/v1/chat/completions"
    assert call["headers"] == {"Authorization": "Bearer secret"}
    assert call["json"]["model"] == "hint-model"
    assert call["client_kwargs"]["timeout"] == 3.0
    roles = [message["role"] for message in call["json"]["messages"]]
    assert roles == ["system", "assistant", "user"]
    assert "Berapa 12 / 4?" in call["json"]["messages"][-1]["content"]


@pytest.mark.anyio
async def test_generate_accepts_fenced_and_plain_text(llm_stub):
    fenced = "```json\n{\"hint\": \"Mulai dari faktor 4.\"}\n```"
    llm_stub["responses"].append((200, _chat_payload(fenced)))
    llm_stub["responses"].append((200, _chat_payload("Coba gambarkan 12 benda.")))

    first = await _client().generate(_request())
    second = await _client().generate(_request(attempt_count=5))

    assert first.hint == "Mulai dari faktor 4."
    assert first.level == 2
    assert second.hint == "Coba gambarkan 12 benda."
    assert second.level == 3


@pytest.mark.anyio
async def test_generate_retries_after_http_error(llm_stub):
    llm_stub["responses"].append((503, {"error": "busy"}))
    llm_stub["responses"].append((200, _chat_payload(json.dumps({"hint": "Ingat arti membagi."}))))

    result = await _client().generate(_request())

    assert result.hint == "Ingat arti membagi."
    assert len(llm_stub["calls"]) == 2


@pytest.mark.anyio
async def test_generate_raises_after_exhausting_retries(llm_stub):
    llm_stub["responses"].append((500, {}))
    llm_stub["responses"].append((500, {}))

    with pytest.raises(HintGeneratorError):
        await _client().generate(_request())
    assert len(llm_stub["calls"]) == 2


@pytest.mark.anyio
async def test_generate_requires_configured_url(llm_stub):
    with pytest.raises(HintGeneratorError):
        await _client(api_url=None).generate(_request())
    assert llm_stub["calls"] == []


def test_build_messages_includes_context_and_learner_input():
    client = _client()
    messages = client.build_messages(
        _request(user_message="Saya bingung", context={"options": ["2", "3", "4"], "type": "pilihan ganda"})
    )
    user_turn = messages[-1]["content"]
    assert "Saya bingung" in user_turn
    assert "Opsi Jawaban: 2, 3, 4" in user_turn
    assert "Tipe Soal: pilihan ganda" in user_turn


def test_parse_reply_rejects_empty_hint():
    with pytest.raises(HintGeneratorError):
        _client().parse_reply("   ", _request())
