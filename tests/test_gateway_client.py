from __future__ import annotations

import io
import json
import urllib.error
import urllib.request
from typing import Any, Dict, List

import pytest

from coderai.models import (
    ChatMessage,
    ChatResponseFormatError,
    GatewayClient,
    ModelCatalog,
    ProviderUnavailable,
)
from coderai.models.gateway import DEFAULT_TIMEOUT, _describe_http_error
from coderai.models.llm_client import estimate_tokens


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("AI_GATEWAY_KEY", "AI_GATEWAY_URL", "AI_TIMEOUT", "AI_MODEL_FAST"):
        monkeypatch.delenv(name, raising=False)


class RecordingTransport:
    def __init__(self, *bodies: Any) -> None:
        self.bodies: List[Any] = list(bodies)
        self.payloads: List[Dict[str, Any]] = []

    def __call__(self, payload: Dict[str, Any]) -> str:
        self.payloads.append(dict(payload))
        body = self.bodies.pop(0)
        if isinstance(body, Exception):
            raise body
        return body if isinstance(body, str) else json.dumps(body)


def test_chat_reads_message_content_and_counts() -> None:
    transport = RecordingTransport({"message": {"content": "hello"}, "prompt_eval_count": 7, "eval_count": 3})
    client = GatewayClient(transport=transport, model="smart")

    response = client.chat([ChatMessage(role="user", content="hi")], temperature=0.2)

    assert response.content == "hello"
    assert response.model == "qwen2.5-coder:14b"
    assert response.provider == "ollama_gateway"
    assert response.usage.to_dict() == {"input_tokens": 7, "output_tokens": 3, "total_tokens": 10}
    assert transport.payloads[0]["model"] == "qwen2.5-coder:14b"
    assert transport.payloads[0]["temperature"] == 0.2


def test_chat_accepts_choices_format_and_estimates_usage() -> None:
    transport = RecordingTransport({"choices": [{"message": {"content": "twelve chars"}}]})
    client = GatewayClient(transport=transport)

    response = client.chat([{"role": "user", "content": "count me"}])

    assert response.content == "twelve chars"
    assert response.usage.output_tokens == estimate_tokens("twelve chars") == 3
    assert response.usage.input_tokens > 0


def test_chat_accepts_bare_content() -> None:
    client = GatewayClient(transport=RecordingTransport({"content": "plain"}))

    assert client.chat([ChatMessage(role="user", content="x")]).content == "plain"


def test_model_aliases_and_allow_list() -> None:
    catalog = ModelCatalog.from_config(["qwen2.5-coder:7b"])
    transport = RecordingTransport({"message": {"content": "ok"}})
    client = GatewayClient(transport=transport, catalog=catalog)

    assert client.model == "qwen2.5-coder:7b"
    client.chat([ChatMessage(role="user", content="x")], model="fast")
    assert transport.payloads[0]["model"] == "qwen2.5-coder:7b"

    with pytest.raises(ProviderUnavailable, match="Model not allowed: qwen2.5-coder:14b"):
        client.chat([ChatMessage(role="user", content="x")], model="smart")
    assert len(transport.payloads) == 1


def test_invalid_json_body_raises_format_error() -> None:
    client = GatewayClient(transport=RecordingTransport("<html>bad gateway</html>"))

    with pytest.raises(ChatResponseFormatError, match="Invalid response from AI gateway"):
        client.chat([ChatMessage(role="user", content="x")])


def test_error_payload_raises_provider_unavailable() -> None:
    client = GatewayClient(transport=RecordingTransport({"error": {"message": "model overloaded"}}))

    with pytest.raises(ProviderUnavailable, match="model overloaded"):
        client.chat([ChatMessage(role="user", content="x")])


def test_transport_failures_become_provider_unavailable() -> None:
    client = GatewayClient(transport=RecordingTransport(ConnectionResetError("reset by peer")))

    with pytest.raises(ProviderUnavailable, match="AI gateway unavailable: reset by peer"):
        client.chat([ChatMessage(role="user", content="x")])


def test_default_transport_requires_api_key() -> None:
    with pytest.raises(ValueError, match="AI_GATEWAY_KEY"):
        GatewayClient()


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AI_GATEWAY_KEY", "secret")
    monkeypatch.setenv("AI_TIMEOUT", "30")
    monkeypatch.setenv("AI_MODEL_FAST", "fast")

    client = GatewayClient()

    assert client.timeout == 30
    assert client.model == "qwen2.5-coder:7b"

    monkeypatch.setenv("AI_TIMEOUT", "soon")
    assert GatewayClient().timeout == DEFAULT_TIMEOUT


@pytest.mark.parametrize(
    "status, message",
    [
        (401, "AI gateway authentication failed"),
        (403, "AI gateway authentication failed"),
        (500, "AI gateway server error"),
        (503, "AI gateway server error"),
        (429, "AI gateway error (HTTP 429)"),
    ],
)
def test_describe_http_error(status: int, message: str) -> None:
    assert _describe_http_error(status) == message


class _FakeHTTPResponse(io.BytesIO):
    status = 200

    def __enter__(self) -> "_FakeHTTPResponse":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def test_http_transport_posts_with_key_header(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: Dict[str, Any] = {}

    def fake_urlopen(request: urllib.request.Request, timeout: float) -> _FakeHTTPResponse:
        captured["request"] = request
        captured["timeout"] = timeout
        return _FakeHTTPResponse(json.dumps({"message": {"content": "pong"}}).encode("utf-8"))

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    client = GatewayClient(api_key="k-123", base_url="http://gateway.test/chat", timeout=5)

    response = client.chat([ChatMessage(role="user", content="ping")], temperature=0.1, max_tokens=64)

    request = captured["request"]
    body = json.loads(request.data.decode("utf-8"))
    assert response.content == "pong"
    assert request.full_url == "http://gateway.test/chat"
    assert request.get_header("X-ai-key") == "k-123"
    assert captured["timeout"] == 5
    assert body["model"] == "qwen2.5-coder:7b"
    assert body["temperature"] == 0.1
    assert body["options"] == {"num_predict": 64}


@pytest.mark.parametrize("status, message", [(401, "authentication failed"), (502, "server error")])
def test_http_transport_maps_http_errors(monkeypatch: pytest.MonkeyPatch, status: int, message: str) -> None:
    def fake_urlopen(request: urllib.request.Request, timeout: float) -> None:
        raise urllib.error.HTTPError(request.full_url, status, "error", None, None)

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    client = GatewayClient(api_key="k-123")

    with pytest.raises(ProviderUnavailable, match=message):
        client.chat([ChatMessage(role="user", content="ping")])


def test_http_transport_maps_connection_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(request: urllib.request.Request, timeout: float) -> None:
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    client = GatewayClient(api_key="k-123")

    with pytest.raises(ProviderUnavailable, match="AI gateway unavailable: connection refused"):
        client.chat([ChatMessage(role="user", content="ping")])
