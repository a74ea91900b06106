"""Chat client for the self-hosted Ollama gateway."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Mapping, Optional

from .catalog import ModelCatalog, ModelNotAllowed
from .llm_client import ChatClient, ChatResponseFormatError, ProviderUnavailable

__all__ = ["GatewayClient"]

LOGGER = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "http://localhost:11434/chat"
DEFAULT_TIMEOUT = 120.0

Transport = Callable[[Dict[str, Any]], str]


class GatewayClient(ChatClient):
    """Thin adapter around the gateway's JSON chat endpoint."""

    provider_name = "ollama_gateway"

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        catalog: Optional[ModelCatalog] = None,
        transport: Optional[Transport] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._catalog = catalog or ModelCatalog()
        default_model = self._catalog.normalise(model or os.getenv("AI_MODEL_FAST"))
        super().__init__(model=default_model)
        self._api_key = api_key or os.getenv("AI_GATEWAY_KEY") or ""
        self._base_url = base_url or os.getenv("AI_GATEWAY_URL") or DEFAULT_GATEWAY_URL
        resolved_timeout = timeout if timeout and timeout > 0 else DEFAULT_TIMEOUT
        timeout_override = os.getenv("AI_TIMEOUT")
        if timeout is None and timeout_override:
            try:
                parsed = float(timeout_override)
                if parsed > 0:
                    resolved_timeout = parsed
            except ValueError:
                pass
        self._timeout = resolved_timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("AI_GATEWAY_KEY is required when using the default transport.")

    @property
    def catalog(self) -> ModelCatalog:
        return self._catalog

    @property
    def timeout(self) -> float:
        return self._timeout

    def _raw_invoke(self, payload: Dict[str, Any]) -> Mapping[str, Any]:
        """Validate the model, send the request, and decode the JSON body."""
        try:
            payload["model"] = self._catalog.require(payload.get("model"))
        except ModelNotAllowed as error:
            raise ProviderUnavailable(str(error)) from error

        LOGGER.debug(
            "Gateway request model=%s messages=%d",
            payload["model"],
            len(payload.get("messages", [])),
        )
        try:
            raw_response = self._transport(payload)
        except ProviderUnavailable:
            raise
        except Exception as error:
            raise ProviderUnavailable(f"AI gateway unavailable: {error}") from error

        try:
            decoded = json.loads(raw_response)
        except (TypeError, json.JSONDecodeError) as error:
            LOGGER.error("Gateway returned invalid JSON: %.200s", raw_response)
            raise ChatResponseFormatError("Invalid response from AI gateway") from error
        if not isinstance(decoded, dict):
            raise ChatResponseFormatError("Invalid response from AI gateway")
        return decoded

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport that posts to the gateway chat endpoint."""
        import socket
        import urllib.error
        import urllib.request

        body = {
            "model": payload["model"],
            "temperature": payload.get("temperature"),
            "messages": payload.get("messages", []),
        }
        if payload.get("max_tokens") is not None:
            body["options"] = {"num_predict": payload["max_tokens"]}

        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            self._base_url,
            data=data,
            headers={
                "Content-Type": "application/json",
                "x-ai-key": self._api_key,
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except (TimeoutError, socket.timeout) as error:
            raise ProviderUnavailable("AI gateway timed out.") from error
        except urllib.error.HTTPError as error:
            raise ProviderUnavailable(_describe_http_error(error.code)) from error
        except urllib.error.URLError as error:
            raise ProviderUnavailable(f"AI gateway unavailable: {error.reason}") from error

        if status != 200:
            raise ProviderUnavailable(_describe_http_error(status))

        return raw.decode("utf-8")


def _describe_http_error(status: int) -> str:
    if status in (401, 403):
        return "AI gateway authentication failed"
    if status >= 500:
        return "AI gateway server error"
    return f"AI gateway error (HTTP {status})"
