"""Chat client base class shared by all language-model integrations."""

from __future__ import annotations

import ast
import json
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Literal, Optional

__all__ = [
    "ChatClient",
    "ChatClientError",
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "ChatResponseFormatError",
    "ProviderUnavailable",
    "TokenUsage",
    "estimate_tokens",
    "parse_json_payload",
    "strip_code_fence",
]


Role = Literal["system", "user", "assistant"]


class ChatClientError(RuntimeError):
    """Base error raised for chat provider failures."""


class ProviderUnavailable(ChatClientError):
    """Raised when the provider cannot be reached or answers with an error status."""


class ChatResponseFormatError(ChatClientError):
    """Raised when the provider returns a payload that cannot be decoded."""


@dataclass(slots=True)
class ChatMessage:
    """Single role-tagged message sent to the provider."""

    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class TokenUsage:
    """Token accounting reported (or estimated) for one completion."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(slots=True)
class ChatResponse:
    """Generated text plus model and usage metadata."""

    content: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    provider: str = ""
    finish_reason: str = "stop"

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["usage"] = self.usage.to_dict()
        return payload


@dataclass(slots=True)
class ChatRequest:
    """Provider-agnostic chat completion request."""

    messages: list[ChatMessage]
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render the transport payload in the gateway's chat format."""
        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "messages": [message.to_dict() for message in self.messages],
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        return payload


AttemptLogger = Callable[[Dict[str, Any], Optional[Mapping[str, Any]], Optional[ChatResponse], Optional[Exception]], None]


class ChatClient:
    """High-level helper that normalises provider responses.

    Subclasses implement :meth:`_raw_invoke`, which returns the decoded JSON
    body of the provider response. The base class performs no retries; retry
    policy belongs to the caller.
    """

    provider_name = "generic"

    def __init__(self, model: str) -> None:
        self._model = model

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def chat(
        self,
        messages: Sequence[ChatMessage | Mapping[str, str]],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ChatResponse:
        """Send ``messages`` and return the generated text with usage."""
        request = ChatRequest(
            messages=[_coerce_message(message) for message in messages],
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return self.invoke(request)

    def invoke(self, request: ChatRequest, *, logger: Optional[AttemptLogger] = None) -> ChatResponse:
        """Invoke the provider once and return the normalised response."""
        payload = request.to_payload(self._model)
        raw: Optional[Mapping[str, Any]] = None
        try:
            raw = self._raw_invoke(payload)
            response = self._build_response(payload, raw)
        except ChatClientError as error:
            if logger:
                logger(payload, raw, None, error)
            raise
        if logger:
            logger(payload, raw, response, None)
        return response

    def _raw_invoke(self, payload: Dict[str, Any]) -> Mapping[str, Any]:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    def _build_response(self, payload: Mapping[str, Any], raw: Mapping[str, Any]) -> ChatResponse:
        if not isinstance(raw, Mapping):
            raise ChatResponseFormatError("Provider response must be a JSON object.")
        error = raw.get("error")
        if error:
            message = error.get("message") if isinstance(error, Mapping) else str(error)
            raise ProviderUnavailable(message or "Provider returned an error.")

        content = _extract_content(raw)
        prompt_tokens = raw.get("prompt_eval_count")
        completion_tokens = raw.get("eval_count")
        usage_block = raw.get("usage")
        if isinstance(usage_block, Mapping):
            prompt_tokens = prompt_tokens if prompt_tokens is not None else usage_block.get("prompt_tokens")
            completion_tokens = (
                completion_tokens if completion_tokens is not None else usage_block.get("completion_tokens")
            )
        if not isinstance(prompt_tokens, int):
            prompt_tokens = estimate_tokens(json.dumps(payload.get("messages", []), ensure_ascii=False))
        if not isinstance(completion_tokens, int):
            completion_tokens = estimate_tokens(content)

        done = raw.get("done_reason") or raw.get("finish_reason") or "stop"
        return ChatResponse(
            content=content,
            model=str(payload.get("model") or self._model),
            usage=TokenUsage(input_tokens=prompt_tokens, output_tokens=completion_tokens),
            provider=self.provider_name,
            finish_reason=str(done),
        )


def _coerce_message(message: ChatMessage | Mapping[str, str]) -> ChatMessage:
    if isinstance(message, ChatMessage):
        return message
    role = str(message.get("role") or "user")
    if role not in ("system", "user", "assistant"):
        role = "user"
    return ChatMessage(role=role, content=str(message.get("content") or ""))  # type: ignore[arg-type]


def _extract_content(raw: Mapping[str, Any]) -> str:
    message = raw.get("message")
    if isinstance(message, Mapping) and isinstance(message.get("content"), str):
        return message["content"]
    choices = raw.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, Mapping):
            inner = first.get("message")
            if isinstance(inner, Mapping) and isinstance(inner.get("content"), str):
                return inner["content"]
            if isinstance(first.get("text"), str):
                return first["text"]
    content = raw.get("content")
    if isinstance(content, str):
        return content
    return ""


def estimate_tokens(text: str) -> int:
    """Rough token estimate (about four characters per token)."""
    if not text:
        return 0
    return int(math.ceil(len(text.encode("utf-8")) / 4))


_FENCE_RE = re.compile(r"```(?:[A-Za-z0-9_-]+)?\s*([\s\S]*?)\n?[ \t]*```")


def strip_code_fence(payload: str, *, languages: Sequence[str] = ()) -> str | None:
    """Return the body of the first Markdown code fence, or ``None``."""
    for match in _FENCE_RE.finditer(payload):
        header = payload[match.start() + 3 : match.start(1)].strip().lower()
        if languages and header and header not in languages:
            continue
        return match.group(1)
    return None


def _normalise_json_string(payload: str) -> str:
    """Normalise common non-JSON characters emitted by models."""
    if not payload:
        return payload
    translation = {
        0x201C: '"',
        0x201D: '"',
        0x2018: "'",
        0x2019: "'",
        0x00A0: " ",
        0xFEFF: "",
    }
    return payload.translate(str.maketrans(translation))


def _strip_trailing_commas(payload: str) -> str:
    """Remove trailing commas before closing braces/brackets."""
    if not payload:
        return payload
    return re.sub(r",(\s*[}\]])", r"\1", payload)


def _repair_json_payload(raw: str) -> str | None:
    """Attempt to salvage a JSON object embedded in noisy output."""
    opening_idx = None
    expected: list[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(raw):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and expected:
            in_string = True
        elif char in "{[":
            if opening_idx is None:
                opening_idx = index
            expected.append("}" if char == "{" else "]")
        elif expected and char == expected[-1]:
            expected.pop()
            if not expected and opening_idx is not None:
                return _strip_trailing_commas(raw[opening_idx : index + 1].strip())
    return None


def _coerce_python_literal(candidate: str) -> Any | None:
    """Fall back to Python literal parsing when JSON decoding fails."""
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, ValueError, MemoryError, RecursionError):
        return None
    if isinstance(literal, (dict, list)):
        return json.loads(json.dumps(literal, default=str))
    return None


def parse_json_payload(raw_response: str) -> Any:
    """Decode a model response into JSON, tolerating fences and stray prose.

    Raises :class:`ChatResponseFormatError` when nothing decodable is found.
    """
    text = (raw_response or "").strip()
    if not text:
        raise ChatResponseFormatError("Model returned an empty response.")

    fenced = strip_code_fence(text, languages=("json",))
    candidates: list[str] = []
    if fenced is not None:
        candidates.append(_normalise_json_string(fenced.strip()))
    candidates.append(_normalise_json_string(text))
    repaired = _repair_json_payload(candidates[-1])
    if repaired and repaired not in candidates:
        candidates.append(repaired)

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pythonic = _coerce_python_literal(candidate)
            if pythonic is not None:
                return pythonic

    snippet = text[:200]
    raise ChatResponseFormatError(f"Model returned invalid JSON: {snippet}")
