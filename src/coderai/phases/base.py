"""Shared helpers for invoking phases and emitting structured logs."""

from __future__ import annotations

import hashlib
import json
import re
import uuid
from dataclasses import asdict, dataclass, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from ..models.llm_client import ChatClient, ChatClientError, ChatMessage, ChatRequest, ChatResponse


@dataclass(slots=True)
class PhaseLogSettings:
    """Where phase logs and raw LLM transcripts are written.

    Either root may be ``None`` to disable that kind of log.
    """

    logs_root: Optional[Path] = None
    data_root: Optional[Path] = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, base_dir: Path | None = None) -> "PhaseLogSettings":
        paths = config.get("paths") or {}
        data = Path(paths.get("data") or "data")
        logs = Path(paths.get("logs") or data / "logs")
        if base_dir is not None:
            data = data if data.is_absolute() else base_dir / data
            logs = logs if logs.is_absolute() else base_dir / logs
        return cls(logs_root=logs, data_root=data)


def invoke_phase(
    phase: str,
    messages: Sequence[ChatMessage],
    *,
    client: ChatClient,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    log_settings: Optional[PhaseLogSettings] = None,
    run_id: Optional[int] = None,
) -> ChatResponse:
    """Common helper used by the phase modules to call the chat client once."""
    request = ChatRequest(
        messages=list(messages),
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        metadata={"phase": phase, "run_id": run_id},
    )
    attempts: list[dict[str, Any]] = []
    run_label = str(run_id) if run_id is not None else ""

    def _attempt_logger(
        payload: dict[str, Any],
        raw: Mapping[str, Any] | None,
        response: ChatResponse | None,
        error: Exception | None,
    ) -> None:
        _log_llm_input(log_settings, phase, payload, run_label=run_label)
        _log_llm_output(log_settings, phase, response, error, run_label=run_label)
        attempts.append(
            {
                "payload": _json_safe(payload),
                "raw": _json_safe(raw),
                "content": response.content if response else None,
                "error": str(error) if error else None,
            }
        )

    try:
        response = client.invoke(request, logger=_attempt_logger)
    except ChatClientError as error:
        _write_phase_log(log_settings, phase, request, attempts, run_label=run_label, error=error)
        raise

    _write_phase_log(log_settings, phase, request, attempts, run_label=run_label, result=response)
    return response


def _write_phase_log(
    settings: Optional[PhaseLogSettings],
    phase: str,
    request: ChatRequest,
    attempts: list[dict[str, Any]],
    *,
    run_label: str,
    result: Any | None = None,
    error: Exception | None = None,
) -> None:
    """Persist a structured phase execution log for later debugging."""
    if settings is None or settings.logs_root is None:
        return
    logs_root = settings.logs_root / "phases"
    try:
        logs_root.mkdir(parents=True, exist_ok=True)
    except OSError:
        return

    entry: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "phase": phase,
        "run_id": run_label or None,
        "request": {
            "model": request.model,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "messages": [message.to_dict() for message in request.messages],
        },
        "attempts": attempts,
    }
    if result is not None:
        entry["result"] = _json_safe(result)
    if error is not None:
        entry["error"] = str(error)

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    parts = ["phase", phase]
    if run_label:
        parts.append(f"run-{_slug(run_label)}")
    parts.append(timestamp)
    log_path = logs_root / ("__".join(parts) + ".json")
    try:
        with log_path.open("w", encoding="utf-8") as handle:
            json.dump(entry, handle, indent=2, sort_keys=True, ensure_ascii=False)
    except OSError:
        return


def _transcript_path(settings: Optional[PhaseLogSettings], kind: str, phase: str, run_label: str) -> Path | None:
    if settings is None or settings.data_root is None:
        return None
    root = settings.data_root / "llm_inputs"
    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError:
        return None
    parts = [kind, _slug(phase, fallback="phase")]
    if run_label:
        parts.append(f"run-{_slug(run_label)}")
    parts.append(datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ"))
    parts.append(uuid.uuid4().hex[:8])
    return root / ("__".join(parts) + ".txt")


def _log_llm_input(
    settings: Optional[PhaseLogSettings],
    phase: str,
    payload: Mapping[str, Any] | None,
    *,
    run_label: str,
) -> None:
    """Persist the prompt text sent to the model."""
    if not isinstance(payload, Mapping):
        return
    log_path = _transcript_path(settings, "input", phase, run_label)
    if log_path is None:
        return

    lines = [
        f"Timestamp: {datetime.now(timezone.utc).isoformat()}",
        f"Phase: {phase}",
    ]
    if run_label:
        lines.append(f"Run ID: {run_label}")
    model_name = payload.get("model")
    if isinstance(model_name, str) and model_name:
        lines.append(f"Model: {model_name}")
    if payload.get("temperature") is not None:
        lines.append(f"Temperature: {payload['temperature']}")
    lines.extend(_format_prompt_sections(payload.get("messages")))

    try:
        log_path.write_text("\n".join(lines), encoding="utf-8")
    except OSError:
        return


def _log_llm_output(
    settings: Optional[PhaseLogSettings],
    phase: str,
    response: ChatResponse | None,
    error: Exception | None,
    *,
    run_label: str,
) -> None:
    """Persist the raw model response (or the error that replaced it)."""
    if response is None and error is None:
        return
    log_path = _transcript_path(settings, "output", phase, run_label)
    if log_path is None:
        return

    lines = [
        f"Timestamp: {datetime.now(timezone.utc).isoformat()}",
        f"Phase: {phase}",
    ]
    if run_label:
        lines.append(f"Run ID: {run_label}")
    if error is not None:
        lines.append(f"Error: {error}")
    if response is not None:
        lines.append(f"Model: {response.model}")
        lines.append(f"Tokens: {response.usage.total_tokens}")
        lines.append("")
        lines.append("Raw Response:")
        lines.append(response.content)

    try:
        log_path.write_text("\n".join(lines), encoding="utf-8")
    except OSError:
        return


def _format_prompt_sections(messages: Any) -> list[str]:
    """Return one heading plus body per prompt message."""
    sections: list[str] = []
    if not isinstance(messages, list):
        return sections
    for message in messages:
        if not isinstance(message, Mapping):
            continue
        role = str(message.get("role") or "").strip()
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        heading = f"{role.title()} Prompt:" if role else "Prompt:"
        sections.append("")
        sections.append(f"{heading}\n{content.strip()}")
    return sections


def _json_safe(value: Any) -> Any:
    """Coerce complex objects into JSON-serialisable representations."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if hasattr(value, "to_dict"):
        return _json_safe(value.to_dict())
    if is_dataclass(value) and not isinstance(value, type):
        return _json_safe(asdict(value))
    if hasattr(value, "model_dump"):
        return _json_safe(value.model_dump(mode="json"))
    if isinstance(value, Mapping):
        return {str(key): _json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)


def _slug(value: str, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalise identifiers for use in log filenames."""
    cleaned = re.sub(r"[^A-Za-z0-9]+", "-", value).strip("-")
    slug = cleaned or fallback
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = slug[:prefix_length].rstrip("-") or slug[:prefix_length]
    return f"{prefix}-{digest}"


__all__ = ["PhaseLogSettings", "invoke_phase"]
