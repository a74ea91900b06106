"""Model allow-list and alias normalisation for the self-hosted gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping

DEFAULT_MODELS: tuple[str, ...] = ("qwen2.5-coder:7b", "qwen2.5-coder:14b")

DEFAULT_ALIASES: dict[str, str] = {
    "fast": "qwen2.5-coder:7b",
    "smart": "qwen2.5-coder:14b",
    "qwen2.5-coder-7b": "qwen2.5-coder:7b",
    "qwen2.5-coder-14b": "qwen2.5-coder:14b",
    "qwen-coder-7b": "qwen2.5-coder:7b",
    "qwen-coder-14b": "qwen2.5-coder:14b",
}


class ModelNotAllowed(ValueError):
    """Raised when a model is not served by the configured gateway."""


@dataclass(slots=True)
class ModelCatalog:
    """Allow-list of gateway models with alias resolution."""

    allowed: tuple[str, ...] = DEFAULT_MODELS
    aliases: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_ALIASES))

    @classmethod
    def from_config(cls, models: Iterable[str] | None, aliases: Mapping[str, str] | None = None) -> "ModelCatalog":
        allowed = tuple(str(item).strip() for item in (models or ()) if str(item).strip())
        merged = dict(DEFAULT_ALIASES)
        merged.update({str(k).lower(): str(v) for k, v in (aliases or {}).items()})
        return cls(allowed=allowed or DEFAULT_MODELS, aliases=merged)

    def normalise(self, name: str | None) -> str:
        candidate = (name or "").strip()
        if not candidate:
            return self.allowed[0]
        return self.aliases.get(candidate.lower(), candidate)

    def is_allowed(self, name: str) -> bool:
        return name in self.allowed

    def require(self, name: str | None) -> str:
        """Return the canonical model name or raise :class:`ModelNotAllowed`."""
        model = self.normalise(name)
        if not self.is_allowed(model):
            supported = ", ".join(self.allowed)
            raise ModelNotAllowed(f"Model not allowed: {model}. Supported models: {supported}.")
        return model


__all__ = ["DEFAULT_MODELS", "ModelCatalog", "ModelNotAllowed"]
