from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Sequence

from pydantic import BaseModel, Field


class LocalizedText(BaseModel):
    fallback: str
    key: str | None = None
    translations: Mapping[str, str] = Field(default_factory=dict)

    def text(self, lang: str | None = None) -> str:
        if lang and self.translations.get(lang):
            return self.translations[lang]
        return self.fallback

    @classmethod
    def coerce(cls, raw: Any) -> "LocalizedText":
        """Accept plain strings, `{en, ar}` message maps and full payloads."""
        if isinstance(raw, LocalizedText):
            return raw
        if isinstance(raw, str):
            return cls(fallback=raw)
        if isinstance(raw, Mapping):
            if "fallback" in raw:
                return cls.model_validate(raw)
            translations = {str(k): str(v) for k, v in raw.items() if v}
            fallback = translations.get("en") or next(iter(translations.values()), "")
            return cls(fallback=fallback, translations=translations)
        return cls(fallback=str(raw))


class ValidationStatus(str, Enum):
    idle = "idle"
    validating = "validating"
    valid = "valid"
    invalid = "invalid"


class ValidationResult(BaseModel):
    unit: str
    status: ValidationStatus = ValidationStatus.idle
    reasons: Sequence[LocalizedText] = Field(default_factory=list)
    suggested_fix: Mapping[str, Any] | None = None
    error: str | None = None


__all__ = ["LocalizedText", "ValidationStatus", "ValidationResult"]
