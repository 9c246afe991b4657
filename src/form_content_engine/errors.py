from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Sequence

from .models.validation import LocalizedText


class EngineError(Exception):
    """Base class for recoverable engine conditions."""


class FieldAddressUnresolved(EngineError):
    """A field item could not be mapped to a canonical address."""

    def __init__(self, message: str, *, section_path: str | None = None, item_idx: int | None = None) -> None:
        super().__init__(message)
        self.section_path = section_path
        self.item_idx = item_idx


class FieldEntryNotFound(EngineError):
    def __init__(self, ref: str) -> None:
        super().__init__(f"Field registry entry not found: {ref}")
        self.ref = ref


class ValidationRejected(EngineError):
    def __init__(
        self,
        message: str,
        *,
        unit: str,
        reasons: Sequence[LocalizedText] = (),
        suggested_fix: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.unit = unit
        self.reasons = list(reasons)
        self.suggested_fix = dict(suggested_fix) if suggested_fix is not None else None


class ValidationRequired(ValidationRejected):
    """Save attempted for a unit whose validator has not reported `valid`."""


class SaveFailed(EngineError):
    def __init__(self, message: str, *, addresses: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.addresses = list(addresses)


class InvocationFailed(EngineError):
    def __init__(self, message: str, *, function_ref: str) -> None:
        super().__init__(message)
        self.function_ref = function_ref


class DocumentNotFound(EngineError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node document not found: {node_id}")
        self.node_id = node_id


@dataclass(frozen=True)
class DependentSectionStale:
    """Advisory badge: `section` may have been derived from an older upstream value."""

    section: str
    upstream: str
    reason: str
    section_updated_at: datetime | None = None
    upstream_updated_at: datetime | None = None
    details: Mapping[str, Any] = field(default_factory=dict)


__all__ = [
    "EngineError",
    "FieldAddressUnresolved",
    "FieldEntryNotFound",
    "ValidationRejected",
    "ValidationRequired",
    "SaveFailed",
    "InvocationFailed",
    "DocumentNotFound",
    "DependentSectionStale",
]
