from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from pydantic import BaseModel, Field

from .content import CollectionSectionItem, FormContent, SectionItem


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeDocument(BaseModel):
    id: str
    job_id: str | None = None
    path: str = "root"
    content: FormContent = Field(default_factory=FormContent)
    values: dict[str, Any] = Field(default_factory=dict)
    pipeline: list[str] = Field(default_factory=list)
    root_section: str = "input"
    section_timestamps: dict[str, datetime | None] = Field(default_factory=dict)
    section_warnings: dict[str, bool] = Field(default_factory=dict)
    validators: dict[str, str] = Field(default_factory=dict)
    generators: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def section_order(self) -> list[str]:
        """Progressive sections in pipeline order.

        An explicit `pipeline` wins; otherwise the root section followed by the
        top-level sections in document order.
        """
        if self.pipeline:
            return list(self.pipeline)
        order = [self.root_section]
        for item in self.content.items:
            if isinstance(item, (SectionItem, CollectionSectionItem)) and item.path not in order:
                order.append(item.path)
        return order

    def timestamp_for(self, section: str) -> datetime | None:
        return self.section_timestamps.get(section)

    def has_warning(self, section: str) -> bool:
        return bool(self.section_warnings.get(section))


class NodePatch(BaseModel):
    values: dict[str, Any] = Field(default_factory=dict)
    removed: list[str] = Field(default_factory=list)
    content: FormContent | None = None
    section_timestamps: dict[str, datetime | None] = Field(default_factory=dict)
    section_warnings: dict[str, bool] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (
            self.values
            or self.removed
            or self.content is not None
            or self.section_timestamps
            or self.section_warnings
        )

    def addresses(self) -> list[str]:
        return [*self.values.keys(), *self.removed]


class SaveReceipt(BaseModel):
    node_id: str
    rejected: Mapping[str, str] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def ok(self) -> bool:
        return not self.rejected


class SaveOutcome(BaseModel):
    node_id: str
    saved: Sequence[str] = Field(default_factory=list)
    failed: Mapping[str, str] = Field(default_factory=dict)
    error: str | None = None
    sections: Sequence[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed


class GenerationOutcome(BaseModel):
    section: str
    function_ref: str | None = None
    written: Sequence[str] = Field(default_factory=list)
    skipped: Sequence[str] = Field(default_factory=list)
    failed: Mapping[str, str] = Field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed


__all__ = ["NodeDocument", "NodePatch", "SaveReceipt", "SaveOutcome", "GenerationOutcome", "utcnow"]
