from __future__ import annotations

from typing import Any, Mapping

from pydantic import BaseModel, Field


class FieldEntry(BaseModel):
    id: str
    widget: str | None = None
    datatype: str = "string"
    rules: Mapping[str, Any] = Field(default_factory=dict)
    ui: Mapping[str, Any] = Field(default_factory=dict)
    default_value: Any = None

    class Config:
        frozen = True


class DraftEntry(BaseModel):
    address: str
    value: Any = None
    dirty: bool = False
    loading: bool = False
    error: str | None = None


__all__ = ["FieldEntry", "DraftEntry"]
