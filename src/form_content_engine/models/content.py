from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .validation import LocalizedText


class CollectionRules(BaseModel):
    min_instances: int = Field(default=0, ge=0, alias="min")
    max_instances: int | None = Field(default=None, ge=1, alias="max")
    label_singular: str | None = None
    label_plural: str | None = None

    class Config:
        populate_by_name = True

    @model_validator(mode="after")
    def _check_bounds(self) -> "CollectionRules":
        if self.max_instances is not None and self.max_instances < self.min_instances:
            raise ValueError(
                f"collection max ({self.max_instances}) is below min ({self.min_instances})"
            )
        return self

    def allows(self, count: int) -> bool:
        if count < self.min_instances:
            return False
        return self.max_instances is None or count <= self.max_instances


class FieldItem(BaseModel):
    kind: Literal["FieldItem"] = "FieldItem"
    ref: str | None = None
    # Legacy shapes carry the identifier under one of these instead of `ref`.
    name: str | None = None
    id: str | None = None
    path: str | None = None
    required: bool = False
    editable: bool = True
    idx: int = 0


class _Container(BaseModel):
    path: str
    label: LocalizedText | None = None
    description: LocalizedText | None = None
    collapsed: bool = False
    idx: int = 0

    @field_validator("label", "description", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        if value is None:
            return None
        return LocalizedText.coerce(value)


class SectionItem(_Container):
    kind: Literal["SectionItem"] = "SectionItem"
    children: list[ContentItem] = Field(default_factory=list)


class Instance(BaseModel):
    instance_id: int = Field(ge=1)
    children: list[ContentItem] = Field(default_factory=list)


class CollectionSectionItem(_Container):
    kind: Literal["CollectionSectionItem"] = "CollectionSectionItem"
    collection_rules: CollectionRules = Field(default_factory=CollectionRules)
    template: list[ContentItem] = Field(default_factory=list)
    instances: list[Instance] = Field(default_factory=list)

    def instance_ids(self) -> list[int]:
        return [instance.instance_id for instance in self.instances]

    def get_instance(self, instance_id: int) -> Instance | None:
        for instance in self.instances:
            if instance.instance_id == instance_id:
                return instance
        return None

    def next_instance_id(self) -> int:
        return max(self.instance_ids(), default=0) + 1

    def new_instance(self) -> Instance:
        children = [item.model_copy(deep=True) for item in self.template]
        return Instance(instance_id=self.next_instance_id(), children=children)


ContentItem = Annotated[
    Union[FieldItem, SectionItem, CollectionSectionItem],
    Field(discriminator="kind"),
]


class FormContent(BaseModel):
    kind: Literal["FormContent"] = "FormContent"
    version: Literal["v2-items"] = "v2-items"
    items: list[ContentItem] = Field(default_factory=list)


SectionItem.model_rebuild()
Instance.model_rebuild()
CollectionSectionItem.model_rebuild()
FormContent.model_rebuild()


__all__ = [
    "CollectionRules",
    "ContentItem",
    "FieldItem",
    "SectionItem",
    "CollectionSectionItem",
    "Instance",
    "FormContent",
]
