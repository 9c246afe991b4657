from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence, Union

from .addresses import AddressMap, build_address_map, compose_section_path
from .content_tree import FieldSlot, collect_field_refs
from .draft_store import DraftStore
from .errors import FieldAddressUnresolved, FieldEntryNotFound
from .field_registry import FieldRegistry
from .models.content import CollectionSectionItem, ContentItem, FieldItem, SectionItem
from .models.node import NodeDocument
from .models.registry import FieldEntry
from .validation import check_field_rules

logger = logging.getLogger(__name__)


class WidgetKind(str, Enum):
    text = "text"
    textarea = "textarea"
    number = "number"
    select = "select"
    radio = "radio"
    multiselect = "multiselect"
    tags = "tags"
    checkbox = "checkbox"
    date = "date"
    file = "file"
    color = "color"
    json = "json"
    unknown = "unknown"


_WIDGET_ALIASES = {
    "input": WidgetKind.text,
    "string": WidgetKind.text,
    "long_text": WidgetKind.textarea,
    "integer": WidgetKind.number,
    "float": WidgetKind.number,
    "dropdown": WidgetKind.select,
    "multi_select": WidgetKind.multiselect,
    "switch": WidgetKind.checkbox,
    "toggle": WidgetKind.checkbox,
    "upload": WidgetKind.file,
    "image": WidgetKind.file,
    "datetime": WidgetKind.date,
}

_DATATYPE_WIDGETS = {
    "string": WidgetKind.text,
    "text": WidgetKind.textarea,
    "number": WidgetKind.number,
    "integer": WidgetKind.number,
    "boolean": WidgetKind.checkbox,
    "date": WidgetKind.date,
    "array": WidgetKind.tags,
    "object": WidgetKind.json,
    "file": WidgetKind.file,
}


def _widget_from(name: str | None) -> WidgetKind | None:
    if not name:
        return None
    key = name.strip().lower().replace("-", "_")
    if key in WidgetKind.__members__:
        return WidgetKind(key)
    return _WIDGET_ALIASES.get(key)


def select_widget(entry: FieldEntry) -> WidgetKind:
    """Registry widget first, then the datatype default, then `unknown`."""
    widget = _widget_from(entry.widget)
    if widget is not None:
        return widget
    return _DATATYPE_WIDGETS.get((entry.datatype or "").lower(), WidgetKind.unknown)


@dataclass
class FieldWidget:
    address: str
    ref: str
    widget: WidgetKind
    entry: FieldEntry
    value: Any = None
    required: bool = False
    editable: bool = True
    dirty: bool = False
    loading: bool = False
    error: str | None = None


@dataclass
class AddressErrorPlaceholder:
    message: str
    section_path: str | None = None
    item_idx: int | None = None


@dataclass
class MissingFieldPlaceholder:
    ref: str
    address: str
    message: str


@dataclass
class SectionFrame:
    path: str
    label: str | None = None
    description: str | None = None
    collapsed: bool = False
    children: list["RenderNode"] = field(default_factory=list)


@dataclass
class InstanceFrame:
    instance_id: int
    path: str
    children: list["RenderNode"] = field(default_factory=list)


@dataclass
class CollectionFrame:
    path: str
    label: str | None = None
    collapsed: bool = False
    can_add: bool = True
    can_remove: bool = True
    min_instances: int = 0
    max_instances: int | None = None
    instances: list[InstanceFrame] = field(default_factory=list)


RenderNode = Union[FieldWidget, AddressErrorPlaceholder, MissingFieldPlaceholder, SectionFrame, CollectionFrame]


class _PlanBuilder:
    def __init__(
        self,
        *,
        node_path: str,
        address_map: AddressMap,
        entries: Mapping[str, FieldEntry],
        drafts: DraftStore,
        lang: str | None,
        collapsed: Mapping[str, bool],
    ) -> None:
        self.node_path = node_path
        self.address_map = address_map
        self.entries = entries
        self.drafts = drafts
        self.lang = lang
        self.collapsed = collapsed

    def items(
        self,
        items: Sequence[ContentItem],
        section_path: str | None,
        raw_path: str | None,
        instance_id: int | None,
        path_error: FieldAddressUnresolved | None,
    ) -> list[RenderNode]:
        nodes: list[RenderNode] = []
        for item in items:
            if isinstance(item, FieldItem):
                slot = FieldSlot(
                    item=item,
                    section_path=section_path,
                    instance_id=instance_id,
                    enclosing_path=raw_path,
                    path_error=path_error,
                )
                nodes.append(self.field(slot))
            elif isinstance(item, (SectionItem, CollectionSectionItem)):
                parent = f"{section_path}.{instance_id}" if instance_id is not None else section_path
                child_error = path_error
                child_path = parent
                if child_error is None:
                    try:
                        child_path = compose_section_path(parent, item.path, parent_raw=raw_path)
                    except FieldAddressUnresolved as exc:
                        child_error = exc
                if isinstance(item, SectionItem):
                    nodes.append(self.section(item, child_path, child_error))
                else:
                    nodes.append(self.collection(item, child_path, child_error))
            else:
                raise TypeError(f"Unknown content item: {type(item).__name__}")
        return nodes

    def field(self, slot: FieldSlot) -> RenderNode:
        try:
            address = self.address_map.resolve(slot)
            ref = slot.field_ref
        except FieldAddressUnresolved as exc:
            return AddressErrorPlaceholder(
                message=str(exc),
                section_path=exc.section_path or slot.section_path,
                item_idx=slot.item.idx,
            )
        entry = self.entries.get(ref)
        if entry is None:
            return MissingFieldPlaceholder(ref=ref, address=address, message=str(FieldEntryNotFound(ref)))
        draft = self.drafts.entry(address)
        rule = check_field_rules(entry, slot.item, draft.value)
        return FieldWidget(
            address=address,
            ref=ref,
            widget=select_widget(entry),
            entry=entry,
            value=draft.value,
            required=slot.item.required,
            editable=slot.item.editable,
            dirty=draft.dirty,
            loading=draft.loading,
            error=draft.error or (rule.text(self.lang) if rule else None),
        )

    def section(self, item: SectionItem, path: str, error: FieldAddressUnresolved | None) -> SectionFrame:
        return SectionFrame(
            path=path,
            label=item.label.text(self.lang) if item.label else None,
            description=item.description.text(self.lang) if item.description else None,
            collapsed=self.collapsed.get(path, item.collapsed),
            children=self.items(item.children, path, item.path, None, error),
        )

    def collection(
        self, item: CollectionSectionItem, path: str, error: FieldAddressUnresolved | None
    ) -> CollectionFrame:
        rules = item.collection_rules
        count = len(item.instances)
        return CollectionFrame(
            path=path,
            label=item.label.text(self.lang) if item.label else None,
            collapsed=self.collapsed.get(path, item.collapsed),
            can_add=rules.max_instances is None or count < rules.max_instances,
            can_remove=count > rules.min_instances,
            min_instances=rules.min_instances,
            max_instances=rules.max_instances,
            instances=[
                InstanceFrame(
                    instance_id=instance.instance_id,
                    path=f"{path}.{instance.instance_id}",
                    children=self.items(instance.children, path, item.path, instance.instance_id, error),
                )
                for instance in item.instances
            ],
        )


def build_render_plan(
    document: NodeDocument,
    registry: FieldRegistry,
    drafts: DraftStore,
    *,
    address_map: AddressMap | None = None,
    lang: str | None = None,
    collapsed: Mapping[str, bool] | None = None,
) -> list[RenderNode]:
    """Map the content tree onto widgets and placeholders.

    Unresolvable fields and registry misses become placeholders; nothing
    here raises for a malformed tree.
    """
    address_map = address_map or build_address_map(document.path, document.content)
    entries = registry.get_many(sorted(collect_field_refs(document.content)))
    builder = _PlanBuilder(
        node_path=document.path,
        address_map=address_map,
        entries=entries,
        drafts=drafts,
        lang=lang,
        collapsed=collapsed or {},
    )
    plan = builder.items(document.content.items, None, None, None, None)
    logger.debug(
        "Built render plan",
        extra={"node_id": document.id, "fields": len(address_map.by_address), "registry_entries": len(entries)},
    )
    return plan


__all__ = [
    "AddressErrorPlaceholder",
    "CollectionFrame",
    "FieldWidget",
    "InstanceFrame",
    "MissingFieldPlaceholder",
    "RenderNode",
    "SectionFrame",
    "WidgetKind",
    "build_render_plan",
    "select_widget",
]
