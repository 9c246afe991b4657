from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Sequence

from .addresses import compose_section_path, normalize_field_identifier, resolve_address
from .errors import FieldAddressUnresolved
from .models.content import (
    CollectionSectionItem,
    ContentItem,
    FieldItem,
    FormContent,
    SectionItem,
)
from .models.node import NodeDocument

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldSlot:
    """One addressable occurrence of a field: the item plus where it sits.

    `section_path` is the address-form path of the enclosing container,
    including the instance segments of any outer collections. `instance_id`
    is set only when the field's direct parent is a collection instance.
    """

    item: FieldItem
    section_path: str | None = None
    instance_id: int | None = None
    enclosing_path: str | None = None
    top_section: str | None = None
    path_error: FieldAddressUnresolved | None = None

    @property
    def field_ref(self) -> str:
        return normalize_field_identifier(self.item, self.enclosing_path)

    def address(self, node_path: str) -> str:
        if self.path_error is not None:
            raise self.path_error
        return resolve_address(node_path, self.section_path, self.instance_id, self.field_ref)


@dataclass(frozen=True)
class StructuralIssue:
    code: str  # "duplicate_sibling" | "unresolved_field" | "invalid_section_path"
    message: str
    section_path: str | None = None
    item_idx: int | None = None


def _items(tree: FormContent | Sequence[ContentItem]) -> Sequence[ContentItem]:
    if isinstance(tree, FormContent):
        return tree.items
    return tree


def collect_field_refs(tree: FormContent | Sequence[ContentItem]) -> set[str]:
    """Every field identifier in the tree, descending into collection instances.

    Unresolvable fields are skipped; `validate_structure` reports them.
    """
    refs: set[str] = set()

    def visit(items: Sequence[ContentItem], enclosing: str | None) -> None:
        for item in items:
            if isinstance(item, FieldItem):
                try:
                    refs.add(normalize_field_identifier(item, enclosing))
                except FieldAddressUnresolved:
                    continue
            elif isinstance(item, SectionItem):
                visit(item.children, item.path)
            elif isinstance(item, CollectionSectionItem):
                visit(item.template, item.path)
                for instance in item.instances:
                    visit(instance.children, item.path)
            else:
                raise TypeError(f"Unknown content item: {type(item).__name__}")

    visit(_items(tree), None)
    return refs


def iter_field_slots(tree: FormContent | Sequence[ContentItem]) -> Iterator[FieldSlot]:
    """Depth-first walk yielding one slot per field per collection instance.

    Collection templates are not yielded: only materialized instances own
    addresses.
    """

    def visit(
        items: Sequence[ContentItem],
        section_path: str | None,
        raw_path: str | None,
        instance_id: int | None,
        top: str | None,
        path_error: FieldAddressUnresolved | None,
    ) -> Iterator[FieldSlot]:
        for item in items:
            if isinstance(item, FieldItem):
                yield FieldSlot(
                    item=item,
                    section_path=section_path,
                    instance_id=instance_id,
                    enclosing_path=raw_path,
                    top_section=top,
                    path_error=path_error,
                )
                continue

            if not isinstance(item, (SectionItem, CollectionSectionItem)):
                raise TypeError(f"Unknown content item: {type(item).__name__}")

            parent = section_path
            if instance_id is not None:
                parent = f"{section_path}.{instance_id}"
            child_error = path_error
            child_path = parent
            if child_error is None:
                try:
                    child_path = compose_section_path(parent, item.path, parent_raw=raw_path)
                except FieldAddressUnresolved as exc:
                    child_error = exc
            child_top = top or (child_path if child_error is None else item.path)

            if isinstance(item, SectionItem):
                yield from visit(item.children, child_path, item.path, None, child_top, child_error)
            else:
                for instance in item.instances:
                    yield from visit(
                        instance.children,
                        child_path,
                        item.path,
                        instance.instance_id,
                        child_top,
                        child_error,
                    )

    yield from visit(_items(tree), None, None, None, None, None)


def is_blank(value: Any) -> bool:
    """Falsy, whitespace-only or an empty collection."""
    if isinstance(value, str):
        return not value.strip()
    return not value


def is_empty(tree: FormContent | Sequence[ContentItem], values: Mapping[str, Any], node_path: str) -> bool:
    """True iff no field slot in the tree holds a non-blank value."""
    for slot in iter_field_slots(tree):
        try:
            address = slot.address(node_path)
        except FieldAddressUnresolved:
            continue
        if not is_blank(values.get(address)):
            return False
    return True


def section_items(document: NodeDocument, section_key: str) -> list[ContentItem]:
    """Top-level items making up one progressive section."""
    if section_key == document.root_section:
        owned = [
            item
            for item in document.content.items
            if isinstance(item, FieldItem) or item.path == section_key
        ]
        return owned
    return [
        item
        for item in document.content.items
        if not isinstance(item, FieldItem) and item.path == section_key
    ]


def section_is_empty(document: NodeDocument, section_key: str, values: Mapping[str, Any] | None = None) -> bool:
    values = document.values if values is None else values
    return is_empty(section_items(document, section_key), values, document.path)


def find_container(
    tree: FormContent | Sequence[ContentItem], path: str
) -> SectionItem | CollectionSectionItem | None:
    """Locate a section or collection by its composed path (instance segments allowed)."""
    target = path.strip(".")

    def visit(
        items: Sequence[ContentItem], parent: str | None, raw: str | None
    ) -> SectionItem | CollectionSectionItem | None:
        for item in items:
            if isinstance(item, FieldItem):
                continue
            try:
                composed = compose_section_path(parent, item.path, parent_raw=raw)
            except FieldAddressUnresolved:
                continue
            if composed == target:
                return item
            if not target.startswith(composed + "."):
                continue
            if isinstance(item, SectionItem):
                found = visit(item.children, composed, item.path)
            else:
                found = None
                for instance in item.instances:
                    found = visit(instance.children, f"{composed}.{instance.instance_id}", item.path)
                    if found is not None:
                        break
            if found is not None:
                return found
        return None

    return visit(_items(tree), None, None)


def find_section(tree: FormContent | Sequence[ContentItem], path: str) -> SectionItem | None:
    found = find_container(tree, path)
    return found if isinstance(found, SectionItem) else None


def find_collection(tree: FormContent | Sequence[ContentItem], path: str) -> CollectionSectionItem | None:
    found = find_container(tree, path)
    return found if isinstance(found, CollectionSectionItem) else None


def validate_structure(tree: FormContent | Sequence[ContentItem]) -> list[StructuralIssue]:
    """Report sibling duplicates and unnormalizable fields. Never raises."""
    issues: list[StructuralIssue] = []

    def check(items: Sequence[ContentItem], enclosing: str | None) -> None:
        seen: dict[str, int] = {}
        for item in items:
            if isinstance(item, FieldItem):
                try:
                    key = normalize_field_identifier(item, enclosing)
                except FieldAddressUnresolved as exc:
                    issues.append(
                        StructuralIssue(
                            code="unresolved_field",
                            message=str(exc),
                            section_path=enclosing,
                            item_idx=item.idx,
                        )
                    )
                    continue
            else:
                key = item.path.strip(".")
                if not key:
                    issues.append(
                        StructuralIssue(
                            code="invalid_section_path",
                            message=f"{item.kind} #{item.idx} has an empty path",
                            section_path=enclosing,
                            item_idx=item.idx,
                        )
                    )
                    continue
                key = key.rsplit(".", 1)[-1]

            if key in seen:
                issues.append(
                    StructuralIssue(
                        code="duplicate_sibling",
                        message=f'"{key}" appears more than once among siblings (items #{seen[key]} and #{item.idx})',
                        section_path=enclosing,
                        item_idx=item.idx,
                    )
                )
            else:
                seen[key] = item.idx

            if isinstance(item, SectionItem):
                check(item.children, item.path)
            elif isinstance(item, CollectionSectionItem):
                check(item.template, item.path)
                ids = item.instance_ids()
                if len(ids) != len(set(ids)):
                    issues.append(
                        StructuralIssue(
                            code="duplicate_sibling",
                            message=f'collection "{item.path}" repeats an instance id',
                            section_path=item.path,
                            item_idx=item.idx,
                        )
                    )
                for instance in item.instances:
                    check(instance.children, item.path)

    check(_items(tree), None)
    if issues:
        logger.debug("Structural issues found", extra={"issues": [issue.message for issue in issues]})
    return issues


__all__ = [
    "FieldSlot",
    "StructuralIssue",
    "collect_field_refs",
    "find_collection",
    "find_container",
    "find_section",
    "is_blank",
    "is_empty",
    "iter_field_slots",
    "section_is_empty",
    "section_items",
    "validate_structure",
]
