"""Canonical field addresses.

Address shape: ``<nodePath>#<dotted path>[.<instanceId>].value``

- ``nodePath`` is an ltree-like label path starting with ``root``
  (e.g. ``root.user_input``).
- Section and field segments are labels (letter first, then letters, digits
  or underscores), so they can never be mistaken for an instance segment.
- Collection instances contribute their 1-based ``instance_id`` right after
  the collection's own segment, e.g. ``root.job#chars.2.name.value``.

Array positions are never used: an address must survive reordering.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .errors import FieldAddressUnresolved
from .models.content import FieldItem, FormContent

if TYPE_CHECKING:
    from .content_tree import FieldSlot

logger = logging.getLogger(__name__)

NODE_PATH_RE = re.compile(r"^root(\.[A-Za-z0-9_]+)*$")
LABEL_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
VALUE_SEGMENT = "value"
NODE_UNIT = "node"


def is_label(segment: str | None) -> bool:
    return bool(segment) and LABEL_RE.match(segment) is not None


def is_instance_segment(segment: str) -> bool:
    return segment.isdigit() and int(segment) >= 1


def assert_node_path(node_path: str) -> str:
    if not NODE_PATH_RE.match(node_path or ""):
        raise ValueError(
            f'Invalid node path "{node_path}". Must start with "root" and use dot-separated labels.'
        )
    return node_path


def normalize_field_identifier(item: FieldItem, enclosing_path: str | None = None) -> str:
    """Return the identifier a field item is addressed by.

    Tried in order: ``ref``, ``name``, ``id``, then the last dot-segment of
    ``path``. A path whose last segment names the enclosing section itself is
    rejected. Anything that is not a label fails; there is no positional
    fallback.
    """
    for candidate in (item.ref, item.name, item.id):
        if candidate is not None and candidate.strip():
            return _require_label(candidate.strip(), item, enclosing_path)

    if item.path and item.path.strip():
        path = item.path.strip().strip(".")
        segment = path.rsplit(".", 1)[-1]
        if enclosing_path:
            enclosing = enclosing_path.strip(".")
            if path == enclosing or segment == enclosing.rsplit(".", 1)[-1]:
                raise FieldAddressUnresolved(
                    f'Field path "{item.path}" refers to its own section "{enclosing_path}"',
                    section_path=enclosing_path,
                    item_idx=item.idx,
                )
        return _require_label(segment, item, enclosing_path)

    raise FieldAddressUnresolved(
        f"Field item #{item.idx} has no ref, name, id or path",
        section_path=enclosing_path,
        item_idx=item.idx,
    )


def _require_label(candidate: str, item: FieldItem, enclosing_path: str | None) -> str:
    if not is_label(candidate):
        raise FieldAddressUnresolved(
            f'Field identifier "{candidate}" is not a valid label',
            section_path=enclosing_path,
            item_idx=item.idx,
        )
    return candidate


def compose_section_path(parent: str | None, child: str, *, parent_raw: str | None = None) -> str:
    """Dot-join a parent section path with a child section's path.

    Child paths written absolutely (``input.details`` under ``input``) are
    reduced to their relative part first.
    """
    relative = (child or "").strip().strip(".")
    for prefix in (parent_raw, parent):
        if prefix and relative.startswith(prefix + "."):
            relative = relative[len(prefix) + 1 :]
            break
    segments = relative.split(".") if relative else []
    if not segments or not all(is_label(segment) for segment in segments):
        raise FieldAddressUnresolved(
            f'Section path "{child}" is not a dotted label path',
            section_path=parent,
        )
    return f"{parent}.{relative}" if parent else relative


def resolve_address(
    node_path: str,
    section_path: str | None,
    instance_id: int | None,
    field_ref: str,
) -> str:
    assert_node_path(node_path)
    if not is_label(field_ref):
        raise FieldAddressUnresolved(f'Field ref "{field_ref}" is not a valid label', section_path=section_path)
    segments: list[str] = []
    if section_path:
        segments.extend(section_path.split("."))
    if instance_id is not None:
        if instance_id < 1:
            raise FieldAddressUnresolved(
                f"Instance id must be >= 1, got {instance_id}", section_path=section_path
            )
        if not segments:
            raise FieldAddressUnresolved("Instance id given without a collection path")
        segments.append(str(instance_id))
    segments.extend([field_ref, VALUE_SEGMENT])
    return f"{node_path}#{'.'.join(segments)}"


@dataclass(frozen=True)
class FieldLocation:
    node_path: str
    section_path: str | None
    instance_id: int | None
    field_ref: str

    @property
    def address(self) -> str:
        return resolve_address(self.node_path, self.section_path, self.instance_id, self.field_ref)


def parse_address(address: str) -> FieldLocation:
    node_path, sep, subpath = address.partition("#")
    if not sep or not subpath:
        raise ValueError(f'Invalid address "{address}". Expected "<nodePath>#<path>.value".')
    assert_node_path(node_path)
    segments = subpath.split(".")
    if len(segments) < 2 or segments[-1] != VALUE_SEGMENT:
        raise ValueError(f'Invalid address "{address}". Must end with ".value".')
    field_ref = segments[-2]
    if not is_label(field_ref):
        raise ValueError(f'Invalid address "{address}". "{field_ref}" is not a field label.')
    rest = segments[:-2]
    instance_id = None
    if rest and is_instance_segment(rest[-1]):
        instance_id = int(rest.pop())
        if not rest:
            raise ValueError(f'Invalid address "{address}". Instance segment without collection.')
    for segment in rest:
        if not (is_label(segment) or is_instance_segment(segment)):
            raise ValueError(f'Invalid address "{address}". Bad segment "{segment}".')
    return FieldLocation(
        node_path=node_path,
        section_path=".".join(rest) or None,
        instance_id=instance_id,
        field_ref=field_ref,
    )


def is_address(candidate: str) -> bool:
    try:
        parse_address(candidate)
    except ValueError:
        return False
    return True


def subpath_of(address: str) -> str:
    return address.partition("#")[2]


def section_key_for(address: str, root_section: str) -> str:
    """The progressive (top-level) section an address belongs to."""
    segments = subpath_of(address).split(".")
    # <field>.value only: a top-level field.
    if len(segments) <= 2:
        return root_section
    return segments[0]


def scope_prefix(node_path: str, unit: str = NODE_UNIT) -> str:
    """Address prefix covering a unit: the whole node or a dotted sub-path."""
    if not unit or unit == NODE_UNIT:
        return f"{node_path}#"
    return f"{node_path}#{unit.strip('.')}."


def section_prefix(node_path: str, section_key: str) -> str:
    return scope_prefix(node_path, section_key)


def instance_prefix(node_path: str, collection_path: str, instance_id: int) -> str:
    return scope_prefix(node_path, f"{collection_path}.{instance_id}")


def in_scope(address: str, node_path: str, unit: str = NODE_UNIT) -> bool:
    return address.startswith(scope_prefix(node_path, unit))


@dataclass
class AddressMap:
    node_path: str
    by_address: dict[str, "FieldSlot"] = field(default_factory=dict)
    failures: list[tuple["FieldSlot", FieldAddressUnresolved]] = field(default_factory=list)
    collisions: set[str] = field(default_factory=set)

    def addresses(self) -> list[str]:
        return list(self.by_address)

    def resolve(self, slot: "FieldSlot") -> str:
        address = slot.address(self.node_path)
        if address in self.collisions:
            raise FieldAddressUnresolved(
                f'Address "{address}" is claimed by more than one field',
                section_path=slot.section_path,
                item_idx=slot.item.idx,
            )
        return address

    def addresses_for_ref(self, field_ref: str, unit: str = NODE_UNIT) -> list[str]:
        prefix = scope_prefix(self.node_path, unit)
        return [
            address
            for address, slot in self.by_address.items()
            if address.startswith(prefix) and parse_address(address).field_ref == field_ref
        ]

    def addresses_in_section(self, section_key: str, root_section: str) -> list[str]:
        return [
            address
            for address in self.by_address
            if section_key_for(address, root_section) == section_key
        ]

    def lookup(self, key: str, unit: str = NODE_UNIT) -> list[str]:
        """Addresses within `unit` that a loosely written key refers to.

        Accepts a full address, a bare field ref, or a dotted sub-path such
        as ``chars.2.name``. Callers treat anything but one match as a miss.
        """
        if is_address(key):
            return [key] if key in self.by_address and in_scope(key, self.node_path, unit) else []
        if is_label(key):
            return self.addresses_for_ref(key, unit)
        candidate = f"{self.node_path}#{key.strip('.')}.{VALUE_SEGMENT}"
        if candidate in self.by_address and in_scope(candidate, self.node_path, unit):
            return [candidate]
        return []


def build_address_map(node_path: str, content: FormContent) -> AddressMap:
    from .content_tree import iter_field_slots

    assert_node_path(node_path)
    address_map = AddressMap(node_path=node_path)
    for slot in iter_field_slots(content):
        try:
            address = slot.address(node_path)
        except FieldAddressUnresolved as exc:
            address_map.failures.append((slot, exc))
            continue
        if address in address_map.collisions:
            address_map.failures.append(
                (slot, FieldAddressUnresolved(f'Address "{address}" is claimed by more than one field'))
            )
            continue
        if address in address_map.by_address:
            first = address_map.by_address.pop(address)
            address_map.collisions.add(address)
            for colliding in (first, slot):
                address_map.failures.append(
                    (colliding, FieldAddressUnresolved(f'Address "{address}" is claimed by more than one field'))
                )
            continue
        address_map.by_address[address] = slot

    if address_map.failures:
        logger.warning(
            "Unresolved field addresses",
            extra={
                "node_path": node_path,
                "unresolved": [str(exc) for _, exc in address_map.failures],
            },
        )
    return address_map


__all__ = [
    "AddressMap",
    "FieldLocation",
    "NODE_UNIT",
    "assert_node_path",
    "build_address_map",
    "compose_section_path",
    "in_scope",
    "instance_prefix",
    "is_address",
    "is_label",
    "normalize_field_identifier",
    "parse_address",
    "resolve_address",
    "scope_prefix",
    "section_key_for",
    "section_prefix",
    "subpath_of",
]
