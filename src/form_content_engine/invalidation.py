"""Which downstream progressive sections may be stale after an upstream edit.

Sections are ordered by the node's pipeline. Editing section ``S`` can only
affect sections after it; editing the root section affects every other
section. A candidate section ``L`` is affected iff it holds data and one of:

- ``S`` has no recorded timestamp,
- ``L`` has no recorded timestamp,
- ``L`` was last written at or before the edit instant.

Nothing here mutates the document; the editor applies the returned decision.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Mapping

from .addresses import section_key_for
from .content_tree import section_is_empty
from .errors import DependentSectionStale
from .models.node import NodeDocument, NodePatch, utcnow

logger = logging.getLogger(__name__)

REASON_UPSTREAM_UNTIMESTAMPED = "upstream_untimestamped"
REASON_UNTIMESTAMPED = "untimestamped"
REASON_DERIVED = "derived_from_previous_value"
REASON_ALREADY_STALE = "already_stale"


class EditPolicy(str, Enum):
    discard = "discard"
    delete_and_edit = "delete_and_edit"
    override = "override"


@dataclass(frozen=True)
class EditDecision:
    section: str
    policy: EditPolicy
    affected: list[DependentSectionStale] = field(default_factory=list)
    error: str | None = None

    @property
    def proceed(self) -> bool:
        return self.policy != EditPolicy.discard

    @property
    def affected_sections(self) -> list[str]:
        return [stale.section for stale in self.affected]

    @property
    def clear_sections(self) -> list[str]:
        return self.affected_sections if self.policy == EditPolicy.delete_and_edit else []

    @property
    def warn_sections(self) -> list[str]:
        return self.affected_sections if self.policy == EditPolicy.override else []


def downstream_of(document: NodeDocument, section_key: str) -> list[str]:
    order = document.section_order()
    if section_key == document.root_section:
        return [section for section in order if section != section_key]
    if section_key not in order:
        return []
    return order[order.index(section_key) + 1 :]


def compute_affected_sections(
    document: NodeDocument,
    section_key: str,
    edit_at: datetime | None = None,
    *,
    values: Mapping[str, Any] | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> list[DependentSectionStale]:
    """Sections that were (or may have been) derived from the old value of `section_key`.

    Pure: repeated calls with the same document and `edit_at` return the
    same list. `values` overrides the document values for the emptiness test
    (e.g. to include unsaved drafts).
    """
    if section_key != document.root_section and section_key not in document.section_order():
        logger.warning(
            "Unknown section for impact check",
            extra={"node_id": document.id, "section": section_key},
        )
        return []

    edit_at = edit_at or clock()
    upstream_at = document.timestamp_for(section_key)
    affected: list[DependentSectionStale] = []
    for candidate in downstream_of(document, section_key):
        if section_is_empty(document, candidate, values):
            continue
        candidate_at = document.timestamp_for(candidate)
        if upstream_at is None:
            reason = REASON_UPSTREAM_UNTIMESTAMPED
        elif candidate_at is None:
            reason = REASON_UNTIMESTAMPED
        elif candidate_at <= edit_at:
            reason = REASON_DERIVED
        elif document.has_warning(candidate):
            reason = REASON_ALREADY_STALE
        else:
            continue
        affected.append(
            DependentSectionStale(
                section=candidate,
                upstream=section_key,
                reason=reason,
                section_updated_at=candidate_at,
                upstream_updated_at=upstream_at,
                details={"edit_at": edit_at.isoformat()},
            )
        )
    return affected


def plan_edit(
    document: NodeDocument,
    section_key: str,
    policy: EditPolicy | str,
    *,
    edit_at: datetime | None = None,
    values: Mapping[str, Any] | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> EditDecision:
    policy = EditPolicy(policy)
    affected = compute_affected_sections(document, section_key, edit_at, values=values, clock=clock)
    logger.info(
        "Planned edit",
        extra={
            "node_id": document.id,
            "section": section_key,
            "policy": policy.value,
            "affected": [stale.section for stale in affected],
        },
    )
    return EditDecision(section=section_key, policy=policy, affected=affected)


def decision_patch(document: NodeDocument, decision: EditDecision) -> NodePatch:
    """The document write that carries out a decision.

    Delete-and-edit drops every value of the affected sections together with
    their timestamps and warnings; override raises the warning flags.
    """
    patch = NodePatch()
    for section in decision.clear_sections:
        patch.removed.extend(
            address
            for address in document.values
            if section_key_for(address, document.root_section) == section
        )
        patch.section_timestamps[section] = None
        patch.section_warnings[section] = False
    for section in decision.warn_sections:
        patch.section_warnings[section] = True
    return patch


__all__ = [
    "EditDecision",
    "EditPolicy",
    "compute_affected_sections",
    "decision_patch",
    "downstream_of",
    "plan_edit",
]
