from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Mapping

from .addresses import (
    NODE_UNIT,
    AddressMap,
    build_address_map,
    in_scope,
    instance_prefix,
    is_address,
    resolve_address,
    section_key_for,
)
from .config import EngineSettings, create_document_store, create_field_registry, create_invoker
from .content_tree import collect_field_refs, find_collection, find_container, validate_structure
from .document_store import DocumentStore
from .draft_store import DEFAULT_AUTOSAVE_DELAY, DraftStore
from .errors import DependentSectionStale, InvocationFailed, SaveFailed
from .field_registry import FieldRegistry
from .instance_manager import CollectionChange, CollectionManager, CollectionOp
from .interpolate import build_context, interpolate
from .invalidation import EditDecision, EditPolicy, compute_affected_sections, decision_patch, plan_edit
from .invoker import Invoker
from .logging_config import set_node_context, setup_logging
from .models.content import Instance
from .models.node import GenerationOutcome, NodeDocument, NodePatch, SaveOutcome, SaveReceipt, utcnow
from .models.validation import ValidationResult
from .renderers import RenderNode, build_render_plan
from .validation import ValidationCoordinator

logger = logging.getLogger(__name__)

GENERATION_PAYLOAD: dict[str, Any] = {
    "job_id": "{{job.id}}",
    "node_id": "{{node.id}}",
    "node_path": "{{node.path}}",
    "section": "{{section.key}}",
    "upstream": "{{upstream}}",
}


class NodeEditor:
    """Editing session for one node document.

    `open` loads the node and seeds the drafts; every other operation reads
    and writes through field addresses. Collaborator calls run in worker
    threads so the event loop is never blocked.
    """

    def __init__(
        self,
        *,
        document_store: DocumentStore,
        registry: FieldRegistry,
        invoker: Invoker | None = None,
        autosave_delay: float = DEFAULT_AUTOSAVE_DELAY,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = document_store
        self._registry = registry
        self._invoker = invoker
        self._autosave_delay = autosave_delay
        self._clock = clock
        self._document: NodeDocument | None = None
        self._address_map: AddressMap | None = None
        self._drafts: DraftStore | None = None
        self._validation: ValidationCoordinator | None = None
        self._managers: dict[str, CollectionManager] = {}
        self._collapsed: dict[str, bool] = {}

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "NodeEditor":
        setup_logging(
            environment=settings.environment,
            project_id=settings.project_id,
            use_cloud_logging=settings.use_cloud_logging,
        )
        return cls(
            document_store=create_document_store(settings),
            registry=create_field_registry(settings),
            invoker=create_invoker(settings),
            autosave_delay=settings.autosave_delay,
        )

    # ----- session -----

    @property
    def document(self) -> NodeDocument:
        if self._document is None:
            raise RuntimeError("No node is open")
        return self._document

    @property
    def drafts(self) -> DraftStore:
        if self._drafts is None:
            raise RuntimeError("No node is open")
        return self._drafts

    @property
    def validation(self) -> ValidationCoordinator:
        if self._validation is None:
            raise RuntimeError("No node is open")
        return self._validation

    @property
    def address_map(self) -> AddressMap:
        if self._address_map is None:
            raise RuntimeError("No node is open")
        return self._address_map

    async def open(self, node_id: str) -> NodeDocument:
        if self._document is not None:
            await self.close()

        document = await asyncio.to_thread(self._store.load, node_id)
        set_node_context(document.id)
        self._document = document
        self._managers = {}
        self._collapsed = {}
        self._rebuild_addresses()

        for issue in validate_structure(document.content):
            logger.warning(
                issue.message,
                extra={"node_id": document.id, "code": issue.code, "section_path": issue.section_path},
            )

        self._drafts = DraftStore(
            node_id=document.id,
            persist=self._persist_values,
            autosave_delay=self._autosave_delay,
        )
        self._validation = ValidationCoordinator(
            node_id=document.id,
            node_path=document.path,
            validators=document.validators,
            invoker=self._invoker,
            drafts=self._drafts,
            address_map=lambda: self.address_map,
            registry=self._registry,
        )
        self._drafts.autosave_guard = self._validation.can_save
        self._drafts.seed(self._baseline_values())

        logger.info(
            "Opened node",
            extra={
                "node_id": document.id,
                "path": document.path,
                "fields": len(self.address_map.by_address),
                "unresolved": len(self.address_map.failures),
            },
        )
        return document

    async def close(self, *, flush: bool = True) -> None:
        """Flush (or drop) the pending autosave and end the session."""
        if self._drafts is not None:
            await self._drafts.close(flush=flush)
        if self._validation is not None:
            self._validation.close()
        if self._document is not None:
            logger.info("Closed node", extra={"node_id": self._document.id})
        set_node_context(None)
        self._document = None
        self._address_map = None
        self._drafts = None
        self._validation = None
        self._managers = {}

    def set_edit_mode(self, enabled: bool) -> None:
        self.drafts.edit_mode = enabled

    # ----- addressing and drafts -----

    def resolve_address(self, section_path: str | None, instance_id: int | None, field_ref: str) -> str:
        return resolve_address(self.document.path, section_path, instance_id, field_ref)

    def get(self, address: str) -> Any:
        return self.drafts.get(address)

    def set(self, address: str, value: Any) -> None:
        self._check_address(address)
        self.drafts.set(address, value)

    def entries(self, prefix: str | None = None) -> list[dict[str, Any]]:
        return self.drafts.entries(prefix)

    async def save_all(self, prefix: str | None = None) -> SaveOutcome:
        """Persist dirty drafts; raises ValidationRequired for unvalidated units."""
        self.validation.check_save(self.drafts.dirty_entries(prefix))
        outcome = await self.drafts.save_all(prefix)
        sections = sorted({section_key_for(address, self.document.root_section) for address in outcome.saved})
        return outcome.model_copy(update={"sections": sections})

    def discard_all(self, prefix: str | None = None) -> list[str]:
        return self.drafts.discard_all(prefix)

    def render(self, *, lang: str | None = None) -> list[RenderNode]:
        return build_render_plan(
            self.document,
            self._registry,
            self.drafts,
            address_map=self.address_map,
            lang=lang,
            collapsed=self._collapsed,
        )

    # ----- collections -----

    def collection(self, path: str) -> CollectionManager:
        found = find_collection(self.document.content, path)
        if found is None:
            raise KeyError(f"No collection at {path}")
        manager = self._managers.get(path)
        if manager is None or manager.collection is not found:
            manager = CollectionManager(found, path=path, hook=self._persist_structure)
            self._managers[path] = manager
        return manager

    async def add_instance(self, collection_path: str) -> Instance | None:
        instance = await self.collection(collection_path).add()
        if instance is not None:
            self._rebuild_addresses()
        return instance

    async def remove_instance(self, collection_path: str, instance_id: int) -> bool:
        removed = await self.collection(collection_path).remove(instance_id)
        if removed:
            self.drafts.forget(instance_prefix(self.document.path, collection_path, instance_id))
            self._rebuild_addresses()
        return removed

    async def reorder_instance(self, collection_path: str, from_index: int, to_index: int) -> bool:
        moved = await self.collection(collection_path).reorder(from_index, to_index)
        if moved:
            self._rebuild_addresses()
        return moved

    # ----- validation -----

    async def validate(self, unit: str = NODE_UNIT, edits: Mapping[str, Any] | None = None) -> ValidationResult:
        return await self.validation.validate(unit, edits)

    def apply_suggested_fix(self, unit: str = NODE_UNIT) -> list[str]:
        return self.validation.apply_suggested_fix(unit)

    # ----- progressive sections -----

    def compute_affected_sections(
        self, section_key: str, edit_at: datetime | None = None
    ) -> list[DependentSectionStale]:
        return compute_affected_sections(
            self.document,
            section_key,
            edit_at,
            values=self._current_values(),
            clock=self._clock,
        )

    async def begin_edit(self, section_key: str, policy: EditPolicy | str) -> EditDecision:
        decision = plan_edit(
            self.document,
            section_key,
            policy,
            values=self._current_values(),
            clock=self._clock,
        )
        if not decision.proceed:
            with self.drafts.batch():
                for address in self._section_addresses(section_key):
                    self.drafts.discard_all(address)
            return decision

        patch = decision_patch(self.document, decision)
        if patch.is_empty():
            return decision
        cleared = {section: self._section_addresses(section) for section in decision.clear_sections}
        try:
            await self._write(patch)
        except SaveFailed as exc:
            logger.error(
                "Failed to apply edit decision",
                exc_info=True,
                extra={"node_id": self.document.id, "section": section_key, "policy": decision.policy.value},
            )
            return replace(decision, error=str(exc))

        with self.drafts.batch():
            for addresses in cleared.values():
                for address in addresses:
                    self.drafts.forget(address)
        return decision

    async def clear_warning(self, section_key: str) -> bool:
        try:
            await self._write(NodePatch(section_warnings={section_key: False}))
        except SaveFailed:
            logger.error(
                "Failed to clear section warning",
                exc_info=True,
                extra={"node_id": self.document.id, "section": section_key},
            )
            return False
        return True

    async def generate_section(
        self, section_key: str, *, payload_template: Mapping[str, Any] | None = None
    ) -> GenerationOutcome:
        """Run the section's generator and store what it returns.

        Generated values are written straight through, without the
        validation gate that guards user edits.
        """
        document = self.document
        function_ref = document.generators.get(section_key)
        if not function_ref or self._invoker is None:
            return GenerationOutcome(section=section_key, error=f'No generator configured for "{section_key}"')

        order = document.section_order()
        upstream_sections = set(order[: order.index(section_key)]) if section_key in order else set()
        upstream = {
            address: value
            for address, value in self._current_values().items()
            if section_key_for(address, document.root_section) in upstream_sections
        }
        context = build_context(
            job_id=document.job_id,
            node_id=document.id,
            node_path=document.path,
            section=section_key,
            upstream=upstream,
        )
        payload = interpolate(dict(payload_template or GENERATION_PAYLOAD), context)

        logger.info("Generating section", extra={"node_id": document.id, "section": section_key})
        try:
            response = await asyncio.to_thread(self._invoker.invoke, function_ref, payload)
        except InvocationFailed as exc:
            logger.error(
                "Section generation failed",
                exc_info=True,
                extra={"node_id": document.id, "section": section_key, "error": str(exc)},
            )
            return GenerationOutcome(section=section_key, function_ref=function_ref, error=str(exc))

        generated = response.get("values", response)
        if not isinstance(generated, Mapping):
            generated = {}
        unit = NODE_UNIT if section_key == document.root_section else section_key
        targets: dict[str, Any] = {}
        skipped: list[str] = []
        for key, value in generated.items():
            matches = [
                address
                for address in self.address_map.lookup(str(key), unit)
                if section_key_for(address, document.root_section) == section_key
            ]
            if len(matches) == 1:
                targets[matches[0]] = value
            else:
                skipped.append(str(key))

        self.drafts.set_many(targets)
        outcome = await self.drafts.save_all(addresses=list(targets))
        if outcome.error is not None:
            return GenerationOutcome(
                section=section_key,
                function_ref=function_ref,
                skipped=skipped,
                failed=outcome.failed,
                error=outcome.error,
            )

        saved_sections = {section_key_for(address, document.root_section) for address in outcome.saved}
        if section_key not in saved_sections:
            try:
                await self._write(
                    NodePatch(
                        section_timestamps={section_key: self._clock()},
                        section_warnings={section_key: False},
                    )
                )
            except SaveFailed as exc:
                return GenerationOutcome(section=section_key, function_ref=function_ref, error=str(exc))

        if skipped:
            logger.warning(
                "Generated keys without a unique field",
                extra={"node_id": document.id, "section": section_key, "keys": skipped},
            )
        logger.info(
            "Generated section",
            extra={"node_id": document.id, "section": section_key, "written": len(outcome.saved)},
        )
        return GenerationOutcome(
            section=section_key,
            function_ref=function_ref,
            written=list(outcome.saved),
            skipped=skipped,
            failed=outcome.failed,
        )

    def toggle_collapsed(self, path: str) -> bool:
        container = find_container(self.document.content, path)
        if container is None:
            raise KeyError(f"No section at {path}")
        collapsed = not self._collapsed.get(path, container.collapsed)
        self._collapsed[path] = collapsed
        return collapsed

    # ----- internals -----

    def _rebuild_addresses(self) -> None:
        self._address_map = build_address_map(self.document.path, self.document.content)

    def _baseline_values(self) -> dict[str, Any]:
        """Persisted values plus registry defaults for fields never written."""
        values = dict(self.document.values)
        entries = self._registry.get_many(sorted(collect_field_refs(self.document.content)))
        for address, slot in self.address_map.by_address.items():
            if address in values:
                continue
            entry = entries.get(slot.field_ref)
            if entry is not None and entry.default_value is not None:
                values[address] = copy.deepcopy(entry.default_value)
        return values

    def _current_values(self) -> dict[str, Any]:
        return {**self.document.values, **self.drafts.dirty_entries()}

    def _section_addresses(self, section_key: str) -> set[str]:
        root = self.document.root_section
        candidates = set(self.address_map.by_address) | set(self.document.values)
        candidates |= {entry["address"] for entry in self.drafts.entries()}
        return {address for address in candidates if section_key_for(address, root) == section_key}

    def _check_address(self, address: str) -> None:
        if not is_address(address) or not in_scope(address, self.document.path):
            raise ValueError(f'Address "{address}" does not belong to node {self.document.path}')

    async def _write(self, patch: NodePatch) -> SaveReceipt:
        document = self.document
        receipt = await asyncio.to_thread(self._store.save, document.id, patch)
        for address, value in patch.values.items():
            if address not in receipt.rejected:
                document.values[address] = value
        for address in patch.removed:
            document.values.pop(address, None)
        document.section_timestamps.update(patch.section_timestamps)
        document.section_warnings.update(patch.section_warnings)
        document.updated_at = receipt.updated_at
        return receipt

    async def _persist_values(self, batch: dict[str, Any]) -> Mapping[str, str]:
        """Write a draft batch, then stamp only the sections whose data landed."""
        root = self.document.root_section
        receipt = await self._write(NodePatch(values=batch))
        accepted = [address for address in batch if address not in receipt.rejected]
        sections = sorted({section_key_for(address, root) for address in accepted})
        if not sections:
            return receipt.rejected

        now = self._clock()
        try:
            await self._write(
                NodePatch(
                    section_timestamps={section: now for section in sections},
                    section_warnings={section: False for section in sections},
                )
            )
        except SaveFailed:
            # The values are stored; only the bookkeeping is missing.
            logger.error(
                "Failed to record section timestamps",
                exc_info=True,
                extra={"node_id": self.document.id, "sections": sections},
            )
        return receipt.rejected

    async def _persist_structure(self, change: CollectionChange) -> None:
        patch = NodePatch(content=self.document.content)
        if change.op == CollectionOp.remove and change.instance_id is not None:
            prefix = instance_prefix(self.document.path, change.collection_path, change.instance_id)
            patch.removed = [address for address in self.document.values if address.startswith(prefix)]
        await self._write(patch)


__all__ = ["NodeEditor", "GENERATION_PAYLOAD"]
