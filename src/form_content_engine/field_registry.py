from __future__ import annotations

import logging
import threading
from typing import Any, Iterable, Mapping, Protocol

from google.cloud import firestore

from .errors import FieldEntryNotFound
from .models.registry import FieldEntry

logger = logging.getLogger(__name__)


class FieldRegistry(Protocol):
    def get(self, ref: str) -> FieldEntry:
        ...

    def get_many(self, refs: Iterable[str]) -> dict[str, FieldEntry]:
        ...


class InMemoryFieldRegistry:
    def __init__(self, entries: Iterable[FieldEntry | Mapping[str, Any]] = ()) -> None:
        self._entries: dict[str, FieldEntry] = {}
        self._lock = threading.Lock()
        for entry in entries:
            self.register(entry)

    def register(self, entry: FieldEntry | Mapping[str, Any]) -> FieldEntry:
        if not isinstance(entry, FieldEntry):
            entry = FieldEntry.model_validate(entry)
        with self._lock:
            self._entries[entry.id] = entry
        return entry

    def get(self, ref: str) -> FieldEntry:
        with self._lock:
            entry = self._entries.get(ref)
        if entry is None:
            raise FieldEntryNotFound(ref)
        return entry

    def get_many(self, refs: Iterable[str]) -> dict[str, FieldEntry]:
        """Entries for the refs that exist; misses are simply absent."""
        with self._lock:
            return {ref: self._entries[ref] for ref in refs if ref in self._entries}


class FirestoreFieldRegistry:
    """Firestore-backed field registry. Document id is the field ref."""

    COLLECTION_NAME = "field_registry"

    def __init__(self, project_id: str | None = None, *, collection: str | None = None) -> None:
        self._db = firestore.Client(project=project_id)
        self._collection = self._db.collection(collection or self.COLLECTION_NAME)
        self._cache: dict[str, FieldEntry] = {}

    def get(self, ref: str) -> FieldEntry:
        if ref in self._cache:
            return self._cache[ref]
        doc = self._collection.document(ref).get()
        if not doc.exists:
            logger.warning("Field registry miss", extra={"ref": ref})
            raise FieldEntryNotFound(ref)
        entry = self._from_firestore_dict(doc.id, doc.to_dict())
        self._cache[ref] = entry
        return entry

    def get_many(self, refs: Iterable[str]) -> dict[str, FieldEntry]:
        wanted = [ref for ref in dict.fromkeys(refs) if ref not in self._cache]
        if wanted:
            doc_refs = [self._collection.document(ref) for ref in wanted]
            for doc in self._db.get_all(doc_refs):
                if doc.exists:
                    self._cache[doc.id] = self._from_firestore_dict(doc.id, doc.to_dict())
            missing = [ref for ref in wanted if ref not in self._cache]
            if missing:
                logger.warning("Field registry misses", extra={"refs": missing})
        return {ref: self._cache[ref] for ref in refs if ref in self._cache}

    def _from_firestore_dict(self, ref: str, data: dict) -> FieldEntry:
        return FieldEntry(
            id=ref,
            widget=data.get("widget"),
            datatype=data.get("datatype", "string"),
            rules=data.get("rules") or {},
            ui=data.get("ui") or {},
            default_value=data.get("default_value"),
        )


__all__ = ["FieldRegistry", "InMemoryFieldRegistry", "FirestoreFieldRegistry"]
