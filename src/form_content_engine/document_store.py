from __future__ import annotations

import logging
import threading
import uuid
from typing import Any, Protocol

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore

from .addresses import assert_node_path, is_address
from .errors import DocumentNotFound, SaveFailed
from .models.content import FormContent
from .models.node import NodeDocument, NodePatch, SaveReceipt, utcnow

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    def load(self, node_id: str) -> NodeDocument:
        ...

    def save(self, node_id: str, patch: NodePatch) -> SaveReceipt:
        ...


def _check_values(document_path: str, patch: NodePatch) -> dict[str, str]:
    """Addresses in a patch that cannot belong to the node, with the reason."""
    rejected: dict[str, str] = {}
    for address in patch.values:
        if not is_address(address):
            rejected[address] = "malformed address"
        elif not address.startswith(f"{document_path}#"):
            rejected[address] = f"address outside node {document_path}"
    return rejected


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self._documents: dict[str, NodeDocument] = {}
        self._lock = threading.Lock()
        self.saves: list[tuple[str, NodePatch]] = []

    def create(
        self,
        *,
        path: str = "root",
        content: FormContent | None = None,
        job_id: str | None = None,
        node_id: str | None = None,
        **fields: Any,
    ) -> NodeDocument:
        assert_node_path(path)
        with self._lock:
            document = NodeDocument(
                id=node_id or self._generate_id(job_id),
                job_id=job_id,
                path=path,
                content=content or FormContent(),
                **fields,
            )
            self._documents[document.id] = document
            return document.model_copy(deep=True)

    def put(self, document: NodeDocument) -> None:
        with self._lock:
            self._documents[document.id] = document.model_copy(deep=True)

    def load(self, node_id: str) -> NodeDocument:
        with self._lock:
            document = self._documents.get(node_id)
            if document is None:
                raise DocumentNotFound(node_id)
            return document.model_copy(deep=True)

    def save(self, node_id: str, patch: NodePatch) -> SaveReceipt:
        with self._lock:
            patch = patch.model_copy(deep=True)
            document = self._documents.get(node_id)
            if document is None:
                raise SaveFailed(f"Node document not found: {node_id}", addresses=patch.addresses())
            self.saves.append((node_id, patch))
            rejected = _check_values(document.path, patch)
            for address, value in patch.values.items():
                if address not in rejected:
                    document.values[address] = value
            for address in patch.removed:
                document.values.pop(address, None)
            if patch.content is not None:
                document.content = patch.content.model_copy(deep=True)
            document.section_timestamps.update(patch.section_timestamps)
            document.section_warnings.update(patch.section_warnings)
            document.updated_at = utcnow()
            return SaveReceipt(node_id=node_id, rejected=rejected, updated_at=document.updated_at)

    def _generate_id(self, job_id: str | None) -> str:
        ts = utcnow().strftime("%Y%m%d%H%M%S")
        suffix = uuid.uuid4().hex[:6]
        if job_id:
            safe = job_id.replace("/", "-")
            return f"node_{safe}_{suffix}"
        return f"node_{ts}_{suffix}"


class FirestoreDocumentStore:
    """Firestore-backed node documents for production use.

    Field values live in one ``values`` map keyed by address.
    """

    COLLECTION_NAME = "nodes"

    def __init__(self, project_id: str | None = None, *, collection: str | None = None) -> None:
        self._db = firestore.Client(project=project_id)
        self._collection = self._db.collection(collection or self.COLLECTION_NAME)

    def create(
        self,
        *,
        path: str = "root",
        content: FormContent | None = None,
        job_id: str | None = None,
        node_id: str | None = None,
        **fields: Any,
    ) -> NodeDocument:
        assert_node_path(path)
        document = NodeDocument(
            id=node_id or self._generate_id(job_id),
            job_id=job_id,
            path=path,
            content=content or FormContent(),
            **fields,
        )
        self._collection.document(document.id).set(self._to_firestore_dict(document))
        logger.info("Created node document", extra={"node_id": document.id, "path": path, "job_id": job_id})
        return document

    def load(self, node_id: str) -> NodeDocument:
        doc = self._collection.document(node_id).get()
        if not doc.exists:
            raise DocumentNotFound(node_id)
        return self._from_firestore_dict(doc.id, doc.to_dict())

    def save(self, node_id: str, patch: NodePatch) -> SaveReceipt:
        doc_ref = self._collection.document(node_id)
        try:
            snapshot = doc_ref.get(field_paths=["path"])
        except google_exceptions.GoogleAPICallError as exc:
            logger.error("Failed to read node document", exc_info=True, extra={"node_id": node_id})
            raise SaveFailed(str(exc), addresses=patch.addresses()) from exc
        if not snapshot.exists:
            raise SaveFailed(f"Node document not found: {node_id}", addresses=patch.addresses())

        rejected = _check_values(snapshot.get("path"), patch)
        values: dict[str, Any] = {
            address: value for address, value in patch.values.items() if address not in rejected
        }
        for address in patch.removed:
            values[address] = firestore.DELETE_FIELD

        now = utcnow()
        update_data: dict[str, Any] = {"updated_at": now}
        if values:
            update_data["values"] = values
        if patch.content is not None:
            update_data["content"] = patch.content.model_dump(mode="json")
        if patch.section_timestamps:
            update_data["section_timestamps"] = dict(patch.section_timestamps)
        if patch.section_warnings:
            update_data["section_warnings"] = dict(patch.section_warnings)

        try:
            doc_ref.set(update_data, merge=True)
        except google_exceptions.GoogleAPICallError as exc:
            logger.error(
                "Failed to save node document",
                exc_info=True,
                extra={"node_id": node_id, "addresses": len(patch.addresses())},
            )
            raise SaveFailed(str(exc), addresses=patch.addresses()) from exc

        logger.info(
            "Saved node document",
            extra={"node_id": node_id, "values": len(values), "rejected": len(rejected)},
        )
        return SaveReceipt(node_id=node_id, rejected=rejected, updated_at=now)

    def _generate_id(self, job_id: str | None) -> str:
        ts = utcnow().strftime("%Y%m%d%H%M%S")
        # Use Firestore auto-generated ID for uniqueness
        suffix = self._collection.document().id[:6]
        if job_id:
            safe = job_id.replace("/", "-")
            return f"node_{safe}_{suffix}"
        return f"node_{ts}_{suffix}"

    def _to_firestore_dict(self, document: NodeDocument) -> dict:
        data = document.model_dump(mode="python", exclude={"id", "content"})
        data["content"] = document.content.model_dump(mode="json")
        return data

    def _from_firestore_dict(self, node_id: str, data: dict) -> NodeDocument:
        return NodeDocument.model_validate({**data, "id": node_id})


__all__ = ["DocumentStore", "InMemoryDocumentStore", "FirestoreDocumentStore"]
