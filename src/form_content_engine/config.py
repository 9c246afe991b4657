from __future__ import annotations

import os
from typing import Mapping

from pydantic import BaseModel, Field

from .document_store import DocumentStore, FirestoreDocumentStore, InMemoryDocumentStore
from .field_registry import FieldRegistry, FirestoreFieldRegistry, InMemoryFieldRegistry
from .invoker import Invoker, LocalInvoker, VertexAIInvoker


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class EngineSettings(BaseModel):
    environment: str = "dev"
    project_id: str | None = None
    vertex_location: str = "asia-northeast1"
    vertex_model: str = "gemini-1.5-pro"
    autosave_debounce_ms: int = Field(default=300, ge=0)
    nodes_collection: str = FirestoreDocumentStore.COLLECTION_NAME
    field_registry_collection: str = FirestoreFieldRegistry.COLLECTION_NAME
    use_cloud_logging: bool = True

    @property
    def autosave_delay(self) -> float:
        return self.autosave_debounce_ms / 1000

    @property
    def is_dev(self) -> bool:
        return self.environment == "dev"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        return cls(
            environment=env.get("ENVIRONMENT", "dev"),
            project_id=env.get("PROJECT_ID") or None,
            vertex_location=env.get("VERTEX_LOCATION", "asia-northeast1"),
            vertex_model=env.get("VERTEX_MODEL", "gemini-1.5-pro"),
            autosave_debounce_ms=int(env.get("AUTOSAVE_DEBOUNCE_MS", "300")),
            nodes_collection=env.get("NODES_COLLECTION", FirestoreDocumentStore.COLLECTION_NAME),
            field_registry_collection=env.get(
                "FIELD_REGISTRY_COLLECTION", FirestoreFieldRegistry.COLLECTION_NAME
            ),
            use_cloud_logging=_env_bool(env.get("USE_CLOUD_LOGGING"), True),
        )


# Use Firestore and Vertex AI in production, in-memory for dev


def create_document_store(settings: EngineSettings) -> DocumentStore:
    if settings.is_dev:
        return InMemoryDocumentStore()
    return FirestoreDocumentStore(project_id=settings.project_id, collection=settings.nodes_collection)


def create_field_registry(settings: EngineSettings) -> FieldRegistry:
    if settings.is_dev:
        return InMemoryFieldRegistry()
    return FirestoreFieldRegistry(project_id=settings.project_id, collection=settings.field_registry_collection)


def create_invoker(settings: EngineSettings, *, prompts: Mapping[str, str] | None = None) -> Invoker:
    if settings.is_dev or not settings.project_id:
        return LocalInvoker()
    return VertexAIInvoker(
        project_id=settings.project_id,
        location=settings.vertex_location,
        model_name=settings.vertex_model,
        prompts=prompts,
    )


__all__ = [
    "EngineSettings",
    "create_document_store",
    "create_field_registry",
    "create_invoker",
]
