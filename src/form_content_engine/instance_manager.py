from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from .errors import SaveFailed
from .models.content import CollectionSectionItem, Instance

logger = logging.getLogger(__name__)


class CollectionOp(str, Enum):
    add = "add"
    remove = "remove"
    reorder = "reorder"


@dataclass(frozen=True)
class CollectionChange:
    op: CollectionOp
    collection_path: str
    instance_id: int | None
    order: list[int] = field(default_factory=list)


# Persists a structural change; raises SaveFailed to refuse it.
CollectionHook = Callable[[CollectionChange], Awaitable[None]]


class CollectionManager:
    """Add/remove/reorder instances of one repeatable collection.

    The instance count stays within the collection rules. Each operation is
    applied to the tree first and undone if the persistence hook refuses it.
    Instance ids are never renumbered.
    """

    def __init__(
        self,
        collection: CollectionSectionItem,
        *,
        path: str | None = None,
        hook: CollectionHook | None = None,
    ) -> None:
        self.collection = collection
        self.path = path or collection.path
        self._hook = hook
        self.last_error: str | None = None

    @property
    def count(self) -> int:
        return len(self.collection.instances)

    @property
    def min_instances(self) -> int:
        return self.collection.collection_rules.min_instances

    @property
    def max_instances(self) -> int | None:
        return self.collection.collection_rules.max_instances

    def instance_ids(self) -> list[int]:
        return self.collection.instance_ids()

    def can_add(self) -> bool:
        return self.max_instances is None or self.count < self.max_instances

    def can_remove(self) -> bool:
        return self.count > self.min_instances

    async def add(self) -> Instance | None:
        if not self.can_add():
            logger.debug("Collection at max; add ignored", extra={"collection": self.path, "count": self.count})
            return None
        instance = self.collection.new_instance()
        instances = self.collection.instances

        def apply() -> None:
            instances.append(instance)

        def revert() -> None:
            instances.remove(instance)

        ok = await self._optimistic(
            CollectionChange(op=CollectionOp.add, collection_path=self.path, instance_id=instance.instance_id),
            apply,
            revert,
        )
        return instance if ok else None

    async def remove(self, instance_id: int) -> bool:
        if not self.can_remove():
            logger.debug("Collection at min; remove ignored", extra={"collection": self.path, "count": self.count})
            return False
        instance = self.collection.get_instance(instance_id)
        if instance is None:
            logger.warning("Unknown instance id", extra={"collection": self.path, "instance_id": instance_id})
            return False
        instances = self.collection.instances
        position = instances.index(instance)

        def apply() -> None:
            instances.remove(instance)

        def revert() -> None:
            instances.insert(position, instance)

        return await self._optimistic(
            CollectionChange(op=CollectionOp.remove, collection_path=self.path, instance_id=instance_id),
            apply,
            revert,
        )

    async def reorder(self, from_index: int, to_index: int) -> bool:
        instances = self.collection.instances
        if not (0 <= from_index < len(instances) and 0 <= to_index < len(instances)):
            logger.warning(
                "Reorder index out of range",
                extra={"collection": self.path, "from": from_index, "to": to_index},
            )
            return False
        if from_index == to_index:
            return True
        previous = list(instances)

        def apply() -> None:
            moved = instances.pop(from_index)
            instances.insert(to_index, moved)

        def revert() -> None:
            instances[:] = previous

        moved_id = instances[from_index].instance_id
        return await self._optimistic(
            CollectionChange(op=CollectionOp.reorder, collection_path=self.path, instance_id=moved_id),
            apply,
            revert,
        )

    async def _optimistic(
        self,
        change: CollectionChange,
        apply: Callable[[], None],
        revert: Callable[[], None],
    ) -> bool:
        self.last_error = None
        apply()
        if self._hook is None:
            return True
        change = CollectionChange(
            op=change.op,
            collection_path=change.collection_path,
            instance_id=change.instance_id,
            order=self.instance_ids(),
        )
        try:
            await self._hook(change)
        except SaveFailed as exc:
            revert()
            self.last_error = str(exc)
            logger.warning(
                "Collection change rolled back",
                extra={"collection": self.path, "op": change.op.value, "error": str(exc)},
            )
            return False
        logger.info(
            "Collection changed",
            extra={
                "collection": self.path,
                "op": change.op.value,
                "instance_id": change.instance_id,
                "count": self.count,
            },
        )
        return True


__all__ = ["CollectionManager", "CollectionChange", "CollectionOp", "CollectionHook"]
