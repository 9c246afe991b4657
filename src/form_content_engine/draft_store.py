"""Per-address draft values, decoupled from the persisted document.

The store keeps three layers per address:

- the confirmed baseline (what storage last acknowledged),
- the in-flight value (optimistically treated as persisted while a save runs),
- the draft entry (what the user is editing).

Saves for one store are serialized; autosave is debounced and coalesces every
address written inside the window into one persistence call.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterable, Iterator, Mapping

from .errors import SaveFailed
from .models.node import SaveOutcome
from .models.registry import DraftEntry

logger = logging.getLogger(__name__)

DEFAULT_AUTOSAVE_DELAY = 0.3

# Receives {address: value}; returns {address: reason} for rejected addresses.
# Raises SaveFailed when the whole batch is refused.
PersistHook = Callable[[dict[str, Any]], Awaitable[Mapping[str, str]]]
ChangeListener = Callable[[set[str]], None]
AutosaveGuard = Callable[[list[str]], bool]


class DraftStore:
    def __init__(
        self,
        *,
        node_id: str,
        persist: PersistHook | None = None,
        autosave_delay: float = DEFAULT_AUTOSAVE_DELAY,
    ) -> None:
        self.node_id = node_id
        self.autosave_delay = autosave_delay
        self.edit_mode = False
        self.autosave_guard: AutosaveGuard | None = None
        self._persist = persist
        self._baseline: dict[str, Any] = {}
        self._inflight: dict[str, Any] = {}
        self._entries: dict[str, DraftEntry] = {}
        self._epochs: dict[str, int] = {}
        self._listeners: list[tuple[ChangeListener, bool]] = []
        self._batch_depth = 0
        self._pending: set[str] = set()
        self._pending_values: set[str] = set()
        self._save_lock = asyncio.Lock()
        self._autosave_handle: asyncio.TimerHandle | None = None
        self._autosave_task: asyncio.Task | None = None

    # ----- reads -----

    def persisted_value(self, address: str) -> Any:
        if address in self._inflight:
            return self._inflight[address]
        return self._baseline.get(address)

    def get(self, address: str) -> Any:
        return self._entry(address).value

    def has(self, address: str) -> bool:
        return address in self._entries or address in self._baseline

    def entry(self, address: str) -> DraftEntry:
        return self._entry(address).model_copy()

    def entries(self, prefix: str | None = None) -> list[dict[str, Any]]:
        return [
            {"address": address, "value": entry.value}
            for address, entry in self._entries.items()
            if prefix is None or address.startswith(prefix)
        ]

    def dirty_entries(self, prefix: str | None = None) -> dict[str, Any]:
        return {
            address: entry.value
            for address, entry in self._entries.items()
            if entry.dirty and (prefix is None or address.startswith(prefix))
        }

    def is_dirty(self, prefix: str | None = None) -> bool:
        return bool(self.dirty_entries(prefix))

    def errors(self) -> dict[str, str]:
        return {address: entry.error for address, entry in self._entries.items() if entry.error}

    # ----- writes -----

    def seed(self, values: Mapping[str, Any]) -> None:
        """Replace the persisted baseline. Dirty drafts survive a reseed."""
        self._baseline = dict(values)
        changed = set()
        for address in list(self._entries):
            if not self._entries[address].dirty:
                del self._entries[address]
                changed.add(address)
        logger.debug("Seeded draft store", extra={"node_id": self.node_id, "addresses": len(values)})
        if changed:
            self._changed(changed, values=True)

    def set(self, address: str, value: Any) -> None:
        entry = self._entry(address)
        entry.value = value
        entry.dirty = True
        entry.error = None
        self._bump(address)
        self._changed({address}, values=True)
        if self.edit_mode:
            self._schedule_autosave()

    def set_many(self, values: Mapping[str, Any]) -> None:
        with self.batch():
            for address, value in values.items():
                self.set(address, value)

    def discard_all(self, prefix: str | None = None) -> list[str]:
        """Revert in-scope drafts to the confirmed baseline.

        A pending autosave is dropped once nothing dirty remains.
        """
        discarded = [
            address for address in self._entries if prefix is None or address.startswith(prefix)
        ]
        for address in discarded:
            del self._entries[address]
            self._bump(address)
        if not self.dirty_entries():
            self.cancel_autosave()
        if discarded:
            logger.info(
                "Discarded drafts",
                extra={"node_id": self.node_id, "prefix": prefix, "count": len(discarded)},
            )
            self._changed(set(discarded), values=True)
        return discarded

    def forget(self, prefix: str) -> None:
        """Drop drafts and baseline under a prefix (collection instance teardown)."""
        with self.batch():
            self.discard_all(prefix)
            for address in [a for a in self._baseline if a.startswith(prefix)]:
                del self._baseline[address]
                self._changed({address}, values=True)

    # ----- persistence -----

    async def save_all(
        self,
        prefix: str | None = None,
        *,
        addresses: Iterable[str] | None = None,
        clear: bool = False,
    ) -> SaveOutcome:
        """Persist dirty drafts under `prefix` (optionally only `addresses`) in one call."""
        async with self._save_lock:
            return await self._save_locked(prefix, addresses, clear=clear)

    async def _save_locked(self, prefix: str | None, addresses: Iterable[str] | None, *, clear: bool) -> SaveOutcome:
        batch = self.dirty_entries(prefix)
        if addresses is not None:
            wanted = set(addresses)
            batch = {address: value for address, value in batch.items() if address in wanted}
        if not batch:
            return SaveOutcome(node_id=self.node_id)
        if self._persist is None:
            raise RuntimeError("DraftStore has no persistence hook")

        epochs = {address: self._epochs.get(address, 0) for address in batch}
        confirmed_before = {address: self._baseline.get(address) for address in batch}

        with self.batch():
            for address, value in batch.items():
                self._inflight[address] = value
                entry = self._entries[address]
                entry.loading = True
                entry.error = None
                self._changed({address})

        logger.info("Saving drafts", extra={"node_id": self.node_id, "count": len(batch)})
        try:
            rejected = dict(await self._persist(dict(batch)))
        except Exception as exc:
            # Any refusal, wrapped or not, leaves the batch dirty and retryable.
            error = str(exc) if isinstance(exc, SaveFailed) else f"{type(exc).__name__}: {exc}"
            self._settle_failure(batch, epochs, {address: error for address in batch})
            logger.error(
                "Draft save failed",
                exc_info=True,
                extra={"node_id": self.node_id, "error": error},
            )
            return SaveOutcome(
                node_id=self.node_id,
                failed={address: error for address in batch},
                error=error,
            )

        saved = {address: value for address, value in batch.items() if address not in rejected}
        with self.batch():
            self._settle_success(saved, epochs, confirmed_before, clear=clear)
            self._settle_failure(
                {address: batch[address] for address in rejected if address in batch},
                epochs,
                rejected,
            )

        if rejected:
            logger.warning(
                "Draft save partially rejected",
                extra={"node_id": self.node_id, "rejected": rejected},
            )
        return SaveOutcome(node_id=self.node_id, saved=list(saved), failed=rejected)

    def _settle_success(
        self,
        saved: Mapping[str, Any],
        epochs: Mapping[str, int],
        confirmed_before: Mapping[str, Any],
        *,
        clear: bool,
    ) -> None:
        for address, value in saved.items():
            self._inflight.pop(address, None)
            self._baseline[address] = value
            untouched = self._epochs.get(address, 0) == epochs[address]
            entry = self._entries.get(address)
            if untouched and entry is not None:
                if clear:
                    del self._entries[address]
                else:
                    entry.dirty = False
                    entry.loading = False
                    entry.error = None
            elif entry is not None:
                # Edited again while the save was in flight.
                entry.loading = False
                entry.dirty = entry.value != value
            else:
                # Discarded while in flight: keep the reverted value, do not
                # let the stored one reappear.
                reverted = confirmed_before[address]
                self._entries[address] = DraftEntry(
                    address=address, value=reverted, dirty=reverted != value
                )
            self._changed({address})

    def _settle_failure(
        self,
        failed: Mapping[str, Any],
        epochs: Mapping[str, int],
        reasons: Mapping[str, str],
    ) -> None:
        with self.batch():
            for address in failed:
                self._inflight.pop(address, None)
                entry = self._entries.get(address)
                if entry is None:
                    continue
                entry.loading = False
                if self._epochs.get(address, 0) == epochs[address]:
                    entry.dirty = True
                    entry.error = reasons.get(address, "save failed")
                self._changed({address})

    # ----- autosave -----

    def _schedule_autosave(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; autosave left to explicit save", extra={"node_id": self.node_id})
            return
        if self._autosave_handle is not None:
            self._autosave_handle.cancel()
        self._autosave_handle = loop.call_later(self.autosave_delay, self._fire_autosave)

    def _fire_autosave(self) -> None:
        self._autosave_handle = None
        self._autosave_task = asyncio.get_running_loop().create_task(self._run_autosave())

    async def _run_autosave(self) -> SaveOutcome | None:
        pending = list(self.dirty_entries())
        if not pending:
            return None
        if self.autosave_guard is not None and not self.autosave_guard(pending):
            logger.debug("Autosave held back by guard", extra={"node_id": self.node_id})
            return None
        return await self.save_all()

    def autosave_pending(self) -> bool:
        return self._autosave_handle is not None

    def cancel_autosave(self) -> None:
        if self._autosave_handle is not None:
            self._autosave_handle.cancel()
            self._autosave_handle = None

    async def flush(self) -> SaveOutcome | None:
        """Run a pending autosave now and wait for any autosave in flight."""
        had_timer = self._autosave_handle is not None
        self.cancel_autosave()
        outcome = None
        if self._autosave_task is not None and not self._autosave_task.done():
            outcome = await self._autosave_task
        if had_timer:
            outcome = await self._run_autosave()
        return outcome

    async def close(self, *, flush: bool = True) -> None:
        if flush:
            await self.flush()
        else:
            self.cancel_autosave()
        self.edit_mode = False

    # ----- notification -----

    def subscribe(self, listener: ChangeListener, *, values_only: bool = False) -> Callable[[], None]:
        """Register a change listener; returns the matching unsubscribe callable.

        Listeners receive the set of addresses touched by one batch. With
        `values_only`, flag-only changes (loading, error, dirty after a save)
        are not reported.
        """
        registration = (listener, values_only)
        if registration not in self._listeners:
            self._listeners.append(registration)

        def unsubscribe() -> None:
            if registration in self._listeners:
                self._listeners.remove(registration)

        return unsubscribe

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Collapse every change made inside into a single notification."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._pending:
                changed, self._pending = self._pending, set()
                value_changes, self._pending_values = self._pending_values, set()
                self._notify(changed, value_changes)

    def _changed(self, addresses: set[str], *, values: bool = False) -> None:
        if self._batch_depth > 0:
            self._pending |= addresses
            if values:
                self._pending_values |= addresses
            return
        self._notify(addresses, addresses if values else set())

    def _notify(self, addresses: set[str], value_changes: set[str]) -> None:
        for listener, values_only in list(self._listeners):
            if values_only and not value_changes:
                continue
            try:
                listener(set(value_changes if values_only else addresses))
            except Exception as exc:
                logger.warning(f"Draft listener failed: {exc}", extra={"node_id": self.node_id})

    # ----- internals -----

    def _entry(self, address: str) -> DraftEntry:
        entry = self._entries.get(address)
        if entry is None:
            entry = DraftEntry(address=address, value=self._baseline.get(address))
            self._entries[address] = entry
        return entry

    def _bump(self, address: str) -> None:
        self._epochs[address] = self._epochs.get(address, 0) + 1


__all__ = ["DraftStore", "PersistHook", "DEFAULT_AUTOSAVE_DELAY"]
