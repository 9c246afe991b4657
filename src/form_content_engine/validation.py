from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping

from .addresses import NODE_UNIT, AddressMap, in_scope, scope_prefix
from .content_tree import is_blank
from .draft_store import DraftStore
from .errors import InvocationFailed, ValidationRequired
from .invoker import Invoker
from .models.content import FieldItem
from .models.registry import FieldEntry
from .models.validation import LocalizedText, ValidationResult, ValidationStatus

if TYPE_CHECKING:
    from .field_registry import FieldRegistry

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[ValidationStatus, set[ValidationStatus]] = {
    ValidationStatus.idle: {ValidationStatus.validating},
    ValidationStatus.validating: {ValidationStatus.valid, ValidationStatus.invalid, ValidationStatus.idle},
    ValidationStatus.valid: {ValidationStatus.idle, ValidationStatus.validating},
    ValidationStatus.invalid: {ValidationStatus.idle, ValidationStatus.validating},
}


class ValidationStateMachine:
    """idle -> validating -> valid | invalid -> idle (on the next edit)."""

    def __init__(self, unit: str, function_ref: str | None = None) -> None:
        self.unit = unit
        self.function_ref = function_ref
        self.result = ValidationResult(unit=unit)
        self._cycle = 0

    @property
    def status(self) -> ValidationStatus:
        return self.result.status

    @property
    def configured(self) -> bool:
        return bool(self.function_ref)

    @property
    def cycle(self) -> int:
        return self._cycle

    def _move(self, status: ValidationStatus, **fields: Any) -> ValidationResult:
        if status not in _TRANSITIONS[self.status] and status != self.status:
            raise ValueError(f"Illegal validation transition {self.status.value} -> {status.value}")
        self.result = ValidationResult(unit=self.unit, status=status, **fields)
        return self.result

    def begin(self) -> int:
        self._cycle += 1
        self._move(ValidationStatus.validating)
        return self._cycle

    def complete(self, cycle: int, response: Mapping[str, Any]) -> ValidationResult:
        if cycle != self._cycle or self.status != ValidationStatus.validating:
            logger.debug("Discarding stale validation result", extra={"unit": self.unit})
            return self.result
        valid, reasons, suggested_fix = parse_validation_response(response)
        if valid:
            return self._move(ValidationStatus.valid)
        return self._move(ValidationStatus.invalid, reasons=reasons, suggested_fix=suggested_fix)

    def fail(self, cycle: int, error: str) -> ValidationResult:
        if cycle != self._cycle:
            return self.result
        return self._move(ValidationStatus.idle, error=error)

    def reset(self) -> None:
        if self.status == ValidationStatus.idle and self.result.error is None:
            return
        self._cycle += 1
        self._move(ValidationStatus.idle)

    def require_valid(self) -> None:
        # Field-rule failures block saving even without a remote validator.
        blocked = self.status == ValidationStatus.invalid
        if blocked or (self.configured and self.status != ValidationStatus.valid):
            raise ValidationRequired(
                f'Validation required for "{self.unit}" before saving (status: {self.status.value})',
                unit=self.unit,
                reasons=self.result.reasons,
                suggested_fix=self.result.suggested_fix,
            )


def parse_validation_response(
    response: Mapping[str, Any],
) -> tuple[bool, list[LocalizedText], dict[str, Any] | None]:
    """Read `{valid, reasons|message, suggested_fix|suggestedFix|suggestions}`."""
    if "valid" in response:
        valid = bool(response["valid"])
    else:
        valid = str(response.get("status", "")).lower() == ValidationStatus.valid.value

    raw_reasons = response.get("reasons")
    if raw_reasons is None and response.get("message"):
        raw_reasons = [response["message"]]
    if isinstance(raw_reasons, (str, Mapping)):
        raw_reasons = [raw_reasons]
    reasons = [LocalizedText.coerce(reason) for reason in raw_reasons or []]

    fix = None
    for key in ("suggested_fix", "suggestedFix", "suggestions"):
        if isinstance(response.get(key), Mapping):
            fix = dict(response[key])
            break
    return valid, reasons, fix


def _field_label(entry: FieldEntry | None, item: FieldItem) -> str:
    if entry is not None:
        label = entry.ui.get("label")
        if label:
            return LocalizedText.coerce(label).text() or entry.id
        return entry.id
    return item.ref or item.name or item.id or item.path or "Field"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def check_field_rules(entry: FieldEntry | None, item: FieldItem, value: Any) -> LocalizedText | None:
    """Check a value against the item's `required` flag and the registry rules.

    Understood rules: ``required``, ``minLength``/``maxLength``/``pattern``
    for strings, ``minItems``/``maxItems`` for lists and ``min``/``max`` for
    numbers. Returns the first failure, or None.
    """
    rules = entry.rules if entry is not None else {}
    label = _field_label(entry, item)

    if item.required or rules.get("required"):
        if is_blank(value):
            return LocalizedText(fallback=f"{label} is required")
    if isinstance(value, str) and value:
        if rules.get("minLength") is not None and len(value) < rules["minLength"]:
            return LocalizedText(fallback=f"{label} must be at least {rules['minLength']} characters")
        if rules.get("maxLength") is not None and len(value) > rules["maxLength"]:
            return LocalizedText(fallback=f"{label} must be no more than {rules['maxLength']} characters")
        pattern = rules.get("pattern")
        if pattern:
            try:
                matched = re.search(pattern, value) is not None
            except re.error:
                logger.warning("Invalid field pattern", extra={"field": label, "pattern": pattern})
                matched = True
            if not matched:
                return LocalizedText(fallback=f"{label} format is invalid")
    if isinstance(value, (list, tuple)):
        if rules.get("minItems") is not None and len(value) < rules["minItems"]:
            return LocalizedText(fallback=f"{label} must have at least {rules['minItems']} items")
        if rules.get("maxItems") is not None and len(value) > rules["maxItems"]:
            return LocalizedText(fallback=f"{label} must have no more than {rules['maxItems']} items")
    if _is_number(value):
        if rules.get("min") is not None and value < rules["min"]:
            return LocalizedText(fallback=f"{label} must be at least {rules['min']}")
        if rules.get("max") is not None and value > rules["max"]:
            return LocalizedText(fallback=f"{label} must be no more than {rules['max']}")
    return None


class ValidationCoordinator:
    """Owns one state machine per validated unit of a node.

    A unit is either ``"node"`` or a dotted sub-path such as ``chars.2``.
    Any draft change inside a unit's scope drops that unit back to idle.
    """

    def __init__(
        self,
        *,
        node_id: str,
        node_path: str,
        validators: Mapping[str, str],
        invoker: Invoker | None,
        drafts: DraftStore,
        address_map: Callable[[], AddressMap],
        registry: FieldRegistry | None = None,
    ) -> None:
        self.node_id = node_id
        self.node_path = node_path
        self._validators = dict(validators)
        self._invoker = invoker
        self._drafts = drafts
        self._address_map = address_map
        self._registry = registry
        self._machines: dict[str, ValidationStateMachine] = {}
        self._unsubscribe = drafts.subscribe(self._on_drafts_changed, values_only=True)

    def machine(self, unit: str = NODE_UNIT) -> ValidationStateMachine:
        machine = self._machines.get(unit)
        if machine is None:
            machine = ValidationStateMachine(unit, self._validators.get(unit))
            self._machines[unit] = machine
        return machine

    def state(self, unit: str = NODE_UNIT) -> ValidationResult:
        return self.machine(unit).result

    def configured_units(self) -> list[str]:
        return list(self._validators)

    def units_covering(self, addresses: Iterable[str]) -> set[str]:
        addresses = list(addresses)
        units = set(self._validators) | set(self._machines)
        return {
            unit
            for unit in units
            if any(in_scope(address, self.node_path, unit) for address in addresses)
        }

    def check_save(self, addresses: Iterable[str]) -> None:
        """Raise ValidationRequired unless every configured unit touched is valid."""
        for unit in sorted(self.units_covering(addresses)):
            self.machine(unit).require_valid()

    def can_save(self, addresses: Iterable[str]) -> bool:
        try:
            self.check_save(addresses)
        except ValidationRequired:
            return False
        return True

    def rule_failures(self, unit: str = NODE_UNIT) -> dict[str, LocalizedText]:
        """Field-rule failures for the unit's current draft values, by address."""
        prefix = scope_prefix(self.node_path, unit)
        slots = {
            address: slot
            for address, slot in self._address_map().by_address.items()
            if address.startswith(prefix)
        }
        entries: Mapping[str, FieldEntry] = {}
        if self._registry is not None:
            entries = self._registry.get_many(sorted({slot.field_ref for slot in slots.values()}))
        failures: dict[str, LocalizedText] = {}
        for address, slot in slots.items():
            message = check_field_rules(entries.get(slot.field_ref), slot.item, self._drafts.get(address))
            if message is not None:
                failures[address] = message
        return failures

    async def validate(self, unit: str = NODE_UNIT, edits: Mapping[str, Any] | None = None) -> ValidationResult:
        """Validate the unit's draft values.

        `edits` are written into the drafts first, so whatever passes here is
        exactly what a later save persists.
        """
        machine = self.machine(unit)
        if edits:
            self._drafts.set_many(edits)

        failures = self.rule_failures(unit)
        if not machine.configured and not failures:
            logger.debug("No validator configured", extra={"node_id": self.node_id, "unit": unit})
            return machine.result
        if machine.configured and not failures and self._invoker is None:
            raise RuntimeError("Validation requested without an invoker")

        if failures:
            cycle = machine.begin()
            logger.info(
                "Field rules failed",
                extra={"node_id": self.node_id, "unit": unit, "fields": sorted(failures)},
            )
            return machine.complete(cycle, {"valid": False, "reasons": list(failures.values())})

        values = self._unit_values(unit)
        payload = {"node_id": self.node_id, "node_path": self.node_path, "unit": unit, "values": values}
        cycle = machine.begin()
        logger.info(
            "Validating",
            extra={"node_id": self.node_id, "unit": unit, "function_ref": machine.function_ref},
        )
        try:
            response = await asyncio.to_thread(self._invoker.invoke, machine.function_ref, payload)
        except InvocationFailed as exc:
            logger.error(
                "Validation call failed",
                exc_info=True,
                extra={"node_id": self.node_id, "unit": unit, "error": str(exc)},
            )
            return machine.fail(cycle, str(exc))

        result = machine.complete(cycle, response)
        if machine.cycle != cycle:
            return ValidationResult(unit=unit, error="content changed during validation")
        logger.info(
            "Validation finished",
            extra={"node_id": self.node_id, "unit": unit, "status": result.status.value},
        )
        return result

    def apply_suggested_fix(self, unit: str = NODE_UNIT) -> list[str]:
        machine = self.machine(unit)
        fix = machine.result.suggested_fix
        if not fix:
            return []
        targets: dict[str, Any] = {}
        for key, value in fix.items():
            addresses = self._address_map().lookup(key, unit)
            if len(addresses) != 1:
                logger.warning(
                    "Suggested fix key skipped",
                    extra={"node_id": self.node_id, "unit": unit, "key": key, "matches": len(addresses)},
                )
                continue
            targets[addresses[0]] = value
        self._drafts.set_many(targets)
        machine.reset()
        logger.info(
            "Applied suggested fix",
            extra={"node_id": self.node_id, "unit": unit, "fields": sorted(targets)},
        )
        return list(targets)

    def _unit_values(self, unit: str) -> dict[str, Any]:
        prefix = scope_prefix(self.node_path, unit)
        return {
            address: self._drafts.get(address)
            for address in self._address_map().by_address
            if address.startswith(prefix)
        }

    def _on_drafts_changed(self, addresses: set[str]) -> None:
        for unit in self.units_covering(addresses):
            self.machine(unit).reset()

    def close(self) -> None:
        self._unsubscribe()


__all__ = [
    "ValidationStateMachine",
    "check_field_rules",
    "ValidationCoordinator",
    "parse_validation_response",
]
