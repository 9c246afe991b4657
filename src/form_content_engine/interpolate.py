from __future__ import annotations

import re
from typing import Any, Mapping

TOKEN_RE = re.compile(r"\{\{([^}]+)\}\}")

_MISSING = object()


def lookup(context: Mapping[str, Any], dotted: str) -> Any:
    current: Any = context
    for key in dotted.strip().split("."):
        if isinstance(current, Mapping) and key in current:
            current = current[key]
        elif isinstance(current, (list, tuple)) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return _MISSING
    return current


def interpolate_string(template: str, context: Mapping[str, Any]) -> Any:
    """Replace ``{{a.b}}`` tokens; unknown tokens stay as written.

    A string that is exactly one token yields the looked-up value unchanged,
    so mappings and lists pass through without being stringified.
    """
    whole = TOKEN_RE.fullmatch(template.strip())
    if whole:
        value = lookup(context, whole.group(1))
        return template if value is _MISSING else value

    def replace(match: re.Match) -> str:
        value = lookup(context, match.group(1))
        return match.group(0) if value is _MISSING else str(value)

    return TOKEN_RE.sub(replace, template)


def interpolate(value: Any, context: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        return interpolate_string(value, context)
    if isinstance(value, Mapping):
        return {key: interpolate(item, context) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [interpolate(item, context) for item in value]
    return value


def extract_tokens(template: str) -> list[str]:
    return [match.strip() for match in TOKEN_RE.findall(template)]


def build_context(
    *,
    job_id: str | None = None,
    node_id: str | None = None,
    node_path: str | None = None,
    instance_id: int | None = None,
    section: str | None = None,
    **custom: Any,
) -> dict[str, Any]:
    context: dict[str, Any] = {}
    if job_id:
        context["job"] = {"id": job_id}
    node = {key: value for key, value in (("id", node_id), ("path", node_path)) if value}
    if node:
        context["node"] = node
    if instance_id is not None:
        context["instance"] = {"id": instance_id}
    if section:
        context["section"] = {"key": section}
    context.update(custom)
    return context


__all__ = ["build_context", "extract_tokens", "interpolate", "interpolate_string", "lookup"]
