"""``{{identifier}}`` substitution against a run's variable context."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import TypeVar

from pydantic import BaseModel

VARIABLE_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\}\}")

# Fields holding nested actions or names, never template text.
_UNRESOLVED_FIELDS = frozenset(
    {"type", "output_variable", "true_action", "false_action", "pending_action", "condition"}
)

ModelT = TypeVar("ModelT", bound=BaseModel)


def resolve_template(template: str, context: Mapping[str, str]) -> str:
    """Replace each ``{{name}}`` with ``context[name]``.

    Unknown names are left exactly as written, so a partially resolvable
    template still produces useful text.
    """

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in context:
            return str(context[name])
        return match.group(0)

    return VARIABLE_PATTERN.sub(_sub, template)


def find_variables(template: str) -> list[str]:
    """Names referenced by ``template``, in order of first appearance."""

    seen: dict[str, None] = {}
    for match in VARIABLE_PATTERN.finditer(template):
        seen.setdefault(match.group(1), None)
    return list(seen)


def resolve_model_strings(model: ModelT, context: Mapping[str, str]) -> ModelT:
    """Return a copy of ``model`` with every string parameter resolved.

    Lists of strings are resolved element-wise. The original model (and thus
    the stored workflow definition) is left untouched.
    """

    updates: dict[str, object] = {}
    for name in type(model).model_fields:
        if name in _UNRESOLVED_FIELDS:
            continue
        value = getattr(model, name)
        if isinstance(value, str):
            resolved = resolve_template(value, context)
            if resolved != value:
                updates[name] = resolved
        elif isinstance(value, list) and all(isinstance(v, str) for v in value):
            resolved_list = [resolve_template(v, context) for v in value]
            if resolved_list != value:
                updates[name] = resolved_list
    if not updates:
        return model
    return model.model_copy(update=updates)


def model_variables(model: BaseModel) -> list[str]:
    """Names referenced by any templated string parameter of ``model``."""

    names: list[str] = []
    for name in type(model).model_fields:
        if name in _UNRESOLVED_FIELDS:
            continue
        value = getattr(model, name)
        values = [value] if isinstance(value, str) else value if isinstance(value, list) else []
        for v in values:
            if isinstance(v, str):
                names.extend(n for n in find_variables(v) if n not in names)
    return names
