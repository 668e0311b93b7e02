# step_workflows/base.py
from __future__ import annotations

from typing import Any, Iterable, List

from ..errors import StepError
from ..executor import ActionContext


def check_params(ctx: ActionContext, *, required: Iterable[str] = (), optional: Iterable[str] = ()) -> None:
    """Reject missing or unknown `with:` parameters for an action."""
    required = list(required)
    allowed = set(required) | set(optional)
    missing = [k for k in required if ctx.params.get(k) in (None, "")]
    if missing:
        raise StepError(f"action '{ctx.step.uses}' is missing parameter(s): {', '.join(missing)}")
    unknown = sorted(set(ctx.params) - allowed)
    if unknown:
        raise StepError(
            f"action '{ctx.step.uses}' got unknown parameter(s): {', '.join(unknown)}. "
            f"Allowed: {sorted(allowed)}"
        )


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def as_list(value: Any) -> List[str]:
    """Accept a single string or a list of strings."""
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]
