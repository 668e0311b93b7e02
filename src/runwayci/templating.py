# templating.py
# ${{ context.key }} expressions inside step commands, env values and action params.
from __future__ import annotations

import re
import shlex
from typing import Any, Callable, Iterator, List, Mapping, Tuple

from .errors import ConfigError

EXPRESSION_RE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
SECRET_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# context -> allowed keys (None = any well-formed secret name)
CONTEXTS: dict = {
    "secrets": None,
    "run": {"id", "ref", "branch", "sha", "event", "repository"},
    "job": {"name"},
}


def iter_expressions(text: str) -> Iterator[Tuple[str, str]]:
    """Yield (context, key) for every ${{ ... }} in text."""
    for m in EXPRESSION_RE.finditer(text):
        expr = m.group(1)
        context, _, key = expr.partition(".")
        yield context, key


def validate_template(text: str, where: str) -> List[str]:
    """
    Check every expression in `text`. Returns the secret names referenced.
    Raises ConfigError on unknown contexts/keys or malformed secret names.
    """
    secrets: List[str] = []
    for context, key in iter_expressions(text):
        if context not in CONTEXTS:
            raise ConfigError(f"{where}: unknown expression context '{context}' in {text!r}")
        allowed = CONTEXTS[context]
        if allowed is None:
            if not SECRET_NAME_RE.match(key):
                raise ConfigError(f"{where}: malformed secret name {key!r}")
            secrets.append(key)
        elif key not in allowed:
            raise ConfigError(
                f"{where}: unknown key '{context}.{key}' (expected one of {sorted(allowed)})"
            )
    return secrets


def render(
    text: str,
    values: Mapping[str, Mapping[str, str]],
    resolve_secret: Callable[[str], str],
    *,
    quote: bool = False,
) -> str:
    """
    Substitute expressions. Secrets are resolved on demand.

    With quote=True (shell commands) every non-secret value is passed through
    shlex.quote, so event data can never add words or operators to a command.
    """

    def _sub(m: re.Match) -> str:
        context, _, key = m.group(1).partition(".")
        if context == "secrets":
            return resolve_secret(key)
        value = str(values.get(context, {}).get(key, ""))
        return shlex.quote(value) if quote else value

    return EXPRESSION_RE.sub(_sub, text)


def render_value(value: Any, values: Mapping[str, Mapping[str, str]], resolve_secret: Callable[[str], str]) -> Any:
    """render() applied recursively through lists/dicts of action params."""
    if isinstance(value, str):
        return render(value, values, resolve_secret)
    if isinstance(value, Mapping):
        return {k: render_value(v, values, resolve_secret) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(v, values, resolve_secret) for v in value]
    return value


def iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from iter_strings(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from iter_strings(v)
