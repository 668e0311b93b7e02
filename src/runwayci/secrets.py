"""Secret stores and the per-run secret resolver."""

from __future__ import annotations

import logging
import os
import threading
from typing import Dict, Mapping, Optional

from .errors import SecretNotFoundError
from .settings import SECRET_ENV_PREFIX

logger = logging.getLogger(__name__)

REDACTED = "***"


class SecretStore:
    """Capability interface: fetch a named secret, opaquely."""

    def get(self, name: str) -> str:
        raise NotImplementedError


class EnvSecretStore(SecretStore):
    """
    Reads secrets from process environment variables named
    ``<prefix><NAME>`` (default prefix ``RUNWAY_SECRET_``).
    """

    def __init__(self, prefix: str = SECRET_ENV_PREFIX, environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str) -> str:
        try:
            return self._environ[f"{self.prefix}{name}"]
        except KeyError:
            raise SecretNotFoundError(name) from None


class MappingSecretStore(SecretStore):
    """In-memory store, mostly for tests and embedding."""

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values = dict(values or {})

    def get(self, name: str) -> str:
        try:
            return self._values[name]
        except KeyError:
            raise SecretNotFoundError(name) from None


class SecretResolver:
    """
    Resolves secrets for exactly one Run.

    Values are cached by name so concurrent jobs don't hit the store twice,
    and the cache is dropped by close() when the Run ends. Every value this
    resolver has handed out is redacted by redact().
    """

    def __init__(self, store: Optional[SecretStore] = None):
        self._store = store
        self._cache: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._closed = False

    def resolve(self, name: str) -> str:
        with self._lock:
            if self._closed:
                raise RuntimeError("SecretResolver used after its run ended")
            if name in self._cache:
                return self._cache[name]
        if self._store is None:
            raise SecretNotFoundError(name)
        # Fetch outside the lock; a slow store must not serialize every job.
        value = self._store.get(name)
        logger.debug("resolved secret %s", name)
        with self._lock:
            self._cache.setdefault(name, value)
            return self._cache[name]

    def redact(self, text: Optional[str]) -> str:
        if not text:
            return text or ""
        with self._lock:
            values = sorted((v for v in self._cache.values() if v), key=len, reverse=True)
        for value in values:
            text = text.replace(value, REDACTED)
        return text

    def close(self) -> None:
        with self._lock:
            self._cache.clear()
            self._closed = True
