"""Tests for the secret resolver, stores and template rendering."""
from __future__ import annotations

import threading

import pytest

from runwayci.errors import ConfigError, SecretNotFoundError
from runwayci.secrets import REDACTED, EnvSecretStore, MappingSecretStore, SecretResolver, SecretStore
from runwayci.templating import render, render_value, validate_template


class CountingStore(SecretStore):
    def __init__(self, values):
        self.values = values
        self.calls = []
        self._lock = threading.Lock()

    def get(self, name):
        with self._lock:
            self.calls.append(name)
        if name not in self.values:
            raise SecretNotFoundError(name)
        return self.values[name]


class TestSecretResolver:
    """Per-run caching, redaction and disposal."""

    def test_caches_per_run(self):
        store = CountingStore({"TOKEN": "s3cr3t"})
        resolver = SecretResolver(store)
        assert resolver.resolve("TOKEN") == "s3cr3t"
        assert resolver.resolve("TOKEN") == "s3cr3t"
        assert store.calls == ["TOKEN"]

    def test_missing_secret(self):
        with pytest.raises(SecretNotFoundError, match="Secret not found: NOPE"):
            SecretResolver(MappingSecretStore()).resolve("NOPE")

    def test_no_store_means_no_secrets(self):
        with pytest.raises(SecretNotFoundError):
            SecretResolver(None).resolve("ANY")

    def test_redacts_every_resolved_value(self):
        resolver = SecretResolver(MappingSecretStore({"A": "alpha-value", "B": "alpha"}))
        resolver.resolve("A")
        resolver.resolve("B")
        # the longer value wins, so no partial leak of "alpha-value"
        assert resolver.redact("x alpha-value y alpha z") == f"x {REDACTED} y {REDACTED} z"

    def test_redact_ignores_unresolved_values(self):
        resolver = SecretResolver(MappingSecretStore({"A": "hidden"}))
        assert resolver.redact("hidden") == "hidden"

    def test_close_drops_cache(self):
        resolver = SecretResolver(MappingSecretStore({"A": "v"}))
        resolver.resolve("A")
        resolver.close()
        with pytest.raises(RuntimeError):
            resolver.resolve("A")
        assert resolver.redact("v") == "v"


class TestEnvSecretStore:
    def test_reads_prefixed_variables(self):
        store = EnvSecretStore(prefix="RS_", environ={"RS_TOKEN": "abc", "TOKEN": "wrong"})
        assert store.get("TOKEN") == "abc"
        with pytest.raises(SecretNotFoundError):
            store.get("OTHER")


class TestTemplating:
    """${{ context.key }} expressions."""

    VALUES = {"run": {"id": "r1", "sha": "abc", "branch": "main"}, "job": {"name": "deploy"}}

    def test_render_contexts_and_secrets(self):
        out = render("${{ job.name }}@${{run.branch}} ${{ secrets.T }}", self.VALUES, lambda n: f"<{n}>")
        assert out == "deploy@main <T>"

    def test_secrets_resolved_only_when_referenced(self):
        calls = []
        render("echo ${{ run.sha }}", self.VALUES, calls.append)
        assert calls == []

    def test_shell_rendering_quotes_context_values(self):
        values = {"run": {"sha": "abc; rm -rf ~", "branch": "main"}}
        out = render("echo ${{ run.sha }} ${{ run.branch }} ${{ secrets.T }}", values, lambda n: "s3cr3t", quote=True)
        assert out == "echo 'abc; rm -rf ~' main s3cr3t"

    def test_render_value_recurses(self):
        out = render_value({"a": ["${{ run.id }}", 3], "b": {"c": "${{ secrets.X }}"}}, self.VALUES, lambda n: "v")
        assert out == {"a": ["r1", 3], "b": {"c": "v"}}

    def test_validate_returns_secret_names(self):
        assert validate_template("${{ secrets.A }} ${{ run.id }} ${{ secrets.B_2 }}", "here") == ["A", "B_2"]

    def test_validate_rejects_unknown_context(self):
        with pytest.raises(ConfigError, match="here: unknown expression context 'env'"):
            validate_template("${{ env.HOME }}", "here")
