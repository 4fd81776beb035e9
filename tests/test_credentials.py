"""Tests for the credential store wrappers."""
from __future__ import annotations

import pytest
from keyring.errors import KeyringError, PasswordDeleteError

from mcphubctl import credentials
from mcphubctl.credentials import (
    CredentialError,
    KeyringCredentialStore,
    MemoryCredentialStore,
    build_credential_store,
    server_env_key,
)


class _FakeKeyring:
    def __init__(self) -> None:
        self.values: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, key: str) -> str | None:
        return self.values.get((service, key))

    def set_password(self, service: str, key: str, value: str) -> None:
        self.values[(service, key)] = value

    def delete_password(self, service: str, key: str) -> None:
        if (service, key) not in self.values:
            raise PasswordDeleteError("not found")
        del self.values[(service, key)]


def test_server_env_key_format() -> None:
    """Keys namespace the variable under its server id."""
    assert server_env_key("abc", "TOKEN") == "server:abc:env:TOKEN"


def test_keyring_store_round_trip(monkeypatch: pytest.MonkeyPatch) -> None:
    """Values go through keyring under the configured service name."""
    fake = _FakeKeyring()
    monkeypatch.setattr(credentials, "keyring", fake)
    store = KeyringCredentialStore("svc")

    store.set("k", "v")
    assert fake.values == {("svc", "k"): "v"}
    assert store.get("k") == "v"

    store.delete("k")
    store.delete("k")
    assert store.get("k") is None


def test_keyring_failures_become_credential_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    """Backend errors are wrapped so callers can degrade gracefully."""
    fake = _FakeKeyring()

    def broken(service: str, key: str) -> str | None:
        raise KeyringError("locked")

    fake.get_password = broken  # type: ignore[method-assign]
    monkeypatch.setattr(credentials, "keyring", fake)

    with pytest.raises(CredentialError, match="locked"):
        KeyringCredentialStore().get("k")


def test_build_credential_store_backends() -> None:
    """The backend setting selects the store implementation."""
    assert isinstance(build_credential_store("keyring"), KeyringCredentialStore)
    assert isinstance(build_credential_store("none"), MemoryCredentialStore)
    with pytest.raises(CredentialError):
        build_credential_store("vault")


def test_memory_store() -> None:
    """The in-memory store honours the same contract."""
    store = MemoryCredentialStore({"a": "1"})

    assert store.get("a") == "1"
    store.delete("a")
    store.delete("a")
    assert store.get("a") is None
