"""Secret storage for sensitive server environment values.

Servers may list environment variable names under ``secret_env``; their
values are kept out of the YAML registry and fetched from a credential
store at merge time. The store is an opaque string key/value service; the
engine moves values verbatim and never interprets them.
"""
from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

DEFAULT_SERVICE = "mcphubctl"


class CredentialError(RuntimeError):
    """Raised when the secret store cannot be reached."""


class CredentialStore(Protocol):
    """Minimal get/set/delete interface over an opaque secret store."""

    def get(self, key: str) -> str | None:
        """Return the stored value for *key* or ``None``."""

    def set(self, key: str, value: str) -> None:
        """Store *value* under *key*."""

    def delete(self, key: str) -> None:
        """Remove *key*; removing a missing key is not an error."""


def server_env_key(server_id: str, env_var: str) -> str:
    """Return the secret-store key for one server environment variable."""
    return f"server:{server_id}:env:{env_var}"


class KeyringCredentialStore:
    """Credential store backed by the OS-native keyring."""

    def __init__(self, service: str = DEFAULT_SERVICE) -> None:
        self.service = service

    def get(self, key: str) -> str | None:
        """Return the stored value for *key* or ``None``."""
        try:
            return keyring.get_password(self.service, key)
        except KeyringError as exc:
            raise CredentialError(f"Failed to retrieve credential '{key}': {exc}") from exc

    def set(self, key: str, value: str) -> None:
        """Store *value* under *key*."""
        try:
            keyring.set_password(self.service, key, value)
        except KeyringError as exc:
            raise CredentialError(f"Failed to store credential '{key}': {exc}") from exc

    def delete(self, key: str) -> None:
        """Remove *key*; removing a missing key is not an error."""
        try:
            keyring.delete_password(self.service, key)
        except PasswordDeleteError:
            return
        except KeyringError as exc:
            raise CredentialError(f"Failed to delete credential '{key}': {exc}") from exc


class MemoryCredentialStore:
    """Process-local credential store used when no keyring is configured."""

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        """Return the stored value for *key* or ``None``."""
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        """Store *value* under *key*."""
        self._values[key] = value

    def delete(self, key: str) -> None:
        """Remove *key*; removing a missing key is not an error."""
        self._values.pop(key, None)


def build_credential_store(backend: str, service: str = DEFAULT_SERVICE) -> CredentialStore:
    """Return the store selected by the ``credentials.backend`` setting."""
    if backend == "keyring":
        return KeyringCredentialStore(service)
    if backend == "none":
        return MemoryCredentialStore()
    raise CredentialError(f"Unsupported credential backend '{backend}'.")


__all__ = [
    "CredentialError",
    "CredentialStore",
    "KeyringCredentialStore",
    "MemoryCredentialStore",
    "build_credential_store",
    "server_env_key",
]
