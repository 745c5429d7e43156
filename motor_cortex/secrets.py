"""Credential storage. OS keyring first, VAULT_<NAME> environment variables as fallback."""

import json
import logging
import os
from typing import Any, Protocol, runtime_checkable

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

SERVICE_NAME = "motor-cortex"
ENV_PREFIX = "VAULT_"
# Keyring has no enumeration API; the list of stored names lives under this key.
_INDEX_KEY = "__credential_index__"


@runtime_checkable
class CredentialStore(Protocol):
    """Name -> secret mapping owned by the host process."""

    def get(self, name: str) -> str | None: ...
    def set(self, name: str, value: str) -> None: ...
    def delete(self, name: str) -> bool: ...
    def list(self) -> list[str]: ...


def credential_to_runtime_key(name: str) -> str:
    """Environment key a credential is exposed under inside a container."""
    return name.upper()


def _env_key(name: str) -> str:
    return f"{ENV_PREFIX}{name.upper()}"


def _is_fail_backend() -> bool:
    """True when the active backend is the fail stub (no real keyring)."""
    try:
        from keyring.backends.fail import Keyring as FailKeyring

        return isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return True


def is_keyring_available() -> bool:
    """True when a real OS keyring backend is active (not the fail stub)."""
    return not _is_fail_backend()


def get_secret(name: str) -> str | None:
    """Resolve a host secret (e.g. a provider API key): keyring -> os.environ."""
    try:
        value = keyring.get_password(SERVICE_NAME, name)
        if value:
            return value
    except KeyringError:
        logger.debug("keyring lookup failed for %s, falling back to env", name)
    return os.environ.get(name)


class MemoryCredentialStore:
    """In-process store. Used by tests and for credentials that must not outlive the process."""

    def __init__(self, values: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(values or {})

    def get(self, name: str) -> str | None:
        return self._values.get(name)

    def set(self, name: str, value: str) -> None:
        self._values[name] = value

    def delete(self, name: str) -> bool:
        return self._values.pop(name, None) is not None

    def list(self) -> list[str]:
        return sorted(self._values)


class EnvCredentialStore:
    """Maps credential NAME to the VAULT_<NAME> environment variable."""

    def get(self, name: str) -> str | None:
        return os.environ.get(_env_key(name))

    def set(self, name: str, value: str) -> None:
        os.environ[_env_key(name)] = value

    def delete(self, name: str) -> bool:
        return os.environ.pop(_env_key(name), None) is not None

    def list(self) -> list[str]:
        return sorted(
            k[len(ENV_PREFIX):].lower() for k in os.environ if k.startswith(ENV_PREFIX)
        )


class KeyringCredentialStore:
    """OS keyring backed store; VAULT_<NAME> env vars are visible as a read fallback."""

    def __init__(self, service: str = SERVICE_NAME) -> None:
        self._service = service
        self._env = EnvCredentialStore()

    def _read_index(self) -> list[str]:
        try:
            raw = keyring.get_password(self._service, _INDEX_KEY)
        except KeyringError:
            return []
        if not raw:
            return []
        try:
            names = json.loads(raw)
        except ValueError:
            logger.warning("secrets: corrupt credential index in keyring, ignoring")
            return []
        return [n for n in names if isinstance(n, str)]

    def _write_index(self, names: list[str]) -> None:
        keyring.set_password(self._service, _INDEX_KEY, json.dumps(sorted(set(names))))

    def get(self, name: str) -> str | None:
        try:
            value = keyring.get_password(self._service, name)
            if value:
                return value
        except KeyringError:
            logger.debug("keyring lookup failed for %s, falling back to env", name)
        return self._env.get(name)

    def set(self, name: str, value: str) -> None:
        """Store in the OS keyring. Raises KeyringError if no backend is available."""
        keyring.set_password(self._service, name, value)
        self._write_index(self._read_index() + [name])

    def delete(self, name: str) -> bool:
        existed = False
        try:
            keyring.delete_password(self._service, name)
            existed = True
        except PasswordDeleteError:
            pass
        except KeyringError:
            logger.debug("keyring delete failed for %s", name)
        names = self._read_index()
        if name in names:
            try:
                self._write_index([n for n in names if n != name])
            except KeyringError:
                logger.debug("keyring index update failed for %s", name)
        return self._env.delete(name) or existed

    def list(self) -> list[str]:
        return sorted(set(self._read_index()) | set(self._env.list()))


def build_credential_store(settings: dict[str, Any]) -> CredentialStore:
    """Pick the store from settings.credentials.backend (keyring | env | memory)."""
    backend = str((settings.get("credentials") or {}).get("backend", "keyring"))
    if backend == "memory":
        return MemoryCredentialStore()
    if backend == "env" or not is_keyring_available():
        if backend != "env":
            logger.warning("secrets: no OS keyring backend, using VAULT_* environment variables")
        return EnvCredentialStore()
    return KeyringCredentialStore()
