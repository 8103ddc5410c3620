"""Secrets resolution for the quote-source credential.

The orchestrator resolves exactly one secret per run, the quote-source API
key, and resolves it again on the next run. Backends never cache, so a
rotated key is picked up without a restart.

Lookup order of ``default_resolver``::

    EnvSecretBackend    STOCKWATCH_API_KEY, STOCKWATCH_SECRET_STOCKWATCH_API_KEY
    FileSecretBackend   <secrets_dir>/stockwatch_api_key  (Docker/Kubernetes mount)

Resolved values are wrapped in ``SecretValue``; printing or logging one
shows ``[REDACTED]``.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

_MISSING = object()


class MissingSecretError(Exception):
    """No backend had a value for the secret."""

    def __init__(self, key: str, tried_backends: list[str] | None = None):
        self.key = key
        self.tried_backends = list(tried_backends or [])
        tried = f" (tried: {', '.join(self.tried_backends)})" if self.tried_backends else ""
        super().__init__(f"Secret not found: {key}{tried}")


@dataclass(frozen=True)
class SecretValue:
    """A credential that renders as ``[REDACTED]``; ``get_secret()`` unwraps it."""

    _value: str = field(repr=False)

    def get_secret(self) -> str:
        return self._value

    def __str__(self) -> str:
        return "[REDACTED]"

    def __repr__(self) -> str:
        return "SecretValue('[REDACTED]')"

    def __bool__(self) -> bool:
        return bool(self._value)


class SecretBackend(Protocol):
    label: str

    def get(self, name: str) -> str | None:
        """Return the secret, or None when this backend does not hold it."""
        ...


class EnvSecretBackend:
    """Environment variables ``NAME`` then ``{prefix}NAME`` (upper-cased)."""

    label = "env"

    def __init__(self, prefix: str = "STOCKWATCH_SECRET_"):
        self.prefix = prefix

    def get(self, name: str) -> str | None:
        for variable in (name.upper(), f"{self.prefix}{name.upper()}"):
            value = os.environ.get(variable, "").strip()
            if value:
                return value
        return None


class FileSecretBackend:
    """One file per secret under ``secrets_dir``, read on every lookup."""

    label = "file"

    def __init__(self, secrets_dir: str | Path = "/run/secrets"):
        self.secrets_dir = Path(secrets_dir)

    def get(self, name: str) -> str | None:
        path = self.secrets_dir / name
        try:
            value = path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            return None
        return value or None


class DictSecretBackend:
    """Fixed mapping, for tests."""

    label = "dict"

    def __init__(self, secrets: dict[str, str] | None = None):
        self.secrets = dict(secrets or {})

    def get(self, name: str) -> str | None:
        return self.secrets.get(name)


@runtime_checkable
class CredentialStore(Protocol):
    """What the orchestrator needs: one string secret by name."""

    def resolve_secret_value(self, key: str) -> SecretValue:
        ...


class SecretsResolver:
    """First backend with a value wins."""

    def __init__(self, backends: Iterable[SecretBackend] = ()):
        self.backends = list(backends)

    def resolve(self, key: str, default: Any = _MISSING) -> str | None:
        """Raw secret value.

        Raises:
            MissingSecretError: No backend has it and no default was given
        """
        for backend in self.backends:
            value = backend.get(key)
            if value is not None:
                return value
        if default is not _MISSING:
            return default
        raise MissingSecretError(key, [backend.label for backend in self.backends])

    def resolve_secret_value(self, key: str) -> SecretValue:
        return SecretValue(self.resolve(key))

    def contains(self, key: str) -> bool:
        return self.resolve(key, default=None) is not None


def default_resolver(secrets_dir: str | Path = "/run/secrets") -> SecretsResolver:
    """Environment first, then mounted secret files."""
    return SecretsResolver([EnvSecretBackend(), FileSecretBackend(secrets_dir)])


__all__ = [
    "MissingSecretError",
    "SecretValue",
    "SecretBackend",
    "EnvSecretBackend",
    "FileSecretBackend",
    "DictSecretBackend",
    "CredentialStore",
    "SecretsResolver",
    "default_resolver",
]
