import logging
import os
from typing import Dict, Mapping, Optional, Protocol

from passlib.context import CryptContext

from sqlgate.core.config import ApiKeyEntry
from sqlgate.core.exceptions import ConfigurationException
from sqlgate.core.schemas import Actor

# -----------------------------------------------------------------------------
# SECRETS MODULE - Connection string and API key stores
# Purpose: Resolve the target connection string and verify API keys through
# explicit stores opened and closed with the application lifespan
# Why: No process-wide mutable key map; state lives on the store instance
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

CONNECTION_STRING_SECRET = "SQLGATE_CONNECTION_STRING"

# Hash mechanism for API keys
key_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_api_key(api_key: str) -> str:
    return key_context.hash(api_key)


def verify_api_key(plain_key: str, hashed_key: str) -> bool:
    return key_context.verify(plain_key, hashed_key)


class SecretStore(Protocol):
    def open(self) -> None: ...

    def get_secret(self, name: str) -> str: ...

    def close(self) -> None: ...


class EnvironmentSecretStore:
    """Secrets read from the process environment, snapshotted on open()."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None, fallbacks: Optional[Mapping[str, str]] = None):
        self._environ = environ if environ is not None else os.environ
        self._fallbacks = dict(fallbacks or {})
        self._values: Optional[Dict[str, str]] = None

    @property
    def is_open(self) -> bool:
        return self._values is not None

    def open(self) -> None:
        self._values = {**self._fallbacks, **dict(self._environ)}
        logger.info("Environment secret store opened")

    def get_secret(self, name: str) -> str:
        if self._values is None:
            raise ConfigurationException("secret_store", "Secret store used before open()")
        value = self._values.get(name)
        if not value:
            raise ConfigurationException(name, f"Secret {name} is not set")
        return value

    def close(self) -> None:
        self._values = None
        logger.info("Environment secret store closed")


class ApiKeyStore:
    """Hashed API keys keyed by key name. Plain keys are never stored."""

    def __init__(self):
        self._entries: Optional[Dict[str, ApiKeyEntry]] = None

    @property
    def is_open(self) -> bool:
        return self._entries is not None

    def open(self, entries: Mapping[str, ApiKeyEntry]) -> None:
        self._entries = dict(entries)
        logger.info(f"API key store opened with {len(self._entries)} key(s)")

    def close(self) -> None:
        self._entries = None

    def authenticate(self, key_name: str, api_key: str) -> Optional[Actor]:
        """Return the key's actor, or None when the name or key does not match."""
        if self._entries is None:
            raise ConfigurationException("api_keys", "API key store used before open()")

        entry = self._entries.get(key_name)
        if entry is None:
            # constant-time miss
            key_context.dummy_verify()
            return None
        if not verify_api_key(api_key, entry.key_hash):
            return None
        return Actor(user_id=entry.user_id, display_name=entry.display_name, roles=list(entry.roles))
