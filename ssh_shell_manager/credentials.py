"""Credential lookup for connections saved without an inline password.

Storage and encryption of secrets live outside this package; the manager only
needs ``load_secret(connection_id)``.
"""
import os
import re
from typing import Dict, Optional, Protocol


class SecretStore(Protocol):
    def load_secret(self, connection_id: str) -> str:
        """Return the plaintext secret or raise KeyError."""
        ...


class EnvSecretStore:
    """Read secrets from ``OVRD_<id>_PASSWORD`` environment variables.

    Characters that are not valid in a variable name are replaced with ``_``.
    """

    def __init__(self, prefix: str = "OVRD_"):
        self.prefix = prefix

    def variable_name(self, connection_id: str) -> str:
        safe_id = re.sub(r"[^A-Za-z0-9_]", "_", connection_id)
        return f"{self.prefix}{safe_id}_PASSWORD"

    def load_secret(self, connection_id: str) -> str:
        value = os.environ.get(self.variable_name(connection_id))
        if value is None:
            raise KeyError(connection_id)
        return value


class MemorySecretStore:
    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self._secrets = dict(secrets or {})

    def save_secret(self, connection_id: str, secret: str):
        self._secrets[connection_id] = secret

    def load_secret(self, connection_id: str) -> str:
        return self._secrets[connection_id]
