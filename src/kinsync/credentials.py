"""Credential lookup for provider auto-login.

Storage and encryption live elsewhere; kinsync only needs decrypted
username/password pairs per provider when a session has expired.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol, runtime_checkable

from .models import Provider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCredentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"ProviderCredentials(username={self.username!r}, password='***')"


@runtime_checkable
class CredentialStore(Protocol):
    def get_credentials(self, provider: Provider) -> ProviderCredentials | None:
        """Return credentials for ``provider`` or None when auto-login is not configured."""
        ...


def _env_prefix(provider: Provider) -> str:
    return "KINSYNC_" + provider.name


class EnvCredentialStore:
    """Credentials with priority: explicit mapping > env > JSON config file.

    Environment variables are ``KINSYNC_<PROVIDER>_USERNAME`` and
    ``KINSYNC_<PROVIDER>_PASSWORD`` (e.g. ``KINSYNC_ANCESTRY_USERNAME``). The
    config file maps provider values to ``{"username": ..., "password": ...}``.
    """

    def __init__(
        self,
        explicit: Mapping[Provider, ProviderCredentials] | None = None,
        config_file: Path | None = None,
    ) -> None:
        self.explicit = dict(explicit or {})
        self.config_file = config_file

    def get_credentials(self, provider: Provider) -> ProviderCredentials | None:
        provider = Provider(provider)

        # Priority 1: explicit
        if provider in self.explicit:
            return self.explicit[provider]

        # Priority 2: environment
        prefix = _env_prefix(provider)
        username = os.getenv(f"{prefix}_USERNAME")
        password = os.getenv(f"{prefix}_PASSWORD")
        if username and password:
            return ProviderCredentials(username=username, password=password)

        # Priority 3: config file
        if self.config_file and self.config_file.exists():
            try:
                data = json.loads(self.config_file.read_text())
            except json.JSONDecodeError as e:
                logger.warning("Ignoring unreadable credentials file %s: %s", self.config_file, e)
                return None
            entry = data.get(provider.value) or {}
            if entry.get("username") and entry.get("password"):
                return ProviderCredentials(username=entry["username"], password=entry["password"])

        return None
