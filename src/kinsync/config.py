"""Runtime configuration for crawls, rate limits and reconciliation.

Values come from the environment (``KINSYNC_*``); :func:`load_config`
additionally reads a ``.env`` file and an optional YAML overlay::

    max_generations: 6
    providers:
      ancestry:
        min_delay_ms: 2000
        max_delay_ms: 4000
"""
from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv

from .models import Provider


def _f(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


def _i(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default


@dataclass(frozen=True)
class ProviderDelay:
    """Uniform delay window applied between consecutive provider fetches."""

    min_delay_ms: int
    max_delay_ms: int

    def __post_init__(self) -> None:
        if self.min_delay_ms < 0 or self.max_delay_ms < self.min_delay_ms:
            raise ValueError(
                f"invalid delay window [{self.min_delay_ms}, {self.max_delay_ms}]"
            )


DEFAULT_PROVIDER_DELAYS: dict[Provider, ProviderDelay] = {
    Provider.FAMILYSEARCH: ProviderDelay(500, 1500),
    Provider.ANCESTRY: ProviderDelay(1000, 3000),
    Provider.TWENTYTHREEANDME: ProviderDelay(1000, 3000),
    Provider.WIKITREE: ProviderDelay(500, 1500),
}


@dataclass(frozen=True)
class SyncConfig:
    db_path: str = "data/kinsync.db"

    # Crawl limits
    max_generations: int = 10
    max_consecutive_failures: int = 3

    # Transient-error retry (attempts include the first call)
    retry_attempts: int = 3
    retry_initial_wait: float = 1.0
    retry_max_wait: float = 10.0

    # Parent candidates scoring at or above this are linked without review
    auto_link_threshold: float = 0.9

    # Bounded progress channel size
    progress_buffer: int = 64

    # Browser waits
    page_timeout_ms: int = 30000

    provider_delays: Mapping[Provider, ProviderDelay] = field(
        default_factory=lambda: dict(DEFAULT_PROVIDER_DELAYS)
    )

    @classmethod
    def from_env(cls) -> SyncConfig:
        return cls(
            db_path=os.getenv("KINSYNC_DB_PATH", cls.db_path),
            max_generations=_i("KINSYNC_MAX_GENERATIONS", cls.max_generations),
            max_consecutive_failures=_i(
                "KINSYNC_MAX_CONSECUTIVE_FAILURES", cls.max_consecutive_failures
            ),
            retry_attempts=_i("KINSYNC_RETRY_ATTEMPTS", cls.retry_attempts),
            retry_initial_wait=_f("KINSYNC_RETRY_INITIAL_WAIT", cls.retry_initial_wait),
            retry_max_wait=_f("KINSYNC_RETRY_MAX_WAIT", cls.retry_max_wait),
            auto_link_threshold=_f("KINSYNC_AUTO_LINK_THRESHOLD", cls.auto_link_threshold),
            progress_buffer=_i("KINSYNC_PROGRESS_BUFFER", cls.progress_buffer),
            page_timeout_ms=_i("KINSYNC_PAGE_TIMEOUT_MS", cls.page_timeout_ms),
        )

    def delay_for(self, provider: Provider | str) -> ProviderDelay:
        return self.provider_delays.get(Provider(provider), ProviderDelay(0, 0))

    def replace(self, **changes: Any) -> SyncConfig:
        return dataclasses.replace(self, **changes)


def _parse_providers(raw: Mapping[str, Any]) -> dict[Provider, ProviderDelay]:
    delays = dict(DEFAULT_PROVIDER_DELAYS)
    for key, value in raw.items():
        provider = Provider(key)
        base = delays.get(provider, ProviderDelay(0, 0))
        delays[provider] = ProviderDelay(
            min_delay_ms=int(value.get("min_delay_ms", base.min_delay_ms)),
            max_delay_ms=int(value.get("max_delay_ms", base.max_delay_ms)),
        )
    return delays


def load_config(path: str | Path | None = None) -> SyncConfig:
    """Build a :class:`SyncConfig` from ``.env``, the environment and a YAML file.

    YAML keys override environment values; unknown keys raise ``TypeError``.
    """
    load_dotenv()
    config = SyncConfig.from_env()
    if path is None:
        return config

    data = yaml.safe_load(Path(path).read_text()) or {}
    providers = data.pop("providers", None)
    if providers:
        data["provider_delays"] = _parse_providers(providers)
    return config.replace(**data)
