"""Provider record-hint acceptance, one hint per unit of work."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncIterator, Callable

import structlog

from .auth import SessionGuard
from .config import SyncConfig
from .errors import FATAL_PROVIDER_ERRORS, describe_failure
from .net import ProviderGuards

if TYPE_CHECKING:
    from .browser import PagePool
    from .scrapers.base import ProviderScraper

logger = structlog.get_logger(__name__)

# Hints for one person stop after this many failures in a row
MAX_CONSECUTIVE_HINT_FAILURES = 3


@dataclass
class HintStep:
    """``kind`` is ``"found"`` once per person, then ``"accepted"`` or ``"failed"`` per hint."""
    kind: str
    person_id: str
    external_id: str
    index: int = 0
    count: int = 0
    error: str | None = None


class HintProcessor:
    """Accepts a person's actionable hints on a hint-capable provider.

    Hints shift after every save, so the first actionable hint is always
    the one taken; the scraper reloads the list between hints.
    """

    def __init__(
        self,
        scraper: ProviderScraper,
        pool: PagePool,
        *,
        config: SyncConfig | None = None,
        guards: ProviderGuards | None = None,
        session: SessionGuard | None = None,
        cancel_check: Callable[[], bool] | None = None,
        max_consecutive_failures: int = MAX_CONSECUTIVE_HINT_FAILURES,
    ) -> None:
        if not scraper.supports_hints:
            raise ValueError(f"{scraper.display_name} does not support hints")
        self.scraper = scraper
        self.pool = pool
        self.config = config or SyncConfig()
        self.guards = guards or ProviderGuards(self.config)
        self.session = session or SessionGuard()
        self.cancel_check = cancel_check
        self.max_consecutive_failures = max_consecutive_failures
        self.cancelled = False

    def _cancelled(self) -> bool:
        if self.cancel_check is not None and self.cancel_check():
            self.cancelled = True
        return self.cancelled

    async def process_person(self, person_id: str, external_id: str) -> AsyncIterator[HintStep]:
        """Yield a ``found`` step, then one step per attempted hint.

        Raises:
            AuthenticationError: the provider session could not be restored.
            PermanentProviderError: the provider rejected a request outright.
        """
        provider = self.scraper.provider
        retry = self.guards.retry_policy()
        limiter = self.guards.limiter(provider)
        log = logger.bind(provider=provider.value, person_id=person_id, external_id=external_id)

        async with self.pool.acquire() as page:
            await retry.call(self.session.ensure_authenticated, self.scraper, page)
            count = await retry.call(self.scraper.count_hints, page, external_id)
            log.info("hints.found", count=count)
            yield HintStep("found", person_id, external_id, count=count)

            consecutive_failures = 0
            for index in range(count):
                if self._cancelled():
                    log.info("hints.cancel_observed", index=index)
                    return
                try:
                    await retry.call(self.session.ensure_authenticated, self.scraper, page)
                    await limiter.acquire()
                    await retry.call(self.scraper.accept_next_hint, page, external_id)
                except FATAL_PROVIDER_ERRORS:
                    raise
                except Exception as exc:
                    error = describe_failure(exc)
                    consecutive_failures += 1
                    log.warning("hints.failed", index=index, error=error)
                    yield HintStep("failed", person_id, external_id, index, count, error)
                    if consecutive_failures >= self.max_consecutive_failures:
                        log.warning("hints.stopped", consecutive_failures=consecutive_failures)
                        return
                    continue

                consecutive_failures = 0
                log.info("hints.accepted", index=index)
                yield HintStep("accepted", person_id, external_id, index, count)
