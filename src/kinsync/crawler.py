"""Breadth-first ancestor crawl against one provider.

Starting from a root person the crawl walks parents one generation at a
time (father before mother), pacing fetches with the provider's rate
limiter. Each fetched person is canonicalized, its snapshot stored, and the
child -> parent edges recorded once both ends have canonical IDs.

Usage:
    crawler = AncestorCrawler(scraper, pool, resolver=resolver)
    async for step in crawler.crawl("KWQ7-ABC", max_generations=5):
        ...
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Callable

import structlog

from .auth import SessionGuard
from .config import SyncConfig
from .errors import FATAL_PROVIDER_ERRORS, describe_failure
from .models import ParentEdge, ParentRole, ScrapedRecord
from .net import ProviderGuards
from .reconcile import score_candidate

if TYPE_CHECKING:
    from .browser import PagePool
    from .identity import IdentityResolver
    from .scrapers.base import ProviderScraper

logger = structlog.get_logger(__name__)


@dataclass
class CrawlStep:
    """Outcome of one unit of crawl work: a scraped person or a recorded failure."""
    external_id: str
    generation: int
    record: ScrapedRecord | None = None
    person_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.record is not None


@dataclass
class _PendingEdge:
    child_id: str
    role: ParentRole
    expected_name: str | None
    role_tagged: bool


@dataclass
class CrawlStats:
    scraped: int = 0
    failed: int = 0
    edges: int = 0
    halted: bool = False
    cancelled: bool = False
    failures: dict[str, str] = field(default_factory=dict)


class AncestorCrawler:
    def __init__(
        self,
        scraper: ProviderScraper,
        pool: PagePool,
        *,
        config: SyncConfig | None = None,
        guards: ProviderGuards | None = None,
        resolver: IdentityResolver | None = None,
        session: SessionGuard | None = None,
        cancel_check: Callable[[], bool] | None = None,
    ) -> None:
        self.scraper = scraper
        self.pool = pool
        self.config = config or SyncConfig()
        self.guards = guards or ProviderGuards(self.config)
        self.resolver = resolver
        self.session = session or SessionGuard()
        self.cancel_check = cancel_check
        self.stats = CrawlStats()
        self._queue: deque[tuple[str, int]] = deque()
        self._visited: set[str] = set()
        self._person_ids: dict[str, str] = {}
        self._names: dict[str, str] = {}
        self._pending: dict[str, list[_PendingEdge]] = {}
        self._started = False
        self._max_generations = 0

    @property
    def discovered(self) -> int:
        """Persons seen so far, fetched or still queued."""
        return len(self._visited) + len(self._queue)

    def _cancelled(self) -> bool:
        return self.cancel_check is not None and self.cancel_check()

    async def crawl(self, root_external_id: str, max_generations: int | None = None) -> AsyncIterator[CrawlStep]:
        """Yield one :class:`CrawlStep` per person, root first.

        The root is generation 0; persons beyond ``max_generations`` are not
        fetched. A crawler runs once; a second call raises RuntimeError.

        Raises:
            AuthenticationError: the session could not be (re)established.
            PermanentProviderError: the provider rejected a request outright.
        """
        if self._started:
            raise RuntimeError("AncestorCrawler.crawl() can only run once")
        self._started = True

        if max_generations is None:
            max_generations = self.config.max_generations
        provider = self.scraper.provider
        breaker = self.guards.breaker(provider)
        breaker.reset()
        self._max_generations = max_generations
        self._queue.append((root_external_id, 0))
        log = logger.bind(provider=provider.value, root=root_external_id)
        log.info("crawl.started", max_generations=max_generations)

        while self._queue:
            if self._cancelled():
                self.stats.cancelled = True
                log.info("crawl.cancel_observed", scraped=self.stats.scraped)
                return
            external_id, generation = self._queue.popleft()
            if external_id in self._visited or generation > max_generations:
                continue
            self._visited.add(external_id)

            step = await self._fetch(external_id, generation)
            if step.ok:
                breaker.record_success()
                self.stats.scraped += 1
                self._enqueue_parents(step)
                log.info("crawl.person_scraped", external_id=external_id, generation=generation)
            else:
                self.stats.failed += 1
                self.stats.failures[external_id] = step.error or ""
                opened = breaker.record_failure()
                log.warning("crawl.person_failed", external_id=external_id, error=step.error)
                if opened:
                    self.stats.halted = True

            yield step

            if self.stats.halted:
                log.error(
                    "crawl.halted",
                    consecutive_failures=breaker.consecutive_failures,
                    remaining=len(self._queue),
                )
                return

        log.info("crawl.finished", scraped=self.stats.scraped, failed=self.stats.failed)

    async def _fetch(self, external_id: str, generation: int) -> CrawlStep:
        provider = self.scraper.provider
        retry = self.guards.retry_policy()
        async with self.pool.acquire() as page:
            try:
                await retry.call(self.session.ensure_authenticated, self.scraper, page)
                await self.guards.limiter(provider).acquire()
                record = await retry.call(self.scraper.scrape_person_by_id, page, external_id)
            except FATAL_PROVIDER_ERRORS:
                raise
            except Exception as e:
                return CrawlStep(external_id=external_id, generation=generation, error=describe_failure(e))

        # Providers may answer with a preferred ID (e.g. WikiTree Name for a numeric Id)
        self._visited.add(record.external_id)
        person_id = self._canonicalize(record)
        if person_id is not None:
            self._person_ids[external_id] = person_id
            self._person_ids[record.external_id] = person_id
            self._names[person_id] = record.name
            self._link_pending(external_id, person_id, record)
            if record.external_id != external_id:
                self._link_pending(record.external_id, person_id, record)
        return CrawlStep(
            external_id=external_id,
            generation=generation,
            record=record,
            person_id=person_id,
        )

    def _canonicalize(self, record: ScrapedRecord) -> str | None:
        if self.resolver is None:
            return None
        attrs = record.baseline_attrs()
        attrs.pop("display_name")
        attrs["url"] = record.source_url
        person_id = self.resolver.get_or_create_canonical_id(
            record.provider, record.external_id, record.name, attrs
        )
        self.resolver.store.save_snapshot(person_id, record)
        return person_id

    def _enqueue_parents(self, step: CrawlStep) -> None:
        refs = step.record.parent_refs()
        tagged = refs.role_source != "order"
        for role, (parent_id, parent_name) in refs.by_role.items():
            if not parent_id:
                continue
            if step.person_id is not None:
                pending = _PendingEdge(step.person_id, role, parent_name, tagged)
                known = self._person_ids.get(parent_id)
                if known is not None:
                    self._add_edge(pending, known, self._names.get(known))
                else:
                    self._pending.setdefault(parent_id, []).append(pending)
            if parent_id not in self._visited and step.generation < self._max_generations:
                self._queue.append((parent_id, step.generation + 1))

    def _link_pending(self, external_id: str, person_id: str, record: ScrapedRecord) -> None:
        for pending in self._pending.pop(external_id, []):
            self._add_edge(pending, person_id, record.name)

    def _add_edge(self, pending: _PendingEdge, parent_id: str, parent_name: str | None) -> None:
        if pending.child_id == parent_id:
            return
        confidence = score_candidate(
            pending.expected_name,
            parent_name if parent_name is not None else pending.expected_name,
            role_match=pending.role_tagged,
        )
        edge = ParentEdge(
            child_id=pending.child_id,
            parent_id=parent_id,
            parent_role=pending.role,
            confidence=confidence,
            source=self.scraper.provider.value,
        )
        if self.resolver.store.add_parent_edge(edge):
            self.stats.edges += 1
            logger.debug(
                "crawl.edge_added",
                child_id=edge.child_id,
                parent_id=edge.parent_id,
                role=edge.parent_role.value,
                confidence=confidence,
            )


def crawl_ancestors(
    scraper: ProviderScraper,
    pool: PagePool,
    root_external_id: str,
    max_generations: int | None = None,
    **kwargs,
) -> AsyncIterator[CrawlStep]:
    """Convenience wrapper: build an :class:`AncestorCrawler` and start its crawl."""
    return AncestorCrawler(scraper, pool, **kwargs).crawl(root_external_id, max_generations)
