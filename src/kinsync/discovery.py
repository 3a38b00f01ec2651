"""Parent discovery: link a person's known local parents to a provider's IDs.

For a person already linked to a provider, the provider's parent references
are matched to the local parents by role. Matches scoring at or above
``auto_link_threshold`` are registered as provider identities; weaker ones
are returned as candidates for manual confirmation.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

import structlog

from .auth import SessionGuard
from .config import SyncConfig
from .errors import FATAL_PROVIDER_ERRORS, ConflictError, describe_failure
from .models import ParentRole, Provider
from .net import ProviderGuards
from .reconcile import names_match, score_candidate

if TYPE_CHECKING:
    from .browser import PagePool
    from .identity import IdentityResolver
    from .scrapers.registry import ScraperRegistry

logger = structlog.get_logger(__name__)

ALREADY_LINKED = "already_linked"
NOT_FOUND_ON_PROVIDER = "not_found_on_provider"
BELOW_THRESHOLD = "below_threshold"
CONFLICT = "conflict"


@dataclass
class ParentCandidate:
    parent_id: str
    role: ParentRole
    local_name: str
    external_id: str
    provider_name: str | None
    url: str
    confidence: float
    name_match: bool


@dataclass
class SkippedParent:
    parent_id: str
    role: ParentRole
    reason: str


@dataclass
class DiscoveryResult:
    person_id: str
    provider: Provider
    discovered: list[ParentCandidate] = field(default_factory=list)
    candidates: list[ParentCandidate] = field(default_factory=list)
    skipped: list[SkippedParent] = field(default_factory=list)
    error: str | None = None
    # The provider lookup itself failed, as opposed to nothing to look up
    failed: bool = False


@dataclass
class AncestorDiscoveryResult:
    provider: Provider
    persons_visited: int = 0
    generations_traversed: int = 0
    total_discovered: int = 0
    total_skipped: int = 0
    total_errors: int = 0
    halted: bool = False
    cancelled: bool = False
    results: list[DiscoveryResult] = field(default_factory=list)


class ParentDiscovery:
    def __init__(
        self,
        resolver: IdentityResolver,
        scrapers: ScraperRegistry,
        pool: PagePool,
        *,
        config: SyncConfig | None = None,
        guards: ProviderGuards | None = None,
        session: SessionGuard | None = None,
        cancel_check: Callable[[], bool] | None = None,
    ) -> None:
        self.resolver = resolver
        self.store = resolver.store
        self.scrapers = scrapers
        self.pool = pool
        self.config = config or SyncConfig()
        self.guards = guards or ProviderGuards(self.config)
        self.session = session or SessionGuard(pool=pool)
        self.cancel_check = cancel_check

    def _cancelled(self) -> bool:
        return self.cancel_check is not None and self.cancel_check()

    def needs_discovery(self, person_id: str, provider: Provider | str) -> bool:
        """True when some local parent has no identity on ``provider`` yet."""
        provider = Provider(provider)
        return any(
            self.store.identity_for_person(edge.parent_id, provider) is None
            for edge in self.store.parents_of(person_id)
        )

    async def discover_parents(self, person_id: str, provider: Provider | str) -> DiscoveryResult:
        """Match one person's local parents against the provider's parent references.

        Any other provider failure is reported through ``result.failed``.

        Raises:
            AuthenticationError: the provider session could not be restored.
            PermanentProviderError: the provider rejected a request outright.
        """
        provider = Provider(provider)
        canonical_id = self.resolver.resolve_id(person_id) or person_id
        result = DiscoveryResult(person_id=canonical_id, provider=provider)

        identity = self.store.identity_for_person(canonical_id, provider)
        if identity is None:
            result.error = f"{canonical_id} has no {provider.value} identity"
            return result

        pending = []
        for edge in self.store.parents_of(canonical_id):
            if self.store.identity_for_person(edge.parent_id, provider) is not None:
                result.skipped.append(SkippedParent(edge.parent_id, edge.parent_role, ALREADY_LINKED))
                continue
            parent = self.store.get_person(edge.parent_id)
            pending.append((edge, parent.display_name if parent else ""))
        if not pending:
            return result

        scraper = self.scrapers.get(provider)
        retry = self.guards.retry_policy()
        async with self.pool.acquire() as page:
            try:
                await retry.call(self.session.ensure_authenticated, scraper, page)
                await self.guards.limiter(provider).acquire()
                refs = await retry.call(scraper.extract_parent_ids, page, identity.external_id)
            except FATAL_PROVIDER_ERRORS:
                raise
            except Exception as e:
                result.failed = True
                result.error = describe_failure(e)
                logger.warning(
                    "discovery.lookup_failed",
                    person_id=canonical_id,
                    provider=provider.value,
                    error=result.error,
                )
                return result
        logger.info(
            "discovery.parents_scraped",
            person_id=canonical_id,
            provider=provider.value,
            father=refs.father_id,
            mother=refs.mother_id,
            role_source=refs.role_source,
        )

        found = refs.by_role
        for edge, local_name in pending:
            external_id, provider_name = found.get(edge.parent_role, (None, None))
            if not external_id:
                result.skipped.append(SkippedParent(edge.parent_id, edge.parent_role, NOT_FOUND_ON_PROVIDER))
                continue

            candidate = ParentCandidate(
                parent_id=edge.parent_id,
                role=edge.parent_role,
                local_name=local_name,
                external_id=external_id,
                provider_name=provider_name,
                url=scraper.get_person_url(external_id),
                confidence=score_candidate(local_name, provider_name, role_match=refs.role_source != "order"),
                name_match=names_match(local_name, provider_name),
            )
            if candidate.confidence < self.config.auto_link_threshold:
                result.candidates.append(candidate)
                result.skipped.append(SkippedParent(edge.parent_id, edge.parent_role, BELOW_THRESHOLD))
                continue
            try:
                self.link(provider, candidate)
            except ConflictError as e:
                logger.warning("discovery.conflict", parent_id=edge.parent_id, error=str(e))
                result.skipped.append(SkippedParent(edge.parent_id, edge.parent_role, CONFLICT))
                continue
            result.discovered.append(candidate)
        return result

    def link(self, provider: Provider | str, candidate: ParentCandidate) -> None:
        """Register ``candidate`` as its local parent's identity on ``provider``.

        Also the path for confirming a below-threshold candidate by hand.
        """
        provider = Provider(provider)
        self.resolver.register_external_id(
            candidate.parent_id,
            provider,
            candidate.external_id,
            {"url": candidate.url, "confidence": candidate.confidence},
        )
        logger.info(
            "discovery.linked",
            parent_id=candidate.parent_id,
            role=candidate.role.value,
            provider=provider.value,
            external_id=candidate.external_id,
            confidence=candidate.confidence,
        )

    async def discover_ancestors(
        self,
        person_id: str,
        provider: Provider | str,
        max_generations: int | None = None,
    ) -> AncestorDiscoveryResult:
        """Run :meth:`discover_parents` upward through the local tree.

        Only parents that end up linked to the provider are visited next. A
        failed lookup is counted and the walk moves on; it halts once
        ``max_consecutive_failures`` lookups fail in a row.
        """
        provider = Provider(provider)
        if max_generations is None:
            max_generations = self.config.max_generations
        totals = AncestorDiscoveryResult(provider=provider)
        start = self.resolver.resolve_id(person_id) or person_id
        queue: deque[tuple[str, int]] = deque([(start, 0)])
        visited: set[str] = set()
        breaker = self.guards.breaker(provider)
        breaker.reset()
        log = logger.bind(provider=provider.value, start=start)

        while queue:
            if self._cancelled():
                totals.cancelled = True
                log.info("discovery.cancel_observed", visited=totals.persons_visited)
                break
            current, generation = queue.popleft()
            if current in visited or generation > max_generations:
                continue
            visited.add(current)
            totals.persons_visited += 1
            totals.generations_traversed = max(totals.generations_traversed, generation)

            result = await self.discover_parents(current, provider)
            totals.results.append(result)
            totals.total_discovered += len(result.discovered)
            totals.total_skipped += len(result.skipped)
            if result.error:
                totals.total_errors += 1
            if not result.failed:
                breaker.record_success()
            elif breaker.record_failure():
                totals.halted = True
                log.error("discovery.halted", consecutive_failures=breaker.consecutive_failures)
                break

            for edge in self.store.parents_of(current):
                if edge.parent_id in visited:
                    continue
                if self.store.identity_for_person(edge.parent_id, provider) is not None:
                    queue.append((edge.parent_id, generation + 1))

        log.info(
            "discovery.ancestors_done",
            visited=totals.persons_visited,
            discovered=totals.total_discovered,
            errors=totals.total_errors,
        )
        return totals
