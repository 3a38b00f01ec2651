"""Breadth-first ancestor crawl: ordering, limits, failures and persistence."""

from __future__ import annotations

import httpx
import pytest

from kinsync.crawler import AncestorCrawler, crawl_ancestors
from kinsync.errors import AuthenticationError, ExtractionError, NetworkTransientError, PermanentProviderError
from kinsync.models import ParentRole, Provider
from tests.fakes import FakeScraper, family_tree, make_record


@pytest.fixture
def make_crawler(pool, fast_config, guards, resolver):
    def build(scraper, **kwargs) -> AncestorCrawler:
        return AncestorCrawler(scraper, pool, config=fast_config, guards=guards, resolver=resolver, **kwargs)

    return build


async def run(crawler: AncestorCrawler, root: str, max_generations: int | None = None) -> list:
    return [step async for step in crawler.crawl(root, max_generations)]


# ---------------------- Traversal ----------------------


@pytest.mark.asyncio
async def test_breadth_first_father_before_mother(make_crawler):
    scraper = FakeScraper(family_tree())

    steps = await run(make_crawler(scraper), "R", max_generations=2)

    assert scraper.calls == ["R", "F", "M", "FF", "FM", "MF", "MM"]
    assert [s.generation for s in steps] == [0, 1, 1, 2, 2, 2, 2]
    assert all(s.ok for s in steps)


@pytest.mark.asyncio
async def test_generation_limit(make_crawler):
    scraper = FakeScraper(family_tree())
    crawler = make_crawler(scraper)

    await run(crawler, "R", max_generations=1)

    assert scraper.calls == ["R", "F", "M"]
    assert crawler.discovered == 3


@pytest.mark.asyncio
async def test_generation_zero_fetches_only_root(make_crawler):
    scraper = FakeScraper(family_tree())

    steps = await run(make_crawler(scraper), "R", max_generations=0)

    assert [s.external_id for s in steps] == ["R"]


@pytest.mark.asyncio
async def test_default_generation_limit_from_config(pool, guards, resolver, fast_config):
    scraper = FakeScraper(family_tree())
    crawler = AncestorCrawler(
        scraper, pool, config=fast_config.replace(max_generations=1), guards=guards, resolver=resolver
    )

    await run(crawler, "R")

    assert scraper.calls == ["R", "F", "M"]


@pytest.mark.asyncio
async def test_cycles_are_not_refetched(make_crawler, store, resolver):
    people = {
        "R": make_record("R", "John Smith", father="F", father_name="William Smith"),
        "F": make_record("F", "William Smith", father="R", mother="F", father_name="John Smith"),
    }
    scraper = FakeScraper(people)

    steps = await run(make_crawler(scraper), "R", max_generations=10)

    assert scraper.calls == ["R", "F"]
    john = resolver.resolve_id("R")
    william = resolver.resolve_id("F")
    assert [e.parent_id for e in store.parents_of(john)] == [william]
    # F -> R is recorded, F -> F (self) is not
    assert [e.parent_id for e in store.parents_of(william)] == [john]
    assert len(steps) == 2


@pytest.mark.asyncio
async def test_shared_ancestor_fetched_once(make_crawler):
    people = {
        "R": make_record("R", "Child", father="F", mother="M"),
        "F": make_record("F", "Father", father="G"),
        "M": make_record("M", "Mother", father="G"),
        "G": make_record("G", "Grandfather"),
    }
    scraper = FakeScraper(people)

    await run(make_crawler(scraper), "R", max_generations=5)

    assert scraper.calls.count("G") == 1


@pytest.mark.asyncio
async def test_crawler_runs_only_once(make_crawler):
    crawler = make_crawler(FakeScraper(family_tree()))
    await run(crawler, "R", max_generations=0)

    with pytest.raises(RuntimeError):
        await run(crawler, "R")


# ---------------------- Persistence ----------------------


@pytest.mark.asyncio
async def test_persons_snapshots_and_edges_are_stored(make_crawler, store, resolver):
    scraper = FakeScraper(family_tree())
    crawler = make_crawler(scraper)

    steps = await run(crawler, "R", max_generations=1)

    john = resolver.resolve_id("R", Provider.FAMILYSEARCH)
    assert steps[0].person_id == john
    assert store.get_person(john).display_name == "John Smith"
    assert store.latest_snapshots(john)[Provider.FAMILYSEARCH].name == "John Smith"

    edges = {e.parent_role: e for e in store.parents_of(john)}
    assert edges[ParentRole.FATHER].parent_id == resolver.resolve_id("F")
    assert edges[ParentRole.MOTHER].parent_id == resolver.resolve_id("M")
    assert edges[ParentRole.FATHER].confidence == 1.0
    assert edges[ParentRole.FATHER].source == "familysearch"
    assert crawler.stats.edges == 2


@pytest.mark.asyncio
async def test_edge_confidence_reflects_name_and_role_source(make_crawler, store, resolver):
    people = {
        "R": make_record("R", "John Smith", father="F", mother="M", father_name="William Smith", mother_name="Mary Jones"),
        "F": make_record("F", "William Smith"),
        "M": make_record("M", "Mary Smith"),
        "O": make_record("O", "Orphan", father="P", father_name="Pat Doe", parent_role_source="order"),
        "P": make_record("P", "Pat Doe"),
    }

    await run(make_crawler(FakeScraper(people)), "R", max_generations=1)
    await run(make_crawler(FakeScraper(people)), "O", max_generations=1)

    john = {e.parent_role: e.confidence for e in store.parents_of(resolver.resolve_id("R"))}
    assert john == {ParentRole.FATHER: 1.0, ParentRole.MOTHER: 0.7}
    orphan = store.parents_of(resolver.resolve_id("O"))
    assert orphan[0].confidence == 0.3


@pytest.mark.asyncio
async def test_recrawl_reuses_identities(make_crawler, store, resolver):
    first = await run(make_crawler(FakeScraper(family_tree())), "R", max_generations=1)
    crawler = make_crawler(FakeScraper(family_tree()))
    second = await run(crawler, "R", max_generations=1)

    assert [s.person_id for s in first] == [s.person_id for s in second]
    assert crawler.stats.edges == 0
    assert len(store.snapshot_history(first[0].person_id, Provider.FAMILYSEARCH)) == 2


@pytest.mark.asyncio
async def test_provider_preferred_id_links_pending_edge(make_crawler, store, resolver):
    people = {
        "R": make_record("R", "John Smith", father="1001", father_name="William Smith"),
        "1001": make_record("Smith-1001", "William Smith"),
    }

    await run(make_crawler(FakeScraper(people)), "R", max_generations=1)

    william = resolver.resolve_id("Smith-1001")
    assert william is not None
    assert store.parents_of(resolver.resolve_id("R"))[0].parent_id == william


# ---------------------- Failures ----------------------


@pytest.mark.asyncio
async def test_extraction_failure_is_recorded_and_crawl_continues(make_crawler):
    people = family_tree()
    people["F"] = ExtractionError("F", "no name found")
    scraper = FakeScraper(people)
    crawler = make_crawler(scraper)

    steps = await run(crawler, "R", max_generations=2)

    assert scraper.calls == ["R", "F", "M", "MF", "MM"]
    failed = [s for s in steps if not s.ok]
    assert [s.external_id for s in failed] == ["F"]
    assert "no name found" in failed[0].error
    assert crawler.stats.failures == {"F": "F: no name found"}
    assert not crawler.stats.halted


@pytest.mark.asyncio
async def test_third_consecutive_failure_halts(make_crawler, guards):
    people = family_tree()
    for key in ("FF", "FM", "MF"):
        people[key] = ExtractionError(key, "layout changed")
    scraper = FakeScraper(people)
    crawler = make_crawler(scraper)

    steps = await run(crawler, "R", max_generations=2)

    assert scraper.calls == ["R", "F", "M", "FF", "FM", "MF"]
    assert len(steps) == 6
    assert crawler.stats.halted
    assert guards.breaker(Provider.FAMILYSEARCH).is_open


@pytest.mark.asyncio
async def test_success_resets_failure_streak(make_crawler):
    people = family_tree()
    for key in ("FF", "MF", "MM"):
        people[key] = ExtractionError(key, "layout changed")
    crawler = make_crawler(FakeScraper(people))

    steps = await run(crawler, "R", max_generations=2)

    assert len(steps) == 7
    assert crawler.stats.failed == 3
    assert not crawler.stats.halted


@pytest.mark.asyncio
async def test_transient_error_is_retried(make_crawler):
    scraper = FakeScraper(family_tree())
    flaked: set[str] = set()

    def flaky(external_id: str) -> None:
        if external_id == "F" and external_id not in flaked:
            flaked.add(external_id)
            raise httpx.ConnectTimeout("connect timed out")

    scraper.on_fetch = flaky

    steps = await run(make_crawler(scraper), "R", max_generations=1)

    assert scraper.calls.count("F") == 2
    assert all(s.ok for s in steps)


@pytest.mark.asyncio
async def test_exhausted_retries_become_a_failed_step(make_crawler, fast_config):
    people = family_tree()
    people["F"] = NetworkTransientError("net::ERR_TIMED_OUT")
    scraper = FakeScraper(people)

    steps = await run(make_crawler(scraper), "R", max_generations=1)

    assert scraper.calls.count("F") == fast_config.retry_attempts
    assert [s.ok for s in steps] == [True, False, True]


@pytest.mark.asyncio
async def test_unexpected_page_error_fails_only_its_unit(make_crawler):
    people = family_tree()
    people["F"] = RuntimeError("Execution context was destroyed, most likely because of a navigation")
    scraper = FakeScraper(people)
    crawler = make_crawler(scraper)

    steps = await run(crawler, "R", max_generations=2)

    assert scraper.calls == ["R", "F", "M", "MF", "MM"]
    [failed] = [s for s in steps if not s.ok]
    assert failed.error.startswith("RuntimeError: Execution context was destroyed")
    assert crawler.stats.failed == 1


class SessionCheckScraper(FakeScraper):
    """Login check raises a transport error on the listed check numbers."""

    def __init__(self, people, failing_checks: set[int]) -> None:
        super().__init__(people)
        self.failing_checks = failing_checks
        self.checks = 0

    async def check_login_status(self, page) -> bool:
        self.checks += 1
        if self.checks in self.failing_checks:
            raise httpx.ConnectError("connection reset by peer")
        return True


@pytest.mark.asyncio
async def test_exhausted_session_check_becomes_a_failed_step(make_crawler, fast_config):
    # R passes check 1; every attempt for F fails; M passes
    failing = set(range(2, 2 + fast_config.retry_attempts))
    scraper = SessionCheckScraper(family_tree(), failing)

    steps = await run(make_crawler(scraper), "R", max_generations=1)

    assert [(s.external_id, s.ok) for s in steps] == [("R", True), ("F", False), ("M", True)]
    assert scraper.calls == ["R", "M"]


@pytest.mark.asyncio
async def test_permanent_provider_error_is_fatal(make_crawler):
    people = family_tree()
    people["F"] = PermanentProviderError("HTTP 403 from https://fake.example/person/F", 403)

    with pytest.raises(PermanentProviderError):
        await run(make_crawler(FakeScraper(people)), "R", max_generations=1)


@pytest.mark.asyncio
async def test_authentication_error_is_fatal(make_crawler):
    scraper = FakeScraper(family_tree(), logged_in=False)

    with pytest.raises(AuthenticationError):
        await run(make_crawler(scraper), "R")
    assert scraper.calls == []


@pytest.mark.asyncio
async def test_session_expiring_mid_crawl_is_fatal(make_crawler):
    people = family_tree()
    people["M"] = AuthenticationError("familysearch")
    scraper = FakeScraper(people)
    seen = []

    with pytest.raises(AuthenticationError):
        async for step in make_crawler(scraper).crawl("R", 2):
            seen.append(step.external_id)
    assert seen == ["R", "F"]


# ---------------------- Cancellation ----------------------


@pytest.mark.asyncio
async def test_cancel_is_observed_between_units(make_crawler):
    scraper = FakeScraper(family_tree())
    crawler = make_crawler(scraper, cancel_check=lambda: len(scraper.calls) >= 2)

    steps = await run(crawler, "R", max_generations=2)

    assert [s.external_id for s in steps] == ["R", "F"]
    assert crawler.stats.cancelled
    # R and F fetched, M, FF and FM still queued
    assert crawler.discovered == 5


@pytest.mark.asyncio
async def test_crawl_ancestors_wrapper(pool, fast_config, guards, resolver):
    scraper = FakeScraper(family_tree())

    steps = [
        s
        async for s in crawl_ancestors(
            scraper, pool, "R", 1, config=fast_config, guards=guards, resolver=resolver
        )
    ]

    assert len(steps) == 3
    assert pool.checked_out == 0
