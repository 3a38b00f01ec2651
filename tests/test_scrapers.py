"""Offline tests for provider extraction: HTML fixtures, API payloads and tree state."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from kinsync.errors import AuthenticationError, ExtractionError, NetworkTransientError
from kinsync.models import Gender, ParentRole, Provider
from kinsync.scrapers import (
    AncestryScraper,
    FamilySearchScraper,
    ParentLink,
    ScraperRegistry,
    TwentyThreeAndMeScraper,
    WikiTreeScraper,
    assign_parent_roles,
    create_scraper,
)
from kinsync.scrapers.base import normalize_photo_url, parse_gender


def _page(url: str, html: str = "") -> MagicMock:
    page = MagicMock()
    page.url = url
    page.goto = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.content = AsyncMock(return_value=html)
    page.evaluate = AsyncMock()
    return page


# =============================================================================
# Parent role assignment
# =============================================================================


def test_tagged_roles_win_regardless_of_order():
    refs = assign_parent_roles(
        [
            ParentLink("M1", "Mary Jones", ParentRole.MOTHER),
            ParentLink("F1", "William Smith", ParentRole.FATHER),
        ]
    )

    assert (refs.father_id, refs.father_name) == ("F1", "William Smith")
    assert (refs.mother_id, refs.mother_name) == ("M1", "Mary Jones")
    assert refs.role_source == "tagged"


def test_untagged_links_fall_back_to_document_order():
    refs = assign_parent_roles([ParentLink("P1", "First"), ParentLink("P2", "Second")])

    assert refs.father_id == "P1"
    assert refs.mother_id == "P2"
    assert refs.role_source == "order"


def test_untagged_link_only_fills_the_open_slot():
    refs = assign_parent_roles([ParentLink("P1", "Unknown Parent"), ParentLink("M1", "Mary", ParentRole.MOTHER)])

    assert refs.mother_id == "M1"
    assert refs.father_id == "P1"
    assert refs.role_source == "order"


def test_duplicate_untagged_link_is_ignored():
    refs = assign_parent_roles([ParentLink("F1", "Bill", ParentRole.FATHER), ParentLink("F1", "Bill")])

    assert refs.father_id == "F1"
    assert refs.mother_id is None
    assert refs.role_source == "tagged"


@pytest.mark.parametrize(
    "text,expected",
    [("Male", Gender.MALE), ("Female", Gender.FEMALE), ("F", Gender.FEMALE), ("m", Gender.MALE), ("?", Gender.UNKNOWN)],
)
def test_parse_gender(text, expected):
    assert parse_gender(text) is expected


def test_placeholder_photos_are_dropped():
    assert normalize_photo_url("//cdn.example/portrait/abc.jpg") == "https://cdn.example/portrait/abc.jpg"
    assert normalize_photo_url("https://cdn.example/img/silhouette-male.png") is None
    assert normalize_photo_url("data:image/png;base64,AAAA") is None
    assert normalize_photo_url(None) is None


# =============================================================================
# FamilySearch
# =============================================================================

FAMILYSEARCH_PERSON = """
<html><body>
  <h1 data-testid="person-name">John   Smith</h1>
  <span data-testid="sex-value">Male</span>
  <div class="vital-birth">
    <span data-testid="birth-date">12 March 1850</span>
    <span data-testid="birth-place">Boston, Massachusetts</span>
  </div>
  <span data-testid="death-date">1910</span>
  <span data-testid="alternate-name">Johnny Smith</span>
  <span data-testid="occupation">Farmer</span>
  <span data-testid="occupation">Farmer</span>
  <div data-testid="person-portrait"><img src="//ident.familysearch.org/portrait/KWQ7-ABC.jpg"></div>
  <section data-testid="parents-section">
    <div data-testid="father-card"><a href="/tree/person/details/KWQ7-FAA">William Smith</a></div>
    <div data-testid="mother-card"><a href="/tree/person/details/KWQ7-MOM">Mary Jones</a></div>
  </section>
  <section data-testid="spouse-family"><a href="/tree/person/details/KWQ7-SPO">Ann Brown</a></section>
  <section data-testid="children-list">
    <a href="/tree/person/details/KWQ7-CH1">Child One</a>
    <a href="/tree/person/details/KWQ7-CH2">Child Two</a>
  </section>
</body></html>
"""

FAMILYSEARCH_UNTAGGED_PARENTS = """
<div data-testid="parents">
  <a href="/tree/person/details/KWQ7-P01">Parent One</a>
  <a href="/tree/person/details/KWQ7-P02">Parent Two</a>
</div>
"""


def test_familysearch_parse_person():
    record = FamilySearchScraper().parse_person(FAMILYSEARCH_PERSON, "KWQ7-ABC")

    assert record.provider is Provider.FAMILYSEARCH
    assert record.name == "John Smith"
    assert record.gender is Gender.MALE
    assert record.birth.date == "12 March 1850"
    assert record.birth.place == "Boston, Massachusetts"
    assert record.death.date == "1910"
    assert record.death.place is None
    assert record.alternate_names == ["Johnny Smith"]
    assert record.occupations == ["Farmer"]
    assert record.father_external_id == "KWQ7-FAA"
    assert record.father_name == "William Smith"
    assert record.mother_external_id == "KWQ7-MOM"
    assert record.parent_role_source == "tagged"
    assert record.spouse_external_ids == ["KWQ7-SPO"]
    assert record.children_count == 2
    assert record.photo_url == "https://ident.familysearch.org/portrait/KWQ7-ABC.jpg"
    assert record.source_url == "https://www.familysearch.org/tree/person/details/KWQ7-ABC"


def test_familysearch_untagged_parents_use_order():
    refs = FamilySearchScraper().parse_parents(FAMILYSEARCH_UNTAGGED_PARENTS)

    assert refs.father_id == "KWQ7-P01"
    assert refs.mother_id == "KWQ7-P02"
    assert refs.role_source == "order"


@pytest.mark.asyncio
async def test_familysearch_scrape_person_by_id():
    scraper = FamilySearchScraper()
    page = _page("https://www.familysearch.org/tree/person/details/KWQ7-ABC", FAMILYSEARCH_PERSON)

    record = await scraper.scrape_person_by_id(page, "KWQ7-ABC")

    assert record.name == "John Smith"
    page.goto.assert_awaited_once()
    assert page.goto.await_args.args[0] == "https://www.familysearch.org/tree/person/details/KWQ7-ABC"


@pytest.mark.asyncio
async def test_redirect_to_login_raises_authentication_error():
    scraper = FamilySearchScraper()
    page = _page("https://www.familysearch.org/auth/familysearch/login?returnUrl=x")

    with pytest.raises(AuthenticationError):
        await scraper.scrape_person_by_id(page, "KWQ7-ABC")


@pytest.mark.asyncio
async def test_page_without_name_raises_extraction_error():
    scraper = FamilySearchScraper()
    page = _page("https://www.familysearch.org/tree/person/details/KWQ7-ABC", "<html><body></body></html>")

    with pytest.raises(ExtractionError) as exc_info:
        await scraper.scrape_person_by_id(page, "KWQ7-ABC")
    assert exc_info.value.external_id == "KWQ7-ABC"


# =============================================================================
# Ancestry
# =============================================================================

ANCESTRY_PERSON = """
<html><body>
  <h1 class="userCardTitle">Mary Jones</h1>
  <div class="userCardEvents">
    <p><span class="userCardEvent">Birth</span><span class="userCardEventDetail">1855</span></p>
    <p><span class="userCardEvent">Death</span><span class="userCardEventDetail">Unknown</span></p>
  </div>
  <div role="tabpanel"><ul><li>Birth 1855 in Salem, Massachusetts</li></ul></div>
  <h2>Parents</h2>
  <div>
    <a href="/family-tree/person/tree/123/person/111/facts" data-relationship="father"><h4>Thomas Jones</h4></a>
    <div data-relationship="mother">
      <a href="/family-tree/person/tree/123/person/222/facts"><h4>Sarah Lee</h4></a>
    </div>
  </div>
</body></html>
"""

ANCESTRY_UNTAGGED_PARENTS = """
<h3>Parents and Siblings</h3>
<ul>
  <li><a href="/family-tree/person/tree/123/person/333/facts">First Parent</a></li>
  <li><a href="/family-tree/person/tree/123/person/444/facts">Second Parent</a></li>
</ul>
"""

ANCESTRY_TREES = """
<div class="treeCard">
  <a href="/family-tree/tree/123/family"><h3 class="treeName">Smith Family</h3></a>
  <span class="personCount">1,234 people</span>
</div>
<div class="treeCard"><a href="/somewhere-else">Not a tree</a></div>
"""


def test_ancestry_parse_person():
    record = AncestryScraper(tree_id="123").parse_person(ANCESTRY_PERSON, "999")

    assert record.name == "Mary Jones"
    assert record.birth.date == "1855"
    assert record.birth.place == "Salem, Massachusetts"
    assert record.death is None
    assert (record.father_external_id, record.father_name) == ("111", "Thomas Jones")
    assert (record.mother_external_id, record.mother_name) == ("222", "Sarah Lee")
    assert record.parent_role_source == "tagged"
    assert record.source_url == "https://www.ancestry.com/family-tree/person/tree/123/person/999/facts"


def test_ancestry_untagged_parents_use_order():
    refs = AncestryScraper(tree_id="123").parse_parents(ANCESTRY_UNTAGGED_PARENTS)

    assert refs.father_id == "333"
    assert refs.mother_id == "444"
    assert refs.role_source == "order"


def test_ancestry_page_without_parents_section():
    refs = AncestryScraper(tree_id="123").parse_parents("<h1>Nobody</h1>")
    assert refs.father_id is None and refs.mother_id is None


def test_ancestry_parse_trees():
    trees = AncestryScraper().parse_trees(ANCESTRY_TREES)

    assert len(trees) == 1
    assert trees[0].tree_id == "123"
    assert trees[0].tree_name == "Smith Family"
    assert trees[0].person_count == 1234


def test_ancestry_tree_id_taken_from_current_page():
    scraper = AncestryScraper()
    page = _page("https://www.ancestry.com/family-tree/tree/555/family")

    assert scraper._tree_id(page) == "555"
    assert "/tree/555/person/1/facts" in scraper.get_person_url("1")


@pytest.mark.asyncio
async def test_ancestry_requires_tree_id():
    scraper = AncestryScraper()
    page = _page("https://www.ancestry.com/")

    with pytest.raises(ExtractionError):
        await scraper.scrape_person_by_id(page, "999")


# =============================================================================
# WikiTree
# =============================================================================

WIKITREE_PROFILE = {
    "Id": 1001,
    "Name": "Smith-1001",
    "FirstName": "John",
    "MiddleName": "",
    "LastNameAtBirth": "Smith",
    "LastNameCurrent": "Smith",
    "Nicknames": "Jack",
    "BirthDate": "1850-03-12",
    "DeathDate": "0000-00-00",
    "BirthLocation": "Boston, Massachusetts",
    "DeathLocation": "",
    "Gender": "Male",
    "Father": 2002,
    "Mother": 3003,
    "Parents": {
        "2002": {"Id": 2002, "Name": "Smith-2002", "FirstName": "William", "LastNameAtBirth": "Smith"},
        "3003": {"Id": 3003, "Name": "Jones-3003", "FirstName": "Mary", "LastNameAtBirth": "Jones"},
    },
    "Spouses": {"4004": {"Id": 4004, "Name": "Brown-4004"}},
    "Children": {"5": {"Id": 5, "Name": "Smith-5"}, "6": {"Id": 6, "Name": "Smith-6"}},
    "PhotoData": {"url": "/photo.php/a/b/Smith-1001.jpg"},
}


def _wikitree(payload, seen: list[httpx.Request] | None = None) -> WikiTreeScraper:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(200, json=payload)

    return WikiTreeScraper(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_wikitree_parse_profile():
    record = WikiTreeScraper().parse_profile(WIKITREE_PROFILE, "1001")

    assert record.external_id == "Smith-1001"
    assert record.name == "John Smith"
    assert record.gender is Gender.MALE
    assert record.birth.date == "1850-03-12"
    assert record.death is None
    assert record.alternate_names == ["Jack"]
    assert (record.father_external_id, record.father_name) == ("Smith-2002", "William Smith")
    assert (record.mother_external_id, record.mother_name) == ("Jones-3003", "Mary Jones")
    assert record.parent_role_source == "tagged"
    assert record.spouse_external_ids == ["Brown-4004"]
    assert record.children_count == 2
    assert record.photo_url == "https://www.wikitree.com/photo.php/a/b/Smith-1001.jpg"


def test_wikitree_parent_without_details_uses_numeric_id():
    refs = WikiTreeScraper.profile_parents({"Father": 2002, "Mother": 0})

    assert refs.father_id == "2002"
    assert refs.father_name is None
    assert refs.mother_id is None


@pytest.mark.asyncio
async def test_wikitree_fetch_via_api():
    seen: list[httpx.Request] = []
    scraper = _wikitree([{"page_name": "Smith-1001", "status": 0, "profile": WIKITREE_PROFILE}], seen)

    record = await scraper.scrape_person_by_id(None, "Smith-1001")
    refs = await scraper.extract_parent_ids(None, "Smith-1001")
    await scraper.close()

    assert record.name == "John Smith"
    assert refs.father_id == "Smith-2002"
    assert seen[0].url.params["action"] == "getProfile"
    assert seen[0].url.params["key"] == "Smith-1001"


@pytest.mark.asyncio
async def test_wikitree_rate_limit_is_transient():
    scraper = _wikitree([{"status": "Limit exceeded."}])

    with pytest.raises(NetworkTransientError):
        await scraper.fetch_profile("Smith-1001")
    await scraper.close()


@pytest.mark.asyncio
async def test_wikitree_missing_profile_is_extraction_error():
    scraper = _wikitree([{"page_name": "Nobody-1", "status": "Invalid page name"}])

    with pytest.raises(ExtractionError):
        await scraper.scrape_person_by_id(None, "Nobody-1")
    await scraper.close()


# =============================================================================
# 23andMe
# =============================================================================

TREE_PEOPLE = {
    "p1": {"name": "Ann Lee", "sex": "F", "birthDate": "1900", "birthLocation": "Ohio", "fatherId": "p2", "motherId": "p3"},
    "p2": {"displayName": "Bob Lee", "sex": "M"},
    "p3": {"name": "", "displayName": "Cora Lee"},
    "p4": {"sex": "M"},
}


def test_23andme_record_from_state():
    scraper = TwentyThreeAndMeScraper()
    scraper._people = TREE_PEOPLE

    record = scraper.record_from_state(
        {**TREE_PEOPLE["p1"], "photoUrl": "https://cdn.example/avatar-blank.png"}, "p1"
    )

    assert record.name == "Ann Lee"
    assert record.gender is Gender.FEMALE
    assert record.birth.place == "Ohio"
    assert (record.father_external_id, record.father_name) == ("p2", "Bob Lee")
    assert (record.mother_external_id, record.mother_name) == ("p3", "Cora Lee")
    assert record.photo_url is None


@pytest.mark.asyncio
async def test_23andme_tree_state_loaded_once():
    scraper = TwentyThreeAndMeScraper()
    page = _page("https://you.23andme.com/family/tree/")
    page.evaluate.return_value = TREE_PEOPLE

    first = await scraper.scrape_person_by_id(page, "p1")
    refs = await scraper.extract_parent_ids(page, "p2")

    assert first.name == "Ann Lee"
    assert refs.father_id is None
    assert page.evaluate.await_count == 1

    with pytest.raises(ExtractionError):
        await scraper.scrape_person_by_id(page, "p4")
    with pytest.raises(ExtractionError):
        await scraper.scrape_person_by_id(page, "missing")


@pytest.mark.asyncio
async def test_23andme_login_redirect():
    scraper = TwentyThreeAndMeScraper()
    page = _page("https://you.23andme.com/login/?redirect=/family/tree/")

    with pytest.raises(AuthenticationError):
        await scraper.scrape_person_by_id(page, "p1")


# =============================================================================
# Registry
# =============================================================================


def test_registry_creates_scrapers_lazily_with_options():
    registry = ScraperRegistry({Provider.ANCESTRY: {"tree_id": "123"}})

    ancestry = registry.get("ancestry")

    assert isinstance(ancestry, AncestryScraper)
    assert ancestry.tree_id == "123"
    assert registry.get(Provider.ANCESTRY) is ancestry
    assert registry.list_providers() == [
        Provider.FAMILYSEARCH,
        Provider.ANCESTRY,
        Provider.WIKITREE,
        Provider.TWENTYTHREEANDME,
    ]
    assert registry.with_hints() == [Provider.ANCESTRY]


def test_unknown_provider_rejected():
    with pytest.raises(ValueError):
        create_scraper("myheritage")


@pytest.mark.asyncio
async def test_close_all_closes_api_clients():
    registry = ScraperRegistry()
    wikitree = _wikitree([])
    registry.register(wikitree)
    registry.get(Provider.FAMILYSEARCH)

    await registry.close_all()

    assert wikitree._client is None
