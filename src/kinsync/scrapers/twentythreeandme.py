"""23andMe family tree scraper.

The tree is drawn on a canvas, so persons are read from the page's embedded
tree state (``window.__TREE_DATA__``) rather than from markup. One tree
load serves every person in a crawl until :meth:`refresh` is called.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ..errors import AuthenticationError, ExtractionError
from ..models import ParentRefs, Provider, ProviderTreeInfo, ScrapedRecord, VitalEvent
from .base import LoginSelectors, ProviderScraper, normalize_photo_url, parse_gender

if TYPE_CHECKING:
    from playwright.async_api import Page

TREE_URL = "https://you.23andme.com/family/tree/"
TREE_STATE_JS = "() => { const t = window.__TREE_DATA__ || window.treeData; return (t && t.people) || null; }"


class TwentyThreeAndMeScraper(ProviderScraper):
    provider = Provider.TWENTYTHREEANDME
    display_name = "23andMe"
    login_url = "https://you.23andme.com/"
    tree_url_pattern = TREE_URL
    login_selectors = LoginSelectors(
        username_input='input[name="username"], input[type="email"]',
        password_input='input[name="password"], input[type="password"]',
        submit_button='button[type="submit"]',
        success_indicator='[data-test="user-menu"], .user-avatar, .profile-menu',
        error_indicator='.error-message, [role="alert"]',
    )
    auth_url_markers = ("/login", "/signin")

    def __init__(self, timeout_ms: int = 30000, settle_ms: int = 0) -> None:
        super().__init__(timeout_ms=timeout_ms, settle_ms=settle_ms)
        self._people: dict[str, dict[str, Any]] | None = None

    def refresh(self) -> None:
        self._people = None

    async def check_login_status(self, page: Page) -> bool:
        if "23andme.com" not in page.url:
            await page.goto(TREE_URL, wait_until="domcontentloaded")
        if self.is_auth_url(page.url):
            return False
        return await page.query_selector(self.login_selectors.success_indicator) is not None

    async def list_trees(self, page: Page) -> list[ProviderTreeInfo]:
        people = await self._tree_people(page)
        return [
            ProviderTreeInfo(
                provider=self.provider,
                tree_id="default",
                tree_name="23andMe Family Tree",
                person_count=len(people) or None,
            )
        ]

    def get_person_url(self, external_id: str) -> str:
        return f"{TREE_URL}#{external_id}"

    async def _tree_people(self, page: Page) -> dict[str, dict[str, Any]]:
        if self._people is None:
            await page.goto(TREE_URL, wait_until="domcontentloaded", timeout=self.timeout_ms)
            if self.settle_ms:
                await page.wait_for_timeout(self.settle_ms)
            if self.is_auth_url(page.url):
                raise AuthenticationError(self.provider.value)
            people = await page.evaluate(TREE_STATE_JS)
            if not people:
                raise ExtractionError("-", "23andMe tree state not found on page")
            self._people = {str(k): v for k, v in people.items()}
        return self._people

    async def scrape_person_by_id(self, page: Page, external_id: str) -> ScrapedRecord:
        people = await self._tree_people(page)
        raw = people.get(external_id)
        if raw is None:
            raise ExtractionError(external_id, "person not present in 23andMe tree")
        record = self.record_from_state(raw, external_id)
        if not record.name:
            raise ExtractionError(external_id, "23andMe tree entry has no name")
        return record

    async def extract_parent_ids(self, page: Page, external_id: str) -> ParentRefs:
        people = await self._tree_people(page)
        raw = people.get(external_id)
        if raw is None:
            return ParentRefs()
        return self._parents(raw, people)

    @staticmethod
    def _parents(raw: dict[str, Any], people: dict[str, dict[str, Any]]) -> ParentRefs:
        father_id = raw.get("fatherId")
        mother_id = raw.get("motherId")
        father = people.get(str(father_id), {}) if father_id else {}
        mother = people.get(str(mother_id), {}) if mother_id else {}
        return ParentRefs(
            father_id=str(father_id) if father_id else None,
            mother_id=str(mother_id) if mother_id else None,
            father_name=father.get("name") or father.get("displayName"),
            mother_name=mother.get("name") or mother.get("displayName"),
        )

    def record_from_state(self, raw: dict[str, Any], external_id: str) -> ScrapedRecord:
        parents = self._parents(raw, self._people or {})
        birth = VitalEvent(date=raw.get("birthDate"), place=raw.get("birthLocation"))
        death = VitalEvent(date=raw.get("deathDate"), place=raw.get("deathLocation"))
        return ScrapedRecord(
            external_id=external_id,
            provider=self.provider,
            name=raw.get("name") or raw.get("displayName") or "",
            gender=parse_gender(raw.get("sex") or raw.get("gender")),
            birth=None if birth.is_empty() else birth,
            death=None if death.is_empty() else death,
            father_external_id=parents.father_id,
            mother_external_id=parents.mother_id,
            father_name=parents.father_name,
            mother_name=parents.mother_name,
            photo_url=normalize_photo_url(raw.get("photoUrl")),
            source_url=self.get_person_url(external_id),
        )
