"""WikiTree scraper.

Public profiles come from the WikiTree API, which tags parents explicitly
(``Father``/``Mother``), so no page parsing is needed for person data. The
browser page is only used for the login check and login flow.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog

from ..errors import ExtractionError, NetworkTransientError
from ..models import Gender, ParentRefs, Provider, ProviderTreeInfo, ScrapedRecord, VitalEvent
from .base import LoginSelectors, ProviderScraper, parse_gender

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = structlog.get_logger(__name__)

API_URL = "https://api.wikitree.com/api.php"
WIKITREE_STATUS_LIMIT_EXCEEDED = "Limit exceeded."
PROFILE_FIELDS = (
    "Id,Name,FirstName,MiddleName,LastNameAtBirth,LastNameCurrent,LastNameOther,"
    "Nicknames,BirthDate,DeathDate,BirthLocation,DeathLocation,Gender,"
    "Father,Mother,Parents,Spouses,Children,PhotoData"
)
# WikiTree uses 0000-00-00 (or partial zeros) for unknown dates
UNKNOWN_DATES = {"0000-00-00", ""}


class WikiTreeScraper(ProviderScraper):
    provider = Provider.WIKITREE
    display_name = "WikiTree"
    login_url = "https://www.wikitree.com/wiki/Special:Userlogin"
    tree_url_pattern = "https://www.wikitree.com/wiki/{id}"
    login_selectors = LoginSelectors(
        username_input='#wpName1, input[name="wpName"]',
        password_input='#wpPassword1, input[name="wpPassword"]',
        submit_button='#wpLoginAttempt, input[type="submit"]',
        success_indicator='#my-wikitree, .my-wikitree, a[href*="/wiki/"][href*="User:"]',
        error_indicator=".error, .errorbox, .loginError",
    )
    auth_url_markers = ("Special:Userlogin",)

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout_ms: int = 30000,
        settle_ms: int = 0,
    ) -> None:
        super().__init__(timeout_ms=timeout_ms, settle_ms=settle_ms)
        self._client = client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def check_login_status(self, page: Page) -> bool:
        if "wikitree.com" not in page.url:
            await page.goto("https://www.wikitree.com/", wait_until="domcontentloaded")
        login_link = await page.query_selector('a[href*="Special:Userlogin"]')
        if login_link is not None and await login_link.is_visible():
            return False
        return await page.query_selector(self.login_selectors.success_indicator) is not None

    async def list_trees(self, page: Page) -> list[ProviderTreeInfo]:
        return [
            ProviderTreeInfo(provider=self.provider, tree_id="global", tree_name="WikiTree Global Tree")
        ]

    def get_person_url(self, external_id: str) -> str:
        return f"https://www.wikitree.com/wiki/{external_id}"

    # -- API ---------------------------------------------------------------

    async def fetch_profile(self, external_id: str) -> dict[str, Any]:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_ms / 1000)
        params = {"action": "getProfile", "key": external_id, "fields": PROFILE_FIELDS, "format": "json"}
        resp = await self._client.get(API_URL, params=params)
        resp.raise_for_status()
        data = resp.json()
        first = data[0] if isinstance(data, list) and data else data
        if not isinstance(first, dict):
            raise ExtractionError(external_id, "unexpected WikiTree API response")
        if first.get("status") == WIKITREE_STATUS_LIMIT_EXCEEDED:
            raise NetworkTransientError("WikiTree API rate limit exceeded")
        profile = first.get("profile")
        if not profile:
            raise ExtractionError(external_id, f"WikiTree profile not found ({first.get('status')})")
        return profile

    async def scrape_person_by_id(self, page: Page, external_id: str) -> ScrapedRecord:
        profile = await self.fetch_profile(external_id)
        record = self.parse_profile(profile, external_id)
        if not record.name:
            raise ExtractionError(external_id, "WikiTree profile has no name")
        return record

    async def extract_parent_ids(self, page: Page, external_id: str) -> ParentRefs:
        return self.profile_parents(await self.fetch_profile(external_id))

    # -- mapping -----------------------------------------------------------

    @staticmethod
    def profile_parents(profile: dict[str, Any]) -> ParentRefs:
        relatives = profile.get("Parents") or {}
        if isinstance(relatives, list):
            relatives = {str(p.get("Id")): p for p in relatives if isinstance(p, dict)}

        def lookup(numeric_id: Any) -> tuple[str | None, str | None]:
            if not numeric_id:
                return None, None
            parent = relatives.get(str(numeric_id)) or {}
            return parent.get("Name") or str(numeric_id), _display_name(parent) or None

        father_id, father_name = lookup(profile.get("Father"))
        mother_id, mother_name = lookup(profile.get("Mother"))
        return ParentRefs(
            father_id=father_id,
            mother_id=mother_id,
            father_name=father_name,
            mother_name=mother_name,
            role_source="tagged",
        )

    def parse_profile(self, profile: dict[str, Any], external_id: str) -> ScrapedRecord:
        parents = self.profile_parents(profile)
        alternates = [
            n for n in (profile.get("LastNameCurrent"), profile.get("LastNameOther"), profile.get("Nicknames")) if n
        ]
        current = profile.get("LastNameCurrent")
        if current and current == profile.get("LastNameAtBirth"):
            alternates.remove(current)

        spouses = profile.get("Spouses") or {}
        children = profile.get("Children") or {}
        photo = (profile.get("PhotoData") or {}).get("url") if isinstance(profile.get("PhotoData"), dict) else None

        return ScrapedRecord(
            external_id=profile.get("Name") or external_id,
            provider=self.provider,
            name=_display_name(profile),
            gender=parse_gender(profile.get("Gender")) or Gender.UNKNOWN,
            birth=_vital(profile.get("BirthDate"), profile.get("BirthLocation")),
            death=_vital(profile.get("DeathDate"), profile.get("DeathLocation")),
            alternate_names=alternates,
            father_external_id=parents.father_id,
            mother_external_id=parents.mother_id,
            father_name=parents.father_name,
            mother_name=parents.mother_name,
            spouse_external_ids=[s.get("Name") for s in _values(spouses) if s.get("Name")],
            children_count=len(_values(children)) or None,
            photo_url=f"https://www.wikitree.com{photo}" if photo and photo.startswith("/") else photo,
            source_url=self.get_person_url(profile.get("Name") or external_id),
        )


def _values(relatives: Any) -> list[dict[str, Any]]:
    if isinstance(relatives, dict):
        return [v for v in relatives.values() if isinstance(v, dict)]
    if isinstance(relatives, list):
        return [v for v in relatives if isinstance(v, dict)]
    return []


def _display_name(person: dict[str, Any]) -> str:
    parts = [
        person.get("FirstName"),
        person.get("MiddleName"),
        person.get("LastNameAtBirth") or person.get("LastNameCurrent"),
    ]
    return " ".join(p.strip() for p in parts if p and p.strip())


def _vital(date: str | None, place: str | None) -> VitalEvent | None:
    date = None if (date or "") in UNKNOWN_DATES else date
    event = VitalEvent(date=date, place=place or None)
    return None if event.is_empty() else event
