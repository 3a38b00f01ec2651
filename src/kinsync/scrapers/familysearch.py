"""FamilySearch Family Tree scraper."""
from __future__ import annotations

import re
from typing import TYPE_CHECKING

from bs4 import BeautifulSoup

from ..models import ParentRefs, ParentRole, Provider, ProviderTreeInfo, ScrapedRecord, VitalEvent
from .base import (
    LoginSelectors,
    ParentLink,
    ProviderScraper,
    assign_parent_roles,
    normalize_photo_url,
    parse_gender,
    select_all_text,
    select_text,
)

if TYPE_CHECKING:
    from playwright.async_api import Page

PERSON_ID_RE = re.compile(r"/tree/person/(?:details/)?([A-Z0-9]+-[A-Z0-9]+)")
ROLE_TESTID_RE = re.compile(r"father|mother|parent", re.IGNORECASE)

USER_MENU = '[data-testid="user-menu"], .user-menu, #user-menu'


class FamilySearchScraper(ProviderScraper):
    provider = Provider.FAMILYSEARCH
    display_name = "FamilySearch"
    login_url = "https://www.familysearch.org/auth/familysearch/login"
    tree_url_pattern = "https://www.familysearch.org/tree/pedigree/landscape/{id}"
    login_selectors = LoginSelectors(
        username_input='#userName, input[name="userName"]',
        password_input='#password, input[name="password"]',
        submit_button='button[type="submit"]',
        success_indicator=USER_MENU,
        error_indicator='.error-message, .alert-error, [data-testid="error-message"]',
    )
    auth_url_markers = ("/signin", "/auth/")
    ready_selector = '[data-testid="person-name"], .person-name, h1'

    async def check_login_status(self, page: Page) -> bool:
        if "familysearch.org" not in page.url:
            await page.goto("https://www.familysearch.org/tree/", wait_until="domcontentloaded")
        if self.is_auth_url(page.url):
            return False
        if await page.query_selector(USER_MENU):
            return True
        sign_in = await page.query_selector('[data-testid="sign-in-button"], a[href*="/signin"]')
        return sign_in is None

    async def list_trees(self, page: Page) -> list[ProviderTreeInfo]:
        # FamilySearch has one shared world tree
        return [
            ProviderTreeInfo(
                provider=self.provider,
                tree_id="shared",
                tree_name="FamilySearch Shared Tree",
            )
        ]

    def get_person_url(self, external_id: str) -> str:
        return f"https://www.familysearch.org/tree/person/details/{external_id}"

    def parse_parents(self, html: str) -> ParentRefs:
        return self._parents(BeautifulSoup(html, "html.parser"))

    def _parents(self, soup: BeautifulSoup) -> ParentRefs:
        links: list[ParentLink] = []
        for a in soup.select('a[href*="/tree/person/"]'):
            container = a.find_parent(attrs={"data-testid": ROLE_TESTID_RE})
            if container is None:
                continue
            match = PERSON_ID_RE.search(a.get("href", ""))
            if not match:
                continue
            testid = container["data-testid"].lower()
            if "father" in testid:
                role = ParentRole.FATHER
            elif "mother" in testid:
                role = ParentRole.MOTHER
            else:
                role = None
            name = " ".join(a.get_text(" ", strip=True).split()) or None
            links.append(ParentLink(external_id=match.group(1), name=name, role=role))
        return assign_parent_roles(links)

    def parse_person(self, html: str, external_id: str, source_url: str | None = None) -> ScrapedRecord:
        soup = BeautifulSoup(html, "html.parser")
        name = select_text(
            soup,
            '[data-testid="person-name"]',
            ".person-name",
            "h1.name",
            ".person-header h1",
            '[data-testid="conclusion-name"]',
        )

        birth = VitalEvent(
            date=select_text(soup, '[data-testid="birth-date"]', ".birth-date", ".vital-birth .date"),
            place=select_text(soup, '[data-testid="birth-place"]', ".birth-place", ".vital-birth .place"),
        )
        death = VitalEvent(
            date=select_text(soup, '[data-testid="death-date"]', ".death-date", ".vital-death .date"),
            place=select_text(soup, '[data-testid="death-place"]', ".death-place", ".vital-death .place"),
        )

        photo = None
        for img in soup.select('[data-testid="person-portrait"] img, .person-portrait img, .portrait-container img'):
            photo = normalize_photo_url(img.get("src"))
            if photo:
                break

        children = soup.select('[data-testid*="child"] a[href*="/tree/person/"]')
        spouses: list[str] = []
        for a in soup.select('[data-testid*="spouse"] a[href*="/tree/person/"]'):
            match = PERSON_ID_RE.search(a.get("href", ""))
            if match:
                spouses.append(match.group(1))
        parents = self._parents(soup)

        return ScrapedRecord(
            external_id=external_id,
            provider=self.provider,
            name=name or "",
            gender=parse_gender(select_text(soup, '[data-testid="sex-value"]', ".sex-value", ".gender")),
            birth=None if birth.is_empty() else birth,
            death=None if death.is_empty() else death,
            alternate_names=select_all_text(soup, '[data-testid="alternate-name"]'),
            occupations=select_all_text(soup, '[data-testid="occupation"]'),
            father_external_id=parents.father_id,
            mother_external_id=parents.mother_id,
            father_name=parents.father_name,
            mother_name=parents.mother_name,
            parent_role_source=parents.role_source,
            spouse_external_ids=list(dict.fromkeys(spouses)),
            children_count=len(children) or None,
            photo_url=photo,
            source_url=source_url or self.get_person_url(external_id),
        )
