"""Ancestry member-tree scraper, including free record hint acceptance."""
from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from bs4 import BeautifulSoup
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..errors import AuthenticationError, ExtractionError
from ..models import ParentRefs, ParentRole, Provider, ProviderTreeInfo, ScrapedRecord, VitalEvent
from .base import (
    LoginSelectors,
    ParentLink,
    ProviderScraper,
    assign_parent_roles,
    normalize_photo_url,
    parse_gender,
    select_text,
)

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)

TREE_ID_RE = re.compile(r"/tree/(\d+)")
PERSON_ID_RE = re.compile(r"/person/(\d+)/facts")
PLACE_RE = re.compile(r"\b(?:in|at)\s+(.+)$", re.IGNORECASE)

USER_MENU = '#navAccount, .userNav, [data-test="user-menu"]'

HINT_SELECTORS = {
    "card": '[data-testid="hint-card"], .hintCard, .recordHint, [data-testid="record-hint"]',
    "review": 'button:has-text("Review"), [data-testid="review-hint-button"], a:has-text("Review")',
    "save_yes": 'button:has-text("Yes"), [data-testid="save-yes-button"]',
    "save_to_tree": 'button:has-text("Save to tree"), button:has-text("Save to Tree"), [data-testid="save-to-tree-button"]',
    "no_hints": ':text("No hints"), :text("No record hints")',
    "loading": '.loading, [data-testid="loading"], .spinner',
}


class AncestryScraper(ProviderScraper):
    """Ancestry person pages live under a tree, so a tree ID is required.

    Pass ``tree_id`` explicitly, or navigate the page into a tree first and
    the ID is taken from the current URL.
    """

    provider = Provider.ANCESTRY
    display_name = "Ancestry"
    login_url = "https://www.ancestry.com/account/signin"
    tree_url_pattern = "https://www.ancestry.com/family-tree/tree/{treeId}/family"
    login_selectors = LoginSelectors(
        username_input='#username, input[name="username"]',
        password_input='#password, input[name="password"]',
        submit_button='#signInBtn, button[type="submit"]',
        success_indicator=USER_MENU,
        error_indicator='.alert-error, #signInErrorMessage, [role="alert"]',
    )
    auth_url_markers = ("/account/signin", "/login")
    ready_selector = '.userCardTitle, [data-testid="usercardcontent-element"] h1, h1'
    supports_hints = True

    def __init__(self, tree_id: str | None = None, timeout_ms: int = 30000, settle_ms: int = 0) -> None:
        super().__init__(timeout_ms=timeout_ms, settle_ms=settle_ms)
        self.tree_id = tree_id

    def _tree_id(self, page: Page | None = None) -> str:
        if self.tree_id:
            return self.tree_id
        if page is not None:
            match = TREE_ID_RE.search(page.url)
            if match:
                self.tree_id = match.group(1)
                return self.tree_id
        raise ExtractionError("-", "Ancestry tree ID required; pass tree_id or open a tree first")

    async def check_login_status(self, page: Page) -> bool:
        if "ancestry.com" not in page.url:
            await page.goto("https://www.ancestry.com/", wait_until="domcontentloaded")
        if self.is_auth_url(page.url):
            return False
        if await page.query_selector(USER_MENU):
            return True
        return await page.query_selector('a[href*="signin"]') is None

    # -- trees -------------------------------------------------------------

    async def list_trees(self, page: Page) -> list[ProviderTreeInfo]:
        html = await self.load_page(page, "https://www.ancestry.com/family-tree/")
        return self.parse_trees(html)

    def parse_trees(self, html: str) -> list[ProviderTreeInfo]:
        soup = BeautifulSoup(html, "html.parser")
        trees: list[ProviderTreeInfo] = []
        for card in soup.select('.treeCard, .tree-item, [data-test="tree-card"]'):
            link = card.select_one('a[href*="/tree/"]')
            match = TREE_ID_RE.search(link.get("href", "")) if link else None
            if not match:
                continue
            count_text = select_text(card, ".personCount, .member-count") or ""
            digits = re.sub(r"\D", "", count_text)
            trees.append(
                ProviderTreeInfo(
                    provider=self.provider,
                    tree_id=match.group(1),
                    tree_name=select_text(card, ".treeName, .tree-name, h3, h4") or "Unnamed Tree",
                    person_count=int(digits) if digits else None,
                )
            )
        return trees

    # -- persons -----------------------------------------------------------

    def get_person_url(self, external_id: str) -> str:
        if not self.tree_id:
            return f"https://www.ancestry.com/search/?name={external_id}"
        return (
            f"https://www.ancestry.com/family-tree/person/tree/{self.tree_id}"
            f"/person/{external_id}/facts"
        )

    async def scrape_person_by_id(self, page: Page, external_id: str) -> ScrapedRecord:
        self._tree_id(page)
        return await super().scrape_person_by_id(page, external_id)

    async def extract_parent_ids(self, page: Page, external_id: str) -> ParentRefs:
        self._tree_id(page)
        return await super().extract_parent_ids(page, external_id)

    def parse_parents(self, html: str) -> ParentRefs:
        return self._parents(BeautifulSoup(html, "html.parser"))

    def _parents(self, soup: BeautifulSoup) -> ParentRefs:
        section = None
        for heading in soup.find_all(["h2", "h3"]):
            if "parents" in heading.get_text(strip=True).lower():
                section = heading.find_next_sibling()
                break
        if section is None:
            return ParentRefs()

        links: list[ParentLink] = []
        for a in section.select('a[href*="/person/"]'):
            match = PERSON_ID_RE.search(a.get("href", ""))
            if not match:
                continue
            tagged = a.find_parent(attrs={"data-relationship": True})
            marker = (a.get("data-relationship") or (tagged.get("data-relationship") if tagged else "") or "").lower()
            role = {"father": ParentRole.FATHER, "mother": ParentRole.MOTHER}.get(marker)
            h4 = a.find("h4")
            name = (h4 or a).get_text(" ", strip=True) or None
            links.append(ParentLink(external_id=match.group(1), name=name, role=role))

        refs = assign_parent_roles(links)
        if refs.role_source == "order":
            logger.debug("Ancestry parents assigned by link order: %s", refs)
        return refs

    def parse_person(self, html: str, external_id: str, source_url: str | None = None) -> ScrapedRecord:
        soup = BeautifulSoup(html, "html.parser")
        name = select_text(soup, ".userCardTitle", '[data-testid="usercardcontent-element"] h1', "h1")

        birth, death = VitalEvent(), VitalEvent()
        for p in soup.select(".userCardEvents p, .userCardContent p"):
            label = select_text(p, ".userCardEvent")
            detail = select_text(p, ".userCardEventDetail")
            if not detail or detail == "Unknown":
                continue
            if label == "Birth":
                birth.date = detail
            elif label == "Death":
                death.date = detail

        for li in soup.select('[role="tabpanel"] li, main li'):
            text = " ".join(li.get_text(" ", strip=True).split())
            low = text.lower()
            match = PLACE_RE.search(text)
            if not match:
                continue
            if ("birth" in low or "born" in low) and not birth.place:
                birth.place = match.group(1).strip()
            elif ("death" in low or "died" in low) and not death.place:
                death.place = match.group(1).strip()

        photo_el = soup.select_one('.userCardImg img, #profileImage img, [data-testid="usercardimg-element"] img')
        parents = self._parents(soup)

        return ScrapedRecord(
            external_id=external_id,
            provider=self.provider,
            name=name or "",
            gender=parse_gender(select_text(soup, '[data-testid="gender"], .gender')),
            birth=None if birth.is_empty() else birth,
            death=None if death.is_empty() else death,
            father_external_id=parents.father_id,
            mother_external_id=parents.mother_id,
            father_name=parents.father_name,
            mother_name=parents.mother_name,
            parent_role_source=parents.role_source,
            photo_url=normalize_photo_url(photo_el.get("src")) if photo_el else None,
            source_url=source_url or self.get_person_url(external_id),
        )

    # -- hints -------------------------------------------------------------

    def get_hints_url(self, external_id: str) -> str:
        return (
            f"https://www.ancestry.com/family-tree/person/tree/{self.tree_id}"
            f"/person/{external_id}/hints?usePUBJs=true&Hints.hintStatus=Free"
        )

    async def _open_hints(self, page: Page, external_id: str) -> None:
        self._tree_id(page)
        await page.goto(self.get_hints_url(external_id), wait_until="domcontentloaded", timeout=self.timeout_ms)
        try:
            await page.wait_for_selector(HINT_SELECTORS["loading"], state="detached", timeout=self.timeout_ms)
        except PlaywrightTimeoutError:
            logger.debug("Hint list still loading for %s", external_id)
        if self.is_auth_url(page.url):
            raise AuthenticationError(self.provider.value)

    async def count_hints(self, page: Page, external_id: str) -> int:
        await self._open_hints(page, external_id)
        if await page.locator(HINT_SELECTORS["no_hints"]).count():
            return 0
        actionable = 0
        for card in await page.locator(HINT_SELECTORS["card"]).all():
            review = card.locator(HINT_SELECTORS["review"])
            if await review.count() and await review.first.is_visible():
                actionable += 1
        return actionable

    async def accept_next_hint(self, page: Page, external_id: str) -> None:
        review = page.locator(HINT_SELECTORS["card"]).locator(HINT_SELECTORS["review"]).first
        try:
            await review.click(timeout=self.timeout_ms)
            await page.locator(HINT_SELECTORS["save_yes"]).first.click(timeout=self.timeout_ms)
            await page.locator(HINT_SELECTORS["save_to_tree"]).first.click(timeout=self.timeout_ms)
            await page.wait_for_load_state("domcontentloaded", timeout=self.timeout_ms)
        except PlaywrightTimeoutError as e:
            raise ExtractionError(external_id, f"hint could not be saved: {str(e).splitlines()[0]}") from e
        # Cards shift after a save; reload so the next hint is first again
        await self._open_hints(page, external_id)
