"""Provider scraper interface and shared page helpers.

A scraper drives a Playwright page to a provider's person page and parses
the rendered HTML with BeautifulSoup. Parsing is kept in ``parse_*`` methods
that take plain HTML so each provider's extraction can be tested offline.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, Iterable

from bs4 import BeautifulSoup
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..errors import AuthenticationError, ExtractionError
from ..models import Gender, ParentRefs, ParentRole, Provider, ProviderTreeInfo, ScrapedRecord

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)

PLACEHOLDER_IMAGE_MARKERS = ("silhouette", "default", "placeholder", "no-photo", "avatar-blank")


# =============================================================================
# Shared types
# =============================================================================


@dataclass(frozen=True)
class LoginSelectors:
    """CSS selectors for a provider's login form."""
    username_input: str
    password_input: str
    submit_button: str
    success_indicator: str
    error_indicator: str | None = None


@dataclass(frozen=True)
class ParentLink:
    """A parent reference found in a person page's family section."""
    external_id: str
    name: str | None = None
    role: ParentRole | None = None  # None when the markup does not say


def assign_parent_roles(links: Iterable[ParentLink]) -> ParentRefs:
    """Turn parent links into father/mother references.

    Explicit roles always win. Untagged links only fill a slot the tagged
    links left empty, in document order (father first), and the result is
    marked ``role_source="order"`` when that happens.
    """
    refs = ParentRefs()
    untagged: list[ParentLink] = []
    for link in links:
        if link.role is ParentRole.FATHER and refs.father_id is None:
            refs.father_id, refs.father_name = link.external_id, link.name
        elif link.role is ParentRole.MOTHER and refs.mother_id is None:
            refs.mother_id, refs.mother_name = link.external_id, link.name
        elif link.role in (None, ParentRole.PARENT):
            untagged.append(link)

    taken = {refs.father_id, refs.mother_id}
    for link in untagged:
        if link.external_id in taken:
            continue
        if refs.father_id is None:
            refs.father_id, refs.father_name = link.external_id, link.name
        elif refs.mother_id is None:
            refs.mother_id, refs.mother_name = link.external_id, link.name
        else:
            break
        taken.add(link.external_id)
        refs.role_source = "order"
    return refs


def parse_gender(text: str | None) -> Gender | None:
    if not text:
        return None
    low = text.strip().lower()
    if "female" in low or low in ("f", "woman"):
        return Gender.FEMALE
    if "male" in low or low in ("m", "man"):
        return Gender.MALE
    return Gender.UNKNOWN


def is_placeholder_image(src: str | None) -> bool:
    if not src:
        return True
    low = src.lower()
    return low.startswith("data:") or any(marker in low for marker in PLACEHOLDER_IMAGE_MARKERS)


def normalize_photo_url(src: str | None) -> str | None:
    if is_placeholder_image(src):
        return None
    return f"https:{src}" if src.startswith("//") else src


def select_text(soup: BeautifulSoup, *selectors: str) -> str | None:
    """Text of the first element matching any selector, in selector order."""
    for selector in selectors:
        el = soup.select_one(selector)
        if el is not None:
            text = " ".join(el.get_text(" ", strip=True).split())
            if text:
                return text
    return None


def select_all_text(soup: BeautifulSoup, selector: str) -> list[str]:
    out: list[str] = []
    for el in soup.select(selector):
        text = " ".join(el.get_text(" ", strip=True).split())
        if text and text not in out:
            out.append(text)
    return out


# =============================================================================
# Scraper interface
# =============================================================================


class ProviderScraper(ABC):
    """Contract every provider implementation fulfils."""

    provider: ClassVar[Provider]
    display_name: ClassVar[str]
    login_url: ClassVar[str]
    tree_url_pattern: ClassVar[str]
    login_selectors: ClassVar[LoginSelectors]
    auth_url_markers: ClassVar[tuple[str, ...]] = ("/signin", "/login")
    # Selector that signals a person page finished rendering
    ready_selector: ClassVar[str | None] = None
    supports_hints: ClassVar[bool] = False

    def __init__(self, timeout_ms: int = 30000, settle_ms: int = 0) -> None:
        self.timeout_ms = timeout_ms
        self.settle_ms = settle_ms

    def is_auth_url(self, url: str) -> bool:
        return any(marker in url for marker in self.auth_url_markers)

    # -- session --------------------------------------------------------

    @abstractmethod
    async def check_login_status(self, page: Page) -> bool:
        """True when ``page``'s browser context holds a live session."""

    async def perform_login(self, page: Page, username: str, secret: str) -> bool:
        return await perform_login_with_selectors(
            page,
            self.login_url,
            self.login_selectors,
            username,
            secret,
            check=self.check_login_status,
            timeout_ms=self.timeout_ms,
        )

    # -- extraction -----------------------------------------------------

    @abstractmethod
    def get_person_url(self, external_id: str) -> str:
        ...

    def get_person_edit_url(self, external_id: str) -> str:
        return self.get_person_url(external_id)

    def parse_person(self, html: str, external_id: str, source_url: str | None = None) -> ScrapedRecord:
        """Map a rendered person page to a record. Page-based providers override this."""
        raise NotImplementedError

    def parse_parents(self, html: str) -> ParentRefs:
        raise NotImplementedError

    async def load_page(self, page: Page, url: str) -> str:
        """Navigate and return the rendered HTML.

        Raises:
            AuthenticationError: the provider redirected to its login page.
        """
        await page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)
        if self.ready_selector:
            try:
                await page.wait_for_selector(self.ready_selector, timeout=self.timeout_ms)
            except PlaywrightTimeoutError:
                logger.debug("Ready selector %s not found on %s", self.ready_selector, url)
        if self.settle_ms:
            await page.wait_for_timeout(self.settle_ms)
        if self.is_auth_url(page.url):
            raise AuthenticationError(self.provider.value)
        return await page.content()

    async def scrape_person_by_id(self, page: Page, external_id: str) -> ScrapedRecord:
        html = await self.load_page(page, self.get_person_url(external_id))
        record = self.parse_person(html, external_id, source_url=page.url)
        if not record.name:
            raise ExtractionError(external_id, f"no name found on {self.display_name} person page")
        return record

    async def extract_parent_ids(self, page: Page, external_id: str) -> ParentRefs:
        html = await self.load_page(page, self.get_person_url(external_id))
        return self.parse_parents(html)

    @abstractmethod
    async def list_trees(self, page: Page) -> list[ProviderTreeInfo]:
        ...

    # -- hints (optional capability) -------------------------------------

    async def count_hints(self, page: Page, external_id: str) -> int:
        """Open the hint list for a person and return how many are actionable."""
        raise NotImplementedError(f"{self.display_name} has no hint support")

    async def accept_next_hint(self, page: Page, external_id: str) -> None:
        """Accept the first actionable hint; raises ExtractionError on failure."""
        raise NotImplementedError(f"{self.display_name} has no hint support")


async def perform_login_with_selectors(
    page: Page,
    login_url: str,
    selectors: LoginSelectors,
    username: str,
    secret: str,
    *,
    check,
    timeout_ms: int = 30000,
) -> bool:
    """Fill and submit a provider login form, then confirm the session."""
    await page.goto(login_url, wait_until="domcontentloaded", timeout=timeout_ms)
    if await check(page):
        return True

    username_input = await page.query_selector(selectors.username_input)
    if username_input is None:
        logger.warning("Login form not found at %s", login_url)
        return False
    await username_input.fill(username)

    password_input = await page.query_selector(selectors.password_input)
    if password_input is None:
        # Two-step forms reveal the password field after the first submit
        await page.click(selectors.submit_button)
        try:
            password_input = await page.wait_for_selector(selectors.password_input, timeout=timeout_ms)
        except PlaywrightTimeoutError:
            return False
    await password_input.fill(secret)
    await page.click(selectors.submit_button)

    try:
        await page.wait_for_selector(selectors.success_indicator, timeout=timeout_ms)
    except PlaywrightTimeoutError:
        pass

    if selectors.error_indicator:
        error_el = await page.query_selector(selectors.error_indicator)
        if error_el is not None and await error_el.is_visible():
            logger.warning("Login rejected at %s: %s", login_url, (await error_el.text_content() or "").strip())
            return False

    return await check(page)
