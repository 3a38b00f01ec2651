"""Provider scraper registry."""
from __future__ import annotations

from typing import Any

from ..models import Provider
from .ancestry import AncestryScraper
from .base import ProviderScraper
from .familysearch import FamilySearchScraper
from .twentythreeandme import TwentyThreeAndMeScraper
from .wikitree import WikiTreeScraper

SCRAPER_CLASSES: dict[Provider, type[ProviderScraper]] = {
    Provider.FAMILYSEARCH: FamilySearchScraper,
    Provider.ANCESTRY: AncestryScraper,
    Provider.WIKITREE: WikiTreeScraper,
    Provider.TWENTYTHREEANDME: TwentyThreeAndMeScraper,
}


def create_scraper(provider: Provider | str, **kwargs: Any) -> ProviderScraper:
    """Build a fresh scraper for ``provider``.

    Raises:
        ValueError: the provider name is not known.
    """
    return SCRAPER_CLASSES[Provider(provider)](**kwargs)


class ScraperRegistry:
    """Holds one scraper instance per provider.

    Scrapers are created lazily with the keyword arguments given for their
    provider, so a registry can be built from config before any browser
    exists.
    """

    def __init__(self, options: dict[Provider, dict[str, Any]] | None = None):
        self._scrapers: dict[Provider, ProviderScraper] = {}
        self._options = dict(options or {})

    def register(self, scraper: ProviderScraper) -> None:
        """Register a scraper instance, replacing any previous one."""
        self._scrapers[scraper.provider] = scraper

    def get(self, provider: Provider | str) -> ProviderScraper:
        """Get the scraper for a provider, creating it on first use."""
        provider = Provider(provider)
        scraper = self._scrapers.get(provider)
        if scraper is None:
            scraper = create_scraper(provider, **self._options.get(provider, {}))
            self._scrapers[provider] = scraper
        return scraper

    def list_providers(self) -> list[Provider]:
        """Providers with an implementation, in resolution order."""
        return list(SCRAPER_CLASSES)

    def with_hints(self) -> list[Provider]:
        return [p for p, cls in SCRAPER_CLASSES.items() if cls.supports_hints]

    async def close_all(self) -> None:
        """Close scrapers that hold their own connections."""
        for scraper in self._scrapers.values():
            close = getattr(scraper, "close", None)
            if close is not None:
                await close()
