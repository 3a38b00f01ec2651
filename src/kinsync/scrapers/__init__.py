"""Provider scrapers."""
from .ancestry import AncestryScraper
from .base import LoginSelectors, ParentLink, ProviderScraper, assign_parent_roles
from .familysearch import FamilySearchScraper
from .registry import SCRAPER_CLASSES, ScraperRegistry, create_scraper
from .twentythreeandme import TwentyThreeAndMeScraper
from .wikitree import WikiTreeScraper

__all__ = [
    "AncestryScraper",
    "FamilySearchScraper",
    "LoginSelectors",
    "ParentLink",
    "ProviderScraper",
    "SCRAPER_CLASSES",
    "ScraperRegistry",
    "TwentyThreeAndMeScraper",
    "WikiTreeScraper",
    "assign_parent_roles",
    "create_scraper",
]
