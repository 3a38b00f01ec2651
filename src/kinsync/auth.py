"""Provider session checks and stored-credential auto-login."""
from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from .credentials import CredentialStore
from .errors import AuthenticationError

if TYPE_CHECKING:
    from playwright.async_api import Page

    from .browser import PagePool
    from .scrapers.base import ProviderScraper

logger = structlog.get_logger(__name__)


class SessionGuard:
    """Makes sure a provider session is live before work touches the provider.

    When the session has expired and credentials are configured, the login
    form is filled on the pool's interactive page (or on the worker page when
    no pool is given). Pages share one browser context, so a successful login
    there also authenticates every worker page.
    """

    def __init__(self, credentials: CredentialStore | None = None, pool: PagePool | None = None) -> None:
        self.credentials = credentials
        self.pool = pool
        self.login_attempts = 0

    async def ensure_authenticated(self, scraper: ProviderScraper, page: Page) -> None:
        """Return when ``scraper``'s provider is logged in.

        Raises:
            AuthenticationError: not logged in and auto-login is unavailable
                or was rejected.
        """
        if await scraper.check_login_status(page):
            return

        provider = scraper.provider
        creds = self.credentials.get_credentials(provider) if self.credentials else None
        if creds is None:
            logger.warning("auth.session_expired", provider=provider.value, auto_login=False)
            raise AuthenticationError(provider.value)

        logger.info("auth.auto_login", provider=provider.value)
        self.login_attempts += 1
        if self.pool is not None:
            async with self.pool.interactive_page() as login_page:
                ok = await scraper.perform_login(login_page, creds.username, creds.password)
        else:
            ok = await scraper.perform_login(page, creds.username, creds.password)

        if not ok:
            logger.error("auth.auto_login_failed", provider=provider.value)
            raise AuthenticationError(
                provider.value,
                f"Automatic login to {scraper.display_name} failed; please re-authenticate",
            )
        logger.info("auth.auto_login_succeeded", provider=provider.value)
