"""Prompt relay core: submit a prompt to a Gandalf level, return the reply.

:class:`PromptScraper` is the single entry point used by the HTTP layer and
the CLI.  Per request it runs, strictly in order::

    acquire -> isolate -> intercept -> seed -> navigate -> submit
            -> wait -> extract -> teardown

Teardown always runs.  Any failure along the way is logged with full detail
and re-raised as the opaque :class:`~core.errors.ScrapeFailedError`, so
callers never see which step (or which selector) broke.
"""

import logging
from typing import Dict, Optional
from urllib.parse import urlparse

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from pydantic import BaseModel, ConfigDict

from browser.instance import BrowserManager
from core.config import RelaySettings
from core.errors import (
    NavigationError,
    ScrapeFailedError,
    SelectorTimeoutError,
)
from core.extractor import Outcome, ResponseExtractor

logger = logging.getLogger(__name__)

# localStorage keys read by the target app's level gate
LAST_NORMAL_LEVEL_KEY = "last_normal_level"
LAST_LEVEL_KEY = "last_level"
MAX_LEVEL_KEY = "default_max_level"

SEED_STORAGE_JS = """
(entries) => {
    for (const [key, value] of Object.entries(entries)) {
        window.localStorage.setItem(key, value);
    }
}
"""


class ScrapeRequest(BaseModel):
    """One prompt to relay.

    Attributes:
        target_url: Level page on the target site.
        prompt: User text, submitted verbatim.
        caller_id: Opaque caller identifier; also the remote session key.
    """

    model_config = ConfigDict(frozen=True)

    target_url: str
    prompt: str
    caller_id: str


def derive_level_slug(target_url: str, default: str = "baseline") -> str:
    """Return the level slug encoded in *target_url*'s path.

    >>> derive_level_slug("https://gandalf.lakera.ai/do-not-tell")
    'do-not-tell'
    >>> derive_level_slug("https://gandalf.lakera.ai/")
    'baseline'
    """
    slug = urlparse(target_url).path.strip("/")
    return slug or default


def origin_of(target_url: str) -> str:
    parts = urlparse(target_url)
    return f"{parts.scheme}://{parts.netloc}/"


def build_seed_state(slug: str, max_level: str = "8") -> Dict[str, str]:
    """Storage entries that make the level gate accept a deep link."""
    return {
        LAST_NORMAL_LEVEL_KEY: slug,
        LAST_LEVEL_KEY: slug,
        MAX_LEVEL_KEY: max_level,
    }


class PromptScraper:
    """Drives one browser session per prompt against the target site."""

    def __init__(
        self,
        browser_manager: BrowserManager,
        settings: Optional[RelaySettings] = None,
        extractor: Optional[ResponseExtractor] = None,
    ) -> None:
        self.browser_manager = browser_manager
        self.settings = settings or RelaySettings()
        self.extractor = extractor or ResponseExtractor(
            answer_selector=self.settings.answer_selector,
            error_selector=self.settings.error_selector,
            error_pattern=self.settings.error_pattern,
            fallback_answer=self.settings.fallback_answer,
        )

    async def scrape(self, request: ScrapeRequest) -> str:
        """Relay *request* and return the target's reply as plain text.

        Rejections from the target page are returned as text prefixed
        with ``"Error: "``; they are answers, not failures.

        Raises:
            ScrapeFailedError: Any step failed.  Details are logged only.
        """
        caller_id = request.caller_id
        logger.info("Starting scraper for user %s...", caller_id)
        try:
            async with self.browser_manager.session(caller_id) as lease:
                outcome = await self._interrogate(lease.page, request)
        except Exception as e:
            logger.error(
                "Scraper error for %s: %s: %s",
                caller_id, type(e).__name__, e, exc_info=True,
            )
            raise ScrapeFailedError() from e

        logger.info(
            "Got %s for %s: %.50s...",
            outcome.kind.value, caller_id, outcome.text,
        )
        return outcome.text

    async def _interrogate(
        self, page: Page, request: ScrapeRequest,
    ) -> Outcome:
        await self.seed_and_navigate(page, request.target_url)
        await self.submit_prompt(page, request.prompt)
        return await self.extractor.read_outcome(
            page,
            timeout_ms=self.settings.response_timeout_ms,
            poll_interval_ms=self.settings.poll_interval_ms,
        )

    async def _goto(self, page: Page, url: str) -> None:
        try:
            await page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=self.settings.navigation_timeout_ms,
            )
        except PlaywrightTimeoutError as e:
            raise NavigationError(f"Timed out loading {url}") from e
        except PlaywrightError as e:
            raise NavigationError(f"Failed loading {url}: {e}") from e

    async def seed_and_navigate(self, page: Page, target_url: str) -> None:
        """Unlock the requested level, then open it.

        The origin is visited first so its ``localStorage`` can be written
        before the level page's gate runs.
        """
        slug = derive_level_slug(
            target_url, self.settings.default_level_slug,
        )
        logger.info("Setting up Gandalf session for %s...", target_url)

        await self._goto(page, origin_of(target_url))
        try:
            await page.evaluate(
                SEED_STORAGE_JS,
                build_seed_state(slug, self.settings.max_level),
            )
        except PlaywrightError as e:
            raise NavigationError(f"Could not seed level state: {e}") from e

        logger.info("Navigating to validated URL: %s", target_url)
        await self._goto(page, target_url)

    async def submit_prompt(self, page: Page, prompt: str) -> None:
        selector = self.settings.input_selector
        logger.debug("Waiting for input selector: %s", selector)
        try:
            await page.wait_for_selector(
                selector, timeout=self.settings.input_timeout_ms,
            )
        except PlaywrightTimeoutError as e:
            raise SelectorTimeoutError(
                f"Input {selector!r} did not appear"
            ) from e

        logger.debug("Typing prompt...")
        input_box = page.locator(selector)
        await input_box.click()
        await input_box.press_sequentially(prompt)
        await page.keyboard.press("Enter")
