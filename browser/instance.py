"""Browser acquisition and session lifecycle for the prompt relay.

Provides :class:`BrowserManager`, which hands out one Playwright page per
request and always takes it back.  Two interchangeable backends implement
the same ``acquire`` / ``isolate`` / ``teardown`` capability:

* :class:`RemoteBrowserBackend` -- connects over CDP to a hosted browser
  pool (Browserless-style).  The service keys sessions by ``sessionId``,
  so a caller reconnecting with the same id resumes the same browser and
  keeps its level progression on the target site.
* :class:`LocalBrowserBackend` -- lazily launches one headless Chromium per
  process and isolates each request in a fresh ``BrowserContext``.

The backend is chosen once per request (remote first when configured,
local on any connection failure) and travels with the request on a
:class:`BrowserLease`.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, ClassVar, Iterable, List, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from playwright.async_api import Browser, BrowserContext, Page, Playwright
from playwright.async_api import async_playwright

from core.errors import AcquisitionError
from .blocker import ResourceBlocker

logger = logging.getLogger(__name__)

LOCAL_LAUNCH_ARGS: List[str] = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
]


class AcquisitionMode(Enum):
    """How the browser for a request was obtained."""

    REMOTE = "remote"
    LOCAL = "local"


@dataclass
class BrowserLease:
    """Everything one request holds while it talks to the target site.

    Attributes:
        caller_id: Opaque caller identifier (remote session key).
        backend: Backend that produced the browser; owns teardown.
        browser: Remote connection or the shared local browser.
        context: Request-scoped context (local mode only).
        page: The request's single page.
        blocker: Interceptor installed on ``page``.
    """

    caller_id: str
    backend: "BrowserBackend"
    browser: Browser
    context: Optional[BrowserContext] = None
    page: Optional[Page] = None
    blocker: Optional[ResourceBlocker] = None

    @property
    def mode(self) -> AcquisitionMode:
        return self.backend.mode


class PlaywrightDriver:
    """Lazily started, process-wide Playwright driver."""

    def __init__(
        self, factory: Callable[[], object] = async_playwright,
    ) -> None:
        self._factory = factory
        self._playwright: Optional[Playwright] = None
        self._lock = asyncio.Lock()

    async def get(self) -> Playwright:
        async with self._lock:
            if self._playwright is None:
                self._playwright = await self._factory().start()
            return self._playwright

    async def stop(self) -> None:
        async with self._lock:
            if self._playwright is not None:
                try:
                    await self._playwright.stop()
                except Exception as e:
                    logger.debug("Error stopping Playwright: %s", e)
                self._playwright = None


async def _close_page_quietly(page: Optional[Page]) -> None:
    if page is None:
        return
    try:
        await page.close()
    except Exception as e:
        logger.debug("Page close failed (already closed?): %s", e)


class BrowserBackend(ABC):
    """Capability interface selected once per request."""

    mode: ClassVar[AcquisitionMode]

    def __init__(self, driver: PlaywrightDriver) -> None:
        self._driver = driver

    @abstractmethod
    async def acquire(self, caller_id: str) -> Browser:
        """Return a browser handle usable by *caller_id*."""

    @abstractmethod
    async def isolate(self, lease: BrowserLease) -> Page:
        """Open the request's page inside the right isolation boundary."""

    @abstractmethod
    async def teardown(self, lease: BrowserLease) -> None:
        """Release the lease's resources.  Must never raise."""


class RemoteBrowserBackend(BrowserBackend):
    """Per-caller sessions on a remote browser automation service."""

    mode = AcquisitionMode.REMOTE

    def __init__(
        self,
        driver: PlaywrightDriver,
        ws_endpoint: str,
        keepalive_ms: int = 300000,
        connect_timeout_ms: int = 10000,
    ) -> None:
        super().__init__(driver)
        self.ws_endpoint = ws_endpoint
        self.keepalive_ms = keepalive_ms
        self.connect_timeout_ms = connect_timeout_ms

    def build_connect_url(self, caller_id: str) -> str:
        """Return the endpoint URL keyed to *caller_id*.

        Existing query parameters (API tokens, regions) are preserved;
        ``sessionId`` and ``keepalive`` are set or replaced.
        """
        parts = urlparse(self.ws_endpoint)
        query = [
            (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
            if k not in ("sessionId", "keepalive")
        ]
        query.append(("sessionId", caller_id))
        query.append(("keepalive", str(self.keepalive_ms)))
        return urlunparse(parts._replace(query=urlencode(query)))

    async def acquire(self, caller_id: str) -> Browser:
        url = self.build_connect_url(caller_id)
        logger.info(
            "Connecting to remote browser session for %s...", caller_id,
        )
        try:
            playwright = await self._driver.get()
            return await playwright.chromium.connect_over_cdp(
                url, timeout=self.connect_timeout_ms,
            )
        except Exception as e:
            raise AcquisitionError(
                f"Remote browser connection failed: {e}"
            ) from e

    async def isolate(self, lease: BrowserLease) -> Page:
        # The remote session is the isolation unit; a new context would
        # drop the caller's progression state.
        contexts = lease.browser.contexts
        if contexts:
            return await contexts[0].new_page()
        return await lease.browser.new_page()

    async def teardown(self, lease: BrowserLease) -> None:
        await _close_page_quietly(lease.page)
        try:
            # On a CDP-attached browser close() only disconnects; the
            # remote session stays warm for the caller's next request.
            await lease.browser.close()
        except Exception as e:
            logger.debug("Remote disconnect failed: %s", e)


class LocalBrowserBackend(BrowserBackend):
    """One shared local Chromium, one fresh context per request."""

    mode = AcquisitionMode.LOCAL

    def __init__(
        self,
        driver: PlaywrightDriver,
        headless: bool = True,
        launch_args: Optional[List[str]] = None,
    ) -> None:
        super().__init__(driver)
        self.headless = headless
        self.launch_args = (
            list(launch_args) if launch_args is not None
            else list(LOCAL_LAUNCH_ARGS)
        )
        self._browser: Optional[Browser] = None
        self._launch_task: Optional[asyncio.Future] = None

    @property
    def browser(self) -> Optional[Browser]:
        return self._browser

    async def _launch(self) -> Browser:
        logger.info(
            "Launching local fallback browser (Headless: %s)...",
            self.headless,
        )
        playwright = await self._driver.get()
        browser = await playwright.chromium.launch(
            headless=self.headless, args=self.launch_args,
        )
        self._browser = browser
        logger.info("Local browser launched.")
        return browser

    async def acquire(self, caller_id: str) -> Browser:
        """Return the shared browser, launching it exactly once.

        Concurrent first callers all await the same in-flight launch.
        A failed launch is forgotten so the next request can retry, and
        a browser that has disconnected (crashed) is replaced the same
        way.
        """
        browser = self._browser
        if browser is not None:
            if browser.is_connected():
                return browser
            logger.warning("Local browser disconnected; relaunching.")
            self._browser = None
            self._launch_task = None

        if self._launch_task is None:
            self._launch_task = asyncio.ensure_future(self._launch())
        task = self._launch_task

        try:
            # shield: a timed-out request must not cancel a launch that
            # other requests are waiting on
            return await asyncio.shield(task)
        except Exception:
            if self._launch_task is task:
                self._launch_task = None
            raise

    async def isolate(self, lease: BrowserLease) -> Page:
        lease.context = await lease.browser.new_context()
        return await lease.context.new_page()

    async def teardown(self, lease: BrowserLease) -> None:
        await _close_page_quietly(lease.page)
        if lease.context is None:
            return
        try:
            await lease.context.close()
        except Exception as e:
            logger.debug("Context close failed: %s", e)

    async def close(self) -> None:
        """Shut down the shared browser.  Process shutdown only."""
        task, self._launch_task = self._launch_task, None
        if task is not None and not task.done():
            task.cancel()
        browser, self._browser = self._browser, None
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                logger.debug("Error during browser exit: %s", e)
            logger.info("Local browser closed.")


class BrowserManager:
    """Hands out isolated, interceptor-equipped pages per request.

    The manager should be instantiated *once* at startup and shared by
    all requests.  Thread safety is provided by asyncio (all public
    methods are coroutines on one event loop).
    """

    def __init__(
        self,
        headless: bool = True,
        remote_endpoint: Optional[str] = None,
        remote_keepalive_ms: int = 300000,
        connect_timeout_ms: int = 10000,
        blocked_resource_types: Optional[Iterable[str]] = None,
        driver: Optional[PlaywrightDriver] = None,
    ) -> None:
        """Initialise the BrowserManager.

        Args:
            headless: Run the local browser headless.
            remote_endpoint: Remote automation service URL
                (``wss://...``).  ``None`` disables remote mode.
            remote_keepalive_ms: How long the remote service keeps an
                idle session alive.
            connect_timeout_ms: Bound on the remote connection attempt.
            blocked_resource_types: Resource types aborted on every page.
            driver: Playwright driver (injected by tests).
        """
        self.driver = driver or PlaywrightDriver()
        self.blocked_resource_types = (
            list(blocked_resource_types)
            if blocked_resource_types is not None else None
        )
        self.local = LocalBrowserBackend(self.driver, headless=headless)
        self.remote: Optional[RemoteBrowserBackend] = None
        if remote_endpoint:
            self.remote = RemoteBrowserBackend(
                self.driver,
                remote_endpoint,
                keepalive_ms=remote_keepalive_ms,
                connect_timeout_ms=connect_timeout_ms,
            )

    async def _acquire(self, caller_id: str) -> BrowserLease:
        if self.remote is not None:
            try:
                browser = await self.remote.acquire(caller_id)
                return BrowserLease(
                    caller_id=caller_id, backend=self.remote, browser=browser,
                )
            except AcquisitionError as e:
                logger.warning(
                    "Falling back to local browser for %s: %s",
                    caller_id, e,
                )

        browser = await self.local.acquire(caller_id)
        return BrowserLease(
            caller_id=caller_id, backend=self.local, browser=browser,
        )

    async def open_session(self, caller_id: str) -> BrowserLease:
        """Acquire a browser, isolate a page and install the blocker.

        Args:
            caller_id: Opaque caller identifier.

        Returns:
            A lease whose ``page`` is ready for navigation.  Pass it to
            :meth:`release` when done.
        """
        lease = await self._acquire(caller_id)
        try:
            lease.page = await lease.backend.isolate(lease)
            lease.blocker = ResourceBlocker(self.blocked_resource_types)
            await lease.page.route("**/*", lease.blocker.handle_route)
        except Exception:
            await self.release(lease)
            raise
        logger.debug(
            "Opened %s session for %s", lease.mode.value, caller_id,
        )
        return lease

    async def release(self, lease: BrowserLease) -> None:
        await lease.backend.teardown(lease)
        if lease.blocker is not None:
            logger.debug(
                "Released %s session for %s (%d requests blocked)",
                lease.mode.value, lease.caller_id,
                lease.blocker.blocked_count,
            )

    @asynccontextmanager
    async def session(self, caller_id: str) -> AsyncIterator[BrowserLease]:
        """``async with`` wrapper around :meth:`open_session`/:meth:`release`."""
        lease = await self.open_session(caller_id)
        try:
            yield lease
        finally:
            await self.release(lease)

    async def close(self) -> None:
        """Shut down the local browser and the Playwright driver."""
        await self.local.close()
        await self.driver.stop()
