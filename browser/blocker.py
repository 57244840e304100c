"""Network-level resource blocker for the prompt relay.

Aborts requests for images, fonts, media and stylesheets at the Playwright
route level.  The target page only needs its markup and scripts to accept
a prompt and render an answer, and skipping the rest keeps heavy assets and
third-party trackers from stalling the ``domcontentloaded`` signal.
"""

import logging
from typing import FrozenSet, Iterable, Optional

from playwright.async_api import Route

logger = logging.getLogger(__name__)

DEFAULT_BLOCKED_TYPES: FrozenSet[str] = frozenset(
    {"image", "font", "media", "stylesheet"}
)


class ResourceBlocker:
    """Route-level resource blocker for a single Playwright page.

    Attributes:
        blocked_types: Playwright resource types that are aborted.
        blocked_count: Number of requests aborted so far.
    """

    def __init__(
        self, blocked_types: Optional[Iterable[str]] = None,
    ) -> None:
        """Initialise the resource blocker.

        Args:
            blocked_types: Resource types to abort.  Defaults to
                :data:`DEFAULT_BLOCKED_TYPES`.
        """
        self.blocked_types: FrozenSet[str] = (
            frozenset(blocked_types)
            if blocked_types is not None
            else DEFAULT_BLOCKED_TYPES
        )
        self.blocked_count: int = 0

    def should_block(self, resource_type: str) -> bool:
        return resource_type in self.blocked_types

    async def handle_route(self, route: Route) -> None:
        """Playwright route handler that aborts or continues each request.

        Args:
            route: Playwright ``Route`` object for the intercepted request.
        """
        request = route.request
        if self.should_block(request.resource_type):
            self.blocked_count += 1
            await route.abort()
            return

        await route.continue_()
