"""
Browser module for the Gandalf prompt relay.

Provides browser acquisition and per-request isolation built on Playwright.
Key capabilities:

- **BrowserManager** – hands out one isolated page per request, preferring a
  remote automation service keyed by caller and falling back to a single,
  lazily launched local Chromium.
- **ResourceBlocker** – route-level blocking of images, fonts, media and
  stylesheets.

Submodules:
    instance: ``BrowserManager``, the remote / local backends and
        ``BrowserLease``.
    blocker: ``ResourceBlocker`` route handler.
"""

from .blocker import ResourceBlocker
from .instance import AcquisitionMode, BrowserLease, BrowserManager

__all__ = [
    "AcquisitionMode",
    "BrowserLease",
    "BrowserManager",
    "ResourceBlocker",
]
