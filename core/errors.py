"""Exception taxonomy for the prompt relay.

Only :class:`ScrapeFailedError` is meant to leave the core.  Everything
else describes *which* step failed and is logged, then normalised at the
boundary of :meth:`core.scraper.PromptScraper.scrape`.
"""


class RelayError(Exception):
    """Base class for all relay errors."""


class AcquisitionError(RelayError):
    """Connecting to the remote browser service failed.

    Recoverable: the browser manager falls back to a local browser.
    """


class NavigationError(RelayError):
    """A page load timed out or the page crashed."""


class SelectorTimeoutError(RelayError):
    """The prompt input never appeared on the target page."""


class ResponseTimeoutError(RelayError):
    """Neither an answer nor a rejection message rendered in time."""


class ScrapeFailedError(RelayError):
    """Opaque failure surfaced to callers of the core."""

    DEFAULT_MESSAGE = "Failed to get response from the AI interface."

    def __init__(self, message: str = DEFAULT_MESSAGE) -> None:
        super().__init__(message)
