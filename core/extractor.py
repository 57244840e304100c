"""Outcome detection and extraction for the target chat page.

After a prompt is submitted the page renders, at some unpredictable
moment, either an answer bubble or an inline validation error.  This
module polls a snapshot of both nodes, resolves the first matching
predicate by priority, and normalises the result into an
:class:`Outcome`.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from core.errors import ResponseTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_ANSWER = (
    "I'm sorry, I don't understand what you're trying to say."
)

# Reads the error node and every answer node in one round trip.
SNAPSHOT_JS = """
([answerSelector, errorSelector]) => {
    const errorEl = document.querySelector(errorSelector);
    return {
        error: errorEl ? (errorEl.textContent || "") : null,
        answers: Array.from(document.querySelectorAll(answerSelector))
            .map((el) => el.textContent || ""),
    };
}
"""

# Bound on the fresh read taken after an outcome was detected
REREAD_TIMEOUT_MS = 5000

# Transient evaluate failures while the page swaps documents.
_NAVIGATION_ERROR_MARKERS = (
    "execution context was destroyed",
    "most likely because of a navigation",
    "cannot find context with specified id",
)


class OutcomeKind(Enum):
    ANSWER = "answer"
    ERROR_MESSAGE = "error_message"


@dataclass
class Outcome:
    """Result of one prompt submission.

    Attributes:
        kind: Answer or in-page rejection.
        text: Text returned to the caller.
        defaulted: ``True`` when the answer node matched but read back
            empty and the fallback phrase was used instead.
    """

    kind: OutcomeKind
    text: str
    defaulted: bool = False

    @property
    def is_error(self) -> bool:
        return self.kind is OutcomeKind.ERROR_MESSAGE


@dataclass
class DomSnapshot:
    """Text of the error node (``None`` if absent) and all answer nodes."""

    error_text: Optional[str] = None
    answers: List[str] = field(default_factory=list)

    @classmethod
    def from_js(cls, raw: Optional[dict]) -> "DomSnapshot":
        raw = raw or {}
        return cls(
            error_text=raw.get("error"),
            answers=[str(a) for a in raw.get("answers") or []],
        )

    @property
    def latest_answer(self) -> str:
        return self.answers[-1].strip() if self.answers else ""


class ResponseExtractor:
    """Waits for and extracts the target page's response.

    Args:
        answer_selector: Selector for answer nodes.  The page may keep
            earlier answers around; only the last one is current.
        error_selector: Selector for the validation-error node.
        error_pattern: Regular expression that marks the error node's
            text as a rejection of the prompt.
        fallback_answer: Returned when an answer matched but read empty.

    Examples:
        >>> extractor = ResponseExtractor()
        >>> extractor.extract(DomSnapshot(answers=["old", " new "])).text
        'new'
    """

    def __init__(
        self,
        answer_selector: str = ".answer",
        error_selector: str = ".text-red-500",
        error_pattern: str = "cannot be the same",
        fallback_answer: str = DEFAULT_FALLBACK_ANSWER,
    ) -> None:
        self.answer_selector = answer_selector
        self.error_selector = error_selector
        self.error_regex = re.compile(error_pattern)
        self.fallback_answer = fallback_answer

        # Evaluated in order every tick; first match wins.
        self.predicates: List[
            Tuple[OutcomeKind, Callable[[DomSnapshot], bool]]
        ] = [
            (OutcomeKind.ERROR_MESSAGE, self.has_rejection),
            (OutcomeKind.ANSWER, self.has_answer),
        ]

    def has_rejection(self, snapshot: DomSnapshot) -> bool:
        return bool(
            snapshot.error_text
            and self.error_regex.search(snapshot.error_text)
        )

    def has_answer(self, snapshot: DomSnapshot) -> bool:
        return bool(snapshot.latest_answer)

    def match(self, snapshot: DomSnapshot) -> Optional[OutcomeKind]:
        """Return the highest-priority predicate satisfied by *snapshot*."""
        for kind, predicate in self.predicates:
            if predicate(snapshot):
                return kind
        return None

    def extract(self, snapshot: DomSnapshot) -> Outcome:
        """Turn a snapshot into an :class:`Outcome`.

        A rejection always wins over an answer node, which may be stale
        or half rendered.
        """
        if self.has_rejection(snapshot):
            return Outcome(
                OutcomeKind.ERROR_MESSAGE,
                "Error: " + snapshot.error_text.strip(),
            )

        answer = snapshot.latest_answer
        if not answer:
            logger.debug("Answer node read back empty; using fallback")
            return Outcome(
                OutcomeKind.ANSWER, self.fallback_answer, defaulted=True,
            )
        return Outcome(OutcomeKind.ANSWER, answer)

    async def snapshot(self, page: Page) -> DomSnapshot:
        raw = await page.evaluate(
            SNAPSHOT_JS, [self.answer_selector, self.error_selector],
        )
        return DomSnapshot.from_js(raw)

    async def _poll_snapshot(
        self, page: Page, timeout_s: float,
    ) -> Optional[DomSnapshot]:
        """One bounded snapshot; ``None`` when the read is a miss.

        A stalled page (busy main thread) or a document swap counts as a
        miss so the caller's deadline stays in charge.
        """
        try:
            return await asyncio.wait_for(self.snapshot(page), timeout_s)
        except asyncio.TimeoutError:
            logger.debug("Snapshot stalled for %.2fs", timeout_s)
            return None
        except PlaywrightError as e:
            message = str(e).lower()
            if any(m in message for m in _NAVIGATION_ERROR_MARKERS):
                logger.debug("Snapshot skipped during navigation: %s", e)
                return None
            raise

    async def _poll_until(
        self,
        page: Page,
        accept: Callable[[DomSnapshot], bool],
        timeout_ms: int,
        poll_interval_ms: int,
    ) -> DomSnapshot:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000.0
        interval = poll_interval_ms / 1000.0

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ResponseTimeoutError(
                    f"No answer or rejection within {timeout_ms} ms"
                )
            snapshot = await self._poll_snapshot(page, remaining)
            if snapshot is not None and accept(snapshot):
                return snapshot

            remaining = deadline - loop.time()
            if remaining > 0:
                await asyncio.sleep(min(interval, remaining))

    async def wait_for_outcome(
        self,
        page: Page,
        timeout_ms: int = 30000,
        poll_interval_ms: int = 250,
    ) -> OutcomeKind:
        """Poll until a predicate holds.

        Every snapshot is bounded by the time left, so a page that never
        answers ``evaluate`` still ends the wait on schedule.

        Args:
            page: Page the prompt was submitted on.
            timeout_ms: Overall bound on the wait.
            poll_interval_ms: Delay between snapshots.

        Returns:
            The kind of outcome that was detected.

        Raises:
            ResponseTimeoutError: No predicate held within *timeout_ms*.
        """
        snapshot = await self._poll_until(
            page,
            lambda s: self.match(s) is not None,
            timeout_ms,
            poll_interval_ms,
        )
        return self.match(snapshot)

    async def read_outcome(
        self,
        page: Page,
        timeout_ms: int = 30000,
        poll_interval_ms: int = 250,
    ) -> Outcome:
        """Wait for the response, then extract it from a fresh read.

        The re-read tolerates the same stalls and navigations as the
        wait, within :data:`REREAD_TIMEOUT_MS`.
        """
        kind = await self.wait_for_outcome(
            page, timeout_ms=timeout_ms, poll_interval_ms=poll_interval_ms,
        )
        logger.debug("Outcome detected: %s", kind.value)
        snapshot = await self._poll_until(
            page, lambda s: True, REREAD_TIMEOUT_MS, poll_interval_ms,
        )
        return self.extract(snapshot)
