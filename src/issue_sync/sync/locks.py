"""At most one in-flight run per issue id."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from ..errors import RunInProgressError

logger = logging.getLogger(__name__)


class IssueLocks:
    """Registry of issue ids with a run in flight.

    ``hold()`` either waits for the current run to finish (``block=True``,
    bounded by *timeout*) or fails at once with ``RunInProgressError``.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._active: set[str] = set()

    @contextmanager
    def hold(
        self,
        issue_id: str,
        block: bool = True,
        timeout: float | None = None,
    ) -> Iterator[None]:
        with self._cond:
            if issue_id in self._active:
                if not block:
                    raise RunInProgressError(issue_id)
                logger.debug("Waiting for in-flight run on issue %s", issue_id)
                released = self._cond.wait_for(
                    lambda: issue_id not in self._active, timeout=timeout
                )
                if not released:
                    raise RunInProgressError(issue_id)
            self._active.add(issue_id)
        try:
            yield
        finally:
            with self._cond:
                self._active.discard(issue_id)
                self._cond.notify_all()

    def is_active(self, issue_id: str) -> bool:
        with self._cond:
            return issue_id in self._active
