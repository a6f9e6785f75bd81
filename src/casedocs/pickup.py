"""Pick up files the browser saved straight into a local downloads folder.

Some attachments bypass Playwright's download event (OS-level save dialogs,
external viewers). When enabled, the resolver polls a folder for the newest
matching file whose size has settled.
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

DEFAULT_PATTERN = re.compile(r"\.(pdf|csv|xlsx|xls|zip|hwp)$", re.IGNORECASE)
_PARTIAL_SUFFIXES = (".crdownload", ".tmp", ".part")


class DownloadPickup(Protocol):
    def pickup(self, *, since: float, timeout_s: float | None = None) -> Path | None: ...


class NullPickup:
    """Pickup capability for when the fallback is disabled."""

    def pickup(self, *, since: float, timeout_s: float | None = None) -> Path | None:
        return None


class FolderPickup:
    def __init__(
        self,
        directory: Path,
        *,
        pattern: re.Pattern[str] = DEFAULT_PATTERN,
        timeout_s: float = 60.0,
        poll_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.directory = directory
        self.pattern = pattern
        self.timeout_s = timeout_s
        self.poll_s = poll_s
        self._clock = clock
        self._sleep = sleep

    def _newest(self, since: float) -> Path | None:
        newest: tuple[float, Path] | None = None
        for p in self.directory.iterdir():
            name = p.name
            if name.endswith(_PARTIAL_SUFFIXES) or not self.pattern.search(name):
                continue
            try:
                st = p.stat()
            except OSError:
                continue
            if st.st_mtime < since:
                continue
            if newest is None or st.st_mtime > newest[0]:
                newest = (st.st_mtime, p)
        return newest[1] if newest else None

    def pickup(self, *, since: float, timeout_s: float | None = None) -> Path | None:
        """Wait for a finished download modified at or after ``since``.

        A file counts as finished once it is the newest match and its size is
        non-zero and unchanged across two successive polls. ``timeout_s`` can only
        shorten the configured wait.
        """

        limit = self.timeout_s if timeout_s is None else min(self.timeout_s, timeout_s)
        deadline = self._clock() + limit
        last: Path | None = None
        last_size = -1

        while self._clock() < deadline:
            try:
                cand = self._newest(since)
                if cand is not None:
                    size = cand.stat().st_size
                    if cand == last and size == last_size and size > 0:
                        logger.info("picked up OS download %s", cand)
                        return cand
                    last, last_size = cand, size
            except OSError as e:
                logger.debug("download folder unreadable: %s", e)
            self._sleep(self.poll_s)

        logger.info("no OS download appeared in %s within %.0fs", self.directory, limit)
        return None
