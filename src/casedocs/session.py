from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import requests
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from .http_client import apply_browser_cookies, session_with_cookies

logger = logging.getLogger(__name__)

_VIEWPORT = {"width": 1920, "height": 1080}


class BrowserSession:
    """Chromium context that reuses a login made by the user.

    With ``profile_dir`` a persistent Chrome profile is launched; otherwise a
    fresh context is seeded from a storage-state file (cookies + local
    storage). Either way downloads are accepted so the resolver can observe
    them.
    """

    def __init__(
        self,
        *,
        profile_dir: Path | None = None,
        storage_state: Path | None = None,
        headless: bool = True,
        channel: str | None = None,
        downloads_dir: Path | None = None,
    ) -> None:
        self.profile_dir = profile_dir
        self.storage_state = storage_state
        self.headless = headless
        self.channel = channel
        self.downloads_dir = downloads_dir

        self._playwright: Any = None
        self._browser: Any = None
        self.context: Any = None

    def start(self) -> BrowserSession:
        self._playwright = sync_playwright().start()
        chromium = self._playwright.chromium
        launch_args: dict[str, Any] = {"headless": self.headless}
        if self.channel:
            launch_args["channel"] = self.channel
        if self.downloads_dir is not None:
            self.downloads_dir.mkdir(parents=True, exist_ok=True)
            launch_args["downloads_path"] = str(self.downloads_dir)

        if self.profile_dir is not None:
            self.profile_dir.mkdir(parents=True, exist_ok=True)
            logger.info("launching persistent profile %s", self.profile_dir)
            self.context = chromium.launch_persistent_context(
                user_data_dir=str(self.profile_dir),
                accept_downloads=True,
                viewport=_VIEWPORT,
                locale="ko-KR",
                **launch_args,
            )
        else:
            self._browser = chromium.launch(**launch_args)
            ctx_kwargs: dict[str, Any] = {
                "accept_downloads": True,
                "viewport": _VIEWPORT,
                "locale": "ko-KR",
            }
            if self.storage_state is not None and self.storage_state.exists():
                logger.info("loading storage state %s", self.storage_state)
                ctx_kwargs["storage_state"] = str(self.storage_state)
            elif self.storage_state is not None:
                logger.warning("storage state %s not found; starting logged out", self.storage_state)
            self.context = self._browser.new_context(**ctx_kwargs)
        return self

    def new_page(self) -> Any:
        if self.context is None:
            raise RuntimeError("BrowserSession.start() has not been called")
        return self.context.new_page()

    def requests_session(self) -> requests.Session:
        """A requests session carrying the browser's current cookies."""

        if self.context is None:
            raise RuntimeError("BrowserSession.start() has not been called")
        user_agent = None
        try:
            page = self.context.pages[0] if self.context.pages else None
            if page is not None:
                user_agent = page.evaluate("() => navigator.userAgent")
        except PlaywrightError as e:
            logger.debug("user agent unavailable: %s", e)
        return session_with_cookies(self.context.cookies(), user_agent=user_agent)

    def refresh_cookies(self, session: requests.Session) -> None:
        apply_browser_cookies(session, self.context.cookies())

    def close(self) -> None:
        if self.context is not None and self.storage_state is not None and self.profile_dir is None:
            try:
                self.storage_state.parent.mkdir(parents=True, exist_ok=True)
                self.context.storage_state(path=str(self.storage_state))
            except PlaywrightError as e:
                logger.warning("could not save storage state: %s", e)
        for closer in (
            getattr(self.context, "close", None),
            getattr(self._browser, "close", None),
            getattr(self._playwright, "stop", None),
        ):
            if closer is None:
                continue
            try:
                closer()
            except PlaywrightError as e:
                logger.debug("shutdown step failed: %s", e)
        self.context = None
        self._browser = None
        self._playwright = None

    def __enter__(self) -> BrowserSession:
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.close()
