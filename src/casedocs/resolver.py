from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urldefrag, urlparse

from playwright.sync_api import Error as PlaywrightError

from .classify import Candidate, CandidateKind
from .content import (
    DEFAULT_MIN_BYTES,
    base_content_type,
    check_payload,
    extension_for,
    extract_embedded_file_urls,
    filename_from_disposition,
    guess_content_type,
    is_allowed_content_type,
)
from .errors import (
    CollectorError,
    FilesystemFailure,
    IntegrityRejected,
    ResolutionAmbiguous,
    describe_error,
)
from .http_client import FetchRequest, FetchResult, RateLimitedTransport
from .pickup import DownloadPickup, NullPickup
from .storage import AcquiredResource, FilenameRegistry, build_stem, write_resource
from .urls import is_absolute_http_url, is_script_reference, to_direct_download_url

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    DIRECT_LINK = "direct-link"
    DOWNLOAD = "download-signal"
    POPUP = "popup-inspection"
    RESPONSE = "response-sniffing"
    DIRECT_URL = "direct-url-reconstruction"
    NAVIGATION = "in-page-navigation"
    OS_PICKUP = "os-folder-pickup"
    LINK_ONLY = "link-only"
    NONE = "none"


class Signal(str, Enum):
    DOWNLOAD = "download"
    POPUP = "popup"
    RESPONSE = "response"


# Fixed priority; in-page navigation ranks below all of these.
SIGNAL_PRIORITY: tuple[Signal, ...] = (Signal.DOWNLOAD, Signal.POPUP, Signal.RESPONSE)

_DOWNLOAD_WORDS = "다운로드|저장|내려받기|파일받기|원본저장|download"

DOWNLOAD_BUTTON_SELECTORS: tuple[str, ...] = (
    f"button:has-text(/{_DOWNLOAD_WORDS}/i)",
    f"a:has-text(/{_DOWNLOAD_WORDS}/i)",
    f"text=/{_DOWNLOAD_WORDS}/i",
    '[aria-label*="다운로드" i]',
    '[aria-label*="download" i]',
    '[title*="다운로드" i]',
    '[title*="download" i]',
    '[title*="저장" i]',
    '[class*="download" i]',
    '[id*="download" i]',
    ".fa-download",
    ".btn-download",
    ".icon-download",
    'input[value*="다운로드" i]',
    'input[value*="저장" i]',
    'input[value*="download" i]',
    'img[alt*="다운로드" i]',
    'img[alt*="저장" i]',
    'img[alt*="download" i]',
)

_MAX_EMBEDDED_URLS = 5


@dataclass(frozen=True)
class ResolverConfig:
    download_timeout_ms: int = 15_000
    popup_timeout_ms: int = 12_000
    response_timeout_ms: int = 8_000
    settle_ms: int = 1_500
    poll_ms: int = 200
    click_timeout_ms: int = 5_000
    popup_load_timeout_ms: int = 10_000
    nested_download_timeout_ms: int = 5_000
    candidate_budget_s: float = 90.0
    min_bytes: int = DEFAULT_MIN_BYTES


@dataclass(frozen=True)
class CapturedRequest:
    url: str
    method: str
    post_data: str | None


@dataclass
class CaseContext:
    """Per-case state handed to the resolver; discarded when the case ends."""

    case_id: str
    case_dir: Path
    page_url: str
    registry: FilenameRegistry
    captured_requests: dict[str, CapturedRequest] = field(default_factory=dict)
    seq: int = 0

    @property
    def debug_dir(self) -> Path:
        return self.case_dir / "_debug"

    def next_stem(self, candidate: Candidate) -> str:
        self.seq += 1
        return build_stem(seq=self.seq, category=candidate.category, label=candidate.label)

    def close(self) -> None:
        self.registry.clear()
        self.captured_requests.clear()


@dataclass(frozen=True)
class ResolutionOutcome:
    strategy: Strategy
    success: bool
    resolved_location: str | None = None
    error: str | None = None
    resource: AcquiredResource | None = None


def _failure(strategy: Strategy, location: str | None, error: str) -> ResolutionOutcome:
    return ResolutionOutcome(
        strategy=strategy, success=False, resolved_location=location, error=error
    )


def _response_qualifies(response: Any) -> bool:
    try:
        status = int(response.status)
        content_type = response.headers.get("content-type")
    except PlaywrightError:
        return False
    return 200 <= status < 300 and is_allowed_content_type(content_type)


def _same_page(a: str, b: str) -> bool:
    return urldefrag(a)[0] == urldefrag(b)[0]


class _SignalRace:
    """Listeners registered before the click; collects whatever fires."""

    def __init__(self, page: Any, ctx: CaseContext) -> None:
        self.page = page
        self.ctx = ctx
        self.downloads: list[Any] = []
        self.popups: list[Any] = []
        self.responses: list[Any] = []
        self.popup_responses: dict[int, list[Any]] = {}
        self._listeners: list[tuple[Any, str, Callable[..., None]]] = []

    def _listen(self, target: Any, event: str, handler: Callable[..., None]) -> None:
        target.on(event, handler)
        self._listeners.append((target, event, handler))

    def arm(self) -> None:
        self._listen(self.page, "download", self._on_download)
        self._listen(self.page, "popup", self._on_popup)
        self._listen(self.page, "response", self._on_response)
        self._listen(self.page, "requestfinished", self._on_request)

    def disarm(self) -> None:
        for target, event, handler in self._listeners:
            try:
                target.remove_listener(event, handler)
            except PlaywrightError:
                pass
        self._listeners.clear()

    def close_popups(self) -> None:
        for popup in self.popups:
            try:
                if not popup.is_closed():
                    popup.close()
            except PlaywrightError as e:
                logger.debug("popup close failed: %s", e)

    def fired(self) -> list[Signal]:
        present = {
            Signal.DOWNLOAD: bool(self.downloads),
            Signal.POPUP: bool(self.popups),
            Signal.RESPONSE: bool(self.responses),
        }
        return [s for s in SIGNAL_PRIORITY if present[s]]

    def _on_download(self, download: Any) -> None:
        self.downloads.append(download)

    def _on_popup(self, popup: Any) -> None:
        self.popups.append(popup)
        bucket: list[Any] = []
        self.popup_responses[id(popup)] = bucket

        def _on_popup_response(response: Any) -> None:
            if _response_qualifies(response):
                bucket.append(response)

        self._listen(popup, "response", _on_popup_response)
        self._listen(popup, "popup", self._on_popup)
        # Viewers often start the download themselves.
        self._listen(popup, "download", self._on_download)

    def _on_response(self, response: Any) -> None:
        if _response_qualifies(response):
            self.responses.append(response)

    def _on_request(self, request: Any) -> None:
        try:
            method = str(request.method).upper()
            if method == "GET":
                return
            self.ctx.captured_requests[request.url] = CapturedRequest(
                url=request.url, method=method, post_data=request.post_data
            )
        except (PlaywrightError, UnicodeDecodeError):
            return


class Resolver:
    """Turns one clickable candidate into a stored file or a structured failure.

    The click is performed once, with download/popup/response listeners armed
    beforehand. Whatever fired is then tried in fixed priority order, followed
    by the direct-fetch fallbacks, until one tier yields a file that passes the
    integrity checks.
    """

    def __init__(
        self,
        transport: RateLimitedTransport,
        *,
        config: ResolverConfig | None = None,
        pickup: DownloadPickup | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.transport = transport
        self.cfg = config or ResolverConfig()
        self.pickup = pickup or NullPickup()
        self._clock = clock
        self._wall_clock = wall_clock

    def resolve(self, candidate: Candidate, page: Any, ctx: CaseContext) -> ResolutionOutcome:
        if candidate.kind is CandidateKind.LINK:
            return ResolutionOutcome(
                strategy=Strategy.LINK_ONLY,
                success=True,
                resolved_location=candidate.target_hint,
            )

        stem = ctx.next_stem(candidate)
        deadline = self._clock() + self.cfg.candidate_budget_s
        hint = candidate.target_hint
        try:
            if hint is not None and is_absolute_http_url(hint) and not is_script_reference(hint):
                logger.debug("%s: absolute target, fetching directly", candidate.label)
                return self._fetch_direct(hint, Strategy.DIRECT_LINK, candidate, ctx, stem)
            return self._click_and_race(candidate, page, ctx, stem, deadline)
        except (FilesystemFailure, PlaywrightError, OSError) as e:
            logger.warning("%s: resolution aborted: %s", candidate.label, e)
            return _failure(Strategy.NONE, hint, describe_error(e))

    def _expired(self, deadline: float) -> bool:
        return self._clock() >= deadline

    def _restore_page(self, page: Any, url_before: str) -> None:
        """Put the case page back where it was before the click."""

        if _same_page(page.url, url_before):
            return
        logger.debug("returning from %s to %s", page.url, url_before)
        try:
            page.go_back(
                wait_until="domcontentloaded", timeout=self.cfg.popup_load_timeout_ms
            )
        except PlaywrightError as e:
            logger.debug("go_back failed: %s", e)
        if _same_page(page.url, url_before):
            return
        try:
            page.goto(
                url_before, wait_until="domcontentloaded", timeout=self.cfg.popup_load_timeout_ms
            )
        except PlaywrightError as e:
            logger.warning("could not return to %s: %s", url_before, e)

    def _await_signals(
        self, page: Any, race: _SignalRace, url_before: str, deadline: float
    ) -> None:
        cfg = self.cfg
        start = self._clock()
        signal_deadlines = {
            Signal.DOWNLOAD: start + cfg.download_timeout_ms / 1000,
            Signal.POPUP: start + cfg.popup_timeout_ms / 1000,
            Signal.RESPONSE: start + cfg.response_timeout_ms / 1000,
        }
        last_deadline = max(signal_deadlines.values())
        settle_until: float | None = None

        while True:
            now = self._clock()
            fired = race.fired()
            if fired and fired[0] is Signal.DOWNLOAD:
                return
            navigated = not _same_page(page.url, url_before)
            if fired or navigated:
                if settle_until is None:
                    settle_until = now + cfg.settle_ms / 1000
                higher = (
                    SIGNAL_PRIORITY[: SIGNAL_PRIORITY.index(fired[0])]
                    if fired
                    else SIGNAL_PRIORITY
                )
                pending = [s for s in higher if signal_deadlines[s] > now]
                if not pending or now >= settle_until:
                    return
            elif now >= last_deadline:
                return
            if now >= deadline:
                return
            page.wait_for_timeout(cfg.poll_ms)

    def _click_and_race(
        self,
        candidate: Candidate,
        page: Any,
        ctx: CaseContext,
        stem: str,
        deadline: float,
    ) -> ResolutionOutcome:
        race = _SignalRace(page, ctx)
        url_before = page.url
        clicked_at = self._wall_clock()
        errors: list[tuple[Strategy, str]] = []

        race.arm()
        try:
            if candidate.action_ref is not None:
                try:
                    candidate.action_ref.click(timeout=self.cfg.click_timeout_ms)
                except PlaywrightError as e:
                    logger.debug("%s: click failed: %s", candidate.label, e)
                    errors.append((Strategy.NONE, describe_error(e)))
                else:
                    self._await_signals(page, race, url_before, deadline)

            fired = race.fired()
            logger.debug(
                "%s: signals fired: %s",
                candidate.label,
                ",".join(s.value for s in fired) or "none",
            )
            location = candidate.target_hint

            for tier in self._tiers(race, page, url_before):
                if self._expired(deadline):
                    errors.append((Strategy.NONE, "candidate time budget exhausted"))
                    break
                strategy, attempt = tier
                logger.debug("%s: trying %s", candidate.label, strategy.value)
                outcome = attempt(candidate, ctx, stem, deadline)
                if outcome is None:
                    continue
                if outcome.success:
                    logger.info(
                        "%s: acquired via %s -> %s",
                        candidate.label,
                        outcome.strategy.value,
                        outcome.resource.filename if outcome.resource else "-",
                    )
                    return outcome
                location = outcome.resolved_location or location
                errors.append((outcome.strategy, outcome.error or "failed"))

            if not self._expired(deadline):
                outcome = self._from_os_pickup(
                    candidate, ctx, stem, clicked_at, deadline
                )
                if outcome is not None:
                    if outcome.success:
                        return outcome
                    errors.append((outcome.strategy, outcome.error or "failed"))
        finally:
            race.disarm()
            race.close_popups()
            self._restore_page(page, url_before)

        if errors:
            strategy, error = errors[-1]
            return _failure(strategy, location, error)
        return _failure(
            Strategy.NONE,
            location,
            describe_error(ResolutionAmbiguous("no signal after click")),
        )

    def _tiers(
        self, race: _SignalRace, page: Any, url_before: str
    ) -> list[tuple[Strategy, Callable[..., ResolutionOutcome | None]]]:
        """Ordered fallback attempts for whatever the click produced."""

        tiers: list[tuple[Strategy, Callable[..., ResolutionOutcome | None]]] = []

        if race.downloads:
            download = race.downloads[0]
            tiers.append(
                (
                    Strategy.DOWNLOAD,
                    lambda c, ctx, stem, _d: self._from_download(
                        download, Strategy.DOWNLOAD, c, ctx, stem
                    ),
                )
            )
        if race.popups:
            popup = race.popups[0]
            tiers.append(
                (
                    Strategy.POPUP,
                    lambda c, ctx, stem, d: self._inspect_popup(popup, race, c, ctx, stem, d),
                )
            )
        for response in reversed(race.responses):
            tiers.append(
                (
                    Strategy.RESPONSE,
                    lambda c, ctx, stem, _d, r=response: self._from_response(
                        r, Strategy.RESPONSE, c, ctx, stem
                    ),
                )
            )
        tiers.append(
            (
                Strategy.NAVIGATION,
                lambda c, ctx, stem, _d: self._from_navigation(page, url_before, c, ctx, stem),
            )
        )
        tiers.append(
            (
                Strategy.DIRECT_URL,
                lambda c, ctx, stem, _d: self._from_reconstructed_url(c, ctx, stem),
            )
        )
        return tiers

    def _persist(
        self,
        strategy: Strategy,
        body: bytes,
        *,
        content_type: str | None,
        filename_hint: str | None,
        location: str | None,
        candidate: Candidate,
        ctx: CaseContext,
        stem: str,
    ) -> ResolutionOutcome:
        try:
            check_payload(body, content_type=content_type, min_bytes=self.cfg.min_bytes)
        except IntegrityRejected as e:
            return _failure(strategy, location, describe_error(e))

        ext = extension_for(content_type, filename=filename_hint, category=candidate.category)
        resource = write_resource(
            ctx.registry,
            stem=stem,
            ext=ext,
            body=body,
            content_type=base_content_type(content_type) or None,
        )
        return ResolutionOutcome(
            strategy=strategy,
            success=True,
            resolved_location=location,
            resource=resource,
        )

    def _from_download(
        self,
        download: Any,
        strategy: Strategy,
        candidate: Candidate,
        ctx: CaseContext,
        stem: str,
    ) -> ResolutionOutcome:
        location = getattr(download, "url", None)
        try:
            suggested = download.suggested_filename
            path = download.path()
        except PlaywrightError as e:
            return _failure(strategy, location, describe_error(e))
        if path is None:
            return _failure(strategy, location, "download did not complete")
        body = Path(path).read_bytes()
        return self._persist(
            strategy,
            body,
            content_type=guess_content_type(body, filename=suggested),
            filename_hint=suggested,
            location=location,
            candidate=candidate,
            ctx=ctx,
            stem=stem,
        )

    def _from_response(
        self,
        response: Any,
        strategy: Strategy,
        candidate: Candidate,
        ctx: CaseContext,
        stem: str,
    ) -> ResolutionOutcome:
        location = response.url
        try:
            body = response.body()
        except PlaywrightError as e:
            return _failure(strategy, location, describe_error(e))
        headers = response.headers
        filename = filename_from_disposition(headers.get("content-disposition"))
        return self._persist(
            strategy,
            body,
            content_type=headers.get("content-type"),
            filename_hint=filename or urlparse(location).path,
            location=location,
            candidate=candidate,
            ctx=ctx,
            stem=stem,
        )

    def _fetch(
        self, url: str, ctx: CaseContext, *, validate: bool = True
    ) -> FetchResult:
        captured = ctx.captured_requests.get(url)
        request = FetchRequest(
            url=url,
            method=captured.method if captured else "GET",
            data=captured.post_data if captured else None,
            referer=ctx.page_url,
            validate=validate,
        )
        return self.transport.fetch(request)

    def _fetch_direct(
        self,
        url: str,
        strategy: Strategy,
        candidate: Candidate,
        ctx: CaseContext,
        stem: str,
    ) -> ResolutionOutcome:
        try:
            result = self._fetch(url, ctx)
        except CollectorError as e:
            return _failure(strategy, url, describe_error(e))
        return self._persist_fetched(result, strategy, candidate, ctx, stem)

    def _persist_fetched(
        self,
        result: FetchResult,
        strategy: Strategy,
        candidate: Candidate,
        ctx: CaseContext,
        stem: str,
    ) -> ResolutionOutcome:
        content_type = result.content_type
        if not is_allowed_content_type(content_type):
            sniffed = guess_content_type(result.body)
            if base_content_type(content_type) or sniffed is None:
                return _failure(
                    strategy,
                    result.final_url,
                    f"content-type not allowed: {base_content_type(content_type) or '-'}",
                )
            content_type = sniffed
        filename = filename_from_disposition(result.content_disposition)
        return self._persist(
            strategy,
            result.body,
            content_type=content_type,
            filename_hint=filename or urlparse(result.final_url).path,
            location=result.final_url,
            candidate=candidate,
            ctx=ctx,
            stem=stem,
        )

    def _from_reconstructed_url(
        self, candidate: Candidate, ctx: CaseContext, stem: str
    ) -> ResolutionOutcome | None:
        url = to_direct_download_url(candidate.target_hint, page_url=ctx.page_url)
        if url is None:
            return None
        logger.debug("%s: trying reconstructed url %s", candidate.label, url)
        return self._fetch_direct(url, Strategy.DIRECT_URL, candidate, ctx, stem)

    def _from_navigation(
        self,
        page: Any,
        url_before: str,
        candidate: Candidate,
        ctx: CaseContext,
        stem: str,
    ) -> ResolutionOutcome | None:
        location = page.url
        if _same_page(location, url_before) or location == "about:blank":
            return None
        logger.debug("%s: page navigated to %s", candidate.label, location)
        return self._fetch_direct(location, Strategy.NAVIGATION, candidate, ctx, stem)

    def _inspect_popup(
        self,
        popup: Any,
        race: _SignalRace,
        candidate: Candidate,
        ctx: CaseContext,
        stem: str,
        deadline: float,
    ) -> ResolutionOutcome:
        strategy = Strategy.POPUP
        try:
            popup.wait_for_load_state(
                "domcontentloaded", timeout=self.cfg.popup_load_timeout_ms
            )
        except PlaywrightError as e:
            logger.debug("popup load wait failed: %s", e)
        location = popup.url
        last_error = "popup yielded no file"

        # (a) file responses seen inside the popup
        for response in reversed(race.popup_responses.get(id(popup), [])):
            outcome = self._from_response(response, strategy, candidate, ctx, stem)
            if outcome.success:
                return outcome
            last_error = outcome.error or last_error

        # (b) download controls inside the popup, one level deep
        if not self._expired(deadline):
            outcome = self._click_nested_download(popup, candidate, ctx, stem, deadline)
            if outcome is not None:
                if outcome.success:
                    return outcome
                last_error = outcome.error or last_error

        # (c) the popup address rewritten into download form
        direct = to_direct_download_url(location, page_url=ctx.page_url)
        if direct and not self._expired(deadline):
            outcome = self._fetch_direct(direct, strategy, candidate, ctx, stem)
            if outcome.success:
                return outcome
            last_error = outcome.error or last_error

        # (d) inline viewers: iframe/embed/object sources and file links
        try:
            html = popup.content()
        except PlaywrightError as e:
            logger.debug("popup content unavailable: %s", e)
            html = ""
        embedded = extract_embedded_file_urls(html, page_url=location) if html else []
        for url in embedded[:_MAX_EMBEDDED_URLS]:
            if self._expired(deadline):
                break
            outcome = self._fetch_direct(url, strategy, candidate, ctx, stem)
            if outcome.success:
                return outcome
            last_error = outcome.error or last_error

        # (e) server-rendered viewer markup, fetched without the browser
        if not embedded and is_absolute_http_url(location) and not self._expired(deadline):
            outcome = self._from_viewer_markup(location, candidate, ctx, stem, deadline)
            if outcome is not None:
                if outcome.success:
                    return outcome
                last_error = outcome.error or last_error

        return _failure(strategy, location, last_error)

    def _from_viewer_markup(
        self,
        location: str,
        candidate: Candidate,
        ctx: CaseContext,
        stem: str,
        deadline: float,
    ) -> ResolutionOutcome | None:
        strategy = Strategy.POPUP
        try:
            result = self._fetch(location, ctx, validate=False)
        except CollectorError as e:
            return _failure(strategy, location, describe_error(e))

        if is_allowed_content_type(result.content_type):
            return self._persist_fetched(result, strategy, candidate, ctx, stem)

        html = result.body.decode("utf-8", errors="replace")
        outcome: ResolutionOutcome | None = None
        for url in extract_embedded_file_urls(html, page_url=result.final_url)[
            :_MAX_EMBEDDED_URLS
        ]:
            if self._expired(deadline):
                break
            outcome = self._fetch_direct(url, strategy, candidate, ctx, stem)
            if outcome.success:
                return outcome
        return outcome

    def _click_nested_download(
        self,
        popup: Any,
        candidate: Candidate,
        ctx: CaseContext,
        stem: str,
        deadline: float,
    ) -> ResolutionOutcome | None:
        scopes = [popup]
        try:
            main = popup.main_frame
            scopes.extend(f for f in popup.frames if f is not main)
        except PlaywrightError:
            pass

        outcome: ResolutionOutcome | None = None
        for scope in scopes:
            for selector in DOWNLOAD_BUTTON_SELECTORS:
                if self._expired(deadline):
                    return outcome
                try:
                    matches = scope.locator(selector)
                    if matches.count() == 0:
                        continue
                    target = matches.first
                    if not target.is_visible():
                        continue
                    with popup.expect_download(
                        timeout=self.cfg.nested_download_timeout_ms
                    ) as download_info:
                        target.click(timeout=self.cfg.click_timeout_ms)
                    download = download_info.value
                except PlaywrightError as e:
                    logger.debug("nested download via %r failed: %s", selector, e)
                    continue
                outcome = self._from_download(download, Strategy.POPUP, candidate, ctx, stem)
                if outcome.success:
                    return outcome
        return outcome

    def _from_os_pickup(
        self,
        candidate: Candidate,
        ctx: CaseContext,
        stem: str,
        clicked_at: float,
        deadline: float,
    ) -> ResolutionOutcome | None:
        path = self.pickup.pickup(
            since=clicked_at, timeout_s=max(0.0, deadline - self._clock())
        )
        if path is None:
            return None
        body = path.read_bytes()
        return self._persist(
            Strategy.OS_PICKUP,
            body,
            content_type=guess_content_type(body, filename=path.name),
            filename_hint=path.name,
            location=str(path),
            candidate=candidate,
            ctx=ctx,
            stem=stem,
        )
