from __future__ import annotations

import json
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

import requests
from playwright.sync_api import Error as PlaywrightError
from tqdm import tqdm

from .classify import Candidate, CandidateKind
from .config import CollectorConfig
from .errors import CaseFailure, CollectorError, describe_error
from .http_client import RateLimitedTransport
from .manifest import UNKNOWN_CATEGORY, Manifest, ManifestEntry, utc_iso
from .pickup import DownloadPickup, FolderPickup, NullPickup
from .resolver import CaseContext, ResolutionOutcome, Resolver, Strategy
from .scan import PageScanner
from .session import BrowserSession
from .state import RunState, write_url_list
from .storage import FilenameRegistry

logger = logging.getLogger(__name__)

FAILED_URLS_FILENAME = "urls.failed.txt"
RUN_SUMMARY_FILENAME = "run_summary.json"


def entry_from_outcome(
    candidate: Candidate, outcome: ResolutionOutcome, *, case_dir: Path
) -> ManifestEntry:
    """Fold one resolution outcome into a ledger entry.

    Acquired files become ``file`` entries. Everything else is recorded as a
    ``link``: successful for link-only candidates, failed (with the error and
    best known location) for file candidates nothing could be downloaded for.
    """

    category = candidate.category or UNKNOWN_CATEGORY
    source_ref = candidate.target_hint or ""
    if outcome.resource is not None:
        return ManifestEntry(
            kind="file",
            category=category,
            label=candidate.label,
            source_ref=source_ref,
            success=True,
            strategy=outcome.strategy.value,
            resolved_location=outcome.resolved_location,
            acquired=outcome.resource.to_dict(case_dir),
        )
    return ManifestEntry(
        kind="link",
        category=category,
        label=candidate.label,
        source_ref=source_ref,
        success=outcome.success and candidate.kind is CandidateKind.LINK,
        error=outcome.error,
        strategy=outcome.strategy.value,
        resolved_location=outcome.resolved_location or candidate.target_hint,
    )


def build_resolver(config: CollectorConfig, session: requests.Session) -> Resolver:
    t = config.transport
    transport = RateLimitedTransport(
        session,
        concurrency=t.concurrency,
        qps=t.qps,
        timeout_s=t.timeout_s,
        max_retries=t.max_retries,
        backoff_base_s=t.backoff_base_s,
        backoff_cap_s=t.backoff_cap_s,
        min_bytes=t.min_bytes,
    )
    pickup: DownloadPickup = NullPickup()
    if config.pickup.enabled and config.pickup.directory is not None:
        pickup = FolderPickup(
            config.pickup.directory,
            pattern=re.compile(config.pickup.pattern, re.IGNORECASE),
            timeout_s=config.pickup.timeout_s,
            poll_s=config.pickup.poll_s,
        )
    return Resolver(transport, config=config.resolver, pickup=pickup)


@dataclass
class CaseResult:
    url: str
    case_id: str | None
    success: bool
    manifest: Manifest | None = None
    error: str | None = None

    @property
    def files(self) -> int:
        return self.manifest.stats.success if self.manifest else 0

    @property
    def missing(self) -> list[str]:
        return self.manifest.missing() if self.manifest else []


@dataclass
class RunSummary:
    started_at: str
    finished_at: str
    cases_ok: int = 0
    cases_failed: int = 0
    files: int = 0
    missing: list[str] = field(default_factory=list)
    missing_by_case: dict[str, list[str]] = field(default_factory=dict)
    failed_urls: list[str] = field(default_factory=list)
    strategies: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_results(
        cls,
        results: Iterable[CaseResult],
        *,
        started_at: str,
        strategies: dict[str, int] | None = None,
    ) -> RunSummary:
        summary = cls(started_at=started_at, finished_at=utc_iso())
        union: set[str] = set()
        for r in results:
            if not r.success:
                summary.cases_failed += 1
                summary.failed_urls.append(r.url)
                continue
            summary.cases_ok += 1
            summary.files += r.files
            if r.missing and r.case_id:
                summary.missing_by_case[r.case_id] = r.missing
                union.update(r.missing)
        summary.missing = sorted(union)
        summary.strategies = dict(sorted((strategies or {}).items()))
        return summary

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "cases_ok": self.cases_ok,
            "cases_failed": self.cases_failed,
            "files": self.files,
            "missing": list(self.missing),
            "missing_by_case": dict(self.missing_by_case),
            "failed_urls": list(self.failed_urls),
            "strategies": dict(self.strategies),
        }

    def line(self) -> str:
        return (
            f"collect: ok={self.cases_ok} failed={self.cases_failed} "
            f"files={self.files} missing={','.join(self.missing) or '-'}"
        )


class CaseCollector:
    """Drives cases one at a time: open, scan, resolve every candidate, save."""

    def __init__(
        self,
        *,
        browser: BrowserSession,
        resolver: Resolver,
        config: CollectorConfig,
        scanner: PageScanner | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.browser = browser
        self.resolver = resolver
        self.cfg = config
        self.scanner = scanner or PageScanner(
            max_items=config.max_items, link_only=config.link_only_categories
        )
        self._sleep = sleep

        self.out_dir = self.cfg.out_dir
        self.out_dir.mkdir(parents=True, exist_ok=True)
        self.state = RunState(self.out_dir / ".state")
        self._stats: Counter[str] = Counter()

    def process_candidates(
        self,
        page: Any,
        candidates: Iterable[Candidate],
        ctx: CaseContext,
        manifest: Manifest,
    ) -> None:
        """Resolve each candidate and append exactly one entry per candidate."""

        for candidate in candidates:
            try:
                outcome = self.resolver.resolve(candidate, page, ctx)
            except (CollectorError, PlaywrightError, OSError) as e:
                logger.warning("%s: resolver raised: %s", candidate.label, e)
                outcome = ResolutionOutcome(
                    strategy=Strategy.NONE,
                    success=False,
                    resolved_location=candidate.target_hint,
                    error=describe_error(e),
                )
            entry = entry_from_outcome(candidate, outcome, case_dir=ctx.case_dir)
            manifest.append(entry)
            self._stats[outcome.strategy.value] += 1
            if not entry.success:
                logger.warning(
                    "%s [%s]: no file (%s)", candidate.label, entry.category, entry.error
                )

    def _snapshot(self, page: Any, ctx: CaseContext, checkpoint: str) -> None:
        if not self.cfg.debug_snapshots:
            return
        debug_dir = ctx.debug_dir
        try:
            debug_dir.mkdir(parents=True, exist_ok=True)
            (debug_dir / f"{checkpoint}.html").write_text(
                page.content(), encoding="utf-8", newline="\n"
            )
            page.screenshot(path=str(debug_dir / f"{checkpoint}.png"), full_page=True)
        except (PlaywrightError, OSError) as e:
            logger.debug("snapshot %s failed: %s", checkpoint, e)

    def collect_case(self, url: str) -> CaseResult:
        self.browser.refresh_cookies(self.resolver.transport.session)
        page = self.browser.new_page()
        try:
            try:
                page.goto(
                    url, wait_until="domcontentloaded", timeout=self.cfg.page_timeout_ms
                )
            except PlaywrightError as e:
                raise CaseFailure(f"could not open page: {e}", url=url) from e

            scan = self.scanner.scan(page)
            case_id = scan.info.case_id
            case_dir = self.out_dir / case_id
            registry = FilenameRegistry(case_dir)
            prior = Manifest.load(case_dir, registry=registry)
            ctx = CaseContext(
                case_id=case_id,
                case_dir=case_dir,
                page_url=page.url,
                registry=registry,
                seq=len(prior.entries) if prior else 0,
            )
            fresh = Manifest(
                case_id=case_id,
                required_categories=self.cfg.required_categories,
                source_url=url,
                title=scan.info.title or None,
            )

            self._snapshot(page, ctx, "before")
            try:
                self.process_candidates(page, scan.candidates, ctx, fresh)
            finally:
                self._snapshot(page, ctx, "after")
                manifest = Manifest.merge(prior, fresh) if prior else fresh
                manifest.save(case_dir)
                ctx.close()

            for issue in manifest.validate():
                logger.warning("%s: %s", case_id, issue)
            logger.info("%s", manifest.summary())
            return CaseResult(url=url, case_id=case_id, success=True, manifest=manifest)
        finally:
            try:
                page.close()
            except PlaywrightError as e:
                logger.debug("page close failed: %s", e)

    def run(self, urls: Iterable[str]) -> RunSummary:
        started_at = utc_iso()
        done = self.state.load_set(self.state.done_path) if self.cfg.skip_done else set()
        todo = [u for u in urls if u not in done]
        if done:
            logger.info("skipping %d already collected case(s)", len(done))

        results: list[CaseResult] = []
        for i, url in enumerate(tqdm(todo, desc="cases", unit="case"), start=1):
            try:
                result = self.collect_case(url)
                self.state.mark_done(url)
            except (CollectorError, PlaywrightError, OSError) as e:
                logger.error("%s: case failed: %s", url, e)
                self.state.mark_failed(url, describe_error(e))
                result = CaseResult(
                    url=url, case_id=None, success=False, error=describe_error(e)
                )
            results.append(result)

            if self.cfg.pause_every and i % self.cfg.pause_every == 0 and i < len(todo):
                logger.debug("pausing %.1fs after %d cases", self.cfg.pause_s, i)
                self._sleep(self.cfg.pause_s)

        summary = RunSummary.from_results(
            results, started_at=started_at, strategies=dict(self._stats)
        )

        failed_path = self.out_dir / FAILED_URLS_FILENAME
        if summary.failed_urls:
            write_url_list(failed_path, summary.failed_urls)
        elif failed_path.exists():
            failed_path.unlink()

        (self.out_dir / RUN_SUMMARY_FILENAME).write_text(
            json.dumps(summary.to_dict(), indent=2, ensure_ascii=False),
            encoding="utf-8",
            newline="\n",
        )
        return summary
