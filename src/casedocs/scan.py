from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from playwright.sync_api import Error as PlaywrightError

from .classify import (
    LINK_ONLY_CATEGORIES,
    SECTION_KEYWORDS,
    Candidate,
    make_candidate,
)
from .errors import CaseFailure
from .urls import safe_filename_piece

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 16

CASE_NUMBER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(\d{4}-\d{7}-\d{1,4})"),
    re.compile(r"(\d{4}\s*타경\s*\d+)"),
    re.compile(r"사건번호[:\s]*([^\s]+)"),
    re.compile(r"물건번호[:\s]*([^\s]+)"),
)
ROUND_PATTERN = re.compile(r"(\d+)\s*차")

_EMPTY_HREFS = {"#", "javascript:void(0)", "javascript:void(0);", "javascript:;"}
_TOGGLE_TEXT = re.compile(r"더보기|펼치기|펼쳐|▼")
_CLICKABLES = 'a, button, input[type="button"], input[type="submit"], [onclick]'


@dataclass(frozen=True)
class CaseInfo:
    case_no: str | None
    round_label: str
    title: str
    source_url: str

    @property
    def case_id(self) -> str:
        return derive_case_id(self.case_no, self.round_label, source_url=self.source_url)


@dataclass
class ScanResult:
    info: CaseInfo
    candidates: list[Candidate] = field(default_factory=list)


def parse_case_info(text: str, *, title: str = "", source_url: str = "") -> CaseInfo:
    full = f"{title} {text}"
    case_no = None
    for pattern in CASE_NUMBER_PATTERNS:
        m = pattern.search(full)
        if m:
            case_no = re.sub(r"\s+", "", m.group(1))
            break
    m = ROUND_PATTERN.search(full)
    round_label = f"{m.group(1)}차" if m else "1차"
    return CaseInfo(
        case_no=case_no,
        round_label=round_label,
        title=title.strip(),
        source_url=source_url,
    )


def derive_case_id(case_no: str | None, round_label: str, *, source_url: str = "") -> str:
    """Stable directory name for a case; reruns land in the same directory."""

    if not case_no:
        digest = hashlib.sha256(source_url.encode("utf-8")).hexdigest()[:10]
        return f"case-{digest}"
    return f"{safe_filename_piece(case_no)}_{safe_filename_piece(round_label)}"


def _target_hint(element: Any) -> str | None:
    href = (element.get_attribute("href") or "").strip()
    onclick = (element.get_attribute("onclick") or "").strip()
    if (not href or href.lower() in _EMPTY_HREFS) and onclick:
        return f"javascript:{onclick}"
    return href or None


def _label_of(element: Any) -> str:
    for getter in (
        lambda: element.inner_text(),
        lambda: element.get_attribute("value"),
        lambda: element.get_attribute("title"),
    ):
        text = (getter() or "").strip()
        if text:
            return text
    return ""


class PageScanner:
    def __init__(
        self,
        *,
        max_items: int = MAX_CANDIDATES,
        link_only: Iterable[str] = LINK_ONLY_CATEGORIES,
        section_keywords: Iterable[str] = SECTION_KEYWORDS,
    ) -> None:
        self.max_items = max_items
        self.link_only = frozenset(link_only)
        self.section_keywords = tuple(section_keywords)

    def is_logged_out(self, page: Any) -> bool:
        try:
            if page.locator("text=로그아웃").count() > 0:
                return False
            password = page.locator('input[type="password"]')
            return password.count() > 0 and password.first.is_visible()
        except PlaywrightError:
            return False

    def case_info(self, page: Any) -> CaseInfo:
        try:
            title = page.title() or ""
            body = page.inner_text("body") or ""
        except PlaywrightError as e:
            logger.warning("case info unavailable: %s", e)
            title, body = "", ""
        return parse_case_info(body, title=title, source_url=page.url)

    def find_section(self, page: Any) -> Any | None:
        for keyword in self.section_keywords:
            try:
                heading = page.get_by_text(keyword).first
                if heading.count() == 0 or not heading.is_visible():
                    continue
                container = heading.locator(
                    "xpath=ancestor-or-self::*[.//a or .//button][1]"
                )
                if container.count() > 0:
                    logger.debug("reference section found via %r", keyword)
                    return container.first
            except PlaywrightError as e:
                logger.debug("section lookup %r failed: %s", keyword, e)
        return None

    def _expand(self, page: Any, section: Any) -> None:
        toggles = section.locator("button, a, [onclick]").filter(has_text=_TOGGLE_TEXT)
        try:
            if toggles.count() > 0:
                toggles.first.click(timeout=2000)
                page.wait_for_timeout(1000)
        except PlaywrightError as e:
            logger.debug("section toggle failed: %s", e)

    def collect(self, section: Any) -> list[Candidate]:
        out: list[Candidate] = []
        seen: set[tuple[str, str | None]] = set()
        items = section.locator(_CLICKABLES)
        for i in range(items.count()):
            if len(out) >= self.max_items:
                break
            element = items.nth(i)
            try:
                label = _label_of(element)
                hint = _target_hint(element)
            except PlaywrightError as e:
                logger.debug("skipping unreadable element #%d: %s", i, e)
                continue
            cand = make_candidate(
                label, action_ref=element, target_hint=hint, link_only=self.link_only
            )
            if cand is None:
                continue
            key = (cand.label, cand.target_hint)
            if key in seen:
                continue
            seen.add(key)
            out.append(cand)
        return out

    def scan(self, page: Any) -> ScanResult:
        if self.is_logged_out(page):
            raise CaseFailure("login required", url=page.url)
        info = self.case_info(page)
        section = self.find_section(page)
        if section is None:
            raise CaseFailure("reference section not found", url=page.url)
        self._expand(page, section)
        candidates = self.collect(section)
        logger.info("%s: %d candidates", info.case_id, len(candidates))
        return ScanResult(info=info, candidates=candidates)
