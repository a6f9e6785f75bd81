from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final, Iterable


class CandidateKind(str, Enum):
    FILE = "file"
    LINK = "link"


@dataclass(frozen=True)
class Candidate:
    """One clickable attachment reference found on a case page.

    ``action_ref`` is whatever the resolver clicks (a Playwright locator in
    production); ``target_hint`` is its href-like attribute, if any.
    """

    label: str
    action_ref: Any = field(default=None, compare=False, repr=False)
    target_hint: str | None = None
    category: str | None = None
    kind: CandidateKind = CandidateKind.FILE


# Order matters: first match wins.
CATEGORY_PATTERNS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (re.compile(r"감정|평가"), "AP"),
    (re.compile(r"재산명세"), "RS"),
    (re.compile(r"등기"), "REG"),
    (re.compile(r"건축물대장|층별|표제부"), "BLD"),
    (re.compile(r"토지이용"), "ZON"),
    (re.compile(r"실거래"), "RTR"),
    (re.compile(r"임차|점유|배당"), "TEN"),
    (re.compile(r"특약|유의"), "NT"),
    (re.compile(r"지도|위치|로드뷰"), "MAP"),
    (re.compile(r"사진|이미지"), "IMG"),
    (re.compile(r"공고"), "NOI"),
)

NEGATIVE_LABEL_PATTERNS: Final[tuple[re.Pattern[str], ...]] = tuple(
    re.compile(p)
    for p in (
        r"관심",
        r"즐겨찾",
        r"분류",
        r"추가",
        r"수정",
        r"삭제",
        r"마이페이지",
        r"알림",
        r"공유",
        r"인쇄",
        r"문의",
        r"담당자",
        r"로그인",
        r"회원가입",
        r"비밀번호",
    )
)

# Headings that mark the side panel holding the reference documents.
SECTION_KEYWORDS: Final[tuple[str, ...]] = (
    "참고자료",
    "기타참고자료",
    "지도자료",
    "첨부",
    "다운로드",
    "자료",
)

LINK_ONLY_CATEGORIES: Final[frozenset[str]] = frozenset({"MAP"})

ALL_CATEGORIES: Final[tuple[str, ...]] = tuple(code for _, code in CATEGORY_PATTERNS)


def classify_label(label: str) -> str | None:
    for pattern, code in CATEGORY_PATTERNS:
        if pattern.search(label):
            return code
    return None


def is_negative_label(label: str) -> bool:
    return any(p.search(label) for p in NEGATIVE_LABEL_PATTERNS)


def make_candidate(
    label: str,
    *,
    action_ref: Any = None,
    target_hint: str | None = None,
    link_only: Iterable[str] = LINK_ONLY_CATEGORIES,
) -> Candidate | None:
    """Build a classified candidate, or None for noise labels."""

    label = re.sub(r"\s+", " ", label or "").strip()
    if not label or is_negative_label(label):
        return None
    category = classify_label(label)
    kind = CandidateKind.FILE
    if category is not None and category in set(link_only):
        kind = CandidateKind.LINK
    return Candidate(
        label=label,
        action_ref=action_ref,
        target_hint=(target_hint or "").strip() or None,
        category=category,
        kind=kind,
    )
