from __future__ import annotations

import mimetypes
import re
from enum import Enum
from pathlib import PurePosixPath
from typing import Final
from urllib.parse import unquote, urljoin, urlparse

from bs4 import BeautifulSoup

from .errors import IntegrityRejected

DEFAULT_MIN_BYTES: Final = 512


class PayloadVerdict(str, Enum):
    FILE = "file"
    HTML = "html"
    ERROR_TEXT = "error_text"
    TOO_SMALL = "too_small"


ALLOWED_CONTENT_TYPES: Final[frozenset[str]] = frozenset(
    {
        "application/pdf",
        "application/octet-stream",
        "application/x-download",
        "application/zip",
        "application/x-zip-compressed",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/msword",
        "application/x-hwp",
        "application/haansofthwp",
        "application/vnd.hancom.hwp",
        "text/csv",
        "image/png",
        "image/jpeg",
        "image/jpg",
        "image/tiff",
        "image/gif",
    }
)

_EXT_BY_CONTENT_TYPE: Final[dict[str, str]] = {
    "application/pdf": "pdf",
    "text/csv": "csv",
    "application/zip": "zip",
    "application/x-zip-compressed": "zip",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/msword": "doc",
    "application/x-hwp": "hwp",
    "application/haansofthwp": "hwp",
    "application/vnd.hancom.hwp": "hwp",
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/tiff": "tif",
    "image/gif": "gif",
}

# Real-transaction exports come as CSV, photos as JPEG; everything else on the
# panel is a scanned PDF.
_DEFAULT_EXT_BY_CATEGORY: Final[dict[str, str]] = {
    "RTR": "csv",
    "IMG": "jpg",
}

FILE_EXTENSIONS: Final[tuple[str, ...]] = (
    "pdf",
    "csv",
    "xlsx",
    "xls",
    "zip",
    "hwp",
    "doc",
    "png",
    "jpg",
    "jpeg",
    "tif",
    "tiff",
    "gif",
)

_HTML_MARKERS: Final[tuple[bytes, ...]] = (
    b"<!doctype",
    b"<html",
    b"<head",
    b"<body",
    b"<script",
    b"<meta",
)

_ERROR_TEXT_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"\berror\b", re.IGNORECASE),
    re.compile(r"not\s+found", re.IGNORECASE),
    re.compile(r"access\s+denied", re.IGNORECASE),
    re.compile(r"\bforbidden\b", re.IGNORECASE),
    re.compile(r"에러|오류"),
    re.compile(r"접근.*거부"),
    re.compile(r"찾을.*없"),
)

_DISPOSITION_FILENAME = re.compile(
    r"filename\*?=(?:UTF-8''|\")?([^\";]+)", re.IGNORECASE
)

_QUOTED_FILE_PATH = re.compile(
    r"[\"']([^\"'\s<>]+?\.(?:"
    + "|".join(FILE_EXTENSIONS)
    + r")(?:\?[^\"'\s<>]*)?)[\"']",
    re.IGNORECASE,
)
_QUOTED_FILE_ENDPOINT = re.compile(
    r"[\"']([^\"'\s<>]*paFile\.php\?[^\"'\s<>]*)[\"']", re.IGNORECASE
)


def base_content_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def is_allowed_content_type(content_type: str | None) -> bool:
    return base_content_type(content_type) in ALLOWED_CONTENT_TYPES


def looks_like_html(data: bytes) -> bool:
    head = data[:2048].lstrip(b"\xef\xbb\xbf \t\r\n").lower()
    if not head.startswith(b"<"):
        return False
    return any(marker in head for marker in _HTML_MARKERS)


def _has_file_magic(body: bytes) -> bool:
    return body.startswith(
        (
            b"%PDF-",
            b"PK\x03\x04",
            b"\xd0\xcf\x11\xe0",  # OLE2: xls/doc/hwp
            b"\x89PNG",
            b"\xff\xd8\xff",
            b"GIF8",
            b"II*\x00",
            b"MM\x00*",
        )
    )


def _looks_like_error_text(body: bytes) -> bool:
    if _has_file_magic(body) or len(body) > 4096:
        return False
    text = body.decode("utf-8", errors="ignore")
    return any(p.search(text) for p in _ERROR_TEXT_PATTERNS)


def sniff_payload(
    body: bytes,
    *,
    content_type: str | None,
    min_bytes: int = DEFAULT_MIN_BYTES,
) -> PayloadVerdict:
    """Classify a fetched body as a genuine file or something to reject.

    Rules:
    - HTML markers in the leading bytes reject the body even when the server
      declares a binary content type (login redirects, session-expired pages).
    - Declared text/html is rejected outright.
    - Bodies under ``min_bytes`` are not trusted.
    - Short bodies without file magic that read like an error message are
      rejected.
    """

    if looks_like_html(body):
        return PayloadVerdict.HTML
    if base_content_type(content_type) in {"text/html", "application/xhtml+xml"}:
        return PayloadVerdict.HTML
    if len(body) < min_bytes:
        return PayloadVerdict.TOO_SMALL
    if _looks_like_error_text(body):
        return PayloadVerdict.ERROR_TEXT
    return PayloadVerdict.FILE


def check_payload(
    body: bytes,
    *,
    content_type: str | None,
    min_bytes: int = DEFAULT_MIN_BYTES,
) -> None:
    verdict = sniff_payload(body, content_type=content_type, min_bytes=min_bytes)
    if verdict is PayloadVerdict.FILE:
        return
    raise IntegrityRejected(
        f"payload rejected ({verdict.value}, {len(body)} bytes, "
        f"content-type={base_content_type(content_type) or '-'})",
        size=len(body),
    )


def filename_from_disposition(value: str | None) -> str | None:
    if not value:
        return None
    m = _DISPOSITION_FILENAME.search(value)
    if not m:
        return None
    name = unquote(m.group(1).strip().strip('"'))
    return name or None


def _ext_from_filename(filename: str | None) -> str | None:
    if not filename:
        return None
    suffix = PurePosixPath(filename.split("?", 1)[0]).suffix.lower().lstrip(".")
    if suffix == "jpeg":
        return "jpg"
    if suffix == "tiff":
        return "tif"
    if suffix in FILE_EXTENSIONS:
        return suffix
    return None


def extension_for(
    content_type: str | None,
    *,
    filename: str | None = None,
    category: str | None = None,
) -> str:
    """content-type -> filename hint -> category default."""

    ext = _EXT_BY_CONTENT_TYPE.get(base_content_type(content_type))
    if ext:
        return ext
    ext = _ext_from_filename(filename)
    if ext:
        return ext
    return _DEFAULT_EXT_BY_CATEGORY.get((category or "").upper(), "pdf")


def guess_content_type(body: bytes, *, filename: str | None = None) -> str | None:
    if body.startswith(b"%PDF-"):
        return "application/pdf"
    if body.startswith(b"\x89PNG"):
        return "image/png"
    if body.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if body.startswith(b"GIF8"):
        return "image/gif"
    if filename:
        guessed, _ = mimetypes.guess_type(filename)
        if guessed:
            return guessed
    if body.startswith(b"PK\x03\x04"):
        return "application/zip"
    return None


def extract_embedded_file_urls(html: str, *, page_url: str) -> list[str]:
    """Collect file URLs referenced by an inline document viewer page."""

    soup = BeautifulSoup(html, "html.parser")

    raw: list[str] = []
    for tag, attr in (("iframe", "src"), ("embed", "src"), ("object", "data")):
        for el in soup.find_all(tag):
            val = el.get(attr)
            if isinstance(val, str) and val.strip():
                raw.append(val.strip())

    for a in soup.select("a[href]"):
        href = str(a.get("href") or "").strip()
        try:
            path = urlparse(href).path
        except ValueError:
            continue
        if _ext_from_filename(path) or "paFile.php" in href:
            raw.append(href)

    raw.extend(m.group(1) for m in _QUOTED_FILE_PATH.finditer(html))
    raw.extend(m.group(1) for m in _QUOTED_FILE_ENDPOINT.finditer(html))

    out: list[str] = []
    seen: set[str] = set()
    for ref in raw:
        lowered = ref.lower()
        if lowered.startswith(("javascript:", "data:", "about:", "blob:", "#")):
            continue
        try:
            abs_url = urljoin(page_url, ref)
            scheme = urlparse(abs_url).scheme
        except ValueError:
            continue
        if scheme not in {"http", "https"}:
            continue
        if abs_url in seen:
            continue
        seen.add(abs_url)
        out.append(abs_url)
    return out
