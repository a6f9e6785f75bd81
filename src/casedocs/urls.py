from __future__ import annotations

import re
from pathlib import Path
from urllib.parse import ParseResult, urljoin, urlparse, urlunparse

_TRACKING_QUERY_KEYS = {"utm_source", "utm_medium", "utm_campaign", "fbclid"}

_SCRIPT_CALL = re.compile(
    r"^\s*javascript:\s*[\w.$]+\s*\(\s*['\"]([^'\"]+)['\"]", re.IGNORECASE
)

# Viewer endpoint that renders a document inline, and the endpoint that
# streams the same document as an attachment.
VIEW_ENDPOINT = "/pa/paView.php"
FILE_ENDPOINT = "/pa/paFile.php"
VIEW_MODE_PARAM = "tp"
DOWNLOAD_MODE = "D"


def _split_query(query: str) -> list[str]:
    return [part for part in query.split("&") if part]


def _query_key(part: str) -> str:
    return part.split("=", 1)[0]


def normalize_url(raw_url: str, *, sort_query: bool = False) -> str:
    """Normalize a URL for de-duplication.

    - Lowercases scheme + hostname.
    - Strips fragments.
    - Drops tracking query params known to create duplicates.
    - Optionally sorts the remaining query params.
    """

    parsed: ParseResult = urlparse(raw_url.strip())
    scheme = (parsed.scheme or "").lower()
    netloc = (parsed.netloc or "").lower()

    parts = [
        p for p in _split_query(parsed.query) if _query_key(p) not in _TRACKING_QUERY_KEYS
    ]
    if sort_query:
        parts.sort()

    parsed = parsed._replace(
        scheme=scheme,
        netloc=netloc,
        fragment="",
        query="&".join(parts),
    )
    return urlunparse(parsed)


def is_absolute_http_url(ref: str | None) -> bool:
    if not ref:
        return False
    try:
        parsed = urlparse(ref.strip())
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def is_script_reference(ref: str | None) -> bool:
    return bool(ref) and ref.strip().lower().startswith("javascript:")


def unwrap_script_reference(ref: str) -> str | None:
    """Return the quoted path inside ``javascript:fn('path?query')``."""

    m = _SCRIPT_CALL.match(ref)
    if not m:
        return None
    return m.group(1).strip() or None


def set_query_param(query: str, key: str, value: str) -> str:
    """Replace (or append) one query parameter, leaving the others verbatim."""

    parts = _split_query(query)
    replaced = False
    out: list[str] = []
    for part in parts:
        if _query_key(part) == key:
            if not replaced:
                out.append(f"{key}={value}")
                replaced = True
            continue
        out.append(part)
    if not replaced:
        out.append(f"{key}={value}")
    return "&".join(out)


def to_direct_download_url(ref: str | None, *, page_url: str) -> str | None:
    """Rewrite a viewer reference into the site's direct download form.

    Relative references resolve against ``page_url``; script references are
    unwrapped first. The viewer endpoint is swapped for the file endpoint and
    the view-mode parameter is forced to download mode.
    """

    if not ref:
        return None
    ref = ref.strip()
    if is_script_reference(ref):
        unwrapped = unwrap_script_reference(ref)
        if unwrapped is None:
            return None
        ref = unwrapped
        if ref.startswith(("paFile.php", "paView.php")):
            ref = "/pa/" + ref
    if not ref or ref.startswith("#"):
        return None

    try:
        parsed = urlparse(urljoin(page_url, ref))
    except ValueError:
        # e.g. an unbalanced "[" in the host
        return None
    if parsed.scheme not in {"http", "https"}:
        return None
    if not parsed.query and not parsed.path.endswith((VIEW_ENDPOINT, FILE_ENDPOINT)):
        # Plain file links need no rewrite; anything else is just a page.
        if re.search(r"\.[A-Za-z0-9]{2,4}$", parsed.path) and not parsed.path.endswith(
            (".php", ".jsp", ".asp", ".aspx", ".htm", ".html", ".do")
        ):
            return urlunparse(parsed._replace(fragment=""))
        return None

    path = parsed.path
    if path.endswith(VIEW_ENDPOINT):
        path = path[: -len(VIEW_ENDPOINT)] + FILE_ENDPOINT

    query = set_query_param(parsed.query, VIEW_MODE_PARAM, DOWNLOAD_MODE)
    return urlunparse(parsed._replace(path=path, query=query, fragment=""))


def safe_filename_piece(text: str, *, max_len: int = 40) -> str:
    """Filesystem-safe slug; keeps Hangul and other word characters."""

    text = text.strip()
    text = re.sub(r"\s+", "-", text)
    text = re.sub(r"[^\w.-]+", "-", text)
    text = re.sub(r"-+", "-", text).strip("-.")
    if not text:
        return "untitled"
    return text[:max_len].rstrip("-.")


def load_url_list(path: Path) -> list[str]:
    """Read one URL per line, skipping blanks, ``#`` comments and non-http lines.

    Duplicates (same URL up to query-parameter order) are dropped, first
    occurrence wins.
    """

    out: list[str] = []
    seen: set[str] = set()
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        # Anything after the first whitespace is a note (e.g. a failure reason).
        line = line.split()[0]
        if not is_absolute_http_url(line):
            continue
        key = normalize_url(line, sort_query=True)
        if key in seen:
            continue
        seen.add(key)
        out.append(normalize_url(line))
    return out
