from __future__ import annotations

import json
import logging
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from .storage import FilenameRegistry

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "MANIFEST.json"
MANIFEST_VERSION = 1

DEFAULT_REQUIRED_CATEGORIES: tuple[str, ...] = ("AP", "REG", "BLD", "ZON", "RS")

CATEGORY_DESCRIPTIONS: dict[str, str] = {
    "AP": "감정평가서",
    "RS": "재산명세서",
    "REG": "등기부등본",
    "BLD": "건축물대장",
    "ZON": "토지이용계획",
    "RTR": "실거래가",
    "TEN": "임차인현황",
    "NT": "특약사항",
    "NOI": "매각공고",
    "IMG": "현황사진",
    "MAP": "지도",
}

UNKNOWN_CATEGORY = "UNK"


def utc_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def relpath_posix(path: Path, base_dir: Path) -> str:
    rel = path.relative_to(base_dir)
    return rel.as_posix()


def _normalize_codes(codes: Iterable[str]) -> tuple[str, ...]:
    return tuple(sorted({c.strip().upper() for c in codes if c and c.strip()}))


@dataclass
class ManifestEntry:
    kind: str
    category: str
    label: str
    source_ref: str
    success: bool
    error: str | None = None
    strategy: str | None = None
    resolved_location: str | None = None
    acquired: dict[str, Any] | None = None
    recorded_at: str = field(default_factory=utc_iso)

    @property
    def is_file(self) -> bool:
        return self.kind == "file"

    @property
    def filename(self) -> str | None:
        if not self.acquired:
            return None
        name = self.acquired.get("filename")
        return str(name) if name else None

    @property
    def size(self) -> int:
        if not self.acquired:
            return 0
        return int(self.acquired.get("size") or 0)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifestEntry:
        acquired = data.get("acquired")
        return cls(
            kind=str(data.get("kind") or "file"),
            category=str(data.get("category") or UNKNOWN_CATEGORY),
            label=str(data.get("label") or ""),
            source_ref=str(data.get("source_ref") or ""),
            success=bool(data.get("success")),
            error=data.get("error"),
            strategy=data.get("strategy"),
            resolved_location=data.get("resolved_location"),
            acquired=dict(acquired) if isinstance(acquired, dict) else None,
            recorded_at=str(data.get("recorded_at") or utc_iso()),
        )


@dataclass(frozen=True)
class ManifestStats:
    success: int
    failed: int
    link_only: int
    total_bytes: int
    categories: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "failed": self.failed,
            "link_only": self.link_only,
            "total_bytes": self.total_bytes,
            "categories": list(self.categories),
        }


def compute_stats(entries: Iterable[ManifestEntry]) -> ManifestStats:
    success = failed = link_only = total_bytes = 0
    categories: set[str] = set()
    for e in entries:
        if not e.success:
            failed += 1
        elif e.is_file:
            success += 1
            total_bytes += e.size
            categories.add(e.category)
        else:
            link_only += 1
    return ManifestStats(
        success=success,
        failed=failed,
        link_only=link_only,
        total_bytes=total_bytes,
        categories=tuple(sorted(categories)),
    )


@dataclass
class Manifest:
    """Per-case ledger of resolution outcomes.

    Entries are append-only. ``stats`` and ``missing()`` are always derived
    from the entries; the copies written to disk are informational and are
    ignored when a manifest is loaded back.
    """

    case_id: str
    required_categories: tuple[str, ...] = DEFAULT_REQUIRED_CATEGORIES
    source_url: str | None = None
    title: str | None = None
    entries: list[ManifestEntry] = field(default_factory=list)
    created_at: str = field(default_factory=utc_iso)
    updated_at: str = field(default_factory=utc_iso)

    def __post_init__(self) -> None:
        self.required_categories = _normalize_codes(self.required_categories)
        self._stats = compute_stats(self.entries)

    @property
    def stats(self) -> ManifestStats:
        return self._stats

    def append(self, entry: ManifestEntry) -> None:
        self.entries.append(entry)
        self.updated_at = utc_iso()
        self.recompute_stats()

    def recompute_stats(self) -> ManifestStats:
        self._stats = compute_stats(self.entries)
        return self._stats

    def missing(self) -> list[str]:
        present = set(self._stats.categories)
        return sorted(set(self.required_categories) - present)

    def missing_report(self) -> list[str]:
        return [
            f"{code}: {CATEGORY_DESCRIPTIONS.get(code, code)}"
            for code in self.missing()
        ]

    def validate(self) -> list[str]:
        """Return non-fatal consistency issues (empty list when clean)."""

        issues: list[str] = []
        stats = self._stats

        missing = self.missing()
        if missing:
            issues.append("missing required categories: " + ", ".join(missing))

        if stats.failed > stats.success:
            issues.append(
                f"more failures than successes (failed={stats.failed} "
                f"success={stats.success})"
            )

        if stats.total_bytes == 0:
            issues.append("no bytes acquired")

        names = Counter(
            e.filename for e in self.entries if e.success and e.is_file and e.filename
        )
        dupes = sorted(n for n, count in names.items() if count > 1)
        if dupes:
            issues.append("duplicate filenames: " + ", ".join(dupes))

        return issues

    def summary(self) -> str:
        s = self._stats
        missing = ",".join(self.missing()) or "-"
        return (
            f"{self.case_id}: files={s.success} failed={s.failed} "
            f"links={s.link_only} bytes={s.total_bytes} missing={missing}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": MANIFEST_VERSION,
            "case_id": self.case_id,
            "source_url": self.source_url,
            "title": self.title,
            "required_categories": list(self.required_categories),
            "entries": [e.to_dict() for e in self.entries],
            "missing": self.missing(),
            "stats": self._stats.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        entries = [
            ManifestEntry.from_dict(e)
            for e in data.get("entries") or []
            if isinstance(e, dict)
        ]
        required = data.get("required_categories")
        return cls(
            case_id=str(data.get("case_id") or ""),
            required_categories=(
                tuple(required)
                if isinstance(required, list)
                else DEFAULT_REQUIRED_CATEGORIES
            ),
            source_url=data.get("source_url"),
            title=data.get("title"),
            entries=entries,
            created_at=str(data.get("created_at") or utc_iso()),
            updated_at=str(data.get("updated_at") or utc_iso()),
        )

    def save(self, case_dir: Path) -> Path:
        case_dir.mkdir(parents=True, exist_ok=True)
        path = case_dir / MANIFEST_FILENAME
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(
            json.dumps(self.to_dict(), indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
            newline="\n",
        )
        tmp.replace(path)
        return path

    @classmethod
    def load(
        cls,
        case_dir: Path,
        *,
        registry: FilenameRegistry | None = None,
        quarantine: bool = True,
    ) -> Manifest | None:
        path = case_dir / MANIFEST_FILENAME
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            if not quarantine:
                return None
            aside = path.with_name(path.name + ".corrupt")
            logger.warning("unreadable manifest %s (%s); moved to %s", path, e, aside)
            path.replace(aside)
            return None
        if not isinstance(data, dict):
            return None

        manifest = cls.from_dict(data)
        if registry is not None:
            registry.seed(
                e.filename
                for e in manifest.entries
                if e.success and e.is_file and e.filename
            )
        return manifest

    @classmethod
    def merge(cls, prior: Manifest, fresh: Manifest) -> Manifest:
        """Concatenate entries of two runs; required codes come from ``fresh``."""

        return cls(
            case_id=fresh.case_id or prior.case_id,
            required_categories=fresh.required_categories,
            source_url=fresh.source_url or prior.source_url,
            title=fresh.title or prior.title,
            entries=[*prior.entries, *fresh.entries],
            created_at=prior.created_at,
            updated_at=utc_iso(),
        )
