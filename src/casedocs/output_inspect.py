from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .manifest import MANIFEST_FILENAME, Manifest


@dataclass(frozen=True)
class CaseInspection:
    case_id: str
    files: int
    failed: int
    links: int
    total_bytes: int
    missing: list[str]
    issues: list[str]
    missing_files: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "case_id": self.case_id,
            "files": self.files,
            "failed": self.failed,
            "links": self.links,
            "total_bytes": self.total_bytes,
            "missing": list(self.missing),
            "issues": list(self.issues),
            "missing_files": list(self.missing_files),
        }


@dataclass(frozen=True)
class OutputInspection:
    out_dir: Path
    cases: list[CaseInspection]
    unreadable: list[str]

    @property
    def missing_union(self) -> list[str]:
        return sorted({code for c in self.cases for code in c.missing})

    @property
    def missing_files(self) -> int:
        return sum(len(c.missing_files) for c in self.cases)

    def to_dict(self) -> dict[str, Any]:
        return {
            "out_dir": str(self.out_dir),
            "cases": [c.to_dict() for c in self.cases],
            "unreadable": list(self.unreadable),
            "missing_union": self.missing_union,
            "missing_files": self.missing_files,
        }


def _inspect_case(case_dir: Path, manifest: Manifest) -> CaseInspection:
    case_dir = case_dir.resolve()
    missing_files: list[str] = []
    for entry in manifest.entries:
        if not (entry.success and entry.is_file and entry.acquired):
            continue
        rel = entry.acquired.get("path")
        if not isinstance(rel, str) or not rel:
            continue
        candidate = (case_dir / Path(rel)).resolve()
        # Keep validation local to the case directory.
        try:
            candidate.relative_to(case_dir)
        except ValueError:
            missing_files.append(rel)
            continue
        if not candidate.exists():
            missing_files.append(rel)

    stats = manifest.stats
    return CaseInspection(
        case_id=manifest.case_id or case_dir.name,
        files=stats.success,
        failed=stats.failed,
        links=stats.link_only,
        total_bytes=stats.total_bytes,
        missing=manifest.missing(),
        issues=manifest.validate(),
        missing_files=missing_files,
    )


def inspect_output(*, out_dir: Path) -> OutputInspection:
    """Summarize every case manifest under ``out_dir``."""

    out_dir = out_dir.resolve()
    if not out_dir.is_dir():
        raise FileNotFoundError(f"Not a directory: {out_dir}")

    manifest_paths = sorted(out_dir.glob(f"*/{MANIFEST_FILENAME}"))
    if (out_dir / MANIFEST_FILENAME).exists():
        manifest_paths.insert(0, out_dir / MANIFEST_FILENAME)
    if not manifest_paths:
        raise FileNotFoundError(f"No {MANIFEST_FILENAME} found under: {out_dir}")

    cases: list[CaseInspection] = []
    unreadable: list[str] = []
    for path in manifest_paths:
        manifest = Manifest.load(path.parent, quarantine=False)
        if manifest is None:
            unreadable.append(path.parent.name)
            continue
        cases.append(_inspect_case(path.parent, manifest))

    return OutputInspection(out_dir=out_dir, cases=cases, unreadable=unreadable)
