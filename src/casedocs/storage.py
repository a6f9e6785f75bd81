from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from .errors import FilesystemFailure
from .manifest import relpath_posix
from .urls import safe_filename_piece

logger = logging.getLogger(__name__)

_MAX_SUFFIX = 1000


@dataclass(frozen=True)
class AcquiredResource:
    path: Path
    filename: str
    size: int
    sha256: str
    extension: str
    content_type: str | None

    def to_dict(self, base_dir: Path) -> dict[str, Any]:
        try:
            rel = relpath_posix(self.path, base_dir)
        except ValueError:
            rel = self.path.as_posix()
        return {
            "filename": self.filename,
            "path": rel,
            "size": self.size,
            "sha256": self.sha256,
            "extension": self.extension,
            "content_type": self.content_type,
        }


class FilenameRegistry:
    """Names handed out for one case directory.

    A name is never handed out twice, and names already present on disk are
    skipped, so a recorded path is never overwritten by a later entry.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self._taken: set[str] = set()

    def __contains__(self, name: object) -> bool:
        return name in self._taken

    def __len__(self) -> int:
        return len(self._taken)

    def seed(self, names: Iterable[str]) -> None:
        self._taken.update(n for n in names if n)

    def clear(self) -> None:
        self._taken.clear()

    def _is_free(self, name: str) -> bool:
        return name not in self._taken and not (self.directory / name).exists()

    def reserve(self, stem: str, ext: str) -> str:
        ext = ext.lstrip(".")
        name = f"{stem}.{ext}"
        n = 1
        while not self._is_free(name):
            if n > _MAX_SUFFIX:
                raise FilesystemFailure(f"no free filename for {stem}.{ext}")
            name = f"{stem}_{n}.{ext}"
            n += 1
        self._taken.add(name)
        return name


def build_stem(*, seq: int, category: str | None, label: str) -> str:
    code = (category or "UNK").upper()
    return f"{seq:02d}_{code}_{safe_filename_piece(label, max_len=20)}"


def write_resource(
    registry: FilenameRegistry,
    *,
    stem: str,
    ext: str,
    body: bytes,
    content_type: str | None,
) -> AcquiredResource:
    directory = registry.directory
    created: Path | None = None
    try:
        directory.mkdir(parents=True, exist_ok=True)
        filename = registry.reserve(stem, ext)
        path = directory / filename
        # "x" mode: refuse to clobber a file that appeared since reservation.
        with path.open("xb") as f:
            created = path
            f.write(body)
    except OSError as e:
        if created is not None:
            # Never leave a truncated file under a reserved name.
            try:
                created.unlink(missing_ok=True)
            except OSError as cleanup_error:
                logger.warning("could not remove partial %s: %s", created, cleanup_error)
        raise FilesystemFailure(f"failed to write into {directory}: {e}") from e

    resource = AcquiredResource(
        path=path,
        filename=filename,
        size=len(body),
        sha256=hashlib.sha256(body).hexdigest(),
        extension=ext.lstrip("."),
        content_type=content_type,
    )
    logger.info("saved %s (%d bytes)", filename, resource.size)
    return resource
