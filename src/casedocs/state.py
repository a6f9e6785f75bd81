from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass
class RunState:
    state_dir: Path

    def __post_init__(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.done_path = self.state_dir / "done_urls.txt"
        self.failed_path = self.state_dir / "failed_urls.txt"

    def load_set(self, path: Path) -> set[str]:
        if not path.exists():
            return set()
        return {
            line.strip()
            for line in path.read_text(encoding="utf-8").splitlines()
            if line.strip()
        }

    def append_line(self, path: Path, line: str) -> None:
        with path.open("a", encoding="utf-8", newline="\n") as f:
            f.write(line + "\n")

    def mark_done(self, url: str) -> None:
        self.append_line(self.done_path, url)

    def mark_failed(self, url: str, reason: str) -> None:
        # Tab-separated so the file can still be fed back as a URL list.
        self.append_line(self.failed_path, f"{url}\t{reason}")

    def failed_urls(self) -> set[str]:
        return {line.split("\t", 1)[0] for line in self.load_set(self.failed_path)}


def write_url_list(path: Path, urls: list[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        "\n".join(urls) + ("\n" if urls else ""),
        encoding="utf-8",
        newline="\n",
    )
