import os

from casedocs.pickup import FolderPickup, NullPickup
from fakes import FakeClock


def _pickup(directory, clock, **kwargs):
    return FolderPickup(
        directory, timeout_s=10, poll_s=1, clock=clock, sleep=clock.advance, **kwargs
    )


def test_null_pickup():
    assert NullPickup().pickup(since=0) is None


def test_picks_newest_settled_file(tmp_path):
    older = tmp_path / "old.pdf"
    older.write_bytes(b"%PDF-old")
    os.utime(older, (1_000, 1_000))
    newer = tmp_path / "감정평가서.pdf"
    newer.write_bytes(b"%PDF-new" * 100)
    (tmp_path / "partial.pdf.crdownload").write_bytes(b"x" * 10)
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    assert _pickup(tmp_path, FakeClock()).pickup(since=0) == newer


def test_ignores_files_older_than_click(tmp_path):
    stale = tmp_path / "stale.pdf"
    stale.write_bytes(b"%PDF-" * 10)
    os.utime(stale, (1_000, 1_000))

    clock = FakeClock()
    assert _pickup(tmp_path, clock).pickup(since=2_000) is None
    assert clock.now >= 1000.0 + 10


def test_empty_file_never_accepted(tmp_path):
    (tmp_path / "empty.pdf").write_bytes(b"")
    assert _pickup(tmp_path, FakeClock()).pickup(since=0) is None


def test_caller_timeout_shortens_wait(tmp_path):
    clock = FakeClock()
    assert _pickup(tmp_path, clock).pickup(since=0, timeout_s=3) is None
    assert 1000.0 + 3 <= clock.now <= 1000.0 + 4


def test_caller_timeout_never_extends_wait(tmp_path):
    clock = FakeClock()
    assert _pickup(tmp_path, clock).pickup(since=0, timeout_s=60) is None
    assert clock.now <= 1000.0 + 11
