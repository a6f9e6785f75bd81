import pytest

from casedocs.manifest import MANIFEST_FILENAME, Manifest, ManifestEntry
from casedocs.output_inspect import inspect_output


def _write_case(out_dir, case_id, *, categories, present=True, required=("AP", "REG")):
    case_dir = out_dir / case_id
    case_dir.mkdir(parents=True)
    m = Manifest(case_id=case_id, required_categories=required)
    for seq, code in enumerate(categories, start=1):
        name = f"{seq:02d}_{code}_doc.pdf"
        if present:
            (case_dir / name).write_bytes(b"%PDF-" + b"0" * 100)
        m.append(
            ManifestEntry(
                kind="file",
                category=code,
                label=code,
                source_ref="",
                success=True,
                acquired={"filename": name, "path": name, "size": 105},
            )
        )
    m.save(case_dir)
    return case_dir


def test_inspect_clean_output(tmp_path):
    _write_case(tmp_path, "a_1차", categories=["AP", "REG"])

    result = inspect_output(out_dir=tmp_path)

    assert len(result.cases) == 1
    case = result.cases[0]
    assert case.case_id == "a_1차"
    assert case.files == 2
    assert case.total_bytes == 210
    assert case.missing == []
    assert result.missing_union == []
    assert result.missing_files == 0


def test_inspect_reports_missing_categories_and_files(tmp_path):
    _write_case(tmp_path, "a_1차", categories=["AP"])
    _write_case(tmp_path, "b_1차", categories=["REG"], present=False)
    (tmp_path / "c_1차").mkdir()
    (tmp_path / "c_1차" / MANIFEST_FILENAME).write_text("{oops", encoding="utf-8")

    result = inspect_output(out_dir=tmp_path)

    assert result.missing_union == ["AP", "REG"]
    assert result.missing_files == 1
    assert result.unreadable == ["c_1차"]
    # Inspection never moves unreadable manifests aside.
    assert (tmp_path / "c_1차" / MANIFEST_FILENAME).exists()
    assert result.to_dict()["missing_union"] == ["AP", "REG"]


def test_inspect_rejects_empty_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        inspect_output(out_dir=tmp_path)
    with pytest.raises(FileNotFoundError):
        inspect_output(out_dir=tmp_path / "nope")
