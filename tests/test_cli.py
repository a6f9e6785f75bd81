import json

import casedocs.cli as cli
from casedocs.manifest import Manifest, ManifestEntry


def _case(out_dir, *, with_file=True):
    case_dir = out_dir / "2024타경100_1차"
    case_dir.mkdir(parents=True)
    if with_file:
        (case_dir / "01_AP_감정평가서.pdf").write_bytes(b"%PDF-" + b"0" * 600)
    m = Manifest(case_id="2024타경100_1차", required_categories=("AP", "REG"))
    m.append(
        ManifestEntry(
            kind="file",
            category="AP",
            label="감정평가서",
            source_ref="javascript:void(0)",
            success=True,
            strategy="download-signal",
            acquired={
                "filename": "01_AP_감정평가서.pdf",
                "path": "01_AP_감정평가서.pdf",
                "size": 605,
            },
        )
    )
    m.save(case_dir)


def test_inspect_prints_summary(tmp_path, capsys):
    _case(tmp_path)

    assert cli.main(["inspect", "--in", str(tmp_path)]) == 0

    out = capsys.readouterr().out
    assert "cases=1" in out
    assert "missing=REG" in out
    assert "2024타경100_1차: files=1 failed=0 links=0 bytes=605" in out


def test_inspect_json_and_fail_on_missing(tmp_path, capsys):
    _case(tmp_path, with_file=False)

    code = cli.main(["inspect", "--in", str(tmp_path), "--json", "--fail-on-missing"])

    assert code == 4
    data = json.loads(capsys.readouterr().out)
    assert data["missing_union"] == ["REG"]
    assert data["missing_files"] == 1


def test_inspect_missing_directory_is_usage_error(tmp_path, capsys):
    assert cli.main(["inspect", "--in", str(tmp_path / "nope")]) == 2
    assert "Not a directory" in capsys.readouterr().err


def test_collect_without_url_list_is_usage_error(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    code = cli.main(
        [
            "collect",
            "--urls",
            str(tmp_path / "missing.txt"),
            "--out",
            str(tmp_path / "out"),
            "--env-file",
            str(tmp_path / "absent.env"),
        ]
    )
    assert code == 2
    assert "missing.txt" in capsys.readouterr().err


def test_collect_with_empty_url_list_is_usage_error(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    urls = tmp_path / "urls.txt"
    urls.write_text("# nothing yet\n", encoding="utf-8")
    code = cli.main(
        ["collect", "--urls", str(urls), "--env-file", str(tmp_path / "absent.env")]
    )
    assert code == 2
    assert "no http(s) URLs" in capsys.readouterr().err


def test_overrides_applied_over_environment(tmp_path):
    parser_args = cli.argparse.Namespace(
        urls=None,
        out=tmp_path,
        required="ap,zon",
        link_only=None,
        max_items=3,
        headed=True,
        chrome_profile=None,
        storage_state=None,
        channel=None,
        debug_snapshots=False,
        skip_done=False,
        log_level="debug",
        concurrency=1,
        qps=None,
        timeout=None,
        max_retries=None,
        os_pickup=True,
        os_pickup_dir=tmp_path / "dl",
    )
    cfg = cli._apply_overrides(cli.CollectorConfig(), parser_args)

    assert cfg.out_dir == tmp_path
    assert cfg.required_categories == ("AP", "ZON")
    assert cfg.max_items == 3
    assert cfg.headless is False
    assert cfg.log_level == "DEBUG"
    assert cfg.transport.concurrency == 1
    assert cfg.transport.qps == 2.0
    assert cfg.pickup.enabled is True
    assert cfg.pickup.directory == tmp_path / "dl"
