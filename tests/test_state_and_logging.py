import logging

from casedocs.logging_utils import configure_logging, run_log_path
from casedocs.state import RunState, write_url_list
from casedocs.urls import load_url_list


def test_failed_urls_file_round_trips_as_url_list(tmp_path):
    state = RunState(tmp_path / ".state")
    state.mark_failed("https://x.test/1", "CaseFailure: login required")
    state.mark_failed("https://x.test/2", "TransportFailure: HTTP 500")

    assert state.failed_urls() == {"https://x.test/1", "https://x.test/2"}
    assert load_url_list(state.failed_path) == ["https://x.test/1", "https://x.test/2"]


def test_write_url_list(tmp_path):
    path = tmp_path / "nested" / "urls.failed.txt"
    write_url_list(path, ["https://x.test/a", "https://x.test/b"])
    assert path.read_text(encoding="utf-8") == "https://x.test/a\nhttps://x.test/b\n"
    write_url_list(path, [])
    assert path.read_text(encoding="utf-8") == ""


def test_run_log_path(tmp_path):
    path = run_log_path(tmp_path)
    assert path.parent == tmp_path / "logs"
    assert path.name.startswith("run-") and path.suffix == ".log"


def test_configure_logging_writes_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    log_file = tmp_path / "logs" / "run.log"
    try:
        configure_logging(log_file, "debug")
        logging.getLogger("casedocs.test").debug("hello from the collector")
        for handler in root.handlers:
            handler.flush()
        assert "hello from the collector" in log_file.read_text(encoding="utf-8")
        assert root.level == logging.DEBUG
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            if handler not in saved_handlers:
                handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
