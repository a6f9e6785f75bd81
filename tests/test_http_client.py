import threading
import time

import pytest
import requests

from casedocs.errors import IntegrityRejected, TransportFailure
from casedocs.http_client import (
    FetchRequest,
    RateLimitedTransport,
    apply_browser_cookies,
    backoff_delays,
)
from fakes import FakeClock, FakeHttpResponse, FakeSession, pdf_bytes

PDF_HEADERS = {"Content-Type": "application/pdf"}


def _transport(session, clock, sleeps, **kwargs):
    def _sleep(seconds):
        sleeps.append(seconds)
        clock.advance(seconds)

    kwargs.setdefault("qps", 1000.0)
    return RateLimitedTransport(session, clock=clock, sleep=_sleep, **kwargs)


def test_backoff_delays_non_decreasing_and_capped():
    delays = backoff_delays(6, base_s=1.0, cap_s=10.0)
    assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert backoff_delays(0) == []


def test_successful_fetch_sets_referer_and_timeout():
    session = FakeSession([FakeHttpResponse(200, pdf_bytes(2048), headers=PDF_HEADERS)])
    clock, sleeps = FakeClock(), []
    with _transport(session, clock, sleeps, timeout_s=30) as transport:
        result = transport.fetch(
            FetchRequest(url="https://example.test/file", referer="https://example.test/case")
        )

    assert result.attempts == 1
    assert result.content_type == "application/pdf"
    assert len(result.body) == 2048
    call = session.calls[0]
    assert call["method"] == "GET"
    assert call["headers"]["Referer"] == "https://example.test/case"
    assert call["timeout"] == 30
    assert call["allow_redirects"] is True


def test_retries_exhausted_after_max_retries_plus_one_attempts():
    session = FakeSession([FakeHttpResponse(500)])
    clock, sleeps = FakeClock(), []
    with _transport(session, clock, sleeps, max_retries=3) as transport:
        with pytest.raises(TransportFailure) as excinfo:
            transport.fetch(FetchRequest(url="https://example.test/file"))

    assert len(session.calls) == 4
    assert sleeps == [1.0, 2.0, 4.0]
    assert excinfo.value.status_code == 500


def test_retry_after_lengthens_delay_up_to_cap():
    session = FakeSession(
        [
            FakeHttpResponse(429, headers={"Retry-After": "3"}),
            FakeHttpResponse(503, headers={"retry-after": "120"}),
            FakeHttpResponse(200, pdf_bytes(1024), headers=PDF_HEADERS),
        ]
    )
    clock, sleeps = FakeClock(), []
    with _transport(session, clock, sleeps, max_retries=3, backoff_cap_s=10.0) as transport:
        result = transport.fetch(FetchRequest(url="https://example.test/file"))

    assert result.attempts == 3
    assert sleeps == [3.0, 10.0]


def test_integrity_rejection_is_retried():
    login_page = FakeHttpResponse(
        200, b"<html><body>please log in</body></html>" + b" " * 1024, headers=PDF_HEADERS
    )
    session = FakeSession(
        [login_page, login_page, FakeHttpResponse(200, pdf_bytes(1024), headers=PDF_HEADERS)]
    )
    clock, sleeps = FakeClock(), []
    with _transport(session, clock, sleeps) as transport:
        result = transport.fetch(FetchRequest(url="https://example.test/file"))

    assert result.attempts == 3
    assert result.body.startswith(b"%PDF-")


def test_integrity_rejection_surfaces_after_last_attempt():
    session = FakeSession([FakeHttpResponse(200, b"tiny", headers=PDF_HEADERS)])
    clock, sleeps = FakeClock(), []
    with _transport(session, clock, sleeps, max_retries=1) as transport:
        with pytest.raises(IntegrityRejected):
            transport.fetch(FetchRequest(url="https://example.test/file"))
    assert len(session.calls) == 2


def test_validation_can_be_skipped_for_viewer_markup():
    session = FakeSession(
        [FakeHttpResponse(200, b"<html>viewer</html>", headers={"Content-Type": "text/html"})]
    )
    clock, sleeps = FakeClock(), []
    with _transport(session, clock, sleeps) as transport:
        result = transport.fetch(
            FetchRequest(url="https://example.test/viewer", validate=False)
        )
    assert result.body == b"<html>viewer</html>"


def test_network_errors_become_transport_failures():
    session = FakeSession([requests.ConnectionError("connection reset")])
    clock, sleeps = FakeClock(), []
    with _transport(session, clock, sleeps, max_retries=2) as transport:
        with pytest.raises(TransportFailure) as excinfo:
            transport.fetch(FetchRequest(url="https://example.test/file"))
    assert "ConnectionError" in str(excinfo.value)
    assert len(session.calls) == 3


def test_request_starts_are_paced():
    clock = FakeClock()
    starts = []
    session = FakeSession(
        [FakeHttpResponse(200, pdf_bytes(1024), headers=PDF_HEADERS)],
        on_request=lambda: starts.append(clock()),
    )
    sleeps = []
    with _transport(session, clock, sleeps, qps=2.0) as transport:
        for _ in range(5):
            transport.fetch(FetchRequest(url="https://example.test/file"))

    gaps = [b - a for a, b in zip(starts, starts[1:])]
    assert len(gaps) == 4
    assert all(gap >= 0.5 - 1e-9 for gap in gaps)


def test_concurrency_bound_is_never_exceeded():
    lock = threading.Lock()
    in_flight = 0
    peak = 0

    def _slow_request():
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        time.sleep(0.05)
        with lock:
            in_flight -= 1

    session = FakeSession(
        [FakeHttpResponse(200, pdf_bytes(1024), headers=PDF_HEADERS)],
        on_request=_slow_request,
    )
    with RateLimitedTransport(session, concurrency=2, qps=1000.0) as transport:
        futures = [
            transport.submit(FetchRequest(url=f"https://example.test/file/{i}"))
            for i in range(6)
        ]
        results = [f.result() for f in futures]

    assert len(results) == 6
    assert 1 <= peak <= 2


def test_invalid_settings_rejected():
    with pytest.raises(ValueError):
        RateLimitedTransport(FakeSession([]), concurrency=0)
    with pytest.raises(ValueError):
        RateLimitedTransport(FakeSession([]), qps=0)
    with pytest.raises(ValueError):
        RateLimitedTransport(FakeSession([]), max_retries=-1)


def test_apply_browser_cookies():
    session = requests.Session()
    apply_browser_cookies(
        session,
        [
            {"name": "PHPSESSID", "value": "abc", "domain": ".example.test", "path": "/"},
            {"value": "ignored"},
        ],
    )
    assert session.cookies.get("PHPSESSID", domain=".example.test") == "abc"
    assert len(session.cookies) == 1
