from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

import requests
from requests import exceptions as req_exc

from .content import DEFAULT_MIN_BYTES, check_payload
from .errors import IntegrityRejected, TransportFailure

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
)


def _header_value(headers: dict[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _retry_after_seconds(headers: dict[str, str]) -> float | None:
    retry_after = _header_value(headers, "retry-after")
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        return None


def backoff_delays(
    max_retries: int, *, base_s: float = 1.0, cap_s: float = 10.0
) -> list[float]:
    """Delays slept before each retry: ``min(base * 2**attempt, cap)``."""

    return [min(base_s * (2**attempt), cap_s) for attempt in range(max_retries)]


@dataclass(frozen=True)
class FetchRequest:
    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    data: bytes | str | None = None
    referer: str | None = None
    # Viewer pages are fetched as HTML on purpose.
    validate: bool = True


@dataclass(frozen=True)
class FetchResult:
    url: str
    final_url: str
    status_code: int
    headers: dict[str, str]
    fetched_at: float
    body: bytes
    attempts: int

    @property
    def content_type(self) -> str | None:
        return _header_value(self.headers, "content-type")

    @property
    def content_disposition(self) -> str | None:
        return _header_value(self.headers, "content-disposition")


class RateLimitedTransport:
    """Bounded-concurrency, paced HTTP fetcher with retry and integrity checks.

    Requests queue FIFO in a thread pool of ``concurrency`` workers. Before
    every attempt a worker reserves the next dispatch slot, so no two request
    starts are closer than ``1/qps`` seconds regardless of which worker sends
    them.
    """

    def __init__(
        self,
        session: requests.Session,
        *,
        concurrency: int = 2,
        qps: float = 2.0,
        timeout_s: float = 120,
        max_retries: int = 3,
        backoff_base_s: float = 1.0,
        backoff_cap_s: float = 10.0,
        min_bytes: int = DEFAULT_MIN_BYTES,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._session = session
        self._timeout_s = timeout_s
        self._max_retries = max_retries
        self._delays = backoff_delays(
            max_retries, base_s=backoff_base_s, cap_s=backoff_cap_s
        )
        self._backoff_cap_s = backoff_cap_s
        self._min_bytes = min_bytes
        self._interval_s = 1.0 / qps
        self._clock = clock
        self._sleep = sleep

        self._pace_lock = threading.Lock()
        self._next_slot: float | None = None
        self._executor = ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix="casedocs-fetch"
        )

    @property
    def session(self) -> requests.Session:
        return self._session

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> RateLimitedTransport:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def submit(self, request: FetchRequest) -> Future[FetchResult]:
        return self._executor.submit(self._run, request)

    def fetch(self, request: FetchRequest) -> FetchResult:
        return self.submit(request).result()

    def _reserve_slot(self) -> None:
        with self._pace_lock:
            now = self._clock()
            start_at = now
            if self._next_slot is not None and self._next_slot > now:
                start_at = self._next_slot
            self._next_slot = start_at + self._interval_s
        wait_s = start_at - now
        if wait_s > 0:
            self._sleep(wait_s)

    def _send(self, request: FetchRequest) -> requests.Response:
        headers = dict(request.headers)
        if request.referer:
            headers["Referer"] = request.referer
        self._reserve_slot()
        return self._session.request(
            request.method,
            request.url,
            headers=headers,
            data=request.data,
            timeout=self._timeout_s,
            allow_redirects=True,
        )

    def _run(self, request: FetchRequest) -> FetchResult:
        last_error: Exception | None = None
        attempts = self._max_retries + 1

        for attempt in range(attempts):
            retry_after: float | None = None
            try:
                resp = self._send(request)
                headers = {k: str(v) for k, v in resp.headers.items()}
                status = int(resp.status_code)
                if not 200 <= status < 300:
                    retry_after = _retry_after_seconds(headers)
                    raise TransportFailure(
                        f"HTTP {status} for {request.url}",
                        url=request.url,
                        status_code=status,
                    )
                body = resp.content
                if request.validate:
                    check_payload(
                        body,
                        content_type=_header_value(headers, "content-type"),
                        min_bytes=self._min_bytes,
                    )
                return FetchResult(
                    url=request.url,
                    final_url=str(resp.url),
                    status_code=status,
                    headers=headers,
                    fetched_at=time.time(),
                    body=body,
                    attempts=attempt + 1,
                )
            except (TransportFailure, IntegrityRejected) as e:
                last_error = e
            except req_exc.RequestException as e:
                last_error = TransportFailure(
                    f"{type(e).__name__} for {request.url}: {e}", url=request.url
                )

            if attempt >= self._max_retries:
                break
            wait_s = self._delays[attempt]
            if retry_after is not None:
                wait_s = min(max(wait_s, retry_after), self._backoff_cap_s)
            logger.debug(
                "fetch attempt %d/%d failed (%s); retrying in %.1fs",
                attempt + 1,
                attempts,
                last_error,
                wait_s,
            )
            self._sleep(wait_s)

        if last_error is None:
            raise RuntimeError(f"Failed to fetch {request.url}: no attempts made")
        logger.info("fetch gave up after %d attempts: %s", attempts, last_error)
        raise last_error


def apply_browser_cookies(session: requests.Session, cookies: list[dict]) -> None:
    for cookie in cookies:
        name = cookie.get("name")
        if not name:
            continue
        session.cookies.set(
            name,
            cookie.get("value", ""),
            domain=cookie.get("domain") or "",
            path=cookie.get("path") or "/",
        )


def session_with_cookies(
    cookies: list[dict], *, user_agent: str | None = None
) -> requests.Session:
    """Build a requests session carrying cookies exported from a browser."""

    session = requests.Session()
    session.headers["User-Agent"] = user_agent or DEFAULT_USER_AGENT
    apply_browser_cookies(session, cookies)
    return session
