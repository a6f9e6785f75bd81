from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .classify import LINK_ONLY_CATEGORIES
from .manifest import DEFAULT_REQUIRED_CATEGORIES
from .pickup import DEFAULT_PATTERN
from .resolver import ResolverConfig


@dataclass(frozen=True)
class TransportConfig:
    concurrency: int = 2
    qps: float = 2.0
    timeout_s: float = 120.0
    max_retries: int = 3
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 10.0
    min_bytes: int = 512


@dataclass(frozen=True)
class PickupConfig:
    enabled: bool = False
    directory: Path | None = None
    pattern: str = DEFAULT_PATTERN.pattern
    timeout_s: float = 60.0
    poll_s: float = 1.0


@dataclass(frozen=True)
class CollectorConfig:
    out_dir: Path = Path("out")
    urls_file: Path = Path("urls.txt")
    required_categories: tuple[str, ...] = DEFAULT_REQUIRED_CATEGORIES
    link_only_categories: tuple[str, ...] = tuple(sorted(LINK_ONLY_CATEGORIES))
    max_items: int = 16
    pause_every: int = 5
    pause_s: float = 1.5
    page_timeout_ms: int = 30_000
    debug_snapshots: bool = False
    skip_done: bool = False
    headless: bool = True
    chrome_profile: Path | None = None
    storage_state: Path | None = None
    browser_channel: str | None = None
    log_level: str = "INFO"
    transport: TransportConfig = field(default_factory=TransportConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    pickup: PickupConfig = field(default_factory=PickupConfig)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_path(name: str, default: Path | None) -> Path | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return Path(raw.strip()).expanduser()


def _env_codes(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return tuple(c.strip().upper() for c in raw.split(",") if c.strip())


def load_config(env_file: Path | None = None) -> CollectorConfig:
    """Defaults, overridden by the environment (and an optional ``.env``)."""

    if env_file is not None:
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(override=False)

    transport = TransportConfig(
        concurrency=_env_int("CONCURRENCY", TransportConfig.concurrency),
        qps=_env_float("QPS", TransportConfig.qps),
        timeout_s=_env_float("TIMEOUT_S", TransportConfig.timeout_s),
        max_retries=_env_int("MAX_RETRIES", TransportConfig.max_retries),
        backoff_base_s=_env_float("BACKOFF_BASE_S", TransportConfig.backoff_base_s),
        backoff_cap_s=_env_float("BACKOFF_CAP_S", TransportConfig.backoff_cap_s),
        min_bytes=_env_int("MIN_BYTES", TransportConfig.min_bytes),
    )
    resolver = ResolverConfig(
        candidate_budget_s=_env_float(
            "CANDIDATE_BUDGET_S", ResolverConfig.candidate_budget_s
        ),
        min_bytes=transport.min_bytes,
    )
    pickup = PickupConfig(
        enabled=_env_bool("OS_DOWNLOADS_FALLBACK", False),
        directory=_env_path("OS_DOWNLOADS_DIR", Path.home() / "Downloads"),
        pattern=os.getenv("OS_DOWNLOADS_PATTERN") or PickupConfig.pattern,
        timeout_s=_env_float("OS_DOWNLOADS_TIMEOUT_S", PickupConfig.timeout_s),
    )
    return CollectorConfig(
        out_dir=_env_path("OUT_DIR", CollectorConfig.out_dir) or CollectorConfig.out_dir,
        urls_file=_env_path("URLS_FILE", CollectorConfig.urls_file)
        or CollectorConfig.urls_file,
        required_categories=_env_codes("REQUIRED_CODES", DEFAULT_REQUIRED_CATEGORIES),
        link_only_categories=_env_codes(
            "LINK_ONLY_CODES", CollectorConfig.link_only_categories
        ),
        max_items=_env_int("MAX_ITEMS", CollectorConfig.max_items),
        debug_snapshots=_env_bool("DEBUG_SNAPSHOTS", False),
        headless=_env_bool("HEADLESS", True),
        chrome_profile=_env_path("CHROME_PROFILE", None),
        storage_state=_env_path("COOKIE_TANK", None),
        browser_channel=os.getenv("BROWSER_CHANNEL") or None,
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        transport=transport,
        resolver=resolver,
        pickup=pickup,
    )
