from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from pathlib import Path

from playwright.sync_api import Error as PlaywrightError

from .collect import CaseCollector, build_resolver
from .config import CollectorConfig, load_config
from .logging_utils import configure_logging, run_log_path
from .output_inspect import inspect_output
from .session import BrowserSession
from .urls import load_url_list


def _codes(raw: str) -> tuple[str, ...]:
    return tuple(c.strip().upper() for c in raw.split(",") if c.strip())


def _apply_overrides(cfg: CollectorConfig, args: argparse.Namespace) -> CollectorConfig:
    top: dict = {}
    if args.urls is not None:
        top["urls_file"] = args.urls
    if args.out is not None:
        top["out_dir"] = args.out
    if args.required is not None:
        top["required_categories"] = _codes(args.required)
    if args.link_only is not None:
        top["link_only_categories"] = _codes(args.link_only)
    if args.max_items is not None:
        top["max_items"] = int(args.max_items)
    if args.headed:
        top["headless"] = False
    if args.chrome_profile is not None:
        top["chrome_profile"] = args.chrome_profile
    if args.storage_state is not None:
        top["storage_state"] = args.storage_state
    if args.channel is not None:
        top["browser_channel"] = args.channel
    if args.debug_snapshots:
        top["debug_snapshots"] = True
    if args.skip_done:
        top["skip_done"] = True
    if args.log_level is not None:
        top["log_level"] = args.log_level.upper()

    transport: dict = {}
    if args.concurrency is not None:
        transport["concurrency"] = int(args.concurrency)
    if args.qps is not None:
        transport["qps"] = float(args.qps)
    if args.timeout is not None:
        transport["timeout_s"] = float(args.timeout)
    if args.max_retries is not None:
        transport["max_retries"] = int(args.max_retries)
    if transport:
        top["transport"] = dataclasses.replace(cfg.transport, **transport)

    pickup: dict = {}
    if args.os_pickup:
        pickup["enabled"] = True
    if args.os_pickup_dir is not None:
        pickup["directory"] = args.os_pickup_dir
    if pickup:
        top["pickup"] = dataclasses.replace(cfg.pickup, **pickup)

    return dataclasses.replace(cfg, **top)


def _run_collect(args: argparse.Namespace) -> int:
    try:
        cfg = _apply_overrides(load_config(args.env_file), args)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 2

    configure_logging(run_log_path(cfg.out_dir), cfg.log_level)

    try:
        urls = load_url_list(cfg.urls_file)
    except OSError as e:
        print(str(e), file=sys.stderr)
        return 2
    if not urls:
        print(f"no http(s) URLs in {cfg.urls_file}", file=sys.stderr)
        return 2

    browser = BrowserSession(
        profile_dir=cfg.chrome_profile,
        storage_state=cfg.storage_state,
        headless=cfg.headless,
        channel=cfg.browser_channel,
    )
    try:
        browser.start()
    except PlaywrightError as e:
        print(f"browser launch failed: {e}", file=sys.stderr)
        browser.close()
        return 2

    try:
        resolver = build_resolver(cfg, browser.requests_session())
        try:
            collector = CaseCollector(browser=browser, resolver=resolver, config=cfg)
            summary = collector.run(urls)
        finally:
            resolver.transport.close()
    finally:
        browser.close()

    print(summary.line())
    if summary.cases_failed:
        return 1
    if bool(args.fail_on_missing) and summary.missing:
        return 4
    return 0


def _run_inspect(args: argparse.Namespace) -> int:
    try:
        inspected = inspect_output(out_dir=args.in_dir)
    except OSError as e:
        print(str(e), file=sys.stderr)
        return 2

    if bool(args.json):
        print(json.dumps(inspected.to_dict(), indent=2, ensure_ascii=False))
    else:
        print(
            "inspect: "
            f"cases={len(inspected.cases)} "
            f"unreadable={len(inspected.unreadable)} "
            f"missing_files={inspected.missing_files} "
            f"missing={','.join(inspected.missing_union) or '-'}"
        )
        for case in inspected.cases:
            print(
                f"- {case.case_id}: files={case.files} failed={case.failed} "
                f"links={case.links} bytes={case.total_bytes}"
            )
            for issue in case.issues:
                print(f"    {issue}")
            for rel in case.missing_files:
                print(f"    file not on disk: {rel}")

    if bool(args.fail_on_missing) and (
        inspected.missing_union or inspected.missing_files or inspected.unreadable
    ):
        return 4
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="casedocs")
    sub = parser.add_subparsers(dest="cmd", required=True)

    collect_p = sub.add_parser(
        "collect",
        help="Collect reference documents for every case URL in a list file",
    )
    collect_p.add_argument(
        "--urls",
        type=Path,
        default=None,
        help="URL list, one per line; '#' starts a comment (env: URLS_FILE)",
    )
    collect_p.add_argument("--out", type=Path, default=None, help="env: OUT_DIR")
    collect_p.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Read settings from this .env file (default: ./.env if present)",
    )
    collect_p.add_argument(
        "--required",
        default=None,
        help="Comma-separated required category codes, e.g. AP,REG,BLD,ZON,RS",
    )
    collect_p.add_argument(
        "--link-only",
        default=None,
        help="Comma-separated codes recorded as links, never downloaded",
    )
    collect_p.add_argument("--max-items", type=int, default=None)
    collect_p.add_argument("--concurrency", type=int, default=None)
    collect_p.add_argument("--qps", type=float, default=None)
    collect_p.add_argument("--timeout", type=float, default=None, help="Seconds")
    collect_p.add_argument("--max-retries", type=int, default=None)
    collect_p.add_argument("--headed", action="store_true", help="Show the browser")
    collect_p.add_argument("--chrome-profile", type=Path, default=None)
    collect_p.add_argument(
        "--storage-state",
        type=Path,
        default=None,
        help="Playwright storage_state.json holding the login (env: COOKIE_TANK)",
    )
    collect_p.add_argument("--channel", default=None, help="e.g. chrome, msedge")
    collect_p.add_argument(
        "--os-pickup",
        action="store_true",
        help="Fall back to picking files up from the OS downloads folder",
    )
    collect_p.add_argument("--os-pickup-dir", type=Path, default=None)
    collect_p.add_argument(
        "--debug-snapshots",
        action="store_true",
        help="Save page HTML + screenshots before/after resolution into _debug/",
    )
    collect_p.add_argument(
        "--skip-done",
        action="store_true",
        help="Skip URLs recorded as done by a previous run",
    )
    collect_p.add_argument("--log-level", default=None)
    collect_p.add_argument(
        "--fail-on-missing",
        action="store_true",
        help="Return non-zero if any case is missing required categories",
    )

    inspect_p = sub.add_parser(
        "inspect",
        help="Summarize and validate the case manifests in an output directory",
    )
    inspect_p.add_argument(
        "--in",
        dest="in_dir",
        type=Path,
        required=True,
        help="Output directory containing <case>/MANIFEST.json",
    )
    inspect_p.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON to stdout",
    )
    inspect_p.add_argument(
        "--fail-on-missing",
        action="store_true",
        help="Return non-zero if categories or referenced files are missing",
    )

    args = parser.parse_args(argv)

    if args.cmd == "collect":
        return _run_collect(args)
    if args.cmd == "inspect":
        return _run_inspect(args)

    return 2
