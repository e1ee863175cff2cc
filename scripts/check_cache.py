#!/usr/bin/env python3
"""
Inspect the file cache directory and report whether it is usable.

Creates the data and cache directories when missing, writes and removes a
probe file, prints directory permissions, and classifies every file in the
cache directory as fresh, expired, corrupted or foreign. With ``--clean`` the
expired and corrupted files are swept afterwards.
"""

import argparse
import asyncio
import json
import os
import stat
import sys
from pathlib import Path
from typing import Any, Dict, Optional

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from service_cache.app.caching.entry import CacheEntry, now_ms  # noqa: E402
from service_cache.app.caching.file_cache import FILE_SUFFIX, FileCache  # noqa: E402
from service_cache.app.caching.namespaces import build_namespaces  # noqa: E402
from shared.errors import MalformedEntryError  # noqa: E402
from shared.logging import configure_logging  # noqa: E402

PROBE_NAME = "test.json"


def _ensure_dir(path: Path, report: Dict[str, Any], label: str) -> bool:
    if path.is_dir():
        report[label] = "exists"
        return True
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        report[label] = f"error: {exc}"
        return False
    report[label] = "created"
    return True


def _probe_write(cache_dir: Path) -> Optional[str]:
    """Write and delete a probe file; returns an error string on failure."""
    probe = cache_dir / PROBE_NAME
    try:
        probe.write_text(json.dumps({"test": "data"}, indent=2), encoding="utf-8")
        probe.unlink()
    except OSError as exc:
        return str(exc)
    return None


def _mode(path: Path) -> Optional[str]:
    try:
        return oct(stat.S_IMODE(path.stat().st_mode))
    except OSError:
        return None


def classify(cache_dir: Path, prefix: str, ttl_seconds: int) -> Dict[str, int]:
    """Count cache files by state without modifying anything."""
    namespaces = build_namespaces(prefix, ttl_seconds * 1000)
    counts = {"fresh": 0, "expired": 0, "corrupted": 0, "foreign": 0}
    now = now_ms()

    for path in sorted(cache_dir.iterdir()):
        if not path.is_file():
            continue
        stem = path.name[:-len(FILE_SUFFIX)] if path.name.endswith(FILE_SUFFIX) else None
        owner = next((ns for ns in namespaces.values() if stem is not None and ns.owns(stem)), None)
        if owner is None:
            counts["foreign"] += 1
            continue
        try:
            entry = CacheEntry.decode(owner.strip(stem), path.read_bytes())
        except (OSError, MalformedEntryError):
            counts["corrupted"] += 1
            continue
        counts["fresh" if entry.is_fresh(owner.ttl_ms, now) else "expired"] += 1

    return counts


async def clean(cache_dir: Path, prefix: str, ttl_seconds: int) -> bool:
    namespaces = build_namespaces(prefix, ttl_seconds * 1000)
    results = [await FileCache(cache_dir, namespace).clean_cache() for namespace in namespaces.values()]
    return all(results)


def check(cache_dir: Path, prefix: str, ttl_seconds: int, do_clean: bool) -> Dict[str, Any]:
    """Run every check and return the report."""
    data_dir = cache_dir.parent
    report: Dict[str, Any] = {
        "project_root": str(Path.cwd()),
        "data_dir": str(data_dir),
        "cache_dir": str(cache_dir),
    }

    usable = _ensure_dir(data_dir, report, "data_dir_status") and _ensure_dir(cache_dir, report, "cache_dir_status")
    if usable:
        probe_error = _probe_write(cache_dir)
        report["write_test"] = "ok" if probe_error is None else f"error: {probe_error}"
        usable = probe_error is None

    report["permissions"] = {"data_dir": _mode(data_dir), "cache_dir": _mode(cache_dir)}

    if cache_dir.is_dir():
        report["entries"] = classify(cache_dir, prefix, ttl_seconds)
        if do_clean:
            report["cleaned"] = asyncio.run(clean(cache_dir, prefix, ttl_seconds))
            report["entries_after_clean"] = classify(cache_dir, prefix, ttl_seconds)

    report["usable"] = usable
    return report


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check the analyzer file cache directory.")
    parser.add_argument("--cache-dir", type=Path, default=Path(os.getenv("ANALYZER_CACHE_DIR", "data/cache")), help="Cache directory to inspect")
    parser.add_argument("--prefix", default=os.getenv("ANALYZER_CACHE_PREFIX", "yt_analyzer_"), help="Cache file name prefix")
    parser.add_argument("--ttl-seconds", type=int, default=int(os.getenv("ANALYZER_CACHE_TTL_SECONDS", 24 * 60 * 60)), help="Default namespace TTL")
    parser.add_argument("--clean", action="store_true", help="Delete expired and corrupted cache files")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("--log-level", default="warning", help="Log level for cache operations")
    return parser.parse_args(argv)


def _print_report(report: Dict[str, Any]) -> None:
    print(f"Project root: {report['project_root']}")
    print(f"Data directory: {report['data_dir']} ({report.get('data_dir_status', 'unchecked')})")
    print(f"Cache directory: {report['cache_dir']} ({report.get('cache_dir_status', 'unchecked')})")
    if "write_test" in report:
        print(f"Write test: {report['write_test']}")
    print("Directory permissions:")
    for label, mode in report["permissions"].items():
        print(f"  {label}: {mode or 'unavailable'}")
    if "entries" in report:
        print("Entries: " + ", ".join(f"{state}={count}" for state, count in report["entries"].items()))
    if "cleaned" in report:
        print("Entries after clean: " + ", ".join(f"{state}={count}" for state, count in report["entries_after_clean"].items()))


def main(argv=None) -> int:
    args = _parse_args(argv)
    configure_logging("check-cache", args.log_level)
    try:
        report = check(args.cache_dir, args.prefix, args.ttl_seconds, args.clean)
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[check-cache] failed: {exc}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(report, indent=2))
    else:
        _print_report(report)

    return 0 if report["usable"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
