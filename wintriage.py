#!/usr/bin/env python3

"""
wintriage: recover BITS download jobs and prefetch volume information from a
Windows triage collection (or a live system drive) and write them as JSON/CSV.
"""

import argparse
import copy
import csv
import datetime as dt
import json
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, fields, is_dataclass
from pathlib import Path
from typing import Any, Callable

import yaml

from accounts import load_profile_users
from artifact_errors import ArtifactError
from binparse import FILETIME_EPOCH_SECONDS
from bits import FileRecord, JobRecord, MergedArtifactRecord, WindowsArtifactCollection
from bits_collect import decode_legacy, decode_structured, read_raw
from console import log_dim, log_error, log_header, log_info, log_step, log_success, log_warn
from prefetch_volume import decode_prefetch_volumes

# Some types and constants
JSONDict = dict[str, Any]
Collector = Callable[[JSONDict], Any]

VERSION = "0.1.0"

# Config file (contains the triage root and the artifact locations below it).
DEFAULT_CONFIG_NAME = "config.yml"

# Output structure
OUTPUT_SUBDIRS: dict[str, str] = {
    "BITS": "Network activity",
    "Prefetch": "Evidence of execution",
    "Meta": "Meta",
}

TIME_COLUMNS = ("created", "modified", "completed", "expiration")


def resolve_default_config_path(default_name: str) -> Path:
    """
    Resolve default config.yml path: working directory first, then next to this script.
    """
    p = Path.cwd() / default_name
    if p.exists():
        return p.resolve()

    p = Path(__file__).resolve().parent / default_name
    if p.exists():
        return p

    return Path(default_name).resolve()


# General helpers
def write_json(path: Path, obj: Any) -> None:
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=False), encoding="utf-8")


def _write_rows_csv(path: Path, fieldnames: list[str], rows: list[dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as fp:
        w = csv.DictWriter(fp, fieldnames=fieldnames)
        w.writeheader()
        for r in rows:
            w.writerow({k: r.get(k, "") for k in fieldnames})


def unix_to_iso(ts: Any) -> str:
    """ISO-8601 UTC, or "" for an unset (zero FILETIME) timestamp."""
    try:
        ts = int(ts)
        if ts == -FILETIME_EPOCH_SECONDS:
            return ""
        return dt.datetime.fromtimestamp(ts, dt.timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return ""


def _csv_row(record: Any) -> dict[str, Any]:
    row = asdict(record)
    for key, value in row.items():
        if isinstance(value, list):
            row[key] = ";".join(str(v) for v in value)
    for key in TIME_COLUMNS:
        if key in row:
            row[key] = unix_to_iso(row[key])
    return row


def _field_names(cls: type) -> list[str]:
    return [f.name for f in fields(cls)]


def _jsonable(obj: Any) -> Any:
    if is_dataclass(obj):
        return asdict(obj)
    if isinstance(obj, list):
        return [_jsonable(o) for o in obj]
    return obj


# Config
def load_yaml_config(path: Path) -> JSONDict:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("config.yml must be a mapping (dict).")
    return data


def _set_nested(cfg: JSONDict, dotted_key: str, value: Any) -> None:
    """
    Supports:
      - a=b
      - a.b=c
    """
    parts = [p.strip() for p in dotted_key.split(".") if p.strip()]
    if not parts:
        return

    cur: Any = cfg
    for key in parts[:-1]:
        if key not in cur or not isinstance(cur[key], dict):
            cur[key] = {}
        cur = cur[key]
    cur[parts[-1]] = value


def apply_overrides(cfg: JSONDict, args: argparse.Namespace) -> JSONDict:
    new_cfg = copy.deepcopy(cfg)
    overrides = {
        "root": args.root,
        "system_drive": args.drive,
        "bits.ese": args.ese,
        "hives.SOFTWARE": args.software_hive,
        "prefetch": args.prefetch,
    }
    for key, value in overrides.items():
        if value:
            _set_nested(new_cfg, key, value)

    # Flags can only switch features on
    if args.carve:
        new_cfg["carve"] = True
    if args.legacy:
        _set_nested(new_cfg, "bits.legacy", True)

    return new_cfg


def _section(cfg: JSONDict, name: str) -> JSONDict:
    section = cfg.get(name, {}) or {}
    if not isinstance(section, dict):
        raise ValueError(f"{name} must be a mapping/dict in config.yml")
    return section


def build_paths(cfg: JSONDict) -> JSONDict:
    """
    Resolve triage-root-relative paths into absolute Paths. Without a root the
    configured paths are used as they are (live system).
    """
    root: Path | None = None
    if cfg.get("root"):
        root = Path(str(cfg["root"])).expanduser().resolve()
        if not root.exists():
            raise FileNotFoundError(f"Triage root does not exist: {root}")

    def resolve(rel: Any) -> Path | None:
        if not rel:
            return None
        p = Path(str(rel)).expanduser()
        return (root / p).resolve() if root is not None else p.resolve()

    drive = str(cfg.get("system_drive") or "C").rstrip(":\\/")
    if len(drive) != 1 or not drive.isalpha():
        raise ValueError(f"system_drive must be a single drive letter, got {drive!r}")

    bits = _section(cfg, "bits")
    hives = _section(cfg, "hives")
    return {
        "root": root,
        "system_drive": drive.upper(),
        "carve": bool(cfg.get("carve", False)),
        "ese": resolve(bits.get("ese")),
        "legacy": bool(bits.get("legacy", False)),
        "software": resolve(hives.get("SOFTWARE")),
        "prefetch": resolve(cfg.get("prefetch")),
    }


def create_main_dir(output_dir: Path) -> dict[str, Path]:
    if output_dir.exists():
        log_error(f"Output directory already exists: {output_dir}")
        sys.exit(1)

    output_dir.mkdir(parents=True, exist_ok=False)

    outdirs: dict[str, Path] = {}
    for k, folder in OUTPUT_SUBDIRS.items():
        outdirs[k] = (output_dir / folder).resolve()
        outdirs[k].mkdir(parents=True, exist_ok=True)

    return outdirs


def load_users(ctx: JSONDict) -> dict[str, str]:
    log_step("Resolving owner SIDs")
    software = ctx.get("software")
    if not software:
        log_warn("SOFTWARE hive missing in config; only well-known SIDs will resolve.")
        return load_profile_users(None)
    try:
        users = load_profile_users(software)
    except ArtifactError as ex:
        log_warn(f"{ex}; only well-known SIDs will resolve.")
        return load_profile_users(None)
    log_info(f"Resolved {len(users)} SIDs from {software}")
    return users


# Collectors
def _log_collection(name: str, collection: WindowsArtifactCollection) -> None:
    for err in collection.errors:
        log_warn(f"{name}: {err}")
    log_dim(
        f"    {name}: {len(collection.entries)} jobs, "
        f"{len(collection.carved_jobs)} carved jobs, {len(collection.carved_files)} carved files"
    )


def collect_bits_ese(ctx: JSONDict) -> WindowsArtifactCollection | None:
    src = ctx.get("ese")
    if not src:
        log_warn("bits.ese missing in config; skipping.")
        return None
    if not Path(src).exists():
        log_warn(f"BITS database not found: {src}")
        return None

    users: dict[str, str] = ctx["users"]
    collection = decode_structured(str(src), ctx["carve"], lookup_username=users.get)
    _log_collection("qmgr.db", collection)
    return collection


def collect_bits_legacy(ctx: JSONDict) -> WindowsArtifactCollection | None:
    if not ctx.get("legacy"):
        log_warn("bits.legacy disabled in config; skipping.")
        return None

    users: dict[str, str] = ctx["users"]
    collection = decode_legacy(
        ctx["system_drive"],
        ctx["carve"],
        root=ctx.get("root"),
        lookup_username=users.get,
    )
    _log_collection("qmgr0/1.dat", collection)
    return collection


def collect_prefetch_volumes(ctx: JSONDict) -> list[JSONDict] | None:
    src_dir = ctx.get("prefetch")
    if not src_dir:
        log_warn("prefetch missing in config; skipping.")
        return None
    if not Path(src_dir).is_dir():
        log_warn(f"Prefetch directory not found: {src_dir}")
        return None

    results: list[JSONDict] = []
    for pf in sorted(Path(src_dir).glob("*.pf")):
        try:
            decoded = decode_prefetch_volumes(read_raw(str(pf)))
        except ArtifactError as ex:
            log_warn(f"{pf.name}: {ex}")
            continue
        if decoded.error is not None:
            log_warn(f"{pf.name}: kept {len(decoded.volumes)} volumes, then {decoded.error}")
        results.append(
            {
                "source": pf.name,
                "executable": decoded.executable,
                "version": decoded.version,
                "volumes": _jsonable(decoded.volumes),
                "error": str(decoded.error) if decoded.error else None,
            }
        )
    return results


COLLECTORS: list[tuple[str, Collector]] = [
    ("BITS qmgr.db", collect_bits_ese),
    ("BITS qmgr0/1.dat", collect_bits_legacy),
    ("Prefetch volume information", collect_prefetch_volumes),
]


def run_collectors(ctx: JSONDict, *, workers: int = 0) -> dict[str, Any]:
    if workers and workers > 0:
        max_workers = workers
    else:
        max_workers = min(8, (os.cpu_count() or 4))

    def _run_one(name: str, fn: Collector) -> tuple[str, float, Any, str | None]:
        start = time.perf_counter()
        try:
            log_info(f"Running: {name}")
            value = fn(ctx)
            elapsed = time.perf_counter() - start
            log_success(f"Finished: {name} ({elapsed:.2f}s)")
            return (name, elapsed, value, None)
        except Exception as ex:
            elapsed = time.perf_counter() - start
            log_error(f"Error in {name} ({elapsed:.2f}s): {ex}")
            return (name, elapsed, None, str(ex))

    log_info(f"Running collectors in parallel (workers={max_workers})")

    results: list[tuple[str, float, Any, str | None]] = []
    with ThreadPoolExecutor(max_workers=max_workers) as ex:
        futs = {ex.submit(_run_one, name, fn): name for name, fn in COLLECTORS}
        for fut in as_completed(futs):
            results.append(fut.result())

    ok = [r for r in results if r[3] is None]
    bad = [r for r in results if r[3] is not None]
    log_info(f"\nCollector summary: OK={len(ok)} FAIL={len(bad)}")
    if bad:
        log_error("Failed collectors:")
        for name, elapsed, _, err in sorted(bad, key=lambda x: x[0].lower()):
            log_error(f"    - {name} ({elapsed:.2f}s): {err}")

    return {name: value for name, _, value, err in results if err is None}


# Output
def write_bits(out_dir: Path, collections: list[WindowsArtifactCollection]) -> WindowsArtifactCollection:
    merged = WindowsArtifactCollection()
    for collection in collections:
        merged.extend(collection)

    write_json(
        out_dir / "bits.json",
        {
            "entries": _jsonable(merged.entries),
            "carved_jobs": _jsonable(merged.carved_jobs),
            "carved_files": _jsonable(merged.carved_files),
            "errors": [str(err) for err in merged.errors],
        },
    )
    _write_rows_csv(out_dir / "bits.csv", _field_names(MergedArtifactRecord), [_csv_row(r) for r in merged.entries])
    _write_rows_csv(out_dir / "bits_carved_jobs.csv", _field_names(JobRecord), [_csv_row(j) for j in merged.carved_jobs])
    _write_rows_csv(
        out_dir / "bits_carved_files.csv", _field_names(FileRecord), [_csv_row(f) for f in merged.carved_files]
    )
    log_success(f"BITS: {len(merged.entries)} jobs written -> {out_dir / 'bits.json'}")
    return merged


def write_prefetch(out_dir: Path, prefetch: list[JSONDict]) -> None:
    out = out_dir / "prefetch_volumes.json"
    write_json(out, prefetch)
    log_success(f"Prefetch: {len(prefetch)} files written -> {out}")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        description="BITS job and prefetch volume recovery for Windows triage collections",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        epilog=f"wintriage {VERSION}",
    )

    ap.add_argument("-V", "--version", action="version", version=f"wintriage {VERSION}")
    ap.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Number of worker threads for running collectors in parallel (0 = auto).",
    )
    ap.add_argument("-c", "--config", default=DEFAULT_CONFIG_NAME, help="Path to config.yml")
    ap.add_argument("--root", help="Override triage root path for this run (directory path)")
    ap.add_argument("--carve", action="store_true", help="Also carve deleted BITS jobs and files")
    ap.add_argument("--ese", help="qmgr.db path (relative to the root when one is set)")
    ap.add_argument("--legacy", action="store_true", help="Decode the pre-Win10 qmgr0.dat/qmgr1.dat files")
    ap.add_argument("--drive", help="System drive letter used to locate the legacy qmgr files")
    ap.add_argument("--prefetch", help="Directory of uncompressed prefetch (.pf) files")
    ap.add_argument("--software-hive", help="SOFTWARE hive used to resolve SIDs to usernames")
    ap.add_argument("-o", "--output", required=True, help="Output directory to create (must not exist).")

    return ap.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    if args.config == DEFAULT_CONFIG_NAME:
        cfg_path = resolve_default_config_path(DEFAULT_CONFIG_NAME)
        # The default config is optional; an explicit one is not
        if cfg_path.exists():
            cfg = load_yaml_config(cfg_path)
        else:
            log_warn(f"No config at {cfg_path}; using command line options only.")
            cfg = {}
    else:
        cfg = load_yaml_config(Path(args.config).expanduser().resolve())

    # Apply CLI overrides
    cfg = apply_overrides(cfg, args)
    ctx = build_paths(cfg)

    output_directory = Path(args.output).expanduser().resolve()
    outdirs = create_main_dir(output_directory)

    # Save config snapshot
    write_json(outdirs["Meta"] / "config_effective.json", cfg)

    log_header("wintriage")
    log_info(f"Output: {output_directory}")
    if ctx["root"] is not None:
        log_info(f"Root: {ctx['root']}")
    if ctx["carve"]:
        log_info("Carving enabled")

    ctx["users"] = load_users(ctx)
    results = run_collectors(ctx, workers=int(args.workers or 0))

    # Fixed order so output does not depend on which worker finished first
    collections = [
        results[name]
        for name in ("BITS qmgr.db", "BITS qmgr0/1.dat")
        if results.get(name) is not None
    ]
    if collections:
        write_bits(outdirs["BITS"], collections)
    prefetch = results.get("Prefetch volume information")
    if prefetch is not None:
        write_prefetch(outdirs["Prefetch"], prefetch)

    log_info("Done.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
