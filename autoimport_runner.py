# -*- coding: utf-8 -*-
"""
SonarrAutoImport runner

Scans a downloads folder for finished video files, parses each filename into
a title/season/episode record and imports it into Sonarr, creating the series
first when the library does not have it yet.

Key features
------------
- Configurable transform pipeline and structured patterns for parsing,
  with a heuristic fallback for names no pattern understands.
- Find-or-create series, exact episode lookup and manual import through the
  Sonarr v3 API; every failure is isolated to its file.
- Dry-run mode: parse and log only, no calls to Sonarr at all.
- Daemon mode: rescans on a fixed interval; optionally a watchdog observer
  wakes the loop early when new video files land.
- JSON manifest of the last scan for auditing.

CLI
---
python autoimport_runner.py [-c CONFIG] [-v] [--dry-run] [--daemon]
                            [--interval SECONDS] [--watch] [--manifest PATH]

Configuration
-------------
config.yaml (created with defaults when missing) plus optional secrets.yaml
next to it. Sections:
- sonarr.url, sonarr.api_key, sonarr.downloads_folder, sonarr.root_folder,
  sonarr.quality_profile, sonarr.language_profile, sonarr.timeout,
  sonarr.retry_attempts, sonarr.retry_wait, sonarr.cache_series_ids
- parsing.patterns, parsing.episode_patterns, parsing.quality_patterns,
  parsing.group_patterns
- transforms
- import.quality, import.language, import.use_parsed_quality, import.quality_map
- scan.extensions, scan.stable_seconds, scan.interval, scan.watch,
  scan.manifest_path
- logging.level, logging.log_file, logging.max_bytes, logging.backup_count
String values may reference ${VAR} or ${VAR:-default} environment variables.
"""

from __future__ import annotations

import argparse
import copy
import json
import logging
import os
import re
import sys
import threading
import time
import yaml

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from watchdog.events import FileCreatedEvent, FileMovedEvent, FileSystemEventHandler
from watchdog.observers import Observer

from filename_parser import (
    DEFAULT_EPISODE_PATTERNS,
    DEFAULT_GROUP_PATTERNS,
    DEFAULT_PATTERNS,
    DEFAULT_QUALITY_PATTERNS,
    DEFAULT_TRANSFORMS,
    ExtractionError,
    ParserConfig,
    parse_episode_filename,
)
from reconcile import PLACEHOLDER_LANGUAGE, PLACEHOLDER_QUALITY, ImportSettings, Reconciler
from sonarr_api import DEFAULT_TIMEOUT, SonarrClient

LOGGER_NAME = "SonarrAutoImport"

VIDEO_EXTENSIONS = [".mp4", ".mkv", ".avi", ".m4v", ".mov", ".wmv", ".flv", ".webm", ".ts", ".m2ts"]

DEFAULT_INTERVAL = 300

DEFAULT_CONFIG: Dict[str, Any] = {
    "sonarr": {
        "url": "${SONARR_URL:-http://sonarr:8989}",
        "api_key": "${SONARR_API_KEY}",
        "downloads_folder": "/downloads",
        "root_folder": "/tv",
        "quality_profile": 1,
        "language_profile": 1,
        "timeout": DEFAULT_TIMEOUT,
        "retry_attempts": 1,
        "retry_wait": 5,
        "cache_series_ids": False,
    },
    "parsing": {
        "patterns": DEFAULT_PATTERNS,
        "episode_patterns": DEFAULT_EPISODE_PATTERNS,
        "quality_patterns": DEFAULT_QUALITY_PATTERNS,
        "group_patterns": DEFAULT_GROUP_PATTERNS,
    },
    "transforms": DEFAULT_TRANSFORMS,
    "import": {
        "quality": PLACEHOLDER_QUALITY,
        "language": PLACEHOLDER_LANGUAGE,
        "use_parsed_quality": False,
        "quality_map": {},
    },
    "scan": {
        "extensions": VIDEO_EXTENSIONS,
        "stable_seconds": 0,
        "interval": DEFAULT_INTERVAL,
        "watch": False,
        "manifest_path": None,
    },
    "logging": {
        "level": "INFO",
        "log_file": "sonarr_autoimport.log",
        "max_bytes": 5 * 1024 * 1024,
        "backup_count": 5,
    },
}

ENV_REF_RE = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


class ConfigError(Exception):
    """Configuration is missing something a scan cannot run without."""


class ScanError(Exception):
    """A scan could not start (e.g. downloads folder missing)."""

# ------------------------------ Configuration -------------------------------

def _deep_merge(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge src into dst, returning dst."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            _deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


def expand_env(value: Any) -> Any:
    """
    Expand ${VAR} and ${VAR:-default} in every string of a loaded config.
    Unset variables without a default expand to an empty string.
    """
    if isinstance(value, str):
        return ENV_REF_RE.sub(lambda m: os.environ.get(m.group(1)) or (m.group(2) or ""), value)
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    return value


def write_default_config(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(DEFAULT_CONFIG, f, sort_keys=False, allow_unicode=True)


def load_config(path: Path) -> tuple:
    """
    Load the YAML config at *path* over the built-in defaults, then
    deep-merge secrets.yaml from the same folder, then expand env references.

    Returns
    -------
    (dict, bool)
        The effective configuration and whether the file had to be created.
    """
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    created = False

    if path.exists():
        with path.open("r", encoding="utf-8") as f:
            cfg = _deep_merge(cfg, yaml.safe_load(f) or {})
    else:
        write_default_config(path)
        created = True

    secrets_file = path.with_name("secrets.yaml")
    if secrets_file.exists():
        with secrets_file.open("r", encoding="utf-8") as f:
            cfg = _deep_merge(cfg, yaml.safe_load(f) or {})

    return expand_env(cfg), created


def cfg_get(cfg: Dict[str, Any], dotted_path: str, default: Any = None) -> Any:
    """
    Retrieve nested configuration values with dotted paths.

    Parameters
    ----------
    cfg : dict
        Configuration dictionary.
    dotted_path : str
        Dotted path, e.g., "sonarr.api_key".
    default : Any
        Default value if the path is not present.
    """
    cur: Any = cfg
    for key in dotted_path.split("."):
        cur = cur.get(key) if isinstance(cur, dict) else None
        if cur is None:
            return default
    return cur

# --------------------------------- Logging -----------------------------------

def setup_logger(cfg: Dict[str, Any], verbose: bool = False) -> logging.Logger:
    """
    Set up a RotatingFileHandler logger plus console output.

    The file handler is skipped when logging.log_file is empty. Child loggers
    (SonarrAutoImport.parser, .sonarr, .reconcile) propagate here.
    """
    logger = logging.getLogger(LOGGER_NAME)

    # Prevent duplicate logs on re-setup
    if logger.handlers:
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()
    logger.propagate = False

    level = "DEBUG" if verbose else str(cfg_get(cfg, "logging.level", "INFO")).upper()
    logger.setLevel(getattr(logging, level, logging.INFO))
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

    log_file = cfg_get(cfg, "logging.log_file")
    if log_file:
        max_bytes = int(cfg_get(cfg, "logging.max_bytes", 5 * 1024 * 1024))
        backup_count = int(cfg_get(cfg, "logging.backup_count", 5))
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        handler.setFormatter(fmt)
        logger.addHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    logger.addHandler(console)
    return logger

# --------------------------- File discovery -----------------------------------

def allowed_extension(path: Path, allowed: Optional[Iterable[str]]) -> bool:
    """
    Check if a file has an allowed extension (case-insensitive).
    An empty or missing list falls back to VIDEO_EXTENSIONS.
    """
    if not allowed:
        allowed = VIDEO_EXTENSIONS
    allowed_set = {e.lower() if e.startswith(".") else f".{e.lower()}" for e in allowed}
    return path.suffix.lower() in allowed_set


def find_video_files(root: Path, extensions: Optional[Iterable[str]] = None) -> List[Path]:
    """Walk *root* recursively in sorted order and return matching files."""
    found: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            p = Path(dirpath) / name
            if allowed_extension(p, extensions):
                found.append(p)
    return found


def filter_stable(paths: List[Path], stable_seconds: float) -> tuple:
    """
    Split *paths* into (stable, unstable) by comparing sizes across one wait.

    With stable_seconds <= 0 every path is considered stable and nothing sleeps.
    """
    if stable_seconds <= 0 or not paths:
        return list(paths), []

    def _size(p: Path) -> Optional[int]:
        try:
            return p.stat().st_size
        except OSError:
            return None

    before = {p: _size(p) for p in paths}
    time.sleep(stable_seconds)
    stable, unstable = [], []
    for p in paths:
        size = _size(p)
        if size is not None and size == before[p]:
            stable.append(p)
        else:
            unstable.append(p)
    return stable, unstable

# ----------------------------- Records / manifest ------------------------------

@dataclass
class ScanRecord:
    src: str
    decision: str
    title: Optional[str] = None
    season: Optional[int] = None
    episode: Optional[int] = None
    series_id: Optional[int] = None
    episode_id: Optional[int] = None
    created_series: bool = False
    error: Optional[str] = None


@dataclass
class ScanSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    records: List[ScanRecord] = field(default_factory=list)


def write_manifest(summary: ScanSummary, path: Path) -> None:
    """Atomically write the scan summary and its records as JSON."""
    counts: Dict[str, int] = defaultdict(int)
    for r in summary.records:
        counts[r.decision] += 1

    payload = {
        "total": summary.total,
        "succeeded": summary.succeeded,
        "failed": summary.failed,
        "skipped": summary.skipped,
        "summary": dict(counts),
        "records": [asdict(r) for r in summary.records],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)
    tmp.replace(path)

# --------------------------------- Runner -------------------------------------

class ImportRunner:
    """
    One configured import pipeline: parser settings, Sonarr client and
    reconciler, built once from the config and reused for every scan.
    """

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger, dry_run: bool = False,
                 client: Optional[SonarrClient] = None) -> None:
        """
        Parameters
        ----------
        cfg : dict
            Effective configuration.
        logger : logging.Logger
            Logger for progress and diagnostics.
        dry_run : bool
            If True, parse and log only; Sonarr is never called.
        client : SonarrClient or None
            Injected client (tests); built from sonarr.* otherwise.
        """
        self.cfg = cfg
        self.logger = logger
        self.dry_run = dry_run
        self.parser_config = ParserConfig.from_config(cfg)
        self.client = client or SonarrClient(
            cfg_get(cfg, "sonarr.url", ""),
            cfg_get(cfg, "sonarr.api_key", ""),
            timeout=float(cfg_get(cfg, "sonarr.timeout", DEFAULT_TIMEOUT)),
            retry_attempts=int(cfg_get(cfg, "sonarr.retry_attempts", 1)),
            retry_wait=float(cfg_get(cfg, "sonarr.retry_wait", 5)),
        )
        self.reconciler = Reconciler(self.client, ImportSettings.from_config(cfg))
        self.downloads_folder = Path(cfg_get(cfg, "sonarr.downloads_folder", "/downloads"))
        self.extensions = cfg_get(cfg, "scan.extensions", VIDEO_EXTENSIONS)
        self.stable_seconds = float(cfg_get(cfg, "scan.stable_seconds", 0))
        manifest = cfg_get(cfg, "scan.manifest_path")
        self.manifest_path = Path(manifest) if manifest else None

    def validate(self) -> None:
        if self.dry_run:
            return
        if not cfg_get(self.cfg, "sonarr.url") or not cfg_get(self.cfg, "sonarr.api_key"):
            raise ConfigError("Sonarr URL and API key are required")

    def process_file(self, path: Path) -> ScanRecord:
        """
        Parse and import one file. Per-file failures are logged and returned
        as a "failed" record, never raised.
        """
        rec = ScanRecord(src=str(path), decision="failed")
        self.logger.debug("Processing file: %s", path.name)
        try:
            return self._process(path, rec)
        except Exception as e:
            rec.error = f"{type(e).__name__}: {e}"
            self.logger.exception("Failed to process %s", path.name)
            return rec

    def _process(self, path: Path, rec: ScanRecord) -> ScanRecord:
        try:
            parsed = parse_episode_filename(path.name, str(path), self.parser_config)
        except ExtractionError as e:
            rec.error = str(e)
            self.logger.error("Failed to process %s: %s", path.name, e)
            return rec

        rec.title, rec.season, rec.episode = parsed.title, parsed.season, parsed.episode
        self.logger.info("Parsed: %s %s (quality=%s, group=%s)",
                         parsed.title, parsed.episode_id, parsed.quality, parsed.group)

        if self.dry_run:
            self.logger.info("[DRY RUN] Would import: %s %s from %s",
                             parsed.title, parsed.episode_id, parsed.file_path)
            rec.decision = "dry_run"
            return rec

        result = self.reconciler.reconcile(parsed)
        rec.series_id = result.series_id
        rec.episode_id = result.episode_id
        rec.created_series = result.created_series
        if not result.ok:
            rec.error = f"{type(result.error).__name__}: {result.error}"
            self.logger.error("Failed to process %s: %s", path.name, rec.error)
            return rec

        rec.decision = "imported"
        self.logger.info("Successfully imported: %s %s", parsed.title, parsed.episode_id)
        return rec

    def run_scan(self) -> ScanSummary:
        """
        Process every video file under the downloads folder, sequentially.

        Raises
        ------
        ConfigError
            Sonarr URL/API key missing outside dry-run.
        ScanError
            Downloads folder missing or unreadable.
        """
        self.validate()
        if not self.downloads_folder.is_dir():
            raise ScanError(f"downloads folder not found: {self.downloads_folder}")

        try:
            files = find_video_files(self.downloads_folder, self.extensions)
        except OSError as e:
            raise ScanError(f"failed to scan for video files: {e}") from e

        self.logger.info("Found %d video files in %s", len(files), self.downloads_folder)
        summary = ScanSummary()
        if not files:
            self.logger.info("No video files to process")
            return summary

        files, unstable = filter_stable(files, self.stable_seconds)
        for p in unstable:
            self.logger.info("Skipping %s (not stable after %ss)", p.name, self.stable_seconds)
            summary.records.append(ScanRecord(src=str(p), decision="skipped_unstable"))
        summary.skipped = len(unstable)

        self.reconciler.reset_cache()
        for f in files:
            rec = self.process_file(f)
            summary.records.append(rec)
            if rec.decision == "failed":
                summary.failed += 1
            else:
                summary.succeeded += 1
        summary.total = len(files)

        self.logger.info("Processing complete. %d/%d files processed successfully",
                         summary.succeeded, summary.total)

        if self.manifest_path:
            try:
                write_manifest(summary, self.manifest_path)
                self.logger.info("Manifest written to %s", self.manifest_path)
            except OSError:
                self.logger.exception("Failed to write manifest %s", self.manifest_path)
        return summary

# --------------------------------- Watcher ------------------------------------

class ScanTrigger(FileSystemEventHandler):
    """
    Watchdog handler that only signals the daemon loop. Scans never run on the
    observer thread.
    """

    def __init__(self, wake: threading.Event, extensions: Optional[Iterable[str]], logger: logging.Logger) -> None:
        super().__init__()
        self.wake = wake
        self.extensions = extensions
        self.logger = logger

    def on_created(self, event: FileCreatedEvent) -> None:
        if isinstance(event, FileCreatedEvent):
            self._maybe_wake(Path(event.src_path))

    def on_moved(self, event: FileMovedEvent) -> None:
        if isinstance(event, FileMovedEvent):
            self._maybe_wake(Path(event.dest_path))

    def _maybe_wake(self, path: Path) -> None:
        if allowed_extension(path, self.extensions):
            self.logger.info("Detected candidate: %s", path)
            self.wake.set()


def _scan_logged(runner: ImportRunner, logger: logging.Logger, label: str) -> None:
    try:
        runner.run_scan()
    except (ConfigError, ScanError) as e:
        logger.error("%s failed: %s", label, e)
    except Exception:
        logger.exception("%s crashed", label)


def run_daemon(runner: ImportRunner, interval: float, watch: bool = False,
               wake: Optional[threading.Event] = None, max_scans: Optional[int] = None) -> int:
    """
    Scan now, then every *interval* seconds until interrupted.

    When *watch* is set, a watchdog observer on the downloads folder wakes the
    loop early. Only one scan runs at a time, always on this thread.
    *max_scans* bounds the loop (used by tests); returns the number of scans.
    """
    logger = runner.logger
    wake = wake or threading.Event()
    observer = None
    scans = 0

    if watch:
        if runner.downloads_folder.is_dir():
            observer = Observer()
            observer.schedule(ScanTrigger(wake, runner.extensions, logger),
                              str(runner.downloads_folder), recursive=True)
            observer.start()
            logger.info("Watching: %s", runner.downloads_folder)
        else:
            logger.warning("Cannot watch missing folder %s; interval scans only", runner.downloads_folder)

    logger.info("Running in daemon mode, scanning every %ss", interval)
    try:
        _scan_logged(runner, logger, "Initial scan")
        scans += 1
        while max_scans is None or scans < max_scans:
            if wake.wait(timeout=interval):
                wake.clear()
                logger.info("Starting triggered scan...")
            else:
                logger.info("Starting scheduled scan...")
            _scan_logged(runner, logger, "Scheduled scan")
            scans += 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user, stopping...")
    finally:
        if observer is not None:
            observer.stop()
            observer.join()
    return scans

# ------------------------------- CLI / main -----------------------------------

def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str) -> Optional[float]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments; environment variables supply defaults."""
    p = argparse.ArgumentParser(description="SonarrAutoImport runner")
    p.add_argument("-c", "--config", default=os.environ.get("AUTOIMPORT_CONFIG", "config.yaml"),
                   help="Path to configuration file (default: config.yaml).")
    p.add_argument("-v", "--verbose", action="store_true", default=_env_flag("VERBOSE"),
                   help="Verbose (DEBUG) logging.")
    p.add_argument("--dry-run", action="store_true", default=_env_flag("DRY_RUN"),
                   help="Parse and log only; never call Sonarr.")
    p.add_argument("--daemon", action="store_true", default=_env_flag("DAEMON_MODE"),
                   help="Keep running and rescan periodically.")
    p.add_argument("--interval", type=float, default=_env_float("SCAN_INTERVAL"),
                   help="Seconds between daemon scans (default: scan.interval or 300).")
    p.add_argument("--watch", action="store_true", default=_env_flag("WATCH_MODE"),
                   help="In daemon mode, also rescan as soon as new video files appear.")
    p.add_argument("--manifest", type=str, default=None,
                   help="Write a JSON manifest of each scan to this path.")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """
    Entry point:
    - Parse args, load config (creating the default file when missing)
    - Run one scan, or the daemon loop
    """
    args = parse_args(argv)
    cfg, created = load_config(Path(args.config))
    if args.manifest:
        cfg.setdefault("scan", {})["manifest_path"] = args.manifest

    logger = setup_logger(cfg, verbose=args.verbose)
    logger.info("SonarrAutoImport - Anime Workflow")
    logger.info("Config: %s | Dry run: %s | Verbose: %s", args.config, args.dry_run, args.verbose)

    if created:
        logger.info("Created default config at %s", args.config)
        logger.info("Please edit the configuration file with your Sonarr settings and restart.")
        sys.exit(2)

    runner = ImportRunner(cfg, logger, dry_run=args.dry_run)

    if args.daemon:
        interval = args.interval or float(cfg_get(cfg, "scan.interval", DEFAULT_INTERVAL))
        watch = args.watch or bool(cfg_get(cfg, "scan.watch", False))
        run_daemon(runner, interval, watch=watch)
        return

    try:
        runner.run_scan()
    except (ConfigError, ScanError) as e:
        logger.error("Processing failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
