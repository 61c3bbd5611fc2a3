# -*- coding: utf-8 -*-
"""
UnpackSort runner

Walks a download directory (the root first, then each immediate
subdirectory), extracts exactly one archive set per directory, classifies the
extracted video as TV or Movie, and hands it to FileBot for lookup, renaming
and copying into the library. Safe to re-run blindly: unchanged archive sets
are neither re-extracted nor re-sorted, and half-finished directories pick up
where they stopped.

Key features
------------
- Signature sidecar per directory (name/size/mtime of archive members) for
  change detection.
- 7-Zip extraction with unar fallback and fixed-delay retries.
- Rule-ordered TV/Movie heuristics and noisy-name cleanup for search hints.
- Operator overrides file (``pattern|replacement``) for stubborn titles.
- Manual TV placement when FileBot gives up; duplicate guard for movies.
- Optional watch mode re-running the pass when the watch root changes.

CLI
---
python unpacksort_runner.py [WATCH_DIR] [--dest-root PATH] [--config FILE]
                            [--force] [--dry-run] [--progress] [--cleanup]
                            [--watch]

Configuration
-------------
config.yaml or config.example.yaml with sections:
- paths.watch_dir, paths.dest_root, paths.special_cases_file
- tools.sevenzip, tools.unar, tools.filebot, tools.timeout_seconds
- retries.max_retries, retries.retry_delay
- behaviour.force, behaviour.dry_run, behaviour.progress,
  behaviour.cleanup_extracts, behaviour.known_miniseries
- watch.settle_seconds
- logging.level, logging.log_file, logging.max_bytes, logging.backup_count
- reporting.manifest_path
Environment variables (FORCE, DRY_RUN, MAX_RETRIES, ...) override the file,
CLI flags override both.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import sys
import threading
import time
import yaml

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from unpacksort_classify import DEFAULT_KNOWN_MINISERIES, classify
from unpacksort_extract import (
    ExtractionOrchestrator,
    Extractor,
    SevenZipExtractor,
    ToolNotFoundError,
    UnarExtractor,
    default_sevenzip_binary,
    is_owned,
    require_tool,
)
from unpacksort_signature import DONE_FILE, SIGNATURE_FILE, TMP_DIR_NAME
from unpacksort_sorter import (
    MOVIES_DIR,
    FileBotSorter,
    Sorter,
    manual_place_tv,
    movie_exists_in_library,
)
from unpacksort_titles import MediaKind, OverrideRules, ensure_overrides_file

logger = logging.getLogger("UnpackSort")

# ------------------------------- Configuration --------------------------------

DEFAULT_WATCH_DIR = "/Volumes/Vault/Media New"
DEFAULT_DEST_ROOT = "/Volumes/Vault/Extracted Media"
DEFAULT_SPECIAL_CASES = "~/.config/media-script/special-cases.conf"
DEFAULT_LOG_FILE = "/tmp/extract_and_filebot.log"

# env var -> (dotted config path, type)
ENV_OVERRIDES: Dict[str, Tuple[str, type]] = {
    "WATCH_DIR": ("paths.watch_dir", str),
    "DEST_ROOT": ("paths.dest_root", str),
    "SPECIAL_CASES_FILE": ("paths.special_cases_file", str),
    "SEVENZ": ("tools.sevenzip", str),
    "FILEBOT": ("tools.filebot", str),
    "MAX_RETRIES": ("retries.max_retries", int),
    "RETRY_DELAY": ("retries.retry_delay", float),
    "FORCE": ("behaviour.force", bool),
    "DRY_RUN": ("behaviour.dry_run", bool),
    "PROGRESS": ("behaviour.progress", bool),
    "CLEANUP_EXTRACTS": ("behaviour.cleanup_extracts", bool),
    "LOG_FILE": ("logging.log_file", str),
}


def _deep_merge(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge src into dst, returning dst."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            _deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load YAML configuration.

    Parameters
    ----------
    path : pathlib.Path or None
        Explicit file; otherwise config.yaml, then config.example.yaml in the
        working directory.

    Returns
    -------
    dict
        Configuration dictionary, empty if no file is found.
    """
    candidates = [path] if path else [Path("config.yaml"), Path("config.example.yaml")]
    for cfg_path in candidates:
        if cfg_path.exists():
            with cfg_path.open("r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
    return {}


def cfg_get(cfg: Dict[str, Any], dotted_path: str, default: Any = None) -> Any:
    """
    Retrieve nested configuration values with dotted paths.

    Parameters
    ----------
    cfg : dict
        Configuration dictionary.
    dotted_path : str
        Dotted path, e.g., "retries.max_retries".
    default : Any
        Default value if the path is not present.
    """
    cur: Any = cfg
    for key in dotted_path.split("."):
        cur = cur.get(key) if isinstance(cur, dict) else None
        if cur is None:
            return default
    return cur


def _cfg_set(cfg: Dict[str, Any], dotted_path: str, value: Any) -> None:
    keys = dotted_path.split(".")
    cur = cfg
    for key in keys[:-1]:
        if not isinstance(cur.get(key), dict):
            cur[key] = {}
        cur = cur[key]
    cur[keys[-1]] = value


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def apply_env_overrides(cfg: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Layer the legacy environment knobs (FORCE=1, MAX_RETRIES=5, ...) over *cfg*."""
    cfg = _deep_merge({}, cfg or {})
    for var, (dotted, typ) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = _as_bool(raw) if typ is bool else typ(raw)
        except ValueError:
            logger.warning("Ignoring %s=%r (expected %s)", var, raw, typ.__name__)
            continue
        _cfg_set(cfg, dotted, value)
    return cfg


def apply_cli_overrides(cfg: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    cfg = _deep_merge({}, cfg or {})
    if args.watch_dir:
        _cfg_set(cfg, "paths.watch_dir", args.watch_dir)
    if args.dest_root:
        _cfg_set(cfg, "paths.dest_root", args.dest_root)
    for flag, dotted in (("force", "behaviour.force"), ("dry_run", "behaviour.dry_run"),
                         ("progress", "behaviour.progress"), ("cleanup", "behaviour.cleanup_extracts")):
        if getattr(args, flag, False):
            _cfg_set(cfg, dotted, True)
    return cfg


def _as_tuple(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value or ())


@dataclass(frozen=True)
class Settings:
    watch_dir: Path
    dest_root: Path
    special_cases_file: Optional[Path] = None
    sevenzip: str = "7z"
    unar: Optional[str] = "unar"
    filebot: str = "filebot"
    timeout_seconds: Optional[float] = None
    max_retries: int = 3
    retry_delay: float = 5.0
    force: bool = False
    dry_run: bool = False
    progress: bool = False
    cleanup_extracts: bool = False
    known_miniseries: Tuple[str, ...] = DEFAULT_KNOWN_MINISERIES
    settle_seconds: float = 30.0
    manifest_path: Optional[Path] = None

    @property
    def movies_root(self) -> Path:
        return self.dest_root / MOVIES_DIR


def settings_from_config(cfg: Dict[str, Any]) -> Settings:
    """Freeze the merged configuration into the Settings passed to the pipeline."""
    special = cfg_get(cfg, "paths.special_cases_file", DEFAULT_SPECIAL_CASES)
    manifest = cfg_get(cfg, "reporting.manifest_path")
    timeout = cfg_get(cfg, "tools.timeout_seconds")
    unar = cfg_get(cfg, "tools.unar", "unar")
    return Settings(
        watch_dir=Path(cfg_get(cfg, "paths.watch_dir", DEFAULT_WATCH_DIR)).expanduser(),
        dest_root=Path(cfg_get(cfg, "paths.dest_root", DEFAULT_DEST_ROOT)).expanduser(),
        special_cases_file=Path(special).expanduser() if special else None,
        sevenzip=str(cfg_get(cfg, "tools.sevenzip") or default_sevenzip_binary()),
        unar=str(unar) if unar else None,
        filebot=str(cfg_get(cfg, "tools.filebot", "filebot")),
        timeout_seconds=float(timeout) if timeout else None,
        max_retries=max(1, int(cfg_get(cfg, "retries.max_retries", 3))),
        retry_delay=float(cfg_get(cfg, "retries.retry_delay", 5)),
        force=_as_bool(cfg_get(cfg, "behaviour.force", False)),
        dry_run=_as_bool(cfg_get(cfg, "behaviour.dry_run", False)),
        progress=_as_bool(cfg_get(cfg, "behaviour.progress", False)),
        cleanup_extracts=_as_bool(cfg_get(cfg, "behaviour.cleanup_extracts", False)),
        known_miniseries=_as_tuple(cfg_get(cfg, "behaviour.known_miniseries", DEFAULT_KNOWN_MINISERIES)),
        settle_seconds=float(cfg_get(cfg, "watch.settle_seconds", 30)),
        manifest_path=Path(manifest).expanduser() if manifest else None,
    )


# --------------------------------- Logging -----------------------------------

def setup_logger(cfg: Dict[str, Any]) -> logging.Logger:
    """
    Set up a RotatingFileHandler logger plus console output.

    Parameters
    ----------
    cfg : dict
        Configuration to read log level and file path.

    Returns
    -------
    logging.Logger
        Configured logger instance named "UnpackSort".
    """
    logger = logging.getLogger("UnpackSort")

    # Prevent duplicate logs on re-setup
    for h in list(logger.handlers):
        logger.removeHandler(h)
    logger.propagate = False

    logger.setLevel(getattr(logging, str(cfg_get(cfg, "logging.level", "INFO")).upper(), logging.INFO))
    log_file = cfg_get(cfg, "logging.log_file", DEFAULT_LOG_FILE)
    max_bytes = int(cfg_get(cfg, "logging.max_bytes", 5 * 1024 * 1024))
    backup_count = int(cfg_get(cfg, "logging.backup_count", 5))

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    if log_file:
        os.makedirs(str(Path(log_file).parent), exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        handler.setFormatter(fmt)
        logger.addHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    logger.addHandler(console)
    return logger


# --------------------------------- Report ------------------------------------

@dataclass
class DirectoryRecord:
    directory: str
    decision: str
    kind: Optional[str] = None
    hint: Optional[str] = None
    dest: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RunReport:
    records: List[DirectoryRecord] = field(default_factory=list)

    def add(self, directory: Path, decision: str, **extra: Any) -> DirectoryRecord:
        rec = DirectoryRecord(directory=str(directory), decision=decision, **extra)
        self.records.append(rec)
        return rec

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        for r in self.records:
            counts[r.decision] += 1
        return dict(counts)


FAILED_DECISIONS = {"extract_failed", "movie_failed", "tv_failed", "error"}


def write_manifest_and_summary(report: RunReport, manifest_path: Optional[Path], logger: logging.Logger) -> None:
    """Log the per-decision summary and, if configured, write the JSON manifest."""
    summary = report.summary()
    logger.info(
        "Summary: total=%d | tv=%d | movies=%d | failed=%d | others=%s",
        len(report.records),
        summary.get("tv", 0) + summary.get("tv_manual", 0),
        summary.get("movie", 0),
        sum(summary.get(k, 0) for k in FAILED_DECISIONS),
        {k: v for k, v in summary.items()
         if k not in {"tv", "tv_manual", "movie"} | FAILED_DECISIONS},
    )
    if manifest_path is None:
        return
    payload = {
        "total": len(report.records),
        "summary": summary,
        "records": [asdict(r) for r in report.records],
    }
    try:
        manifest_path.parent.mkdir(parents=True, exist_ok=True)
        manifest_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    except OSError:
        logger.exception("Failed to write manifest: %s", manifest_path)


# -------------------------------- Pipeline -----------------------------------

def build_extractors(settings: Settings) -> List[Extractor]:
    extractors: List[Extractor] = [
        SevenZipExtractor(settings.sevenzip, settings.progress, settings.timeout_seconds)
    ]
    if settings.unar and shutil.which(settings.unar):
        extractors.append(UnarExtractor(settings.unar, settings.progress, settings.timeout_seconds))
    return extractors


class Pipeline:
    """
    Extract -> classify -> sort -> mark done, one directory at a time.
    """

    def __init__(self, settings: Settings,
                 extractors: Optional[Sequence[Extractor]] = None,
                 sorter: Optional[Sorter] = None,
                 overrides: Optional[OverrideRules] = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.settings = settings
        self.orchestrator = ExtractionOrchestrator(
            extractors=list(extractors) if extractors is not None else build_extractors(settings),
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            force=settings.force,
            sleep=sleep,
        )
        self.sorter: Sorter = sorter or FileBotSorter(
            settings.filebot,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            dry_run=settings.dry_run,
            progress=settings.progress,
            timeout=settings.timeout_seconds,
            sleep=sleep,
        )
        # Injected rules stay fixed; rules from the file are re-read every pass.
        self._reload_overrides = overrides is None
        self.overrides = overrides if overrides is not None else OverrideRules()

    def directories(self) -> List[Path]:
        """The watch root followed by its immediate subdirectories."""
        root = self.settings.watch_dir
        dirs = [root]
        try:
            children = sorted((p for p in root.iterdir() if p.is_dir()), key=lambda p: p.name.casefold())
        except OSError as e:
            logger.error("Unable to list watch directory %s: %s", root, e)
            children = []
        dirs.extend(p for p in children if p.name != TMP_DIR_NAME)
        return dirs

    def run(self) -> RunReport:
        if self._reload_overrides:
            self.overrides = OverrideRules.load(self.settings.special_cases_file)
        report = RunReport()
        for directory in self.directories():
            logger.info("Processing directory: %s", directory)
            try:
                self.process_directory(directory, report)
            except Exception as e:
                logger.exception("Unexpected error while processing %s", directory)
                report.add(directory, "error", error=str(e))
        return report

    def process_directory(self, directory: Path, report: RunReport) -> None:
        out_dir = self.orchestrator.ensure_extracted(directory)
        job = self.orchestrator.last_job
        if out_dir is None:
            if job is None:
                return
            if job.status == "failed":
                logger.error("Extraction failed for: %s", directory)
                report.add(directory, "extract_failed", error="all archive members failed")
            elif job.status == "refused":
                report.add(directory, "extract_failed", error="temp directory not owned by this tool")
            else:
                report.add(directory, "up_to_date")
            return

        done_file = directory / DONE_FILE
        if done_file.exists() and not self.settings.force:
            logger.info("Already sorted: %s", directory)
            report.add(directory, "already_sorted")
            return

        if not self.sort_extracted(out_dir, report):
            return

        if not self.settings.dry_run:
            done_file.touch()
        logger.info("Successfully processed: %s", out_dir)
        self.maybe_cleanup(out_dir)

    def sort_extracted(self, src: Path, report: RunReport) -> bool:
        """
        Classify *src* and hand it to the sorter. Returns True when the
        directory counts as processed (completion marker may be written);
        an extraction without any video counts as processed.
        """
        source = src.parent
        if src.name != TMP_DIR_NAME:
            logger.info("Safety: skipping non-extracted dir: %s", src)
            report.add(source, "skipped")
            return False

        result = classify(src, self.overrides, self.settings.known_miniseries)
        if result is None:
            report.add(source, "no_video")
            return True

        dest_root = self.settings.dest_root
        if result.kind is MediaKind.TV:
            logger.info("TV query hint: '%s'", result.hint)
            if self.sorter.sort(src, MediaKind.TV, result.hint, dest_root):
                report.add(source, "tv", kind=result.kind.value, hint=result.hint, dest=str(dest_root))
                return True
            logger.info("FileBot TV failed; attempting manual placement")
            placed = manual_place_tv(src, result.hint, dest_root, dry_run=self.settings.dry_run)
            if not placed:
                logger.error("Manual placement found no episode files in: %s", src)
                report.add(source, "tv_failed", kind=result.kind.value, hint=result.hint,
                           error="external sorter failed and no episode markers")
                return False
            report.add(source, "tv_manual", kind=result.kind.value, hint=result.hint,
                       dest=str(placed[0].parent.parent))
            return True

        logger.info("Movie hint: '%s'", result.hint)
        if movie_exists_in_library(result.hint, self.settings.movies_root):
            logger.info("Movie '%s' appears to already exist in library; skipping", result.hint)
            report.add(source, "movie_exists", kind=result.kind.value, hint=result.hint)
            return True
        if self.sorter.sort(src, MediaKind.MOVIE, result.hint, dest_root):
            report.add(source, "movie", kind=result.kind.value, hint=result.hint, dest=str(dest_root))
            return True
        logger.error("FileBot movie processing failed for: %s", result.hint)
        logger.error("Manual intervention may be required for: %s", src)
        report.add(source, "movie_failed", kind=result.kind.value, hint=result.hint,
                   error="external sorter failed")
        return False

    def maybe_cleanup(self, out_dir: Path) -> None:
        if not self.settings.cleanup_extracts or self.settings.dry_run:
            return
        if (out_dir.parent / DONE_FILE).exists() and is_owned(out_dir):
            logger.info("CLEANUP_EXTRACTS: removing extracted temp directory %s", out_dir)
            shutil.rmtree(out_dir, ignore_errors=True)


# --------------------------------- Watcher -----------------------------------

SIDECAR_NAMES = {SIGNATURE_FILE, DONE_FILE}


class ChangeFlagHandler(FileSystemEventHandler):
    """Raises a flag on any change under the watch root, except our own temp dirs."""

    def __init__(self) -> None:
        super().__init__()
        self.changed = threading.Event()

    def on_any_event(self, event: FileSystemEvent) -> None:
        path = Path(str(getattr(event, "dest_path", "") or event.src_path))
        if TMP_DIR_NAME in path.parts or path.name in SIDECAR_NAMES:
            return
        self.changed.set()


def watch_loop(pipeline: Pipeline, manifest_path: Optional[Path]) -> None:
    """
    Re-run the sequential pass whenever the watch root changes. Passes never
    overlap: events only set a flag that the main thread consumes after the
    settle period.
    """
    handler = ChangeFlagHandler()
    observer = Observer()
    observer.schedule(handler, str(pipeline.settings.watch_dir), recursive=True)
    observer.start()
    logger.info("Watching: %s", pipeline.settings.watch_dir)
    try:
        while True:
            if handler.changed.wait(timeout=1.0):
                time.sleep(pipeline.settings.settle_seconds)
                handler.changed.clear()
                write_manifest_and_summary(pipeline.run(), manifest_path, logger)
    except KeyboardInterrupt:
        logger.info("Interrupted by user, stopping observer...")
    finally:
        observer.stop()
        observer.join()


# ------------------------------- CLI / main ----------------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments for operational modes.

    Returns
    -------
    argparse.Namespace
        Parsed flags and parameters.
    """
    p = argparse.ArgumentParser(description="Extract archive sets and sort them with FileBot")
    p.add_argument(
        "watch_dir",
        nargs="?",
        help="Directory to process (e.g. qBittorrent's %%D). Defaults to paths.watch_dir.",
    )
    p.add_argument("--dest-root", help="Library root receiving 'TV Shows' and 'Movies'.")
    p.add_argument("--config", type=Path, help="YAML config file (default: ./config.yaml).")
    p.add_argument("--force", action="store_true", help="Re-extract and re-process everything.")
    p.add_argument("--dry-run", action="store_true", help="Log FileBot commands without executing them.")
    p.add_argument("--progress", action="store_true", help="Stream extractor/FileBot output to the console.")
    p.add_argument("--cleanup", action="store_true", help="Remove temp extraction dirs after successful processing.")
    p.add_argument("--watch", action="store_true", help="Keep running and re-process when the watch dir changes.")
    return p.parse_args(argv)


def log_banner(settings: Settings) -> None:
    logger.info("=========================================")
    logger.info("Starting media extraction and processing")
    logger.info("Watch directory: %s", settings.watch_dir)
    logger.info("Destination root: %s", settings.dest_root)
    logger.info("7z tool: %s (%s)", settings.sevenzip, shutil.which(settings.sevenzip) or "not found")
    logger.info("FileBot: %s (%s)", settings.filebot, shutil.which(settings.filebot) or "not found")
    if settings.dry_run:
        logger.info("DRY_RUN mode: FileBot commands will be logged but not executed")
    if settings.force:
        logger.info("FORCE mode: re-extracting and re-processing all content")
    logger.info("=========================================")


def main(argv: Optional[List[str]] = None) -> int:
    """
    Entry point:
    - Parse args, load YAML, layer env and CLI overrides
    - Check required tools
    - Run one sequential pass (or keep watching with --watch)
    """
    args = parse_args(argv)
    try:
        cfg = load_config(args.config)
    except (OSError, yaml.YAMLError) as e:
        print(f"[unpacksort] config error: {e}", file=sys.stderr)
        return 2
    cfg = apply_env_overrides(cfg, os.environ)
    cfg = apply_cli_overrides(cfg, args)

    logger = setup_logger(cfg)
    settings = settings_from_config(cfg)

    try:
        require_tool(settings.sevenzip)
        require_tool(settings.filebot)
    except ToolNotFoundError as e:
        logger.error("%s", e)
        return 1

    log_banner(settings)

    if settings.special_cases_file is not None:
        try:
            ensure_overrides_file(settings.special_cases_file)
        except OSError:
            logger.exception("Could not create special cases file: %s", settings.special_cases_file)

    if not settings.watch_dir.is_dir():
        logger.error("Watch directory not found: %s", settings.watch_dir)
        return 2

    pipeline = Pipeline(settings)
    write_manifest_and_summary(pipeline.run(), settings.manifest_path, logger)

    if args.watch:
        watch_loop(pipeline, settings.manifest_path)

    logger.info("=========================================")
    logger.info("Processing complete. Log file: %s", cfg_get(cfg, "logging.log_file", DEFAULT_LOG_FILE))
    logger.info("=========================================")
    return 0


if __name__ == "__main__":
    sys.exit(main())
