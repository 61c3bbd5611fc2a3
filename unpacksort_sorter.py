# -*- coding: utf-8 -*-
"""
Hand-off to the external rename/sort tool (FileBot) plus the local fallbacks
that do not need it: the library duplicate guard for movies and manual
best-effort placement of TV episodes.
"""

from __future__ import annotations

import logging
import re
import shlex
import shutil
import time
import unicodedata
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Tuple, runtime_checkable

from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_fixed
from unidecode import unidecode

from unpacksort_classify import find_videos
from unpacksort_extract import run_tool
from unpacksort_titles import MediaKind, first_year_in_path

logger = logging.getLogger("UnpackSort")

TV_DB = "TheMovieDB::TV"
MOVIE_DB = "TheMovieDB"
TV_FORMAT = 'TV Shows/{n} ({any{y}{airdate.year}})/Season {s.pad(2)}/{n} - S{s.pad(2)}E{e.pad(2)}{t ? " - " + t : ""}'
MOVIE_FORMAT = "Movies/{n} ({y})/{n} ({y})"

TV_SHOWS_DIR = "TV Shows"
MOVIES_DIR = "Movies"

# Same markers the classifier accepts: S##E##, E##, Ep ##, any case.
SXE_RE = re.compile(r"s([0-9]{1,2})e([0-9]{1,3})", re.IGNORECASE)
E_ONLY_RE = re.compile(
    r"(?:^|[^a-z0-9])(?:e([0-9]{2,3})|ep[ ._-]?([0-9]{1,3}))(?:[^a-z0-9]|$)", re.IGNORECASE
)

INVALID_PATH_CHARS = r'<>:"/\\|?*'


@runtime_checkable
class Sorter(Protocol):
    def sort(self, source_dir: Path, kind: MediaKind, query_hint: str, output_root: Path) -> bool: ...


class FileBotSorter:
    """
    Runs ``filebot -rename`` in copy mode with conflict=skip, retried with a
    fixed delay. Never moves or deletes the source.
    """

    def __init__(self, binary: str = "filebot", max_retries: int = 3, retry_delay: float = 5.0,
                 dry_run: bool = False, progress: bool = False, timeout: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 runner: Callable[..., bool] = run_tool) -> None:
        self.binary = binary
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.dry_run = dry_run
        self.progress = progress
        self.timeout = timeout
        self.sleep = sleep
        self.runner = runner

    def command(self, source_dir: Path, kind: MediaKind, query_hint: str, output_root: Path) -> List[str]:
        db, fmt = (TV_DB, TV_FORMAT) if kind is MediaKind.TV else (MOVIE_DB, MOVIE_FORMAT)
        return [
            self.binary, "-rename", str(source_dir), "-r",
            "--db", db,
            "--q", query_hint,
            "--output", str(output_root),
            "--format", fmt,
            "--action", "copy",
            "--conflict", "skip",
            "-non-strict",
        ]

    def sort(self, source_dir: Path, kind: MediaKind, query_hint: str, output_root: Path) -> bool:
        cmd = self.command(source_dir, kind, query_hint, output_root)
        printable = " ".join(shlex.quote(c) for c in cmd)
        if self.dry_run:
            logger.info("DRY_RUN: would execute -> %s", printable)
            return True

        def _attempt() -> bool:
            logger.info("Running: %s", printable)
            return self.runner(cmd, self.progress, self.timeout)

        def _before_sleep(state) -> None:
            logger.info("FileBot retry %d/%d in %ss", state.attempt_number + 1, self.max_retries, self.retry_delay)

        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.max_retries)),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_result(lambda ok: not ok),
            retry_error_callback=lambda state: False,
            before_sleep=_before_sleep,
            sleep=self.sleep,
        )
        if retrying(_attempt):
            return True
        logger.error("FileBot failed after %d attempts", self.max_retries)
        return False


# ------------------------------ Library guard --------------------------------

def norm_key(text: str) -> str:
    """Lower-case ASCII alphanumerics only: ``Amélie (2001)`` -> ``amelie2001``."""
    return re.sub(r"[^a-z0-9]+", "", unidecode(text).lower())


def movie_exists_in_library(hint: str, movies_root: Path) -> bool:
    """
    True if an entry under *movies_root* starts with the hint once both are
    reduced by ``norm_key``. A prefix match, so ``Up`` also matches
    ``Up in the Air``.
    """
    n_hint = norm_key(hint)
    if not n_hint:
        return False
    try:
        entries = list(movies_root.iterdir())
    except OSError:
        return False
    for entry in entries:
        stem = entry.stem if entry.is_file() else entry.name
        if norm_key(stem).startswith(n_hint):
            return True
    return False


# ------------------------------ Manual TV ------------------------------------

def sanitize_path_component(text: str) -> str:
    text = unicodedata.normalize("NFKC", text)
    text = unidecode(text)
    text = re.sub(f"[{re.escape(INVALID_PATH_CHARS)}]", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    # Windows rejects a trailing dot or space.
    return text.rstrip(" .") or "Unknown"


def episode_numbers(name: str) -> Optional[Tuple[int, int]]:
    """
    Season/episode from a filename: ``S1E2`` style first, then a bare ``E02``
    or ``Ep 2`` (season 1). Case-insensitive. None when neither is present.
    """
    m = SXE_RE.search(name)
    if m:
        return int(m.group(1)), int(m.group(2))
    m = E_ONLY_RE.search(name)
    if m:
        return 1, int(m.group(1) or m.group(2))
    return None


def manual_place_tv(source: Path, title: str, output_root: Path, dry_run: bool = False) -> List[Path]:
    """
    Copy episode files from *source* into ``TV Shows/<Title (Year)>/Season NN/``.

    Used when the external sorter gave up. Season/episode numbers come
    straight from each filename and are zero-padded to two digits; files
    without a marker stay where they are. Existing destination files are
    skipped, the source is never touched.

    Returns
    -------
    list of pathlib.Path
        Destinations holding an episode afterwards: written, already present,
        or that would be written in dry-run. Empty when no file carried an
        episode marker.
    """
    year = first_year_in_path(source)
    show = sanitize_path_component(title)
    if year and f"({year})" not in show:
        show_dir = output_root / TV_SHOWS_DIR / f"{show} ({year})"
    else:
        show_dir = output_root / TV_SHOWS_DIR / show

    placed: List[Path] = []
    for f in find_videos(source):
        numbers = episode_numbers(f.name)
        if numbers is None:
            continue
        season, episode = numbers
        target = show_dir / f"Season {season:02d}" / f"{show} - S{season:02d}E{episode:02d}{f.suffix.lower()}"
        if target.exists():
            logger.warning("Destination exists, skipping: %s", target)
            placed.append(target)
            continue
        logger.info("Manual TV: %s -> %s", f.name, target)
        if not dry_run:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(f, target)
        placed.append(target)
    return placed
