# -*- coding: utf-8 -*-
"""
TV / Movie classification of an extracted directory.

The decision is an ordered list of rules, each a pure predicate over the
same evidence (video basenames, count, path). Rules run top to bottom and
evaluation stops once a rule decides TV; anything left undecided is a Movie.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from unpacksort_titles import (
    MediaKind,
    OverrideRules,
    derive_hint,
    first_year_in_path,
)

logger = logging.getLogger("UnpackSort")

VIDEO_EXTS = {".mkv", ".mp4", ".avi", ".mov", ".m4v", ".ts", ".m2ts"}

# S##E##, E##, EP ## on lower-cased basenames.
EPISODE_NAME_RE = re.compile(
    r"(s[0-9]{1,2}e[0-9]{1,3}|(^|[^a-z0-9])e[0-9]{2,3}([^a-z0-9]|$)|(^|[^a-z0-9])ep[ ._-]?[0-9]{1,3}([^a-z0-9]|$))"
)
# Part/Pt followed by an arabic (1-3 digits) or roman (i..xx) number.
PART_NAME_RE = re.compile(
    r"(^|[^a-z])((pt|part)[ ._-]?(i{1,3}|iv|v|vi{0,3}|ix|x|xi|xii|xiii|xiv|xv|xvi|xvii|xviii|xix|xx|[0-9]{1,3}))([^a-z]|$)"
)

MOVIE_GUARD_MAX_FILES = 2
MINISERIES_MIN_PARTS = 5
DEFAULT_KNOWN_MINISERIES: Tuple[str, ...] = ("the pacific", "band of brothers")


@dataclass(frozen=True)
class Evidence:
    """Everything the rules may look at, gathered once per directory."""
    names: Tuple[str, ...]          # sorted, lower-cased video basenames
    path_text: str                  # lower-cased source path
    year_in_path: Optional[int]
    known_miniseries: Tuple[str, ...] = DEFAULT_KNOWN_MINISERIES

    @property
    def video_count(self) -> int:
        return len(self.names)

    @property
    def part_count(self) -> int:
        return sum(1 for n in self.names if PART_NAME_RE.search(n))


@dataclass(frozen=True)
class ClassificationRule:
    name: str
    applies: Callable[[Evidence], bool]
    verdict: MediaKind


@dataclass(frozen=True)
class Classification:
    kind: MediaKind
    hint: str
    reason: str
    video_count: int = 0


# ------------------------------ Predicates ----------------------------------

def has_episode_marker(ev: Evidence) -> bool:
    return any(EPISODE_NAME_RE.search(n) for n in ev.names)


def movie_guard(ev: Evidence) -> bool:
    """Part/Pt + year in path + no episode marker + at most two files."""
    return (
        not has_episode_marker(ev)
        and ev.part_count > 0
        and ev.year_in_path is not None
        and ev.video_count <= MOVIE_GUARD_MAX_FILES
    )


def is_miniseries(ev: Evidence) -> bool:
    return ev.part_count >= MINISERIES_MIN_PARTS


def known_miniseries_path(ev: Evidence) -> bool:
    for title in ev.known_miniseries:
        words = [re.escape(w) for w in title.lower().split()]
        if words and re.search(r"[._ ]".join(words), ev.path_text):
            return True
    return False


RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule("episode_marker", has_episode_marker, MediaKind.TV),
    ClassificationRule("movie_guard", movie_guard, MediaKind.MOVIE),
    ClassificationRule("miniseries", is_miniseries, MediaKind.TV),
    ClassificationRule("known_miniseries_path", known_miniseries_path, MediaKind.TV),
)


def decide(ev: Evidence, rules: Sequence[ClassificationRule] = RULES) -> Tuple[MediaKind, str]:
    """
    Run *rules* in order over *ev*.

    Returns
    -------
    tuple
        (kind, name of the deciding rule or "default").
    """
    kind, reason = MediaKind.MOVIE, "default"
    for rule in rules:
        if kind is MediaKind.TV:
            break
        if rule.applies(ev):
            kind, reason = rule.verdict, rule.name
    return kind, reason


# ------------------------------ Evidence ------------------------------------

def find_videos(root: Path) -> List[Path]:
    """Recognized video files anywhere under *root*, sorted by path."""
    try:
        found = [p for p in root.rglob("*") if p.suffix.lower() in VIDEO_EXTS and p.is_file()]
    except OSError as e:
        logger.warning("Cannot walk %s: %s", root, e)
        return []
    return sorted(found)


def gather_evidence(source: Path, videos: Iterable[Path],
                    known_miniseries: Sequence[str] = DEFAULT_KNOWN_MINISERIES) -> Evidence:
    return Evidence(
        names=tuple(sorted(v.name.lower() for v in videos)),
        path_text=str(source).lower(),
        year_in_path=first_year_in_path(source),
        known_miniseries=tuple(known_miniseries),
    )


def classify(source: Path,
             overrides: Optional[OverrideRules] = None,
             known_miniseries: Sequence[str] = DEFAULT_KNOWN_MINISERIES) -> Optional[Classification]:
    """
    Classify the extracted directory *source* as TV or Movie.

    Parameters
    ----------
    source : pathlib.Path
        Temp extraction directory.
    overrides : OverrideRules or None
        Title overrides used for the hint.
    known_miniseries : sequence of str
        Titles that force TV when they appear in the path.

    Returns
    -------
    Classification or None
        None when no video file exists under *source* (nothing to do).
    """
    videos = find_videos(source)
    if not videos:
        logger.info("No video files found in %s", source)
        return None
    logger.info("Found %d video file(s) under %s", len(videos), source)

    ev = gather_evidence(source, videos, known_miniseries)
    kind, reason = decide(ev)
    if reason == "episode_marker":
        logger.info("Detected TV episode-like naming")
    elif reason == "movie_guard":
        logger.info("Movie guard: Part/Pt + year + no S##E## + <=%d files -> treating as Movie", MOVIE_GUARD_MAX_FILES)
    elif reason == "miniseries":
        logger.info("Miniseries heuristic: >=%d parts -> treating as TV show", MINISERIES_MIN_PARTS)
    elif reason == "known_miniseries_path":
        logger.info("Path heuristic: known miniseries name detected -> treating as TV show")

    hint = derive_hint(source, kind, overrides)
    return Classification(kind=kind, hint=hint, reason=reason, video_count=ev.video_count)
