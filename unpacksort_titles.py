# -*- coding: utf-8 -*-
"""
Title hints from noisy release names.

Turns a release folder name such as ``[Grp] Show.Name.S01E02.1080p.WEB-DL.x265-RLS``
into a search hint (``Show Name``) for the external sorter, then lets the
operator's override file and a small built-in table replace well-known
ambiguous titles.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from unpacksort_signature import TMP_DIR_NAME

logger = logging.getLogger("UnpackSort")


class MediaKind(str, Enum):
    TV = "tv"
    MOVIE = "movie"


UNKNOWN_TITLES = {
    MediaKind.TV: "Unknown Show",
    MediaKind.MOVIE: "Unknown Movie",
}

# ------------------------------ Regex library -------------------------------

WORD_SEPS_RE = re.compile(r"[._]+")                        # ".", "_" -> space
BRACKETS_RE = re.compile(r"\[[^\]]*\]|\([^)]*\)|\{[^}]*\}")  # [GRP] (2019) {tags}
HASH_TAIL_RE = re.compile(r"[\s-]+([0-9A-Za-z]{8,16})\s*$")  # ... a1b2c3d4
GROUP_TAIL_RE = re.compile(r"(\S+)-([A-Za-z0-9]{3,12})\s*$")  # x264-GROUP
YEAR_RE = re.compile(r"(?<![A-Za-z0-9])(?:19|20)\d{2}(?![A-Za-z0-9])")
PATH_YEAR_RE = re.compile(r"(?<!\d)((?:19|20)\d{2})(?!\d)")

EPISODE_TOKENS_RE = re.compile(
    r"(?i)(?<![a-z0-9])(?:s\d{1,2}(?:e\d{1,3})+|s\d{1,2}|e\d{1,3}|ep\s*\d{1,3})(?![a-z0-9])"
)
EPISODE_MARKER_RE = re.compile(
    r"(?i)(?:s\d{1,2}e\d{1,3}|(?<![a-z0-9])e\d{1,3}(?![a-z0-9])|(?<![a-z0-9])ep[ ._-]?\d{1,3}(?![a-z0-9]))"
)
GENERIC_WORDS_RE = re.compile(
    r"(?i)(?<![a-z0-9])(?:season\s?\d{1,2}|disc\s?\d{1,2}|sample|extras?)(?![a-z0-9])"
)
GENERIC_SEGMENT_RE = re.compile(
    r"(?i)^(?:season[._\s]?\d+|s\d{2}|disc[._\s]?\d+|sample|extras?)$"
)

RELEASE_TAGS_RE = re.compile(
    r"""
(?<![a-z0-9])(
    2160p|1080p|720p|480p|4k|uhd|hdr10\+?|hdr|dv|dolby\s?vision|
    web[\s-]?(?:rip|dl)|blu[\s-]?ray|brrip|bdrip|dvdrip|hdrip|hdtv|remux|
    amzn|nf|netflix|dsnp|hmax|atvp|
    hevc|h[\s.]?265|h[\s.]?264|x265|x264|avc|xvid|10bit|
    aac(?:[\s.]?2[\s.]?0)?|ddp?(?:[\s.]?5[\s.]?1)?|dts(?:[\s-]?hd)?|truehd|atmos|ac3|eac3|
    multi|proper|repack|extended|remastered|uncut|limited|internal|readnfo|rerip|
    german|french|ita|fra|subs?
)(?![a-z0-9])
""",
    re.IGNORECASE | re.VERBOSE,
)

SPACES_RE = re.compile(r"\s+")

# ------------------------------ Normalization -------------------------------


def _strip_hash_tail(s: str) -> str:
    """Drop a trailing checksum-like token such as ``3f9a7c21``."""
    m = HASH_TAIL_RE.search(s)
    if not m:
        return s
    token = m.group(1)
    digits = sum(ch.isdigit() for ch in token)
    if digits >= 3 and any(ch.isalpha() for ch in token):
        return s[: m.start()]
    return s


def _strip_group_tail(s: str) -> str:
    """
    Drop a trailing ``-GROUP`` release token.

    Only fires when the word glued before the hyphen is itself release noise
    (a tag, a year or an episode marker), so hyphenated titles such as
    ``Spider-Man`` survive.
    """
    m = GROUP_TAIL_RE.search(s)
    if not m:
        return s
    before = m.group(1)
    if RELEASE_TAGS_RE.fullmatch(before) or YEAR_RE.fullmatch(before) or EPISODE_MARKER_RE.search(before):
        return s[: m.start(2) - 1]
    return s


def normalize_title(raw: str, kind: MediaKind) -> str:
    """
    Reduce a raw release name to a presentable candidate title.

    Order matters, later steps assume earlier ones ran:
      1) "." and "_" become spaces.
      2) [...], (...), {...} annotations are dropped.
      3) Trailing checksum token, then a trailing -GROUP token, are dropped.
      4) Remaining hyphens become spaces.
      5) Year tokens are dropped.
      6) TV only: SxxEyy / Sxx / Eyy / Ep N and Season/Disc/Sample/Extras.
      7) Release vocabulary (resolution, codec, source, audio, edition tags).
      8) Whitespace is collapsed.

    Matching is case-insensitive; surviving words keep their original casing.
    Returns "" when nothing meaningful remains.
    """
    if not raw:
        return ""

    s = WORD_SEPS_RE.sub(" ", raw)
    s = BRACKETS_RE.sub(" ", s)
    s = SPACES_RE.sub(" ", s).strip()
    s = _strip_hash_tail(s)
    s = _strip_group_tail(s)
    s = s.replace("-", " ")
    s = YEAR_RE.sub(" ", s)
    if kind is MediaKind.TV:
        s = EPISODE_TOKENS_RE.sub(" ", s)
        s = GENERIC_WORDS_RE.sub(" ", s)
    s = RELEASE_TAGS_RE.sub(" ", s)
    s = SPACES_RE.sub(" ", s).strip(" ,;:'")
    return s


def is_generic_segment(name: str) -> bool:
    """True for folder names that say nothing about the title (Season 1, Disc 2, Sample...)."""
    return bool(GENERIC_SEGMENT_RE.match(name.strip()))


def first_year_in_path(path: Path, depth: int = 3) -> Optional[int]:
    """
    First 19xx/20xx year found in the last *depth* path segments, deepest first.
    """
    parts = [p for p in path.parts if p not in ("", "/", "\\")]
    for seg in reversed(parts[-depth:]):
        m = PATH_YEAR_RE.search(seg)
        if m:
            return int(m.group(1))
    return None


def candidate_segments(source_path: Path, depth: int = 3) -> List[str]:
    """
    Path segments to try for a title, deepest first.

    The temp directory's own name is a fixed sentinel, so it is replaced by
    its parent.
    """
    path = source_path
    if path.name == TMP_DIR_NAME:
        path = path.parent
    segments: List[str] = []
    cur = path
    while len(segments) < depth and cur.name:
        segments.append(cur.name)
        cur = cur.parent
    return segments


# ------------------------------ Overrides -----------------------------------

# Known disambiguations; checked after the user's rules, first match wins.
BUILTIN_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("the office uk", "uk the office", "the office (uk)"), "The Office (2001)"),
    (("the office us", "the office (us)", "the office"), "The Office (2005)"),
    (("band of brothers",), "Band of Brothers"),
    (("the pacific", "pacific pack", "the pacific pack", "pacific pt"), "The Pacific"),
    (("planet earth iii",), "Planet Earth III"),
    (("breaking bad",), "Breaking Bad"),
)

OVERRIDES_TEMPLATE = """\
# Special case mappings for media titles
# Format: pattern|replacement  (case-insensitive substring match)
# Lines starting with # are comments
#
# Examples:
# the office uk|The Office (2001)
# the office us|The Office (2005)
# band of brothers|Band of Brothers
"""


@dataclass
class OverrideRules:
    """
    Operator-supplied ``pattern|replacement`` rules followed by the built-in table.
    """
    rules: List[Tuple[str, str]] = field(default_factory=list)
    use_builtin: bool = True

    @classmethod
    def parse(cls, text: str) -> "OverrideRules":
        rules: List[Tuple[str, str]] = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            if "|" not in stripped:
                logger.debug("Override line %d has no '|', ignored: %r", lineno, line)
                continue
            pattern, replacement = stripped.split("|", 1)
            pattern, replacement = pattern.strip(), replacement.strip()
            if not pattern:
                continue
            rules.append((pattern, replacement))
        return cls(rules=rules)

    @classmethod
    def load(cls, path: Optional[Path]) -> "OverrideRules":
        """Read rules from *path*; a missing file means no user rules."""
        if path is None or not path.exists():
            return cls()
        try:
            text = path.read_text(encoding="utf-8")
        except OSError:
            logger.exception("Failed to read overrides file: %s", path)
            return cls()
        loaded = cls.parse(text)
        logger.debug("Loaded %d override rule(s) from %s", len(loaded.rules), path)
        return loaded

    def resolve(self, title: str) -> str:
        """
        Apply the first matching rule to *title*.

        Parameters
        ----------
        title : str
            Normalized candidate title.

        Returns
        -------
        str
            User replacement, built-in replacement, or *title* unchanged.
        """
        lowered = title.lower()
        for pattern, replacement in self.rules:
            if pattern.lower() in lowered:
                logger.debug("Override rule '%s' -> '%s'", pattern, replacement)
                return replacement
        if self.use_builtin:
            for patterns, replacement in BUILTIN_RULES:
                if any(p in lowered for p in patterns):
                    return replacement
        return title


def ensure_overrides_file(path: Path) -> bool:
    """
    Create the overrides file with commented examples if it does not exist.
    Returns True if the file was created.
    """
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(OVERRIDES_TEMPLATE, encoding="utf-8")
    logger.info("Created special cases config: %s", path)
    return True


# ------------------------------ Hints ---------------------------------------


def _acceptable(candidate: str, kind: MediaKind) -> bool:
    if not candidate or is_generic_segment(candidate):
        return False
    if kind is MediaKind.TV and EPISODE_MARKER_RE.search(candidate):
        return False
    return True


def derive_hint(source_path: Path, kind: MediaKind, overrides: Optional[OverrideRules] = None) -> str:
    """
    Build the sorter's search hint for *source_path*.

    Walks up from the deepest relevant segment, normalizing each one, and
    escalates to the parent while a segment is generic (Season 1, Sample...)
    or, for TV, still carries an episode marker. Movies get a trailing
    ``(YYYY)`` when the path has a year.

    Parameters
    ----------
    source_path : pathlib.Path
        Usually the temp extraction directory.
    kind : MediaKind
        Selects TV-specific stripping and the sentinel title.
    overrides : OverrideRules or None
        Rules applied to the normalized title.

    Returns
    -------
    str
        Never empty; "Unknown Show" / "Unknown Movie" when nothing survives.
    """
    title = ""
    for seg in candidate_segments(source_path):
        if is_generic_segment(seg):
            continue
        cand = normalize_title(seg, kind)
        if _acceptable(cand, kind):
            title = cand
            break

    if not title:
        title = UNKNOWN_TITLES[kind]
    elif overrides is not None:
        title = overrides.resolve(title)

    if kind is MediaKind.MOVIE and not re.search(r"\((?:19|20)\d{2}\)", title):
        year = first_year_in_path(source_path)
        if year:
            title = f"{title} ({year})"
    return title
