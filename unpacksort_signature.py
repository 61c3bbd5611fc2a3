# -*- coding: utf-8 -*-
"""
Archive-set fingerprints.

A directory's archive set is every file at its immediate depth whose name
matches one of the multi-part archive conventions below. The signature is an
md5 over the sorted (name, size, mtime) tuples of those files, so any member
being added, removed, resized or touched changes it, while re-scanning the
same content yields the same value. File contents are never read.
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
from pathlib import Path
from typing import List, Optional, Tuple

logger = logging.getLogger("UnpackSort")

# Order matters for extraction: plain/first volumes before continuation parts.
ARCHIVE_PATTERNS: Tuple[str, ...] = (
    "*.rar",            # also *.part1.rar / *.part01.rar
    "*.r[0-9][0-9]",
    "*.001",
    "*.002",
    "*.7z",
    "*.7z.0[0-9][0-9]",
    "*.zip",
    "*.z0[0-9]",
)

# Sidecar names, all owned by the pipeline.
SIGNATURE_FILE = ".extract_sig"
DONE_FILE = ".extract_done"
TMP_DIR_NAME = ".extract_tmp"
OWNER_FILE = ".extract_owner"


def archive_pattern_index(name: str) -> Optional[int]:
    """Return the index of the first archive pattern *name* matches, or None."""
    lowered = name.lower()
    for idx, pattern in enumerate(ARCHIVE_PATTERNS):
        if fnmatch.fnmatchcase(lowered, pattern):
            return idx
    return None


def is_archive_member(name: str) -> bool:
    return archive_pattern_index(name) is not None


def _list_members(directory: Path) -> List[Path]:
    # Unreadable or missing directories degrade to an empty listing.
    try:
        entries = list(directory.iterdir())
    except OSError as e:
        logger.debug("Cannot list %s: %s", directory, e)
        return []
    return [p for p in entries if is_archive_member(p.name) and p.is_file()]


def stat_list(directory: Path) -> List[Tuple[str, int, int]]:
    """
    Collect (name, size, mtime) for every archive member at depth 1.

    Parameters
    ----------
    directory : pathlib.Path
        Directory holding the archive set. Subdirectories are not descended,
        which keeps the pipeline's own temp directory out of the listing.

    Returns
    -------
    list of tuple
        Tuples sorted lexicographically so the result does not depend on the
        platform's directory enumeration order.
    """
    rows: List[Tuple[str, int, int]] = []
    for p in _list_members(directory):
        try:
            st = p.stat()
        except OSError:
            # Vanished between listing and stat.
            continue
        rows.append((p.name, int(st.st_size), int(st.st_mtime)))
    rows.sort()
    return rows


def compute_signature(directory: Path) -> str:
    """Fingerprint the archive set of *directory* (md5 hex of its stat list)."""
    listing = "\n".join(f"{name} {size} {mtime}" for name, size, mtime in stat_list(directory))
    return hashlib.md5(listing.encode("utf-8")).hexdigest()


def read_signature(directory: Path) -> Optional[str]:
    """Return the recorded signature for *directory*, or None if never recorded."""
    sig_file = directory / SIGNATURE_FILE
    try:
        return sig_file.read_text(encoding="utf-8").strip() or None
    except FileNotFoundError:
        return None
    except OSError:
        logger.warning("Unreadable signature file: %s", sig_file)
        return None


def write_signature(directory: Path, signature: str) -> None:
    (directory / SIGNATURE_FILE).write_text(signature + "\n", encoding="utf-8")
