# -*- coding: utf-8 -*-
"""
Archive extraction with idempotency.

``ExtractionOrchestrator.ensure_extracted`` decides per directory whether the
archive set needs (re-)extracting by comparing the current signature with the
recorded one, and drives the extractor chain with fixed-delay retries.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence, runtime_checkable

from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_fixed

from unpacksort_classify import VIDEO_EXTS
from unpacksort_signature import (
    DONE_FILE,
    OWNER_FILE,
    TMP_DIR_NAME,
    archive_pattern_index,
    compute_signature,
    read_signature,
    write_signature,
)

logger = logging.getLogger("UnpackSort")


class ToolNotFoundError(RuntimeError):
    """A required external binary is not on PATH."""


def require_tool(name: str) -> str:
    """Resolve *name* on PATH or raise ToolNotFoundError."""
    found = shutil.which(name)
    if not found:
        raise ToolNotFoundError(f"Missing required command: {name}")
    return found


def run_tool(cmd: Sequence[str], progress: bool = False, timeout: Optional[float] = None) -> bool:
    """
    Run an external tool and report whether it exited cleanly.

    Output is captured and logged at DEBUG unless *progress* is set, in which
    case it streams straight to the console. Launch errors and timeouts count
    as failures.
    """
    try:
        if progress:
            result = subprocess.run(list(cmd), timeout=timeout)
        else:
            result = subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout)
            output = (result.stdout or "") + (result.stderr or "")
            if output.strip():
                logger.debug("%s output:\n%s", Path(cmd[0]).name, output.rstrip())
    except subprocess.TimeoutExpired:
        logger.warning("%s timed out after %ss", Path(cmd[0]).name, timeout)
        return False
    except OSError as e:
        logger.warning("Cannot run %s: %s", cmd[0], e)
        return False
    return result.returncode == 0


# ------------------------------ Extractors -----------------------------------

@runtime_checkable
class Extractor(Protocol):
    name: str

    def extract(self, archive: Path, out_dir: Path) -> bool: ...


class SevenZipExtractor:
    """7-Zip (``7zz``/``7z``); opened on the first volume it pulls in the rest."""

    def __init__(self, binary: str = "7z", progress: bool = False, timeout: Optional[float] = None) -> None:
        self.name = binary
        self.binary = binary
        self.progress = progress
        self.timeout = timeout

    def command(self, archive: Path, out_dir: Path) -> List[str]:
        cmd = [self.binary, "x", "-y", "-aoa", "-mmt=on"]
        if self.progress:
            cmd += ["-bsp1", "-bso2"]
        return cmd + [str(archive), f"-o{out_dir}"]

    def extract(self, archive: Path, out_dir: Path) -> bool:
        return run_tool(self.command(archive, out_dir), self.progress, self.timeout)


class UnarExtractor:
    """Best-effort fallback through ``unar``."""

    def __init__(self, binary: str = "unar", progress: bool = False, timeout: Optional[float] = None) -> None:
        self.name = binary
        self.binary = binary
        self.progress = progress
        self.timeout = timeout

    def command(self, archive: Path, out_dir: Path) -> List[str]:
        cmd = [self.binary]
        if not self.progress:
            cmd.append("-quiet")
        return cmd + ["-force-overwrite", "-o", str(out_dir), str(archive)]

    def extract(self, archive: Path, out_dir: Path) -> bool:
        return run_tool(self.command(archive, out_dir), self.progress, self.timeout)


def default_sevenzip_binary() -> str:
    """Prefer ``7zz`` when present."""
    return "7zz" if shutil.which("7zz") else "7z"


# ------------------------------ Archive sets ---------------------------------

def find_archive_set(directory: Path) -> List[Path]:
    """
    Archive-set members at the immediate depth of *directory*.

    Ordered by pattern family (rar, rNN, 001/002, 7z, 7z.0NN, zip, z0N) and
    then by name, so the first volume of a multi-part set comes first.
    """
    try:
        entries = list(directory.iterdir())
    except OSError:
        return []
    keyed = []
    for p in entries:
        idx = archive_pattern_index(p.name)
        if idx is not None and p.is_file():
            keyed.append((idx, p.name.casefold(), p))
    keyed.sort(key=lambda t: (t[0], t[1]))
    return [p for _, _, p in keyed]


def has_video(directory: Path) -> bool:
    if not directory.is_dir():
        return False
    for p in directory.rglob("*"):
        if p.suffix.lower() in VIDEO_EXTS and p.is_file():
            return True
    return False


def is_owned(out_dir: Path) -> bool:
    return (out_dir / OWNER_FILE).is_file()


def mark_owned(out_dir: Path) -> None:
    (out_dir / OWNER_FILE).touch()


# ------------------------------ Orchestrator ---------------------------------

@dataclass
class ExtractionJob:
    source: Path
    out_dir: Path
    members: List[Path]
    attempts: int = 0
    succeeded: bool = False
    # pending | extracted | reused | up_to_date | failed | refused
    status: str = "pending"
    extracted_from: Optional[Path] = None


@dataclass
class ExtractionOrchestrator:
    """
    Per-directory extraction state machine.

    Rules, in order:
      1) no archive members               -> nothing to do
      2) force                            -> wipe, extract, record signature
      3) signature unchanged
         a) owned temp dir already has video -> reuse it
         b) no completion marker          -> wipe and extract again
         c) completion marker present     -> nothing to do
      4) signature changed / first seen   -> wipe, extract, record signature

    Only a temp dir carrying the ownership marker is reused or wiped; a
    refused one leaves the signature unrecorded.
    """
    extractors: Sequence[Extractor]
    max_retries: int = 3
    retry_delay: float = 5.0
    force: bool = False
    sleep: Callable[[float], None] = time.sleep
    last_job: Optional[ExtractionJob] = field(default=None, init=False)

    def extract_one(self, archive: Path, out_dir: Path, job: Optional[ExtractionJob] = None) -> bool:
        """
        Try *archive* with each extractor in turn; retry the whole chain up to
        ``max_retries`` times with ``retry_delay`` seconds in between.
        """
        def _attempt() -> bool:
            if job is not None:
                job.attempts += 1
            for ex in self.extractors:
                if ex.extract(archive, out_dir):
                    return True
                logger.debug("%s could not extract %s", ex.name, archive.name)
            return False

        def _before_sleep(state) -> None:
            logger.info("Retry %d/%d in %ss", state.attempt_number + 1, self.max_retries, self.retry_delay)

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
        logger.error("Extraction failed after %d attempts: %s", self.max_retries, archive)
        return False

    def extract_set(self, job: ExtractionJob) -> bool:
        """
        Extract the set from the first member that succeeds; the rest are
        assumed to be volumes the extractor already pulled in.
        """
        total = len(job.members)
        for idx, archive in enumerate(job.members, start=1):
            logger.info("Extracting (%d/%d): %s", idx, total, archive)
            if self.extract_one(archive, job.out_dir, job):
                logger.info("Extraction successful")
                job.succeeded = True
                job.extracted_from = archive
                return True
            logger.info("Extractor said no (maybe not first part): %s", archive)
        logger.error("No member of the archive set in %s could be extracted", job.source)
        return False

    def _prepare_out_dir(self, out_dir: Path) -> bool:
        """Wipe and recreate *out_dir*; refuses to delete a populated directory we do not own."""
        if out_dir.exists():
            if not out_dir.is_dir():
                logger.error("Temp path exists and is not a directory: %s", out_dir)
                return False
            if not is_owned(out_dir) and any(out_dir.iterdir()):
                logger.error("Refusing to wipe %s: not created by this tool", out_dir)
                return False
            shutil.rmtree(out_dir)
        out_dir.mkdir(parents=True)
        mark_owned(out_dir)
        return True

    def _fresh_extract(self, job: ExtractionJob) -> bool:
        (job.source / DONE_FILE).unlink(missing_ok=True)
        if not self._prepare_out_dir(job.out_dir):
            job.status = "refused"
            return False
        ok = self.extract_set(job)
        job.status = "extracted" if ok else "failed"
        return ok

    def _record_signature(self, job: ExtractionJob, signature: str) -> None:
        # A refused temp dir must be looked at again next run, never reused.
        if job.status != "refused":
            write_signature(job.source, signature)

    def ensure_extracted(self, directory: Path) -> Optional[Path]:
        """
        Make sure *directory*'s archive set is available unpacked.

        Returns
        -------
        pathlib.Path or None
            The temp directory when it holds (fresh or reused) extracted
            content, None when there is nothing (new) to do or extraction
            failed.
        """
        self.last_job = None
        members = find_archive_set(directory)
        if not members:
            return None

        out_dir = directory / TMP_DIR_NAME
        job = ExtractionJob(source=directory, out_dir=out_dir, members=members)
        self.last_job = job
        current_sig = compute_signature(directory)

        if self.force:
            logger.info("FORCE: re-extracting %s", directory)
            ok = self._fresh_extract(job)
            self._record_signature(job, current_sig)
            return out_dir if ok else None

        if read_signature(directory) == current_sig:
            if is_owned(out_dir) and has_video(out_dir):
                logger.info("Archive set unchanged; reusing temp: %s", out_dir)
                job.succeeded = True
                job.status = "reused"
                return out_dir
            if not (directory / DONE_FILE).exists():
                logger.info("Archive set unchanged but not yet processed; extracting again")
                return out_dir if self._fresh_extract(job) else None
            logger.info("Archive set unchanged and already processed; skip extraction")
            job.status = "up_to_date"
            return None

        logger.info("New/changed archives detected; extracting to %s", out_dir)
        logger.info("Found %d part(s) in %s", len(members), directory)
        ok = self._fresh_extract(job)
        self._record_signature(job, current_sig)
        return out_dir if ok else None
