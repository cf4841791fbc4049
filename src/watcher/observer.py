"""Drop-folder watcher: PollingObserver hands finished uploads to ingestion.

Watches a folder for new statement files (.csv, .pdf), waits for file
stability (size+mtime unchanged for a few seconds), checks the file is
complete, then calls the ingest callback:
  detect → stable → validate → ingest

Uses PollingObserver rather than inotify so network and container volumes
behave the same as local disks.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from watchdog.events import FileSystemEventHandler

from src.ingest.pipeline import IngestionResult

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".csv", ".pdf"}

DEFAULT_STABILITY_SECONDS = 5
DEFAULT_CHECK_INTERVAL = 1.0
DEFAULT_POLL_INTERVAL = 10

IngestFn = Callable[[Path], IngestionResult]


@dataclass
class WatchResult:
    """Outcome of handling one dropped file."""
    file_name: str
    status: str  # "success" or "error"
    processed_count: int = 0
    duplicate_count: int = 0
    failed_count: int = 0
    error_message: str | None = None


class FileStabilityError(Exception):
    """Raised when a file fails post-stability validation."""


def wait_for_stable(
    filepath: Path,
    stability_seconds: float = DEFAULT_STABILITY_SECONDS,
    check_interval: float = DEFAULT_CHECK_INTERVAL,
    max_wait: float = 300.0,
) -> None:
    """Wait until file size and mtime are stable for stability_seconds.

    Raises:
        TimeoutError: If the file doesn't stabilize within max_wait.
    """
    prev_size = -1
    prev_mtime = -1.0
    stable_since: float | None = None
    start = time.monotonic()

    while True:
        if time.monotonic() - start > max_wait:
            raise TimeoutError(
                f"File did not stabilize within {max_wait}s: {filepath}"
            )

        stat = filepath.stat()
        if stat.st_size == prev_size and stat.st_mtime == prev_mtime:
            if stable_since is None:
                stable_since = time.monotonic()
            if time.monotonic() - stable_since >= stability_seconds:
                return
        else:
            stable_since = None

        prev_size = stat.st_size
        prev_mtime = stat.st_mtime
        time.sleep(check_interval)


def validate_file_completeness(filepath: Path) -> None:
    """Reject files that look truncated.

    - CSV: non-empty and ending with a newline
    - PDF: contains the %%EOF trailer

    Raises:
        FileStabilityError: If the file looks incomplete.
    """
    suffix = filepath.suffix.lower()
    data = filepath.read_bytes()

    if suffix == ".csv":
        if not data:
            raise FileStabilityError(f"CSV file is empty: {filepath.name}")
        if not data.endswith(b"\n"):
            raise FileStabilityError(
                f"CSV file does not end with newline (may be truncated): {filepath.name}"
            )
    elif suffix == ".pdf":
        if b"%%EOF" not in data[-2048:]:
            raise FileStabilityError(
                f"PDF file is missing %%EOF trailer (may be truncated): {filepath.name}"
            )


class FileWatcher(FileSystemEventHandler):
    """Watchdog handler that feeds new statement files to ingest_fn.

    ingest_fn is called from the observer thread with the file path and
    returns the IngestionResult; it raises on fatal ingestion errors.
    """

    def __init__(
        self,
        watch_dir: Path | str,
        ingest_fn: IngestFn,
        stability_seconds: float = DEFAULT_STABILITY_SECONDS,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.watch_dir = Path(watch_dir)
        self.ingest_fn = ingest_fn
        self.stability_seconds = stability_seconds
        self.check_interval = check_interval
        self.poll_interval = poll_interval
        self._observer = None

    def start(self) -> None:
        from watchdog.observers.polling import PollingObserver

        self.watch_dir.mkdir(parents=True, exist_ok=True)
        self._observer = PollingObserver(timeout=self.poll_interval)
        self._observer.schedule(self, str(self.watch_dir), recursive=False)
        self._observer.start()
        logger.info("Watching %s for statement files", self.watch_dir)

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("File watcher stopped")

    def on_created(self, event) -> None:
        if event.is_directory:
            return

        filepath = Path(event.src_path)
        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return

        logger.info("New file detected: %s", filepath.name)
        self.process_file(filepath)

    def process_file(self, filepath: Path) -> WatchResult:
        """Wait for stability, validate, then ingest."""
        try:
            wait_for_stable(
                filepath,
                stability_seconds=self.stability_seconds,
                check_interval=self.check_interval,
            )
            validate_file_completeness(filepath)

            result = self.ingest_fn(filepath)
            logger.info(
                "Ingested %s: processed=%d, dup=%d, failed=%d",
                filepath.name, result.processed_count,
                result.duplicate_count, result.failed_count,
            )
            return WatchResult(
                file_name=filepath.name,
                status="success",
                processed_count=result.processed_count,
                duplicate_count=result.duplicate_count,
                failed_count=result.failed_count,
            )
        except FileStabilityError as e:
            logger.error("File validation failed: %s", e)
            return WatchResult(filepath.name, "error", error_message=str(e))
        except TimeoutError as e:
            logger.error("File stability timeout: %s", e)
            return WatchResult(filepath.name, "error", error_message=str(e))
        except Exception as e:
            logger.exception("Unexpected error processing %s", filepath.name)
            return WatchResult(filepath.name, "error", error_message=str(e))
