"""
Structured event log for download runs.

Writes one JSON object per line so operators can grep or load a run's history,
while mirroring each event to the regular console logger.
"""

import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any


class StructuredLogger:
    """
    Logger that outputs both human-readable and machine-parseable events.

    Usage:
        logger = StructuredLogger("film_mirror", log_dir=Path("logs"))
        logger.info("film_completed", film_id=42, size_bytes=1048576)
    """

    def __init__(self, name: str, log_dir: Path | None = None):
        """
        Args:
            name: Name of the console logger events are mirrored to.
            log_dir: Directory for JSON-lines files; ``None`` disables the file.
        """
        self.name = name
        self._logger = logging.getLogger(name)
        self._json_file = None
        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            json_log_path = log_dir / f"film_mirror_{timestamp}.jsonl"
            self._json_file = open(json_log_path, "a", encoding="utf-8")  # noqa: SIM115
            self.path: Path | None = json_log_path
        else:
            self.path = None

        self._session_context: dict[str, Any] = {
            "session_id": f"{int(time.time())}_{id(self)}",
        }

    def set_session_context(self, **kwargs) -> None:
        """Set session-level context that appears in all entries."""
        self._session_context.update(kwargs)

    @staticmethod
    def _format_message(event: str, **context) -> str:
        parts = [f"[{event}]"]
        parts.extend(f"{key}={value}" for key, value in context.items())
        return " ".join(parts)

    def _write_json(self, level: str, event: str, **context) -> None:
        if not self._json_file or self._json_file.closed:
            return

        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "event": event,
            **self._session_context,
            **context,
        }
        try:
            self._json_file.write(json.dumps(entry, default=str) + "\n")
            self._json_file.flush()
        except OSError as e:
            print(f"Event log write failed: {e}", file=sys.stderr)

    def _log(self, level: int, event: str, **context) -> None:
        self._logger.log(level, self._format_message(event, **context))
        self._write_json(logging.getLevelName(level), event, **context)

    def debug(self, event: str, **context) -> None:
        self._log(logging.DEBUG, event, **context)

    def info(self, event: str, **context) -> None:
        self._log(logging.INFO, event, **context)

    def error(self, event: str, **context) -> None:
        self._log(logging.ERROR, event, **context)

    def close(self) -> None:
        if self._json_file and not self._json_file.closed:
            self._json_file.close()


class DownloadLogger:
    """Named events for the per-film download lifecycle."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def film_claimed(self, film_id: int, path: str):
        self.logger.debug("film_claimed", film_id=film_id, path=path)

    def film_completed(
        self, film_id: int, size_bytes: int, resumed_from: int, duration_s: float
    ):
        self.logger.info(
            "film_completed",
            film_id=film_id,
            size_bytes=size_bytes,
            resumed_from=resumed_from,
            duration_s=round(duration_s, 2),
        )

    def film_failed(self, film_id: int, error: str, attempt: int, retryable: bool):
        self.logger.error(
            "film_failed",
            film_id=film_id,
            error=error,
            attempt=attempt,
            retryable=retryable,
        )

    def film_skipped(self, film_id: int, reason: str):
        self.logger.debug("film_skipped", film_id=film_id, reason=reason)

    def run_completed(self, duration_s: float, **counts: int):
        self.logger.info("run_completed", duration_s=round(duration_s, 2), **counts)


def create_event_logger(log_dir: Path | None = None) -> DownloadLogger:
    """Creates the download event logger; ``log_dir=None`` keeps it console-only."""
    return DownloadLogger(StructuredLogger("film_mirror.events", log_dir=log_dir))
