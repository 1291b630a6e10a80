"""Append-only hourly NDJSON segments backing the observation store.

Layout: ``<output_dir>/<prefix>-YYYYMMDD-HH.ndjson``, one JSON observation
per line, bucketed by the UTC hour of the observation timestamp. Files are
only ever appended to and deleted as a whole by retention, so a crash can
at most tear the last line of the newest segment.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import TextIO

from nwpd.errors import StoreError
from nwpd.models import Observation

logger = logging.getLogger(__name__)

SEGMENT_SECONDS = 3600
_KEY_FORMAT = "%Y%m%d-%H"
# Open handles kept around for late observations of the previous hour
_MAX_OPEN = 2


def segment_key(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime(_KEY_FORMAT)


def segment_start(key: str) -> float:
    return datetime.strptime(key, _KEY_FORMAT).replace(tzinfo=timezone.utc).timestamp()


class SegmentLog:
    def __init__(self, directory: Path | str, prefix: str) -> None:
        self.directory = Path(directory)
        self.prefix = prefix
        self._pattern = re.compile(rf"^{re.escape(prefix)}-(\d{{8}}-\d{{2}})\.ndjson$")
        self._handles: dict[str, TextIO] = {}
        self._lock = threading.Lock()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"cannot create output directory {self.directory}: {e}") from e

    def path_for(self, key: str) -> Path:
        return self.directory / f"{self.prefix}-{key}.ndjson"

    def segments(self) -> list[tuple[str, Path]]:
        """Existing segments as (key, path), oldest first."""
        found = []
        for path in self.directory.iterdir():
            m = self._pattern.match(path.name)
            if m:
                found.append((m.group(1), path))
        return sorted(found)

    def write(self, observations: list[Observation]) -> None:
        """Append a batch and flush it. Raises StoreError on I/O failure."""
        if not observations:
            return
        by_key: dict[str, list[str]] = {}
        for obs in observations:
            by_key.setdefault(segment_key(obs.timestamp), []).append(
                json.dumps(obs.to_dict(), separators=(",", ":"))
            )
        with self._lock:
            try:
                for key, lines in by_key.items():
                    fh = self._handle(key)
                    fh.write("\n".join(lines) + "\n")
                    fh.flush()
            except OSError as e:
                raise StoreError(f"segment write failed: {e}") from e
            self._trim_handles()

    def load(self, since: float) -> list[Observation]:
        """Read back every observation with ``timestamp >= since``."""
        loaded: list[Observation] = []
        for key, path in self.segments():
            if segment_start(key) + SEGMENT_SECONDS <= since:
                continue
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as e:
                raise StoreError(f"cannot read segment {path}: {e}") from e
            bad = 0
            for line in text.splitlines():
                if not line.strip():
                    continue
                try:
                    obs = Observation.from_dict(json.loads(line))
                except (ValueError, KeyError, TypeError):
                    bad += 1
                    continue
                if obs.timestamp >= since:
                    loaded.append(obs)
            if bad:
                logger.warning("Skipped %d unreadable lines in %s", bad, path.name)
        return loaded

    def expire(self, cutoff: float) -> list[Path]:
        """Delete segments whose whole hour lies before ``cutoff``."""
        removed = []
        with self._lock:
            for key, path in self.segments():
                if segment_start(key) + SEGMENT_SECONDS > cutoff:
                    continue
                fh = self._handles.pop(key, None)
                if fh is not None:
                    fh.close()
                try:
                    path.unlink()
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.warning("Cannot delete expired segment %s: %s", path, e)
                    continue
                removed.append(path)
        if removed:
            logger.info("Deleted %d expired segments", len(removed))
        return removed

    def close(self) -> None:
        with self._lock:
            for fh in self._handles.values():
                try:
                    fh.flush()
                    fh.close()
                except OSError as e:
                    logger.warning("Error closing segment: %s", e)
            self._handles.clear()

    def _handle(self, key: str) -> TextIO:
        fh = self._handles.get(key)
        if fh is None:
            fh = open(self.path_for(key), "a", encoding="utf-8")
            self._handles[key] = fh
        return fh

    def _trim_handles(self) -> None:
        for key in sorted(self._handles)[:-_MAX_OPEN]:
            self._handles.pop(key).close()
