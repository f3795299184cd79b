#!/usr/bin/env python3
"""
DASH Experiment Result Storage

Persists collected sessions as gzip-compressed JSON documents:

    {datadir}/dash/YYYY/MM/DD/neubot-dash-YYYYMMDDTHHMMSS.nnnnnnnnnZ.json.gz
"""

from __future__ import annotations

import gzip
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from dash_model import ServerSchema


logger = logging.getLogger(__name__)


class ResultStore(Protocol):
    """Durable sink for collected sessions."""

    def save(self, schema: ServerSchema, created_at: float) -> str:
        ...


def result_path(datadir: str | os.PathLike, created_at: float) -> Path:
    """Compute the file path for a session created at the given Unix time."""
    stamp = datetime.fromtimestamp(created_at, tz=timezone.utc)
    nanos = int(round((created_at - int(created_at)) * 1e9))
    # Rounding may carry into the next second
    nanos = min(nanos, 999_999_999)
    day_dir = Path(datadir) / "dash" / stamp.strftime("%Y") / stamp.strftime("%m") / stamp.strftime("%d")
    name = f"neubot-dash-{stamp.strftime('%Y%m%dT%H%M%S')}.{nanos:09d}Z.json.gz"
    return day_dir / name


class GzipResultStore:
    """ResultStore writing one gzip JSON file per session."""

    def __init__(self, datadir: str | os.PathLike):
        self.datadir = Path(datadir)

    def save(self, schema: ServerSchema, created_at: float) -> str:
        """
        Write the session document.

        The file is created exclusively: an existing file with the same
        name is reported as an error rather than overwritten. A write that
        fails midway removes the partial file.

        Returns:
            Path of the written file

        Raises:
            OSError: If the directory or the file cannot be created
        """
        path = result_path(self.datadir, created_at)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("savedata: mkdir: %s", e)
            raise
        data = json.dumps(schema.to_dict(), separators=(",", ":")).encode("utf-8")
        try:
            raw = path.open("xb")
        except OSError as e:
            logger.warning("savedata: create: %s", e)
            raise
        try:
            with raw, gzip.GzipFile(fileobj=raw, mode="wb", compresslevel=1) as f:
                f.write(data)
        except OSError as e:
            logger.warning("savedata: write: %s", e)
            # Never leave a truncated document behind
            path.unlink(missing_ok=True)
            raise
        logger.debug("savedata: wrote %s", path)
        return str(path)


def load_result(path: str | os.PathLike) -> ServerSchema:
    """Read back a persisted session document."""
    with gzip.open(path, "rb") as f:
        return ServerSchema.from_dict(json.loads(f.read()))
