"""
Run logs for the pipeline stages.

Each stage run writes `logs/<stage>_<run_id>.jsonl`: one JSON object per
line with `ts`, `stage`, `run_id`, `level`, `message` and, when present,
`kind` and `data`. Human-readable lines are mirrored to stdout.

Besides free-form messages a stage records typed payloads through
`RunLogger.record`; the accepted kinds are listed in RECORD_KINDS.
"""

import json
import logging
import sys
import traceback
import uuid
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import Any, Optional

from ems_district.paths import LOGS_DIR

# Distributions whose installed versions go into logs and sidecars
TRACKED_DISTRIBUTIONS = (
    "pandas",
    "geopandas",
    "numpy",
    "shapely",
    "pyproj",
    "scipy",
    "matplotlib",
    "requests",
    "PyYAML",
)

RECORD_KINDS = {
    "config": "Parameters in effect",
    "inputs": "Input files and sources",
    "outputs": "Files written",
    "crs": "Source and working CRS",
    "cleaning": "Incident cleaning report",
    "station_join": "Fire station to district join",
    "clusters": "Spatial scan result",
    "metrics": "Run metrics",
}


def new_run_id() -> str:
    """UTC timestamp plus a short random suffix, e.g. 20261017_081502_3fa2b9c1."""
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_") + uuid.uuid4().hex[:8]


def get_versions() -> dict[str, str]:
    """Python and tracked distribution versions; missing ones are left out."""
    versions = {"python": sys.version.split()[0]}
    for dist in TRACKED_DISTRIBUTIONS:
        try:
            versions[dist] = metadata.version(dist)
        except metadata.PackageNotFoundError:
            pass
    return versions


class RunLogger:
    """
    JSONL log of one stage run, used as a context manager.

        with get_logger("02_detect_clusters") as logger:
            logger.info("Scanning districts", extra={"n_districts": 9})
            logger.record("clusters", result.summary())

    An exception escaping the block is logged at ERROR with its traceback
    and re-raised.
    """

    def __init__(self, stage: str, run_id: Optional[str] = None, log_dir: Optional[Path] = None):
        self.stage = stage
        self.run_id = run_id or new_run_id()
        log_dir = Path(log_dir) if log_dir is not None else LOGS_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = log_dir / f"{stage}_{self.run_id}.jsonl"
        self._stream = open(self.log_file, "a", encoding="utf-8")

        self._handler = logging.StreamHandler(sys.stdout)
        self._handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s %(message)s"))
        self._console = logging.getLogger(f"ems_district.{stage}")
        self._console.setLevel(logging.INFO)
        self._console.propagate = False
        self._console.addHandler(self._handler)

        self._emit(logging.INFO, "Run started", extra={"log_file": str(self.log_file), "versions": get_versions()})

    def _emit(self, level: int, message: str, extra: Optional[dict] = None, kind: Optional[str] = None) -> None:
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "stage": self.stage,
            "run_id": self.run_id,
            "level": logging.getLevelName(level),
            "message": message,
        }
        if kind:
            entry["kind"] = kind
        if extra:
            entry["data"] = extra
        self._stream.write(json.dumps(entry, default=str) + "\n")
        self._stream.flush()
        self._console.log(level, message)

    def info(self, message: str, extra: Optional[dict] = None) -> None:
        self._emit(logging.INFO, message, extra)

    def warning(self, message: str, extra: Optional[dict] = None) -> None:
        self._emit(logging.WARNING, message, extra)

    def error(self, message: str, extra: Optional[dict] = None) -> None:
        self._emit(logging.ERROR, message, extra)

    def record(self, kind: str, payload: dict[str, Any]) -> None:
        """Write a typed payload; `kind` must be one of RECORD_KINDS."""
        if kind not in RECORD_KINDS:
            raise ValueError(f"Unknown record kind {kind!r}; expected one of {sorted(RECORD_KINDS)}")
        self._emit(logging.INFO, RECORD_KINDS[kind], extra=payload, kind=kind)

    def close(self) -> None:
        if self._stream.closed:
            return
        self._emit(logging.INFO, "Run finished")
        self._stream.close()
        self._console.removeHandler(self._handler)

    def __enter__(self) -> "RunLogger":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None:
            self.error(
                f"{exc_type.__name__}: {exc_val}",
                extra={"traceback": "".join(traceback.format_exception(exc_type, exc_val, exc_tb))},
            )
        self.close()
        return False


def get_logger(stage: str, run_id: Optional[str] = None) -> RunLogger:
    """Open the run log for a pipeline stage."""
    return RunLogger(stage, run_id=run_id)
