"""
Where the pipeline reads and writes.

Every stage takes its locations from here rather than from relative paths.
The project root is the nearest ancestor holding `.project-root` or
`pyproject.toml`.
"""

from pathlib import Path
from typing import Optional

ROOT_MARKERS = (".project-root", "pyproject.toml")


def find_project_root(start: Optional[Path] = None) -> Path:
    """
    Walk up from `start` (default: this module) to the first directory
    containing a root marker.

    Raises:
        FileNotFoundError: If no ancestor carries a marker
    """
    start = Path(start).resolve() if start is not None else Path(__file__).resolve().parent
    for candidate in (start, *start.parents):
        if any((candidate / marker).exists() for marker in ROOT_MARKERS):
            return candidate
    raise FileNotFoundError(f"None of {ROOT_MARKERS} found above {start}")


PROJECT_ROOT = find_project_root()

CONFIG_DIR = PROJECT_ROOT / "configs"
PARAMS_FILE = CONFIG_DIR / "params.yml"

# Stage 00: downloaded snapshots and their manifest
RAW_DIR = PROJECT_ROOT / "data" / "raw"

# Stages 01-02: canonical district tables, cluster labels, provenance
PROCESSED_DIR = PROJECT_ROOT / "data" / "processed"
DISTRICTS_DIR = PROCESSED_DIR / "districts"
CLUSTERS_DIR = PROCESSED_DIR / "clusters"
METADATA_DIR = PROCESSED_DIR / "metadata"

# Stage 03: maps and the tables behind them
REPORTS_DIR = PROJECT_ROOT / "reports"
FIGURES_DIR = REPORTS_DIR / "figures"
TABLES_DIR = REPORTS_DIR / "tables"

# One JSONL file per stage run
LOGS_DIR = PROJECT_ROOT / "logs"

OUTPUT_DIRS = (
    RAW_DIR,
    DISTRICTS_DIR,
    CLUSTERS_DIR,
    METADATA_DIR,
    FIGURES_DIR,
    TABLES_DIR,
    LOGS_DIR,
)


def ensure_dirs_exist() -> None:
    """Create every directory a stage writes into."""
    for directory in OUTPUT_DIRS:
        directory.mkdir(parents=True, exist_ok=True)
