"""
Reading and writing pipeline files.

Writers never leave a half-written output behind: data goes to a hidden
sibling file that replaces the target only once the write has finished.
The file extension picks the format.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Union

import geopandas as gpd
import pandas as pd
import yaml

from ems_district.paths import PARAMS_FILE

PathLike = Union[str, Path]

TABLE_FORMATS = (".csv", ".parquet")
LAYER_FORMATS = (".parquet", ".geojson")


@contextmanager
def staged_path(target: PathLike) -> Iterator[Path]:
    """
    Yield a temporary path next to `target`; on success it becomes `target`.

    On any exception the staged file is removed and `target` is untouched.
    """
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".part", dir=target.parent)
    os.close(fd)
    staged = Path(name)
    try:
        yield staged
        os.replace(staged, target)
    finally:
        if staged.exists():
            staged.unlink()


def _check_suffix(path: Path, allowed: tuple) -> str:
    suffix = path.suffix.lower()
    if suffix not in allowed:
        raise ValueError(f"{path.name}: expected one of {allowed}, got {suffix or 'no extension'}")
    return suffix


# =============================================================================
# Writers
# =============================================================================

def write_bytes(content: bytes, target: PathLike) -> None:
    """Store a downloaded payload as-is."""
    with staged_path(target) as staged:
        staged.write_bytes(content)


def write_json(data: Any, target: PathLike) -> None:
    """Pretty-printed JSON; values json cannot encode are written via str()."""
    with staged_path(target) as staged:
        staged.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")


def write_table(df: pd.DataFrame, target: PathLike, **kwargs) -> None:
    """Write a plain table as CSV or Parquet, without the index by default."""
    target = Path(target)
    suffix = _check_suffix(target, TABLE_FORMATS)
    kwargs.setdefault("index", False)
    with staged_path(target) as staged:
        if suffix == ".csv":
            df.to_csv(staged, **kwargs)
        else:
            df.to_parquet(staged, **kwargs)


def write_layer(gdf: gpd.GeoDataFrame, target: PathLike, **kwargs) -> None:
    """Write a district or station layer as GeoParquet or GeoJSON."""
    target = Path(target)
    suffix = _check_suffix(target, LAYER_FORMATS)
    with staged_path(target) as staged:
        if suffix == ".parquet":
            gdf.to_parquet(staged, **kwargs)
        else:
            # The GeoJSON driver will not open an existing file for writing
            staged.unlink()
            gdf.to_file(staged, driver="GeoJSON", **kwargs)


# =============================================================================
# Readers
# =============================================================================

def load_params(path: Optional[PathLike] = None) -> dict:
    """Run parameters from configs/params.yml (or `path`)."""
    path = Path(path) if path is not None else PARAMS_FILE
    with open(path, encoding="utf-8") as f:
        params = yaml.safe_load(f)
    if not isinstance(params, dict):
        raise ValueError(f"{path} does not hold a mapping of parameters")
    return params


def read_json(path: PathLike) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def read_table(path: PathLike, **kwargs) -> pd.DataFrame:
    path = Path(path)
    if _check_suffix(path, TABLE_FORMATS) == ".csv":
        return pd.read_csv(path, **kwargs)
    return pd.read_parquet(path, **kwargs)


def read_layer(path: PathLike, **kwargs) -> gpd.GeoDataFrame:
    """GeoParquet via pyarrow, anything else through OGR."""
    path = Path(path)
    if path.suffix.lower() == ".parquet":
        return gpd.read_parquet(path, **kwargs)
    return gpd.read_file(path, **kwargs)
