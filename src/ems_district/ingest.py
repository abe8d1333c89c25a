"""
Ingestion of the four input tables.

Each source is fetched once from its fixed location into a raw snapshot under
data/raw, then parsed from that snapshot. A source that cannot be fetched or
parsed aborts the run; there is no retry.

Sources are described in configs/params.yml:

    sources:
      districts:
        url: ...
        format: csv          # csv | parquet | geojson
        rename: {council_district: district_id}
        wkt_column: the_geom # or lon_column/lat_column for points
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

import geopandas as gpd
import numpy as np
import pandas as pd
import requests
from shapely.errors import GEOSException

from ems_district.hashing import hash_bytes
from ems_district.io_utils import write_bytes

SUPPORTED_FORMATS = {"csv": ".csv", "parquet": ".parquet", "geojson": ".geojson"}
SOURCE_EPSG = 4326
REQUEST_TIMEOUT = 120  # seconds


class IngestionError(Exception):
    """Raised when a source cannot be fetched or parsed."""
    pass


def raw_path_for(name: str, source_config: dict, raw_dir: Path) -> Path:
    """Raw snapshot path for a configured source."""
    fmt = source_config.get("format", "csv")
    if fmt not in SUPPORTED_FORMATS:
        raise IngestionError(f"Unsupported format for {name}: {fmt}")
    return Path(raw_dir) / f"{name}{SUPPORTED_FORMATS[fmt]}"


def fetch_source(
    url: str,
    dest_path: Path,
    timeout: int = REQUEST_TIMEOUT,
    logger=None,
) -> Dict[str, object]:
    """
    Download a source to dest_path and return its manifest entry.
    
    Raises:
        IngestionError: On any network error or non-2xx status
    """
    if not url:
        raise IngestionError(f"No URL configured for {Path(dest_path).stem}")
    
    if logger:
        logger.info(f"Fetching {url}")
    
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise IngestionError(f"Failed to fetch {url}: {e}") from e
    
    content = response.content
    write_bytes(content, dest_path)
    
    if logger:
        logger.info(f"Saved {len(content):,} bytes to {dest_path}")
    
    return {
        "url": url,
        "path": str(dest_path),
        "fetched_at": datetime.now(timezone.utc).isoformat(),
        "sha256": hash_bytes(content),
        "bytes": len(content),
    }


def read_source_table(
    path: Path,
    fmt: str = "csv",
    rename: Optional[Dict[str, str]] = None,
) -> pd.DataFrame:
    """
    Parse a raw snapshot into a DataFrame with canonical column names.
    
    GeoJSON snapshots come back as a GeoDataFrame.
    
    Raises:
        IngestionError: If the file is missing or cannot be parsed
    """
    path = Path(path)
    if not path.exists():
        raise IngestionError(f"Raw snapshot not found: {path}")
    
    try:
        if fmt == "csv":
            df = pd.read_csv(path, low_memory=False)
        elif fmt == "parquet":
            df = pd.read_parquet(path)
        elif fmt == "geojson":
            df = gpd.read_file(path)
        else:
            raise IngestionError(f"Unsupported format: {fmt}")
    except IngestionError:
        raise
    except Exception as e:
        raise IngestionError(f"Could not parse {path}: {e}") from e
    
    if rename:
        df = df.rename(columns=rename)
    
    return df


def to_geodataframe(
    df: pd.DataFrame,
    wkt_column: Optional[str] = None,
    lon_column: Optional[str] = None,
    lat_column: Optional[str] = None,
    crs: int = SOURCE_EPSG,
    logger=None,
) -> gpd.GeoDataFrame:
    """
    Build a geometry-aware table from a WKT column or lon/lat columns.
    
    A table that is already a GeoDataFrame only gets its CRS checked; a
    missing CRS is assumed to be `crs`. Rows whose lon/lat is blank or not
    a finite number are dropped.
    
    Raises:
        IngestionError: If the geometry columns are missing or unparseable
    """
    if isinstance(df, gpd.GeoDataFrame):
        if df.crs is None:
            return df.set_crs(crs)
        return df
    
    if wkt_column is not None:
        if wkt_column not in df.columns:
            raise IngestionError(f"Missing WKT column: {wkt_column}")
        try:
            geometry = gpd.GeoSeries.from_wkt(df[wkt_column], crs=crs)
        except (GEOSException, TypeError, ValueError) as e:
            raise IngestionError(f"Could not parse WKT in {wkt_column}: {e}") from e
        data = df.drop(columns=[wkt_column])
    elif lon_column is not None and lat_column is not None:
        missing = {lon_column, lat_column} - set(df.columns)
        if missing:
            raise IngestionError(f"Missing coordinate columns: {sorted(missing)}")
        lon = pd.to_numeric(df[lon_column], errors="coerce").astype("float64")
        lat = pd.to_numeric(df[lat_column], errors="coerce").astype("float64")
        has_coords = np.isfinite(lon) & np.isfinite(lat)
        if logger and not has_coords.all():
            logger.warning(f"Dropping {int((~has_coords).sum())} rows without valid coordinates")
        data = df.loc[has_coords].copy()
        geometry = gpd.points_from_xy(lon[has_coords], lat[has_coords], crs=crs)
    else:
        raise IngestionError("No geometry columns configured (wkt_column or lon_column/lat_column)")
    
    return gpd.GeoDataFrame(data, geometry=geometry, crs=crs)


def load_source(
    name: str,
    source_config: dict,
    raw_dir: Path,
    logger=None,
) -> pd.DataFrame:
    """
    Read a fetched source snapshot according to its config entry.
    
    Entries with geometry settings (or GeoJSON format) come back as an
    EPSG:4326 GeoDataFrame; the rest as a plain DataFrame.
    """
    fmt = source_config.get("format", "csv")
    path = raw_path_for(name, source_config, raw_dir)
    df = read_source_table(path, fmt, source_config.get("rename"))
    
    has_geometry = (
        fmt == "geojson"
        or "wkt_column" in source_config
        or "lon_column" in source_config
    )
    if has_geometry:
        df = to_geodataframe(
            df,
            wkt_column=source_config.get("wkt_column"),
            lon_column=source_config.get("lon_column"),
            lat_column=source_config.get("lat_column"),
            crs=source_config.get("epsg", SOURCE_EPSG),
            logger=logger,
        )
    
    if logger:
        logger.info(f"Loaded {name}: {len(df):,} rows from {path.name}")
    
    return df
