"""
Quality assurance utilities for district layers and aggregates.

CRS mismatches are hard errors; there are no silent overrides.
Bounds are sanity-checked whenever a geometry table is read.
Aggregate invariants are checked before anything is mapped.
"""

from typing import Optional, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
from pyproj import CRS


class CRSError(Exception):
    """Raised when CRS validation fails."""
    pass


class BoundsError(Exception):
    """Raised when bounds validation fails."""
    pass


class InvariantError(Exception):
    """Raised when a district aggregate breaks a counting invariant."""
    pass


# =============================================================================
# CRS Validation
# =============================================================================

def assert_crs_not_none(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """
    Assert that the GeoDataFrame has a CRS set.
    
    Raises:
        CRSError: If CRS is None
    """
    if gdf.crs is None:
        msg = "GeoDataFrame has no CRS set"
        if context:
            msg = f"{msg} ({context})"
        raise CRSError(msg)


def assert_expected_crs(
    gdf: gpd.GeoDataFrame,
    expected_epsg: int,
    context: str = "",
) -> None:
    """
    Assert that the GeoDataFrame has the expected CRS.
    
    Raises:
        CRSError: If CRS is None or doesn't match expected
    """
    assert_crs_not_none(gdf, context)
    
    if not gdf.crs.equals(CRS.from_epsg(expected_epsg)):
        msg = f"CRS mismatch: expected EPSG:{expected_epsg}, got {gdf.crs}"
        if context:
            msg = f"{msg} ({context})"
        raise CRSError(msg)


def get_crs_epsg(gdf: gpd.GeoDataFrame) -> Optional[int]:
    """Get the EPSG code of a GeoDataFrame's CRS, or None if unknown."""
    if gdf.crs is None:
        return None
    return gdf.crs.to_epsg()


def safe_reproject(
    gdf: gpd.GeoDataFrame,
    target: Union[int, CRS],
    context: str = "",
) -> gpd.GeoDataFrame:
    """
    Reproject a GeoDataFrame with to_crs(), never set_crs with override.
    
    Args:
        gdf: GeoDataFrame to reproject
        target: Target EPSG code or pyproj CRS
        context: Optional context string for error message
    
    Raises:
        CRSError: If source CRS is None
    """
    assert_crs_not_none(gdf, context)
    
    target_crs = CRS.from_epsg(target) if isinstance(target, int) else CRS.from_user_input(target)
    
    if gdf.crs.equals(target_crs):
        return gdf
    
    return gdf.to_crs(target_crs)


def resolve_projected_crs(
    gdf: gpd.GeoDataFrame,
    projected_epsg: Optional[int] = None,
) -> CRS:
    """
    Pick the planar CRS used for centroids and distances.
    
    An explicit EPSG code wins; otherwise the UTM zone covering the layer
    is estimated.
    
    Raises:
        CRSError: If the explicit CRS is geographic
    """
    assert_crs_not_none(gdf, "projected CRS lookup")
    
    if projected_epsg is not None:
        crs = CRS.from_epsg(projected_epsg)
        if not crs.is_projected:
            raise CRSError(f"EPSG:{projected_epsg} is not a projected CRS")
        return crs
    
    return gdf.estimate_utm_crs()


# =============================================================================
# Bounds Validation
# =============================================================================

def get_bounds(gdf: gpd.GeoDataFrame) -> Tuple[float, float, float, float]:
    """Get bounds of a GeoDataFrame as (minx, miny, maxx, maxy)."""
    return tuple(gdf.total_bounds)


def check_bounds_geographic(
    gdf: gpd.GeoDataFrame,
    lon_min: float = -180.0,
    lon_max: float = 180.0,
    lat_min: float = -90.0,
    lat_max: float = 90.0,
    context: str = "",
) -> bool:
    """
    Check that EPSG:4326 bounds fall inside a lon/lat window.
    
    Catches swapped lat/lon columns and projected coordinates that were
    labeled as EPSG:4326.
    
    Raises:
        BoundsError: If bounds are outside the window
    """
    minx, miny, maxx, maxy = get_bounds(gdf)
    
    errors = []
    if minx < lon_min or maxx > lon_max:
        errors.append(f"Longitude out of range: [{minx}, {maxx}] not in [{lon_min}, {lon_max}]")
    if miny < lat_min or maxy > lat_max:
        errors.append(f"Latitude out of range: [{miny}, {maxy}] not in [{lat_min}, {lat_max}]")
    
    if errors:
        msg = "EPSG:4326 bounds check failed: " + "; ".join(errors)
        if context:
            msg = f"{msg} ({context})"
        raise BoundsError(msg)
    
    return True


def validate_bounds(
    gdf: gpd.GeoDataFrame,
    bounds_config: Optional[dict] = None,
    context: str = "",
) -> bool:
    """
    Validate bounds based on the GeoDataFrame's CRS.
    
    EPSG:4326 layers are checked against `bounds_config` (lon_min, lon_max,
    lat_min, lat_max); any other CRS only needs finite bounds.
    
    Raises:
        CRSError: If CRS is None
        BoundsError: If bounds are outside expected range
    """
    assert_crs_not_none(gdf, context)
    
    if get_crs_epsg(gdf) == 4326:
        return check_bounds_geographic(gdf, context=context, **(bounds_config or {}))
    
    bounds = get_bounds(gdf)
    if not all(np.isfinite(bounds)):
        raise BoundsError(f"Non-finite bounds: {bounds} ({context})")
    return True


# =============================================================================
# Geometry Validation
# =============================================================================

def repair_invalid_geometries(gdf: gpd.GeoDataFrame, logger=None) -> gpd.GeoDataFrame:
    """Run make_valid on invalid geometries, leaving valid ones untouched."""
    invalid_mask = ~gdf.geometry.is_valid
    if not invalid_mask.any():
        return gdf
    
    if logger:
        logger.warning(f"Repairing {int(invalid_mask.sum())} invalid geometries")
    
    gdf = gdf.copy()
    gdf.loc[invalid_mask, "geometry"] = gdf.loc[invalid_mask, "geometry"].make_valid()
    return gdf


def assert_all_valid(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """
    Assert all geometries are valid and non-empty.
    
    Raises:
        ValueError: If any geometry is invalid or empty
    """
    bad_mask = ~gdf.geometry.is_valid | gdf.geometry.is_empty
    if bad_mask.any():
        msg = f"{int(bad_mask.sum())} invalid or empty geometries found"
        if context:
            msg = f"{msg} ({context})"
        raise ValueError(msg)


# =============================================================================
# Aggregate Invariants
# =============================================================================

def check_aggregate_invariants(
    aggregates: pd.DataFrame,
    n_clean_incidents: Optional[int] = None,
    logger=None,
) -> dict:
    """
    Check the counting invariants of a district aggregate table.
    
    - compliant_count + non_compliant_count == response_count
    - non_comp_prop == non_compliant_count / response_count where
      response_count > 0, NaN elsewhere, and within [0, 1]
    - sum(response_count) == number of cleaned incidents (when given)
    
    Returns:
        Dictionary of check name -> passed
    
    Raises:
        InvariantError: If any check fails
    """
    counts = aggregates["response_count"].astype("float64")
    compliant = aggregates["compliant_count"].astype("float64")
    non_compliant = aggregates["non_compliant_count"].astype("float64")
    prop = aggregates["non_comp_prop"].astype("float64")
    has_incidents = counts > 0
    
    checks = {
        "counts_add_up": bool((compliant + non_compliant == counts).all()),
        "prop_matches_counts": bool(
            np.allclose(prop[has_incidents], (non_compliant / counts)[has_incidents])
        ),
        "prop_nan_without_incidents": bool(prop[~has_incidents].isna().all()),
        "prop_in_unit_interval": bool(prop.dropna().between(0, 1).all()),
    }
    
    if n_clean_incidents is not None:
        checks["total_matches_incidents"] = int(counts.sum()) == int(n_clean_incidents)
    
    failed = [name for name, ok in checks.items() if not ok]
    
    if logger:
        logger.info(f"Aggregate QA {'FAILED' if failed else 'PASSED'}", extra={"checks": checks})
    
    if failed:
        raise InvariantError(f"District aggregate invariants failed: {failed}")
    
    return checks


# =============================================================================
# Data Quality Summaries
# =============================================================================

def compute_na_rates(df: pd.DataFrame) -> dict[str, float]:
    """Compute NA rates (0-1) for all columns in a DataFrame."""
    if len(df) == 0:
        return {col: 0.0 for col in df.columns}
    return {col: float(rate) for col, rate in (df.isna().sum() / len(df)).items()}


def compute_coverage_stats(
    df: pd.DataFrame,
    value_column: str,
) -> dict:
    """Compute coverage statistics (count, missing, min/max/mean) for a column."""
    values = df[value_column]
    has_values = bool(values.notna().any())
    return {
        "n_total": len(values),
        "n_valid": int(values.notna().sum()),
        "n_missing": int(values.isna().sum()),
        "coverage_rate": float(values.notna().sum() / len(values)) if len(values) else 0.0,
        "min": float(values.min()) if has_values else None,
        "max": float(values.max()) if has_values else None,
        "mean": float(values.mean()) if has_values else None,
    }
