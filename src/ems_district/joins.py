"""
Hardened point -> polygon joins.

Fire stations are assigned to council districts with:
- within first, then nearest with a max distance
- logged distance distribution
- stations outside every district kept with a <NA> district (warning)
- optional hard failure when the unmatched share exceeds a threshold
"""

from typing import Dict, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
from pyproj import CRS

from ems_district.qa import assert_crs_not_none, safe_reproject
from ems_district.schemas import DISTRICT_ID, validate_merge

DEFAULT_MAX_DISTANCE_M = 500.0
# Share of points allowed to stay unmatched; 1.0 never fails
DEFAULT_MAX_UNMATCHED_RATE = 1.0


class SpatialJoinError(Exception):
    """Raised when spatial join fails validation."""
    pass


def spatial_join_points_to_polygons(
    points: gpd.GeoDataFrame,
    polygons: gpd.GeoDataFrame,
    projected_crs: Union[int, CRS],
    polygon_id_col: str = DISTRICT_ID,
    max_distance: float = DEFAULT_MAX_DISTANCE_M,
    max_unmatched_rate: float = DEFAULT_MAX_UNMATCHED_RATE,
) -> Tuple[gpd.GeoDataFrame, Dict]:
    """
    Join points to the polygon that contains them.
    
    1. Assert CRS and reproject both layers to projected_crs
    2. sjoin(within) first
    3. Unmatched -> sjoin_nearest limited to max_distance
    4. Fail if the unmatched share exceeds max_unmatched_rate
    
    Points keep their original CRS and index order in the result; points
    that stay unmatched get a NA polygon id.
    
    Returns:
        Tuple of (points with polygon_id_col, stats dictionary)
    
    Raises:
        SpatialJoinError: If too many points cannot be matched
    """
    assert_crs_not_none(points, "points input")
    assert_crs_not_none(polygons, "polygons input")
    
    points_proj = safe_reproject(points, projected_crs, "points")
    polygons_proj = safe_reproject(polygons, projected_crs, "polygons")[[polygon_id_col, "geometry"]]
    
    stats = {
        "total_points": len(points_proj),
        "matched_within": 0,
        "matched_nearest": 0,
        "unmatched": 0,
        "max_distance_used": 0.0,
        "mean_distance": None,
        "p95_distance": None,
    }
    
    within = gpd.sjoin(points_proj, polygons_proj, how="left", predicate="within")
    # A point on a shared border matches both polygons; keep the first
    within = within[~within.index.duplicated(keep="first")]
    assigned = within[polygon_id_col].astype("Int64")
    stats["matched_within"] = int(assigned.notna().sum())
    
    unmatched_mask = assigned.isna()
    if unmatched_mask.any():
        nearest = gpd.sjoin_nearest(
            points_proj.loc[unmatched_mask[unmatched_mask].index],
            polygons_proj,
            how="left",
            max_distance=max_distance,
            distance_col="_join_distance",
        )
        nearest = nearest[~nearest.index.duplicated(keep="first")]
        
        distances = nearest["_join_distance"].dropna()
        if len(distances) > 0:
            stats["max_distance_used"] = float(distances.max())
            stats["mean_distance"] = float(distances.mean())
            stats["p95_distance"] = float(np.percentile(distances, 95))
        
        nearest_ids = nearest[polygon_id_col].astype("Int64")
        stats["matched_nearest"] = int(nearest_ids.notna().sum())
        assigned.loc[nearest_ids.index] = nearest_ids
    
    stats["unmatched"] = int(assigned.isna().sum())
    
    if stats["total_points"]:
        unmatched_rate = stats["unmatched"] / stats["total_points"]
        if unmatched_rate > max_unmatched_rate:
            raise SpatialJoinError(
                f"Too many unmatched points: {stats['unmatched']} ({unmatched_rate:.1%}) "
                f"beyond {max_distance} CRS units"
            )
    
    result = points.copy()
    result[polygon_id_col] = assigned.reindex(points.index).astype("Int64")
    return result, stats


def count_points_per_polygon(
    points: pd.DataFrame,
    polygons: pd.DataFrame,
    polygon_id_col: str = DISTRICT_ID,
    count_col: str = "station_count",
) -> pd.DataFrame:
    """
    Count joined points per polygon, with 0 for polygons without points.
    
    Returns:
        DataFrame with polygon_id_col and count_col, one row per polygon
    """
    counts = points.groupby(polygon_id_col).size().rename(count_col).reset_index()
    counts[polygon_id_col] = counts[polygon_id_col].astype("Int64")
    
    result = polygons[[polygon_id_col]].merge(counts, on=polygon_id_col, how="left")
    result[count_col] = result[count_col].fillna(0).astype("Int64")
    return result


def attach_station_counts(
    districts: gpd.GeoDataFrame,
    stations: gpd.GeoDataFrame,
    projected_crs: Union[int, CRS],
    max_distance: float = DEFAULT_MAX_DISTANCE_M,
    max_unmatched_rate: float = DEFAULT_MAX_UNMATCHED_RATE,
    logger=None,
) -> Tuple[gpd.GeoDataFrame, gpd.GeoDataFrame, Dict]:
    """
    Assign fire stations to districts and add `station_count` to districts.
    
    Stations without a usable point are dropped. Stations outside every
    district (beyond max_distance) keep a <NA> district_id and are still
    returned for the map overlay; the district table is never altered
    beyond the added count column.
    
    Returns:
        Tuple of (districts with station_count, joined stations, join stats)
    """
    usable = stations.geometry.notna() & ~stations.geometry.is_empty
    if logger and not usable.all():
        logger.warning(f"Dropping {int((~usable).sum())} fire stations without a location")
    stations = stations.loc[usable]
    
    joined, stats = spatial_join_points_to_polygons(
        stations,
        districts,
        projected_crs,
        max_distance=max_distance,
        max_unmatched_rate=max_unmatched_rate,
    )
    
    outside = joined[DISTRICT_ID].isna()
    if logger and outside.any():
        labels = joined.loc[outside, "station_label"].tolist() if "station_label" in joined.columns else []
        logger.warning(
            f"{int(outside.sum())} fire stations lie outside every district",
            extra={"stations": [str(s) for s in labels]},
        )
    
    counts = count_points_per_polygon(joined, districts)
    result = validate_merge(districts, counts, context="station counts")
    return result, joined, stats


def log_join_stats(stats: Dict, logger=None) -> None:
    """Log spatial join statistics (prints when no logger is given)."""
    msg = (
        f"Spatial join stats: "
        f"{stats['total_points']} total, "
        f"{stats['matched_within']} within, "
        f"{stats['matched_nearest']} nearest, "
        f"{stats['unmatched']} unmatched"
    )
    
    if stats.get("max_distance_used"):
        msg += f" | max_dist={stats['max_distance_used']:.1f}"
    if stats.get("mean_distance"):
        msg += f", mean_dist={stats['mean_distance']:.1f}"
    if stats.get("p95_distance"):
        msg += f", p95_dist={stats['p95_distance']:.1f}"
    
    if logger:
        logger.info(msg)
        logger.record("station_join", stats)
    else:
        print(msg)
