"""
Cleaning and per-district aggregation of EMS incidents.

Pipeline order:
1. clean_incidents: drop rows without a district or travel time, flag
   compliance (travel time <= goal).
2. aggregate_by_district: one row per district with counts, mean travel
   time and compliance shares.
3. join_aggregates_to_districts: left join onto district geometry so every
   district keeps its polygon, with zero counts where no incident landed.
4. join_demographics_to_districts: same key, demographic attributes.

Centroids are computed in a projected CRS and carried as centroid_x /
centroid_y; the geometry itself stays in EPSG:4326.
"""

from typing import Dict, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
from pyproj import CRS

from ems_district.qa import assert_all_valid, repair_invalid_geometries, safe_reproject
from ems_district.schemas import (
    DEMOGRAPHIC_SCHEMA,
    DISTRICT_GEOMETRY_SCHEMA,
    DISTRICT_ID,
    INCIDENT_SCHEMA,
    SchemaError,
    ensure_district_id_dtype,
    validate_merge,
    validate_schema,
)

COMPLIANCE_GOAL_SECONDS = 600

COUNT_COLUMNS = ["response_count", "compliant_count", "non_compliant_count"]
DEMOGRAPHIC_COLUMNS = ["population", "prop_age_85_plus", "median_household_income"]


# =============================================================================
# Districts
# =============================================================================

def prepare_districts(districts: gpd.GeoDataFrame, logger=None) -> gpd.GeoDataFrame:
    """Normalize the district key, repair geometries and validate the layer."""
    districts = ensure_district_id_dtype(districts)
    districts = repair_invalid_geometries(districts, logger)
    assert_all_valid(districts, "districts")
    validate_schema(districts, DISTRICT_GEOMETRY_SCHEMA, "districts")
    return districts.sort_values(DISTRICT_ID).reset_index(drop=True)


def add_centroids(
    districts: gpd.GeoDataFrame,
    projected_crs: Union[int, CRS],
) -> gpd.GeoDataFrame:
    """
    Attach polygon centroids in projected (planar) coordinates.
    
    Adds centroid_x and centroid_y in the units of projected_crs.
    """
    projected = safe_reproject(districts, projected_crs, "district centroids")
    centroids = projected.geometry.centroid
    
    result = districts.copy()
    result["centroid_x"] = centroids.x.to_numpy(dtype="float64")
    result["centroid_y"] = centroids.y.to_numpy(dtype="float64")
    return result


# =============================================================================
# Incidents
# =============================================================================

def clean_incidents(
    incidents: pd.DataFrame,
    goal_seconds: float = COMPLIANCE_GOAL_SECONDS,
    logger=None,
) -> Tuple[pd.DataFrame, Dict[str, object]]:
    """
    Drop incomplete incidents and derive the compliance flag.
    
    Rows are dropped when district_id or travel_time_s is missing (or not
    numeric). Retained rows get `compliant = travel_time_s <= goal_seconds`.
    
    Returns:
        Tuple of (cleaned incidents, cleaning report)
    """
    missing_cols = {DISTRICT_ID, "travel_time_s"} - set(incidents.columns)
    if missing_cols:
        raise SchemaError(f"Incident table missing columns: {sorted(missing_cols)}")

    df = ensure_district_id_dtype(incidents)
    df["travel_time_s"] = pd.to_numeric(df["travel_time_s"], errors="coerce").astype("float64")
    
    missing_district = df[DISTRICT_ID].isna()
    missing_time = df["travel_time_s"].isna()
    keep = ~(missing_district | missing_time)
    
    cleaned = df.loc[keep].copy()
    cleaned["compliant"] = cleaned["travel_time_s"] <= goal_seconds
    cleaned = cleaned.reset_index(drop=True)
    
    n_raw = len(df)
    report = {
        "n_raw": n_raw,
        "n_clean": len(cleaned),
        "n_dropped": int((~keep).sum()),
        "n_missing_district": int(missing_district.sum()),
        "n_missing_travel_time": int(missing_time.sum()),
        "drop_rate": float((~keep).sum() / n_raw) if n_raw else 0.0,
        "goal_seconds": goal_seconds,
    }
    
    if logger:
        logger.info(
            f"Cleaned incidents: kept {report['n_clean']:,} / {n_raw:,} "
            f"({report['n_missing_district']:,} missing district, "
            f"{report['n_missing_travel_time']:,} missing travel time)"
        )
        if report["n_clean"] == 0:
            logger.warning("No complete incidents left; every district gets zero counts")
    
    validate_schema(cleaned, INCIDENT_SCHEMA, "cleaned incidents")
    return cleaned, report


def compute_proportions(df: pd.DataFrame) -> pd.DataFrame:
    """
    Derive non_compliant_count, non_comp_prop and compliance_rate.
    
    Both shares are NaN for districts with response_count == 0.
    """
    df = df.copy()
    counts = df["response_count"].astype("float64")
    compliant = df["compliant_count"].astype("float64")
    has_incidents = counts > 0
    
    df["non_compliant_count"] = (df["response_count"] - df["compliant_count"]).astype("Int64")
    non_compliant = df["non_compliant_count"].astype("float64")
    
    df["non_comp_prop"] = np.where(has_incidents, non_compliant / counts.where(has_incidents), np.nan)
    df["compliance_rate"] = np.where(has_incidents, compliant / counts.where(has_incidents), np.nan)
    return df


def aggregate_by_district(incidents: pd.DataFrame) -> pd.DataFrame:
    """
    Group cleaned incidents by district.
    
    Returns:
        DataFrame with district_id, response_count, avg_response_time,
        compliant_count, non_compliant_count, non_comp_prop, compliance_rate
    """
    grouped = incidents.groupby(DISTRICT_ID, sort=True).agg(
        response_count=("travel_time_s", "size"),
        avg_response_time=("travel_time_s", "mean"),
        compliant_count=("compliant", "sum"),
    ).reset_index()
    
    grouped[DISTRICT_ID] = grouped[DISTRICT_ID].astype("Int64")
    grouped["response_count"] = grouped["response_count"].astype("Int64")
    grouped["compliant_count"] = grouped["compliant_count"].astype("Int64")
    grouped["avg_response_time"] = grouped["avg_response_time"].astype("float64")
    
    return compute_proportions(grouped)


def join_aggregates_to_districts(
    districts: gpd.GeoDataFrame,
    aggregates: pd.DataFrame,
    logger=None,
) -> gpd.GeoDataFrame:
    """
    Left join district aggregates onto district geometry.
    
    Districts without incidents keep their geometry with zero counts and
    NaN averages/shares. Aggregate rows whose district has no polygon are
    reported and dropped.
    """
    unmatched = sorted(set(aggregates[DISTRICT_ID].dropna()) - set(districts[DISTRICT_ID].dropna()))
    if unmatched and logger:
        logger.warning(
            f"{len(unmatched)} aggregated districts have no geometry: {unmatched}",
            extra={"unmatched_district_ids": [int(d) for d in unmatched]},
        )
    
    joined = validate_merge(
        districts,
        aggregates[[DISTRICT_ID, "response_count", "avg_response_time", "compliant_count"]],
        how="left",
        context="aggregates -> districts",
    )
    
    no_incidents = joined["response_count"].isna()
    if no_incidents.any() and logger:
        ids = [int(d) for d in joined.loc[no_incidents, DISTRICT_ID]]
        logger.warning(f"{len(ids)} districts have no incidents: {ids}")
    
    joined["response_count"] = joined["response_count"].fillna(0).astype("Int64")
    joined["compliant_count"] = joined["compliant_count"].fillna(0).astype("Int64")
    joined["avg_response_time"] = joined["avg_response_time"].astype("float64")
    
    return gpd.GeoDataFrame(compute_proportions(joined), geometry="geometry", crs=districts.crs)


# =============================================================================
# Demographics
# =============================================================================

def prepare_demographics(demographics: pd.DataFrame) -> pd.DataFrame:
    """Normalize key and numeric dtypes of the demographic table."""
    df = ensure_district_id_dtype(demographics)
    for col in DEMOGRAPHIC_COLUMNS:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce").astype("float64")
    df = df.dropna(subset=[DISTRICT_ID])
    validate_schema(df, DEMOGRAPHIC_SCHEMA, "demographics")
    return df.reset_index(drop=True)


def join_demographics_to_districts(
    districts: gpd.GeoDataFrame,
    demographics: pd.DataFrame,
    logger=None,
) -> gpd.GeoDataFrame:
    """
    Left join demographic attributes onto district geometry (with centroids).
    
    Districts absent from the demographic table keep NaN attributes.
    """
    keep_cols = [DISTRICT_ID] + [c for c in DEMOGRAPHIC_COLUMNS if c in demographics.columns]
    base_cols = [c for c in [DISTRICT_ID, "centroid_x", "centroid_y", "geometry"] if c in districts.columns]
    
    joined = validate_merge(
        districts[base_cols],
        demographics[keep_cols],
        how="left",
        context="demographics -> districts",
    )
    
    missing = joined["population"].isna() if "population" in joined.columns else pd.Series(True, index=joined.index)
    if missing.any() and logger:
        logger.warning(f"{int(missing.sum())} districts have no demographic record")
    
    return gpd.GeoDataFrame(joined, geometry="geometry", crs=districts.crs)


# =============================================================================
# Orchestration
# =============================================================================

def build_district_aggregates(
    districts: gpd.GeoDataFrame,
    incidents: pd.DataFrame,
    projected_crs: Union[int, CRS],
    goal_seconds: float = COMPLIANCE_GOAL_SECONDS,
    logger=None,
) -> Tuple[gpd.GeoDataFrame, Dict[str, object]]:
    """
    Clean incidents, aggregate them and join onto districts with centroids.
    
    Returns:
        Tuple of (district aggregate GeoDataFrame, cleaning report)
    """
    cleaned, report = clean_incidents(incidents, goal_seconds, logger)
    aggregates = aggregate_by_district(cleaned)
    
    district_layer = add_centroids(prepare_districts(districts, logger), projected_crs)
    joined = join_aggregates_to_districts(district_layer, aggregates, logger)
    
    report["n_districts"] = len(joined)
    report["n_districts_without_incidents"] = int((joined["response_count"] == 0).sum())
    report["n_incidents_in_unmapped_districts"] = int(
        cleaned.loc[~cleaned[DISTRICT_ID].isin(joined[DISTRICT_ID]), DISTRICT_ID].size
    )
    return joined, report
