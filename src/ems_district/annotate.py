"""Min/Max markers for choropleth maps."""

import pandas as pd

from ems_district.schemas import DISTRICT_ID

MARKER_COLUMNS = [DISTRICT_ID, "metric", "value", "label", "centroid_x", "centroid_y"]


def min_max_markers(districts: pd.DataFrame, metric: str) -> pd.DataFrame:
    """
    Locate the districts with the largest and smallest value of `metric`.
    
    NaN values are skipped and ties go to the first row in table order.
    
    Returns:
        Two-row DataFrame (Max first, then Min) with district_id, metric,
        value, label and the district's centroid coordinates
    
    Raises:
        KeyError: If the metric column is missing
        ValueError: If the metric has no non-null value
    """
    if metric not in districts.columns:
        raise KeyError(f"Unknown metric column: {metric}")
    
    values = pd.to_numeric(districts[metric], errors="coerce").astype("float64")
    if values.notna().sum() == 0:
        raise ValueError(f"Metric {metric!r} has no non-null values")
    
    rows = []
    for label, idx in (("Max", values.idxmax()), ("Min", values.idxmin())):
        row = districts.loc[idx]
        rows.append({
            DISTRICT_ID: row[DISTRICT_ID],
            "metric": metric,
            "value": float(values.loc[idx]),
            "label": label,
            "centroid_x": float(row["centroid_x"]),
            "centroid_y": float(row["centroid_y"]),
        })
    
    markers = pd.DataFrame(rows, columns=MARKER_COLUMNS)
    markers[DISTRICT_ID] = markers[DISTRICT_ID].astype("Int64")
    return markers
