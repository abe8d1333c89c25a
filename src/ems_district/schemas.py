"""
Schema validation for canonical tables.

Canonical tables are validated (columns, dtypes, NA rules, ranges) when they
are built and when they are read back by a later stage. Schema drift is an
immediate local failure.

`district_id` is always pandas nullable Int64.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Set, Union

import geopandas as gpd
import numpy as np
import pandas as pd

DISTRICT_ID = "district_id"


# =============================================================================
# Schema Definition
# =============================================================================

@dataclass
class ColumnSpec:
    """Specification for a single column."""
    name: str
    dtype: Optional[str] = None  # "Int64", "float64", "bool", "geometry"
    nullable: bool = True
    unique: bool = False
    allowed_values: Optional[Set[Any]] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None


@dataclass
class Schema:
    """Schema specification for a DataFrame or GeoDataFrame."""
    name: str
    columns: List[ColumnSpec]
    required_columns: List[str] = field(default_factory=list)
    min_rows: int = 0
    
    def __post_init__(self):
        if not self.required_columns:
            self.required_columns = [c.name for c in self.columns if not c.nullable]


class SchemaError(Exception):
    """Raised when schema validation fails."""
    pass


# =============================================================================
# Canonical Schemas
# =============================================================================

# Incident records after cleaning
INCIDENT_SCHEMA = Schema(
    name="incidents",
    columns=[
        ColumnSpec(DISTRICT_ID, dtype="Int64", nullable=False),
        ColumnSpec("travel_time_s", dtype="float64", nullable=False),
        ColumnSpec("compliant", dtype="bool", nullable=False),
    ],
)

DISTRICT_GEOMETRY_SCHEMA = Schema(
    name="district_geometry",
    columns=[
        ColumnSpec(DISTRICT_ID, dtype="Int64", nullable=False, unique=True),
        ColumnSpec("geometry", dtype="geometry", nullable=False),
    ],
    min_rows=1,
)

DISTRICT_AGGREGATE_SCHEMA = Schema(
    name="district_aggregates",
    columns=[
        ColumnSpec(DISTRICT_ID, dtype="Int64", nullable=False, unique=True),
        ColumnSpec("response_count", dtype="Int64", nullable=False, min_value=0),
        ColumnSpec("avg_response_time", dtype="float64", nullable=True, min_value=0),
        ColumnSpec("compliant_count", dtype="Int64", nullable=False, min_value=0),
        ColumnSpec("non_compliant_count", dtype="Int64", nullable=False, min_value=0),
        ColumnSpec("non_comp_prop", dtype="float64", nullable=True, min_value=0, max_value=1),
        ColumnSpec("compliance_rate", dtype="float64", nullable=True, min_value=0, max_value=1),
        ColumnSpec("centroid_x", dtype="float64", nullable=False),
        ColumnSpec("centroid_y", dtype="float64", nullable=False),
    ],
    min_rows=1,
)

DEMOGRAPHIC_SCHEMA = Schema(
    name="demographics",
    columns=[
        ColumnSpec(DISTRICT_ID, dtype="Int64", nullable=False, unique=True),
        ColumnSpec("population", dtype="float64", nullable=True, min_value=0),
        ColumnSpec("prop_age_85_plus", dtype="float64", nullable=True, min_value=0, max_value=1),
        ColumnSpec("median_household_income", dtype="float64", nullable=True, min_value=0),
    ],
    min_rows=1,
)

FIRE_STATION_SCHEMA = Schema(
    name="fire_stations",
    columns=[
        ColumnSpec("station_label", nullable=True),
        ColumnSpec("geometry", dtype="geometry", nullable=False),
    ],
)

DISTRICT_CLUSTER_SCHEMA = Schema(
    name="district_clusters",
    columns=[
        ColumnSpec(DISTRICT_ID, dtype="Int64", nullable=False, unique=True),
        ColumnSpec("cluster", dtype="Int64", nullable=True, min_value=1),
    ],
    min_rows=1,
)


# =============================================================================
# Validation Functions
# =============================================================================

def validate_column(
    df: pd.DataFrame,
    spec: ColumnSpec,
) -> List[str]:
    """
    Validate a single column against its specification.
    
    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    col_name = spec.name
    
    if spec.dtype == "geometry":
        if not isinstance(df, gpd.GeoDataFrame):
            return [f"Expected GeoDataFrame for geometry column {col_name}"]
        col = df.geometry
    elif col_name not in df.columns:
        return [f"Missing column: {col_name}"]
    else:
        col = df[col_name]
    
    if spec.dtype == "Int64" and not pd.api.types.is_integer_dtype(col):
        errors.append(f"Column {col_name}: expected Int64, got {col.dtype}")
    elif spec.dtype == "float64" and not pd.api.types.is_float_dtype(col):
        errors.append(f"Column {col_name}: expected float64, got {col.dtype}")
    elif spec.dtype == "bool" and not pd.api.types.is_bool_dtype(col):
        errors.append(f"Column {col_name}: expected bool, got {col.dtype}")
    
    if not spec.nullable and col.isna().any():
        errors.append(f"Column {col_name}: {col.isna().sum()} NA values not allowed")
    
    if spec.unique and col.duplicated().any():
        errors.append(f"Column {col_name}: {col.duplicated().sum()} duplicate values not allowed")
    
    if spec.allowed_values is not None:
        invalid = ~col.isin(spec.allowed_values) & col.notna()
        if invalid.any():
            errors.append(f"Column {col_name}: invalid values {list(col[invalid].unique()[:5])}")
    
    if spec.min_value is not None:
        if ((col < spec.min_value) & col.notna()).any():
            errors.append(f"Column {col_name}: values below min {spec.min_value}")
    
    if spec.max_value is not None:
        if ((col > spec.max_value) & col.notna()).any():
            errors.append(f"Column {col_name}: values above max {spec.max_value}")
    
    return errors


def validate_schema(
    df: Union[pd.DataFrame, gpd.GeoDataFrame],
    schema: Schema,
    context: str = "",
    raise_on_error: bool = True,
) -> List[str]:
    """
    Validate a DataFrame against a schema.
    
    Args:
        df: DataFrame to validate
        schema: Schema specification
        context: Optional context for error messages
        raise_on_error: If True, raise SchemaError on validation failure
    
    Returns:
        List of error messages (empty if valid)
    
    Raises:
        SchemaError: If raise_on_error=True and validation fails
    """
    errors = []
    ctx = f" ({context})" if context else ""
    
    if len(df) < schema.min_rows:
        errors.append(f"Expected at least {schema.min_rows} rows, got {len(df)}{ctx}")
    
    for col_spec in schema.columns:
        errors.extend(validate_column(df, col_spec))
    
    if errors and raise_on_error:
        raise SchemaError(f"Schema validation failed for '{schema.name}':\n" + "\n".join(errors))
    
    return errors


def ensure_district_id_dtype(df: pd.DataFrame) -> pd.DataFrame:
    """
    Ensure the district_id column is Int64.
    
    Numeric strings such as "3" or "3.0" are accepted. Fractional values
    ("3.7") and anything non-numeric become <NA>; they are never rounded
    into a neighbouring district.
    """
    if DISTRICT_ID in df.columns:
        df = df.copy()
        coerced = pd.to_numeric(df[DISTRICT_ID], errors="coerce")
        numeric = pd.Series(coerced.to_numpy(dtype="float64", na_value=np.nan), index=df.index)
        whole = numeric.where(np.isfinite(numeric) & (numeric == np.floor(numeric)))
        df[DISTRICT_ID] = whole.astype("Int64")
    return df


def validate_district_id(df: pd.DataFrame, context: str = "") -> None:
    """
    Validate that district_id is present, Int64 and complete.
    
    Raises:
        SchemaError: If district_id validation fails
    """
    if DISTRICT_ID not in df.columns:
        raise SchemaError(f"Missing {DISTRICT_ID} column ({context})")
    
    col = df[DISTRICT_ID]
    if col.dtype != "Int64":
        raise SchemaError(
            f"{DISTRICT_ID} must be Int64, got {col.dtype} ({context}). "
            f"Convert with ensure_district_id_dtype()"
        )
    
    if col.isna().any():
        raise SchemaError(f"{DISTRICT_ID} has {col.isna().sum()} NA values ({context})")


# =============================================================================
# Merge Validation
# =============================================================================

def validate_merge(
    left: pd.DataFrame,
    right: pd.DataFrame,
    on: Union[str, List[str]] = DISTRICT_ID,
    how: str = "left",
    validate: str = "one_to_one",
    context: str = "",
) -> pd.DataFrame:
    """
    Perform a merge with pandas key validation.
    
    A GeoDataFrame on the left keeps its geometry and CRS.
    
    Raises:
        SchemaError: If the merge keys violate `validate`
    """
    try:
        return left.merge(right, on=on, how=how, validate=validate)
    except pd.errors.MergeError as e:
        raise SchemaError(f"Merge validation failed ({context}): {e}") from e
