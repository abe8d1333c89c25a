"""
Bivariate (income x response time) classification.

Each variable is cut into tertiles using quantile breakpoints computed over
the districts where it is known. The two class indices combine into one of
n_classes ** 2 bivariate classes:

    bi_class = (response_class - 1) * n_classes + (income_class - 1)

so bi_class 0 is low income / fast response and 8 is high income / slow
response. Districts missing either variable get no class and are drawn in
NULL_COLOR.
"""

from typing import Optional

import numpy as np
import pandas as pd

from ems_district.schemas import DISTRICT_ID, validate_merge

DEFAULT_N_CLASSES = 3
NULL_COLOR = "#d9d9d9"

# Rows: response-time class (fast -> slow); columns: income class (low -> high)
BIVARIATE_PALETTE = [
    ["#e8e8e8", "#b5c0da", "#6c83b5"],
    ["#b8d6be", "#90b2b3", "#567994"],
    ["#73ae80", "#5a9178", "#2a5a5b"],
]


def quantile_breaks(values: pd.Series, n_classes: int = DEFAULT_N_CLASSES) -> np.ndarray:
    """
    Quantile breakpoints (n_classes + 1 values, min to max) over non-null values.
    
    Returns an all-NaN array when there is nothing to classify.
    """
    known = pd.to_numeric(values, errors="coerce").dropna().to_numpy(dtype="float64")
    if len(known) == 0:
        return np.full(n_classes + 1, np.nan)
    return np.quantile(known, np.linspace(0, 1, n_classes + 1))


def classify_by_breaks(values: pd.Series, breaks: np.ndarray) -> pd.Series:
    """
    Class index 1..n for each value; inner breakpoints are right-closed.
    
    Nulls stay <NA>.
    """
    numeric = pd.to_numeric(values, errors="coerce").astype("float64")
    classes = pd.Series(pd.NA, index=numeric.index, dtype="Int64")
    known = numeric.notna()
    if known.any() and not np.isnan(breaks).any():
        idx = np.digitize(numeric[known].to_numpy(), breaks[1:-1], right=True) + 1
        classes.loc[known] = idx
    return classes


def classify_bivariate(
    districts: pd.DataFrame,
    x_col: str = "median_household_income",
    y_col: str = "avg_response_time",
    n_classes: int = DEFAULT_N_CLASSES,
    logger=None,
) -> pd.DataFrame:
    """
    Add income_class, response_class, bi_class, bi_label and bi_color.
    
    Returns:
        Copy of districts with the classification columns
    """
    df = districts.copy()
    x_breaks = quantile_breaks(df[x_col], n_classes)
    y_breaks = quantile_breaks(df[y_col], n_classes)
    
    df["income_class"] = classify_by_breaks(df[x_col], x_breaks)
    df["response_class"] = classify_by_breaks(df[y_col], y_breaks)
    
    both = df["income_class"].notna() & df["response_class"].notna()
    bi_class = (df["response_class"] - 1) * n_classes + (df["income_class"] - 1)
    df["bi_class"] = bi_class.where(both).astype("Int64")
    df["bi_label"] = [
        f"{int(x)}-{int(y)}" if ok else None
        for x, y, ok in zip(df["income_class"], df["response_class"], both)
    ]
    df["bi_color"] = [bivariate_color(c, n_classes) for c in df["bi_class"]]
    
    if logger:
        logger.info(
            f"Bivariate classes: {int(both.sum())} classified, {int((~both).sum())} unclassified",
            extra={
                "x_breaks": x_breaks.tolist(),
                "y_breaks": y_breaks.tolist(),
                "class_counts": {int(k): int(v) for k, v in df["bi_class"].value_counts().sort_index().items()},
            },
        )
    
    return df


def bivariate_color(bi_class, n_classes: int = DEFAULT_N_CLASSES) -> str:
    """Palette color for a bivariate class; NULL_COLOR for <NA>."""
    if pd.isna(bi_class):
        return NULL_COLOR
    if n_classes != len(BIVARIATE_PALETTE):
        raise ValueError(f"Palette only defined for {len(BIVARIATE_PALETTE)} classes")
    row, col = divmod(int(bi_class), n_classes)
    return BIVARIATE_PALETTE[row][col]


def join_for_bivariate(
    demographics: pd.DataFrame,
    aggregates: pd.DataFrame,
    columns: Optional[list] = None,
) -> pd.DataFrame:
    """
    Attach aggregate columns to the demographic district table.
    
    Keeps the demographic table's geometry and centroids; districts without
    aggregates keep NaN values.
    """
    if columns is None:
        columns = ["avg_response_time", "response_count", "non_comp_prop"]
    return validate_merge(
        demographics,
        aggregates[[DISTRICT_ID] + columns],
        how="left",
        context="aggregates -> demographics",
    )
