"""
Shared synthetic fixtures: a 3x3 grid of square council districts.

District ids run 1..9 row by row from the south-west corner. Cells are
0.02 degrees wide, placed in UTM zone 14N so EPSG:32614 is a valid planar
CRS for every test.
"""

import matplotlib

matplotlib.use("Agg")

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import box

PROJECTED_EPSG = 32614
ORIGIN_LON = -97.80
ORIGIN_LAT = 30.20
CELL_DEG = 0.02


def make_grid_districts(n_rows: int = 3, n_cols: int = 3) -> gpd.GeoDataFrame:
    records = []
    district_id = 1
    for row in range(n_rows):
        for col in range(n_cols):
            x0 = ORIGIN_LON + col * CELL_DEG
            y0 = ORIGIN_LAT + row * CELL_DEG
            records.append({
                "district_id": district_id,
                "geometry": box(x0, y0, x0 + CELL_DEG, y0 + CELL_DEG),
            })
            district_id += 1
    gdf = gpd.GeoDataFrame(records, geometry="geometry", crs=4326)
    gdf["district_id"] = gdf["district_id"].astype("Int64")
    return gdf


@pytest.fixture
def grid_districts():
    return make_grid_districts()


@pytest.fixture
def incidents():
    """
    Incidents for districts 1-8 (district 9 has none), plus incomplete rows.
    
    District d has 10 * d complete incidents; incidents i < d are slow (900 s),
    the rest fast (300 s).
    """
    rows = []
    for d in range(1, 9):
        for i in range(10 * d):
            rows.append({"district_id": d, "travel_time_s": 900.0 if i < d else 300.0})
    rows += [
        {"district_id": None, "travel_time_s": 200.0},
        {"district_id": 3, "travel_time_s": None},
        {"district_id": 4, "travel_time_s": "not-a-number"},
    ]
    return pd.DataFrame(rows)


@pytest.fixture
def demographics():
    return pd.DataFrame({
        "district_id": list(range(1, 10)),
        "population": [90000.0 + 1000 * d for d in range(9)],
        "prop_age_85_plus": [0.01 + 0.002 * d for d in range(9)],
        "median_household_income": [40000.0 + 5000 * d for d in range(9)],
    })
