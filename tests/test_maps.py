"""
Smoke tests for static map rendering.

Figures are written to tmp_path and checked for existence only.
"""

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import Point

from conftest import PROJECTED_EPSG
from ems_district.aggregation import build_district_aggregates
from ems_district.annotate import min_max_markers
from ems_district.bivariate import classify_bivariate, join_for_bivariate
from ems_district.maps import (
    cluster_map_subtitle,
    plot_bivariate_map,
    plot_choropleth,
    plot_cluster_map,
)


@pytest.fixture
def projected_aggregates(grid_districts, incidents):
    aggregates, _ = build_district_aggregates(grid_districts, incidents, PROJECTED_EPSG)
    return aggregates.to_crs(PROJECTED_EPSG)


class TestChoropleth:
    """Tests for plot_choropleth."""

    def test_with_markers(self, projected_aggregates, tmp_path):
        markers = min_max_markers(projected_aggregates, "avg_response_time")
        out = plot_choropleth(
            projected_aggregates,
            "avg_response_time",
            tmp_path / "maps" / "avg.png",
            title="Average response time",
            markers=markers,
            legend_label="Seconds",
        )
        assert out.exists()
        assert out.stat().st_size > 0

    def test_district_without_values(self, projected_aggregates, tmp_path):
        # District 9 has no incidents, so non_comp_prop is NaN there
        assert projected_aggregates["non_comp_prop"].isna().any()
        out = plot_choropleth(
            projected_aggregates, "non_comp_prop", tmp_path / "prop.png", title="Non-compliant share"
        )
        assert out.exists()


class TestClusterMap:
    """Tests for plot_cluster_map."""

    def test_with_clusters_and_stations(self, projected_aggregates, tmp_path):
        layer = projected_aggregates.copy()
        layer["cluster"] = pd.array([1, 1, None, None, 2, None, None, None, None], dtype="Int64")
        stations = gpd.GeoDataFrame(
            {"station_label": ["Station 1"]},
            geometry=[Point(-97.77, 30.23)],
            crs=4326,
        ).to_crs(PROJECTED_EPSG)
        
        out = plot_cluster_map(layer, tmp_path / "clusters.png", stations=stations)
        assert out.exists()

    def test_no_clusters(self, projected_aggregates, tmp_path):
        layer = projected_aggregates.copy()
        layer["cluster"] = pd.array([None] * len(layer), dtype="Int64")
        out = plot_cluster_map(layer, tmp_path / "clusters.png")
        assert out.exists()

    def test_subtitle_counts_summary_rows(self):
        """Significant clusters come from the summary, not from surviving labels."""
        summary = pd.DataFrame({"cluster": [1, 2, 3], "pvalue": [0.001, 0.01, 0.04]})
        labels = pd.Series(pd.array([1, 1, None, 3, None], dtype="Int64"))
        subtitle = cluster_map_subtitle(summary, labels, nsim=999, alpha=0.05)
        
        assert "3 significant clusters" in subtitle
        assert "2 labeled" in subtitle
        assert subtitle.startswith("Poisson scan, 999 replicates, alpha=0.05")

    def test_subtitle_without_clusters(self):
        summary = pd.DataFrame(columns=["cluster", "pvalue"])
        labels = pd.Series(pd.array([None, None], dtype="Int64"))
        assert "0 significant clusters, 0 labeled" in cluster_map_subtitle(summary, labels, 999, 0.05)


class TestBivariateMap:
    """Tests for plot_bivariate_map."""

    def test_renders_with_unclassified_district(self, projected_aggregates, demographics, tmp_path):
        demographics["district_id"] = demographics["district_id"].astype("Int64")
        base = projected_aggregates[["district_id", "centroid_x", "centroid_y", "geometry"]].merge(
            demographics, on="district_id"
        )
        layer = classify_bivariate(join_for_bivariate(base, projected_aggregates.drop(columns="geometry")))
        assert layer["bi_class"].isna().sum() == 1
        
        out = plot_bivariate_map(layer, tmp_path / "bivariate.png")
        assert out.exists()
