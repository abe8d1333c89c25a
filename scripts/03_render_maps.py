#!/usr/bin/env python3
"""
03_render_maps.py

Render the static district maps.

- One choropleth per response metric and per demographic metric, with the
  Max and Min districts marked
- Cluster map: districts colored by scan cluster, fire stations on top
- Bivariate map: median household income x average travel time (3x3)

Maps are drawn in the projected CRS recorded by 01_build_district_aggregates
so the stored centroids line up with the polygons.

Outputs:
- reports/figures/map_<metric>.png
- reports/figures/map_clusters.png
- reports/figures/map_bivariate_income_response.png
- reports/tables/min_max_markers.csv
- reports/tables/bivariate_classes.csv
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

import pandas as pd
from pyproj import CRS

from ems_district.annotate import min_max_markers
from ems_district.bivariate import DEFAULT_N_CLASSES, classify_bivariate, join_for_bivariate
from ems_district.hashing import read_metadata_sidecar
from ems_district.io_utils import write_table, read_table, read_layer, load_params
from ems_district.logging_utils import get_logger
from ems_district.maps import (
    cluster_map_subtitle,
    plot_bivariate_map,
    plot_choropleth,
    plot_cluster_map,
)
from ems_district.paths import CLUSTERS_DIR, DISTRICTS_DIR, FIGURES_DIR, TABLES_DIR
from ems_district.qa import resolve_projected_crs, safe_reproject
from ems_district.schemas import (
    ensure_district_id_dtype,
    validate_district_id,
    validate_merge,
)

INPUT_AGGREGATES = DISTRICTS_DIR / "district_aggregates.parquet"
INPUT_DEMOGRAPHICS = DISTRICTS_DIR / "district_demographics.parquet"
INPUT_STATIONS = DISTRICTS_DIR / "fire_stations.parquet"
INPUT_CLUSTERS = CLUSTERS_DIR / "district_clusters.parquet"
INPUT_CLUSTERS_SUMMARY = CLUSTERS_DIR / "clusters_summary.csv"

OUTPUT_MARKERS = TABLES_DIR / "min_max_markers.csv"
OUTPUT_BIVARIATE = TABLES_DIR / "bivariate_classes.csv"
OUTPUT_CLUSTER_MAP = FIGURES_DIR / "map_clusters.png"
OUTPUT_BIVARIATE_MAP = FIGURES_DIR / "map_bivariate_income_response.png"


def load_projected_crs(aggregates, config: dict) -> CRS:
    """CRS used when the centroids were computed, else re-resolve from config."""
    metadata = read_metadata_sidecar(INPUT_AGGREGATES)
    if metadata and metadata.get("extra", {}).get("projected_crs"):
        return CRS.from_user_input(metadata["extra"]["projected_crs"])
    return resolve_projected_crs(aggregates, config.get("crs", {}).get("projected_epsg"))


def render_metric_maps(layer, metric_configs, subtitle: str, logger) -> list:
    """Choropleths with Min/Max markers; returns the marker tables."""
    marker_tables = []
    for metric in metric_configs:
        column = metric["column"]
        if column not in layer.columns or layer[column].notna().sum() == 0:
            logger.warning(f"Skipping map for {column}: no values")
            continue
        
        markers = min_max_markers(layer, column)
        marker_tables.append(markers)
        
        output_path = plot_choropleth(
            layer,
            column,
            FIGURES_DIR / f"map_{column}.png",
            title=metric.get("title", column),
            subtitle=subtitle,
            markers=markers,
            legend_label=metric.get("legend"),
        )
        logger.info(f"Wrote: {output_path}")
    return marker_tables


def main():
    """Main entry point."""
    with get_logger("03_render_maps") as logger:
        logger.info("Starting 03_render_maps.py")
        
        config = load_params()
        logger.record("config", config)
        
        map_config = config.get("maps", {})
        bivariate_config = config.get("bivariate", {})
        scan_config = config.get("cluster_detection", {})
        goal_seconds = config.get("compliance", {}).get("goal_seconds", 600)
        subtitle = f"By council district; compliance goal {goal_seconds} s travel time"
        
        try:
            aggregates = read_layer(INPUT_AGGREGATES)
            demographics = read_layer(INPUT_DEMOGRAPHICS)
            stations = read_layer(INPUT_STATIONS)
            clusters = read_table(INPUT_CLUSTERS)
            clusters_summary = read_table(INPUT_CLUSTERS_SUMMARY)
            logger.record("inputs", {
                "district_aggregates": str(INPUT_AGGREGATES),
                "district_demographics": str(INPUT_DEMOGRAPHICS),
                "fire_stations": str(INPUT_STATIONS),
                "district_clusters": str(INPUT_CLUSTERS),
                "clusters_summary": str(INPUT_CLUSTERS_SUMMARY),
            })
            
            projected_crs = load_projected_crs(aggregates, config)
            aggregates_proj = safe_reproject(aggregates, projected_crs, "aggregates")
            demographics_proj = safe_reproject(demographics, projected_crs, "demographics")
            stations_proj = safe_reproject(stations, projected_crs, "fire stations")
            
            # Metric choropleths
            marker_tables = render_metric_maps(
                aggregates_proj, map_config.get("metrics", []), subtitle, logger
            )
            marker_tables += render_metric_maps(
                demographics_proj, map_config.get("demographic_metrics", []),
                "By council district", logger,
            )
            
            # Clusters + fire stations
            clusters = ensure_district_id_dtype(clusters)
            validate_district_id(clusters, "district clusters")
            clusters["cluster"] = clusters["cluster"].astype("Int64")
            cluster_layer = validate_merge(aggregates_proj, clusters, context="clusters -> districts")
            plot_cluster_map(
                cluster_layer,
                OUTPUT_CLUSTER_MAP,
                stations=stations_proj,
                subtitle=cluster_map_subtitle(
                    clusters_summary,
                    cluster_layer["cluster"],
                    nsim=scan_config.get("nsim", 999),
                    alpha=scan_config.get("alpha", 0.05),
                ),
            )
            logger.info(f"Wrote: {OUTPUT_CLUSTER_MAP}")
            
            # Bivariate income x response time
            bivariate_layer = classify_bivariate(
                join_for_bivariate(demographics_proj, aggregates),
                x_col=bivariate_config.get("x_column", "median_household_income"),
                y_col=bivariate_config.get("y_column", "avg_response_time"),
                n_classes=bivariate_config.get("n_classes", DEFAULT_N_CLASSES),
                logger=logger,
            )
            plot_bivariate_map(bivariate_layer, OUTPUT_BIVARIATE_MAP, subtitle=subtitle)
            logger.info(f"Wrote: {OUTPUT_BIVARIATE_MAP}")
            
            # Tables behind the maps
            markers = pd.concat(marker_tables, ignore_index=True) if marker_tables else pd.DataFrame()
            write_table(markers, OUTPUT_MARKERS, index=False)
            write_table(bivariate_layer.drop(columns="geometry"), OUTPUT_BIVARIATE, index=False)
            
            logger.record("outputs", {
                "figures_dir": str(FIGURES_DIR),
                "min_max_markers": str(OUTPUT_MARKERS),
                "bivariate_classes": str(OUTPUT_BIVARIATE),
            })
            logger.record("metrics", {
                "n_metric_maps": len(marker_tables),
                "n_significant_clusters": len(clusters_summary),
                "n_labeled_clusters": int(cluster_layer["cluster"].dropna().nunique()),
                "n_bivariate_classified": int(bivariate_layer["bi_class"].notna().sum()),
            })
            
            logger.info("SUCCESS: Rendered district maps")
            
        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
