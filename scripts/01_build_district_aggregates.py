#!/usr/bin/env python3
"""
01_build_district_aggregates.py

Clean EMS incidents and aggregate them by council district.

- Drop incidents missing a district or a travel time
- Flag compliance (travel time <= goal, default 600 s)
- Per district: response_count, avg_response_time, compliant_count,
  non_compliant_count, non_comp_prop, compliance_rate
- Left join onto district polygons (districts without incidents keep
  their geometry with zero counts)
- Projected centroids (centroid_x, centroid_y) for scan and labels
- Demographics joined onto the same district layer
- Fire stations assigned to districts and counted

Outputs:
- data/processed/districts/district_aggregates.parquet (GeoParquet, EPSG:4326)
- data/processed/districts/district_aggregates.geojson (export)
- data/processed/districts/district_demographics.parquet
- data/processed/districts/fire_stations.parquet
- reports/tables/district_summary.csv
- data/processed/metadata/district_aggregates_metadata.json
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from ems_district.aggregation import (
    COMPLIANCE_GOAL_SECONDS,
    build_district_aggregates,
    join_demographics_to_districts,
    prepare_demographics,
)
from ems_district.hashing import write_metadata_sidecar
from ems_district.ingest import load_source, raw_path_for
from ems_district.io_utils import write_table, write_layer, load_params
from ems_district.joins import (
    DEFAULT_MAX_DISTANCE_M,
    DEFAULT_MAX_UNMATCHED_RATE,
    attach_station_counts,
    log_join_stats,
)
from ems_district.logging_utils import get_logger
from ems_district.paths import DISTRICTS_DIR, RAW_DIR, TABLES_DIR
from ems_district.qa import (
    assert_expected_crs,
    check_aggregate_invariants,
    compute_coverage_stats,
    compute_na_rates,
    resolve_projected_crs,
    validate_bounds,
)
from ems_district.schemas import (
    DISTRICT_AGGREGATE_SCHEMA,
    DISTRICT_ID,
    FIRE_STATION_SCHEMA,
    validate_merge,
    validate_schema,
)

OUTPUT_AGGREGATES = DISTRICTS_DIR / "district_aggregates.parquet"
OUTPUT_AGGREGATES_GEOJSON = DISTRICTS_DIR / "district_aggregates.geojson"
OUTPUT_DEMOGRAPHICS = DISTRICTS_DIR / "district_demographics.parquet"
OUTPUT_STATIONS = DISTRICTS_DIR / "fire_stations.parquet"
OUTPUT_SUMMARY = TABLES_DIR / "district_summary.csv"

SUMMARY_COLUMNS = [
    DISTRICT_ID,
    "response_count",
    "avg_response_time",
    "compliant_count",
    "non_compliant_count",
    "non_comp_prop",
    "compliance_rate",
    "station_count",
    "population",
    "prop_age_85_plus",
    "median_household_income",
]


def main():
    """Main entry point."""
    with get_logger("01_build_district_aggregates") as logger:
        logger.info("Starting 01_build_district_aggregates.py")
        
        config = load_params()
        logger.record("config", config)
        
        sources = config["sources"]
        source_epsg = config.get("crs", {}).get("source_epsg", 4326)
        goal_seconds = config.get("compliance", {}).get("goal_seconds", COMPLIANCE_GOAL_SECONDS)
        join_config = config.get("spatial_join", {})
        bounds_config = config.get("bounds_checks", {}).get("epsg_4326", {})
        
        try:
            # Load raw snapshots
            districts = load_source("districts", sources["districts"], RAW_DIR, logger)
            incidents = load_source("incidents", sources["incidents"], RAW_DIR, logger)
            demographics = load_source("demographics", sources["demographics"], RAW_DIR, logger)
            stations = load_source("fire_stations", sources["fire_stations"], RAW_DIR, logger)
            
            assert_expected_crs(districts, source_epsg, "districts")
            validate_bounds(districts, bounds_config, "districts")
            
            projected_crs = resolve_projected_crs(districts, config.get("crs", {}).get("projected_epsg"))
            logger.record("crs", {
                "source_crs": str(districts.crs),
                "projected_crs": projected_crs.to_string(),
                "projected_epsg": projected_crs.to_epsg(),
            })
            
            # Clean, aggregate, join
            aggregates, cleaning_report = build_district_aggregates(
                districts, incidents, projected_crs, goal_seconds, logger
            )
            logger.record("cleaning", cleaning_report)
            
            check_aggregate_invariants(
                aggregates,
                n_clean_incidents=cleaning_report["n_clean"] - cleaning_report["n_incidents_in_unmapped_districts"],
                logger=logger,
            )
            validate_schema(aggregates, DISTRICT_AGGREGATE_SCHEMA, "district aggregates")
            
            # Fire stations -> districts
            validate_bounds(stations, bounds_config, "fire stations")
            validate_schema(stations, FIRE_STATION_SCHEMA, "fire stations")
            
            aggregates, stations_joined, join_stats = attach_station_counts(
                aggregates,
                stations,
                projected_crs,
                max_distance=join_config.get("max_distance_m", DEFAULT_MAX_DISTANCE_M),
                max_unmatched_rate=join_config.get("max_unmatched_rate", DEFAULT_MAX_UNMATCHED_RATE),
                logger=logger,
            )
            log_join_stats(join_stats, logger)
            
            # Demographics
            demographics = prepare_demographics(demographics)
            demographic_layer = join_demographics_to_districts(aggregates, demographics, logger)
            
            # Write outputs
            DISTRICTS_DIR.mkdir(parents=True, exist_ok=True)
            write_layer(aggregates, OUTPUT_AGGREGATES)
            write_layer(aggregates, OUTPUT_AGGREGATES_GEOJSON)
            write_layer(demographic_layer, OUTPUT_DEMOGRAPHICS)
            write_layer(stations_joined, OUTPUT_STATIONS)
            
            summary = validate_merge(
                aggregates.drop(columns="geometry"),
                demographic_layer.drop(columns=["geometry", "centroid_x", "centroid_y"]),
                context="summary table",
            )
            summary = summary[[c for c in SUMMARY_COLUMNS if c in summary.columns]]
            write_table(summary, OUTPUT_SUMMARY, index=False)
            
            outputs = {
                "district_aggregates": str(OUTPUT_AGGREGATES),
                "district_aggregates_geojson": str(OUTPUT_AGGREGATES_GEOJSON),
                "district_demographics": str(OUTPUT_DEMOGRAPHICS),
                "fire_stations": str(OUTPUT_STATIONS),
                "district_summary": str(OUTPUT_SUMMARY),
            }
            for path in outputs.values():
                logger.info(f"Wrote: {path}")
            logger.record("outputs", outputs)
            
            metrics = {
                "n_districts": len(aggregates),
                "n_clean_incidents": cleaning_report["n_clean"],
                "response_count_total": int(aggregates["response_count"].sum()),
                "n_stations": len(stations_joined),
                "na_rates": compute_na_rates(summary),
                "avg_response_time": compute_coverage_stats(aggregates, "avg_response_time"),
                "non_comp_prop": compute_coverage_stats(aggregates, "non_comp_prop"),
            }
            logger.record("metrics", metrics)
            
            write_metadata_sidecar(
                output_path=OUTPUT_AGGREGATES,
                inputs={name: str(raw_path_for(name, sources[name], RAW_DIR)) for name in sources},
                config=config,
                run_id=logger.run_id,
                extra={
                    "projected_crs": projected_crs.to_string(),
                    "goal_seconds": goal_seconds,
                    "cleaning": cleaning_report,
                    "join_stats": join_stats,
                },
            )
            
            logger.info("=" * 70)
            logger.info("District summary:")
            for _, row in summary.iterrows():
                prop = row["non_comp_prop"]
                prop_text = "n/a" if prop != prop else f"{prop:.1%}"
                logger.info(
                    f"  District {row[DISTRICT_ID]}: {row['response_count']:,} responses, "
                    f"non-compliant {prop_text}, stations {row['station_count']}"
                )
            logger.info("=" * 70)
            
            logger.info("SUCCESS: Built district aggregates")
            
        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
