#!/usr/bin/env python3
"""
02_detect_clusters.py

Detect geographic clusters of non-compliant EMS responses.

Runs a circular spatial scan statistic (Poisson model) over district
centroids, with non-compliant responses as cases and all responses as
population:
- 999 Monte Carlo replicates, significance level 0.05
- zones capped at 20% of all responses
- first 5 clusters labeled; a district keeps its first label

No significant cluster is a valid result: every district stays unlabeled.

Outputs:
- data/processed/clusters/district_clusters.parquet (district_id, cluster)
- data/processed/clusters/clusters_summary.csv (one row per cluster)
- data/processed/metadata/district_clusters_metadata.json
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from ems_district.hashing import write_metadata_sidecar
from ems_district.io_utils import write_table, read_layer, load_params
from ems_district.logging_utils import get_logger
from ems_district.paths import CLUSTERS_DIR, DISTRICTS_DIR
from ems_district.scan import (
    DEFAULT_ALPHA,
    DEFAULT_MAX_LABELED_CLUSTERS,
    DEFAULT_NSIM,
    DEFAULT_UBPOP,
    clusters_to_frame,
    detect_district_clusters,
)
from ems_district.schemas import (
    DISTRICT_AGGREGATE_SCHEMA,
    DISTRICT_CLUSTER_SCHEMA,
    validate_schema,
)

INPUT_AGGREGATES = DISTRICTS_DIR / "district_aggregates.parquet"
OUTPUT_CLUSTERS = CLUSTERS_DIR / "district_clusters.parquet"
OUTPUT_SUMMARY = CLUSTERS_DIR / "clusters_summary.csv"


def main():
    """Main entry point."""
    with get_logger("02_detect_clusters") as logger:
        logger.info("Starting 02_detect_clusters.py")
        
        config = load_params()
        logger.record("config", config)
        
        scan_config = config.get("cluster_detection", {})
        nsim = scan_config.get("nsim", DEFAULT_NSIM)
        alpha = scan_config.get("alpha", DEFAULT_ALPHA)
        ubpop = scan_config.get("ubpop", DEFAULT_UBPOP)
        max_labels = scan_config.get("max_labeled_clusters", DEFAULT_MAX_LABELED_CLUSTERS)
        model = scan_config.get("model", "poisson")
        seed = scan_config.get("seed")
        
        logger.info(f"Scan parameters: model={model}, nsim={nsim}, alpha={alpha}, ubpop={ubpop}")
        
        try:
            aggregates = read_layer(INPUT_AGGREGATES)
            validate_schema(aggregates, DISTRICT_AGGREGATE_SCHEMA, "district aggregates")
            logger.record("inputs", {"district_aggregates": str(INPUT_AGGREGATES)})
            logger.info(f"Loaded {len(aggregates)} districts")
            
            assignments, result = detect_district_clusters(
                aggregates,
                nsim=nsim,
                alpha=alpha,
                ubpop=ubpop,
                max_labels=max_labels,
                model=model,
                seed=seed,
                logger=logger,
            )
            validate_schema(assignments, DISTRICT_CLUSTER_SCHEMA, "district clusters")
            
            summary = clusters_to_frame(result, aggregates)
            
            CLUSTERS_DIR.mkdir(parents=True, exist_ok=True)
            write_table(assignments, OUTPUT_CLUSTERS, index=False)
            write_table(summary, OUTPUT_SUMMARY, index=False)
            logger.info(f"Wrote: {OUTPUT_CLUSTERS}")
            logger.info(f"Wrote: {OUTPUT_SUMMARY}")
            
            logger.record("outputs", {
                "district_clusters": str(OUTPUT_CLUSTERS),
                "clusters_summary": str(OUTPUT_SUMMARY),
            })
            logger.record("clusters", result.summary())
            
            write_metadata_sidecar(
                output_path=OUTPUT_CLUSTERS,
                inputs={"district_aggregates": str(INPUT_AGGREGATES)},
                config=config,
                run_id=logger.run_id,
                extra={
                    "n_clusters": len(result.clusters),
                    "n_labeled_districts": int(assignments["cluster"].notna().sum()),
                    "n_zones": result.n_zones,
                },
            )
            
            logger.info("=" * 70)
            if summary.empty:
                logger.info("No significant clusters found")
            for _, row in summary.iterrows():
                logger.info(
                    f"  Cluster {row['cluster']}: districts {row['district_ids']} "
                    f"RR={row['relative_risk']:.2f} LLR={row['loglikrat']:.2f} p={row['pvalue']:.3f}"
                )
            logger.info("=" * 70)
            
            logger.info("SUCCESS: Cluster detection complete")
            
        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
