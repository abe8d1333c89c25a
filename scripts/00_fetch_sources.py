#!/usr/bin/env python3
"""
00_fetch_sources.py

Fetch the four input tables of the EMS district analysis.

- EMS incident records (district, travel time to scene)
- Council district polygons (WKT, EPSG:4326)
- District demographics (population, share aged 85+, median income)
- Fire station locations

Each source is downloaded once from its fixed location in
configs/params.yml and parsed straight away, so an unreachable source or a
malformed payload stops the run here. There is no retry.

Outputs:
- data/raw/<source>.<ext> (raw snapshots)
- data/raw/_manifest.json (provenance: url, timestamp, sha256, rows)
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from ems_district.ingest import fetch_source, load_source, raw_path_for
from ems_district.io_utils import write_json, read_json, load_params
from ems_district.logging_utils import get_logger
from ems_district.paths import RAW_DIR, ensure_dirs_exist

SOURCE_NAMES = ["incidents", "districts", "demographics", "fire_stations"]
MANIFEST_PATH = RAW_DIR / "_manifest.json"


def main():
    """Main entry point."""
    with get_logger("00_fetch_sources") as logger:
        logger.info("Starting 00_fetch_sources.py")
        
        config = load_params()
        logger.record("config", config)
        
        sources = config["sources"]
        timeout = config.get("fetch", {}).get("timeout_s", 120)
        
        try:
            ensure_dirs_exist()
            logger.record("inputs", {name: sources[name].get("url") for name in SOURCE_NAMES})
            
            downloads = []
            outputs = {}
            for name in SOURCE_NAMES:
                source_config = sources[name]
                dest = raw_path_for(name, source_config, RAW_DIR)
                
                entry = fetch_source(source_config.get("url"), dest, timeout=timeout, logger=logger)
                
                # Parse now so a malformed payload fails the fetch stage
                table = load_source(name, source_config, RAW_DIR, logger)
                entry.update({
                    "source": name,
                    "format": source_config.get("format", "csv"),
                    "row_count": len(table),
                    "columns": [str(c) for c in table.columns],
                })
                downloads.append(entry)
                outputs[name] = str(dest)
            
            manifest = read_json(MANIFEST_PATH) if MANIFEST_PATH.exists() else {"downloads": []}
            manifest["downloads"].extend(downloads)
            manifest["last_updated"] = datetime.now(timezone.utc).isoformat()
            write_json(manifest, MANIFEST_PATH)
            logger.info(f"Updated manifest: {MANIFEST_PATH}")
            
            logger.record("outputs", outputs)
            logger.record("metrics", {f"{d['source']}_rows": d["row_count"] for d in downloads})
            
            logger.info(f"SUCCESS: Fetched {len(downloads)} sources")
            
        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
