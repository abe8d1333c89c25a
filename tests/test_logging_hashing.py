"""
Tests for JSONL run logs, atomic writes and metadata sidecars.
"""

import json

import pandas as pd
import pytest

from ems_district.hashing import (
    hash_bytes,
    hash_dict,
    hash_file,
    read_metadata_sidecar,
    write_metadata_sidecar,
)
from ems_district.io_utils import (
    load_params,
    read_json,
    read_table,
    staged_path,
    write_json,
    write_layer,
    write_table,
)
from ems_district.logging_utils import RECORD_KINDS, RunLogger


def read_records(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestRunLogger:
    """Tests for the per-stage JSONL run log."""

    def test_records_have_standard_keys(self, tmp_path):
        with RunLogger("unit_test", run_id="run1", log_dir=tmp_path) as logger:
            logger.info("hello", extra={"rows": 3})
            logger.record("metrics", {"response_count_total": 360})
        
        records = read_records(tmp_path / "unit_test_run1.jsonl")
        assert records[0]["message"] == "Run started"
        assert "versions" in records[0]["data"]
        assert all(r["run_id"] == "run1" and r["stage"] == "unit_test" for r in records)
        assert records[1]["data"] == {"rows": 3}
        assert "kind" not in records[1]
        assert records[2]["kind"] == "metrics"
        assert records[2]["message"] == RECORD_KINDS["metrics"]
        assert records[-1]["message"] == "Run finished"

    def test_exception_is_logged(self, tmp_path):
        with pytest.raises(RuntimeError):
            with RunLogger("unit_test", run_id="run2", log_dir=tmp_path):
                raise RuntimeError("boom")
        
        records = read_records(tmp_path / "unit_test_run2.jsonl")
        errors = [r for r in records if r["level"] == "ERROR"]
        assert len(errors) == 1
        assert "boom" in errors[0]["message"]
        assert "RuntimeError" in errors[0]["data"]["traceback"]
        assert records[-1]["message"] == "Run finished"

    def test_non_json_values_serialized(self, tmp_path):
        with RunLogger("unit_test", run_id="run3", log_dir=tmp_path) as logger:
            logger.record("crs", {"projected_crs": tmp_path})
        record = [r for r in read_records(tmp_path / "unit_test_run3.jsonl") if r.get("kind") == "crs"][0]
        assert record["data"]["projected_crs"] == str(tmp_path)

    def test_unknown_kind_rejected(self, tmp_path):
        with RunLogger("unit_test", run_id="run4", log_dir=tmp_path) as logger:
            with pytest.raises(ValueError, match="Unknown record kind"):
                logger.record("join_stats", {})


class TestAtomicWrites:
    """Tests for atomic writers and readers."""

    def test_csv_round_trip(self, tmp_path):
        df = pd.DataFrame({"district_id": [1, 2], "value": [0.5, 1.5]})
        target = tmp_path / "out" / "table.csv"
        write_table(df, target)
        
        assert read_table(target)["value"].tolist() == [0.5, 1.5]
        assert list(target.parent.iterdir()) == [target]

    def test_failed_write_keeps_previous_file(self, tmp_path):
        target = tmp_path / "summary.csv"
        target.write_text("old")
        with pytest.raises(RuntimeError):
            with staged_path(target) as staged:
                staged.write_text("partial")
                raise RuntimeError("disk full")
        
        assert target.read_text() == "old"
        assert list(tmp_path.iterdir()) == [target]

    def test_unsupported_extension(self, tmp_path):
        with pytest.raises(ValueError, match=".xlsx"):
            write_table(pd.DataFrame({"a": [1]}), tmp_path / "a.xlsx")
        with pytest.raises(ValueError, match=".csv"):
            write_layer(None, tmp_path / "layer.csv")

    def test_json(self, tmp_path):
        write_json({"a": 1}, tmp_path / "x.json")
        assert read_json(tmp_path / "x.json") == {"a": 1}

    def test_params_config_parses(self):
        config = load_params()
        assert config["compliance"]["goal_seconds"] == 600
        assert config["cluster_detection"]["nsim"] == 999
        assert set(config["sources"]) == {"incidents", "districts", "demographics", "fire_stations"}

    def test_params_must_be_mapping(self, tmp_path):
        path = tmp_path / "params.yml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="mapping"):
            load_params(path)


class TestHashing:
    """Tests for hashing and sidecars."""

    def test_hash_file_matches_bytes(self, tmp_path):
        path = tmp_path / "a.bin"
        path.write_bytes(b"abc")
        assert hash_file(path) == hash_bytes(b"abc")

    def test_hash_dict_order_independent(self):
        assert hash_dict({"a": 1, "b": 2}) == hash_dict({"b": 2, "a": 1})

    def test_sidecar_round_trip(self, tmp_path):
        output = tmp_path / "district_clusters.parquet"
        source = tmp_path / "district_aggregates.parquet"
        source.write_bytes(b"data")
        
        sidecar = write_metadata_sidecar(
            output_path=output,
            inputs={"district_aggregates": str(source), "missing": str(tmp_path / "nope")},
            config={"nsim": 999},
            run_id="run1",
            extra={"n_clusters": 2},
            metadata_dir=tmp_path / "metadata",
        )
        metadata = read_metadata_sidecar(output, metadata_dir=tmp_path / "metadata")
        
        assert sidecar.name == "district_clusters_metadata.json"
        assert metadata["run_id"] == "run1"
        assert metadata["inputs"]["district_aggregates"]["hash"] == hash_bytes(b"data")
        assert metadata["inputs"]["missing"]["missing"] is True
        assert metadata["extra"]["n_clusters"] == 2

    def test_missing_sidecar(self, tmp_path):
        assert read_metadata_sidecar(tmp_path / "x.parquet", metadata_dir=tmp_path) is None
