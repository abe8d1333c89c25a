"""
Tests for the Poisson spatial scan statistic and cluster labeling.

- A planted high-rate block is found as the most likely cluster
- Rates proportional to population give no cluster
- Degenerate input gives an empty result, not an error
- Every region carries at most one cluster label
"""

import numpy as np
import pandas as pd
import pytest

from ems_district.scan import (
    ScanCluster,
    assign_cluster_labels,
    build_zones,
    clusters_to_frame,
    detect_district_clusters,
    poisson_llr,
    scan_test,
)


def lattice(n: int = 5) -> np.ndarray:
    """n x n unit lattice; position = row * n + col."""
    return np.array([[col, row] for row in range(n) for col in range(n)], dtype=float)


@pytest.fixture
def planted():
    """25 regions of 100 population; regions 0, 1, 5 have 60 cases, the rest 10."""
    coords = lattice(5)
    population = np.full(25, 100.0)
    cases = np.full(25, 10.0)
    cases[[0, 1, 5]] = 60.0
    return coords, cases, population


def make_cluster(rank, locids):
    return ScanCluster(
        rank=rank, center=locids[0], locids=list(locids), cases=0.0, population=0.0,
        expected=0.0, relative_risk=1.0, loglikrat=1.0, pvalue=0.01,
    )


class TestBuildZones:
    """Tests for candidate zone enumeration."""

    def test_zone_population_within_cap(self, planted):
        coords, _, population = planted
        zones = build_zones(coords, population, ubpop=0.2)
        cap = 0.2 * population.sum()
        assert zones
        for _, members in zones:
            assert population[members].sum() <= cap

    def test_zones_are_unique(self, planted):
        coords, _, population = planted
        zones = build_zones(coords, population, ubpop=0.2)
        keys = [tuple(members.tolist()) for _, members in zones]
        assert len(keys) == len(set(keys))

    def test_center_over_cap_has_no_zone(self):
        coords = lattice(2)
        population = np.array([1000.0, 1.0, 1.0, 1.0])
        zones = build_zones(coords, population, ubpop=0.2)
        assert all(0 not in members for _, members in zones)

    def test_nearest_neighbours_first(self, planted):
        coords, _, population = planted
        zones = build_zones(coords, population, ubpop=0.2)
        keys = {tuple(members.tolist()) for _, members in zones}
        assert (0, 1, 5) in keys


class TestPoissonLLR:
    """Tests for the log-likelihood ratio."""

    def test_known_value(self):
        c, e, total = 180.0, 48.0, 400.0
        expected = c * np.log(c / e) + (total - c) * np.log((total - c) / (total - e))
        assert poisson_llr(np.array([c]), np.array([e]), total)[0] == pytest.approx(expected)

    def test_not_elevated_is_zero(self):
        llr = poisson_llr(np.array([5.0, 10.0]), np.array([10.0, 10.0]), 100.0)
        assert llr.tolist() == [0.0, 0.0]

    def test_all_cases_inside(self):
        llr = poisson_llr(np.array([50.0]), np.array([10.0]), 50.0)
        assert llr[0] == pytest.approx(50.0 * np.log(5.0))


class TestScanTest:
    """Tests for the full scan test."""

    def test_planted_cluster_is_most_likely(self, planted):
        coords, cases, population = planted
        result = scan_test(coords, cases, population, nsim=199, seed=1)
        
        assert len(result.clusters) >= 1
        top = result.clusters[0]
        assert set(top.locids) == {0, 1, 5}
        assert top.rank == 1
        assert top.pvalue <= 0.05
        assert top.cases == pytest.approx(180.0)
        assert top.expected == pytest.approx(48.0)
        assert top.relative_risk > 1

    def test_pvalue_floor(self, planted):
        coords, cases, population = planted
        result = scan_test(coords, cases, population, nsim=99, seed=1)
        assert result.clusters[0].pvalue == pytest.approx(1 / 100)

    def test_reported_clusters_do_not_overlap(self, planted):
        coords, cases, population = planted
        result = scan_test(coords, cases, population, nsim=99, alpha=1.0, seed=3)
        seen = set()
        for cluster in result.clusters:
            assert seen.isdisjoint(cluster.locids)
            seen.update(cluster.locids)

    def test_clusters_ranked_by_llr(self, planted):
        coords, cases, population = planted
        result = scan_test(coords, cases, population, nsim=99, alpha=1.0, seed=3)
        llrs = [c.loglikrat for c in result.clusters]
        assert llrs == sorted(llrs, reverse=True)

    def test_proportional_rates_give_no_cluster(self):
        coords = lattice(4)
        population = np.full(16, 50.0)
        cases = np.full(16, 5.0)
        result = scan_test(coords, cases, population, nsim=99, seed=0)
        assert result.clusters == []

    def test_no_cases_gives_empty_result(self):
        coords = lattice(3)
        result = scan_test(coords, np.zeros(9), np.full(9, 10.0), nsim=9)
        assert result.clusters == []
        assert result.total_cases == 0

    def test_same_seed_is_reproducible(self, planted):
        coords, cases, population = planted
        a = scan_test(coords, cases, population, nsim=99, alpha=1.0, seed=7)
        b = scan_test(coords, cases, population, nsim=99, alpha=1.0, seed=7)
        assert [c.pvalue for c in a.clusters] == [c.pvalue for c in b.clusters]

    def test_unsupported_model(self, planted):
        coords, cases, population = planted
        with pytest.raises(ValueError, match="Unsupported scan model"):
            scan_test(coords, cases, population, model="binomial")

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            scan_test(lattice(2), np.ones(3), np.ones(4))

    def test_summary_is_serializable(self, planted):
        coords, cases, population = planted
        summary = scan_test(coords, cases, population, nsim=19, seed=1).summary()
        assert summary["nsim"] == 19
        assert summary["n_clusters"] == len(summary["clusters"])


class TestAssignClusterLabels:
    """Tests for assign_cluster_labels."""

    def test_first_label_kept_on_overlap(self):
        clusters = [make_cluster(1, [0, 1]), make_cluster(2, [1, 2])]
        labels, conflicts = assign_cluster_labels(4, clusters)
        
        assert labels.tolist()[:3] == [1, 1, 2]
        assert pd.isna(labels.iloc[3])
        assert conflicts == [{"locid": 1, "kept_cluster": 1, "ignored_cluster": 2}]

    def test_each_region_at_most_one_label(self):
        clusters = [make_cluster(r, [0, r]) for r in range(1, 5)]
        labels, _ = assign_cluster_labels(5, clusters)
        labeled_positions = labels.dropna().index.tolist()
        assert len(labeled_positions) == len(set(labeled_positions))
        assert labels.iloc[0] == 1

    def test_label_cap(self):
        clusters = [make_cluster(r, [r - 1]) for r in range(1, 8)]
        labels, _ = assign_cluster_labels(7, clusters, max_labels=5)
        assert labels.dropna().tolist() == [1, 2, 3, 4, 5]
        assert labels.iloc[5:].isna().all()

    def test_no_clusters_leaves_all_unlabeled(self):
        labels, conflicts = assign_cluster_labels(3, [])
        assert labels.isna().all()
        assert conflicts == []


class TestDetectDistrictClusters:
    """Tests for the district-level wrapper."""

    @pytest.fixture
    def district_table(self, planted):
        coords, cases, population = planted
        df = pd.DataFrame({
            "district_id": pd.array(range(101, 126), dtype="Int64"),
            "centroid_x": coords[:, 0] * 1000,
            "centroid_y": coords[:, 1] * 1000,
            "response_count": pd.array(population.astype(int), dtype="Int64"),
            "non_compliant_count": pd.array(cases.astype(int), dtype="Int64"),
        })
        # A district with no responses stays out of the scan
        empty = pd.DataFrame({
            "district_id": pd.array([126], dtype="Int64"),
            "centroid_x": [0.0],
            "centroid_y": [-1000.0],
            "response_count": pd.array([0], dtype="Int64"),
            "non_compliant_count": pd.array([0], dtype="Int64"),
        })
        return pd.concat([df, empty], ignore_index=True)

    def test_cluster_mapped_to_district_ids(self, district_table):
        assignments, result = detect_district_clusters(district_table, nsim=99, seed=1)
        
        assert len(assignments) == len(district_table)
        labeled = assignments.loc[assignments["cluster"] == 1, "district_id"].tolist()
        assert sorted(labeled) == [101, 102, 106]

    def test_zero_response_district_unlabeled(self, district_table):
        assignments, _ = detect_district_clusters(district_table, nsim=99, seed=1)
        assert pd.isna(assignments.set_index("district_id").loc[126, "cluster"])

    def test_district_ids_unique(self, district_table):
        assignments, _ = detect_district_clusters(district_table, nsim=99, alpha=1.0, seed=1)
        assert assignments["district_id"].is_unique
        assert assignments["cluster"].dtype == "Int64"

    def test_summary_frame(self, district_table):
        _, result = detect_district_clusters(district_table, nsim=99, seed=1)
        frame = clusters_to_frame(result, district_table)
        
        assert len(frame) == len(result.clusters)
        assert frame.loc[0, "district_ids"] == "101,102,106"
        assert frame.loc[0, "n_districts"] == 3

    def test_empty_summary_frame_has_columns(self):
        table = pd.DataFrame({
            "district_id": pd.array([1, 2], dtype="Int64"),
            "centroid_x": [0.0, 1.0],
            "centroid_y": [0.0, 0.0],
            "response_count": pd.array([0, 0], dtype="Int64"),
            "non_compliant_count": pd.array([0, 0], dtype="Int64"),
        })
        assignments, result = detect_district_clusters(table, nsim=9)
        frame = clusters_to_frame(result, table)
        
        assert frame.empty
        assert "pvalue" in frame.columns
        assert assignments["cluster"].isna().all()
