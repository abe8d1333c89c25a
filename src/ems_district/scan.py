"""
Spatial scan statistic for clusters of non-compliant responses.

Kulldorff's circular scan under a Poisson model:

- Candidate zones grow around each district centroid by adding the nearest
  neighbours while the zone's population stays <= ubpop * total population.
- A zone's expected cases are total_cases * zone_population / total_population.
- The log-likelihood ratio of a zone with c observed and e expected cases out
  of C total is
      c * ln(c / e) + (C - c) * ln((C - c) / (C - e))   if c > e, else 0.
- Significance is assessed by Monte Carlo: the total case count is
  redistributed nsim times proportionally to population (multinomial) and
  the maximum LLR of each replicate forms the null distribution.
- The most likely cluster is the zone with the largest LLR; secondary
  clusters are the next best zones that do not overlap any cluster already
  reported. Only clusters with p-value <= alpha are returned.

Here cases are non-compliant responses and population is the response count
of each district.
"""

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.spatial.distance import cdist

from ems_district.schemas import DISTRICT_ID

DEFAULT_NSIM = 999
DEFAULT_ALPHA = 0.05
DEFAULT_UBPOP = 0.2
DEFAULT_MAX_LABELED_CLUSTERS = 5
SUPPORTED_MODELS = ("poisson",)


@dataclass
class ScanCluster:
    """One detected cluster; locids are positions in the scan input."""
    rank: int
    center: int
    locids: List[int]
    cases: float
    population: float
    expected: float
    relative_risk: float
    loglikrat: float
    pvalue: float


@dataclass
class ScanResult:
    """Scan parameters, totals and the significant clusters in rank order."""
    nsim: int
    alpha: float
    ubpop: float
    total_cases: float
    total_population: float
    n_zones: int = 0
    clusters: List[ScanCluster] = field(default_factory=list)

    def summary(self) -> Dict[str, object]:
        return {
            "nsim": self.nsim,
            "alpha": self.alpha,
            "ubpop": self.ubpop,
            "total_cases": self.total_cases,
            "total_population": self.total_population,
            "n_zones": self.n_zones,
            "n_clusters": len(self.clusters),
            "clusters": [asdict(c) for c in self.clusters],
        }


# =============================================================================
# Zones and statistic
# =============================================================================

def build_zones(
    coords: np.ndarray,
    population: np.ndarray,
    ubpop: float = DEFAULT_UBPOP,
) -> List[Tuple[int, np.ndarray]]:
    """
    Enumerate distinct circular candidate zones.
    
    For each centroid, neighbours are taken in order of distance (ties by
    position) and every prefix whose population is within the cap becomes a
    zone. A centre whose own population exceeds the cap yields no zone.
    Duplicate zones reached from different centres are kept once.
    
    Returns:
        List of (center, member positions) tuples
    """
    population = np.asarray(population, dtype="float64")
    cap = ubpop * population.sum()
    distances = cdist(coords, coords)
    
    zones = []
    seen = set()
    for center in range(len(population)):
        order = np.argsort(distances[center], kind="stable")
        within_cap = np.cumsum(population[order]) <= cap
        # Population is non-negative, so the allowed prefix is contiguous
        k = int(np.argmin(within_cap)) if not within_cap.all() else len(order)
        for size in range(1, k + 1):
            members = np.sort(order[:size])
            key = tuple(members.tolist())
            if key in seen:
                continue
            seen.add(key)
            zones.append((center, members))
    
    return zones


def poisson_llr(
    zone_cases: np.ndarray,
    zone_expected: np.ndarray,
    total_cases: float,
) -> np.ndarray:
    """Poisson log-likelihood ratio for elevated-rate zones (0 elsewhere)."""
    zone_cases = np.asarray(zone_cases, dtype="float64")
    zone_expected = np.broadcast_to(np.asarray(zone_expected, dtype="float64"), zone_cases.shape)
    
    llr = np.zeros_like(zone_cases)
    elevated = zone_cases > zone_expected
    if not elevated.any():
        return llr
    
    c = zone_cases[elevated]
    e = zone_expected[elevated]
    outside = total_cases - c
    inside_term = c * np.log(c / e)
    with np.errstate(divide="ignore", invalid="ignore"):
        outside_term = np.where(outside > 0, outside * np.log(outside / (total_cases - e)), 0.0)
    llr[elevated] = inside_term + outside_term
    return llr


def _relative_risk(cases: float, expected: float, total_cases: float) -> float:
    outside_cases = total_cases - cases
    outside_expected = total_cases - expected
    if expected <= 0:
        return float("nan")
    if outside_cases <= 0 or outside_expected <= 0:
        return float("inf")
    return float((cases / expected) / (outside_cases / outside_expected))


# =============================================================================
# Scan test
# =============================================================================

def scan_test(
    coords: np.ndarray,
    cases: np.ndarray,
    population: np.ndarray,
    nsim: int = DEFAULT_NSIM,
    alpha: float = DEFAULT_ALPHA,
    ubpop: float = DEFAULT_UBPOP,
    model: str = "poisson",
    seed: Optional[int] = None,
    logger=None,
) -> ScanResult:
    """
    Run the circular scan test.
    
    Args:
        coords: (n, 2) planar coordinates of the region centroids
        cases: Observed case counts per region
        population: Population (at-risk) per region
        nsim: Number of Monte Carlo replicates
        alpha: Significance level for reported clusters
        ubpop: Upper bound on a zone's share of the total population
        model: Distributional model; only "poisson"
        seed: Seed for the Monte Carlo generator
    
    Returns:
        ScanResult. Degenerate input (no cases, no population, no zone with
        an elevated rate) gives an empty cluster list, not an error.
    
    Raises:
        ValueError: On unsupported model or mismatched input lengths
    """
    if model not in SUPPORTED_MODELS:
        raise ValueError(f"Unsupported scan model: {model!r} (supported: {SUPPORTED_MODELS})")
    
    coords = np.asarray(coords, dtype="float64")
    cases = np.asarray(cases, dtype="float64")
    population = np.asarray(population, dtype="float64")
    if not (len(coords) == len(cases) == len(population)):
        raise ValueError("coords, cases and population must have the same length")
    if (cases < 0).any() or (population < 0).any():
        raise ValueError("cases and population must be non-negative")
    
    total_cases = float(cases.sum())
    total_population = float(population.sum())
    result = ScanResult(
        nsim=nsim,
        alpha=alpha,
        ubpop=ubpop,
        total_cases=total_cases,
        total_population=total_population,
    )
    
    if total_cases <= 0 or total_population <= 0:
        if logger:
            logger.warning("Scan skipped: no cases or no population")
        return result
    
    zones = build_zones(coords, population, ubpop)
    result.n_zones = len(zones)
    if not zones:
        if logger:
            logger.warning(f"Scan skipped: no zone fits under ubpop={ubpop}")
        return result
    
    membership = np.zeros((len(zones), len(cases)))
    for z, (_, members) in enumerate(zones):
        membership[z, members] = 1.0
    
    zone_population = membership @ population
    zone_expected = total_cases * zone_population / total_population
    zone_cases = membership @ cases
    observed_llr = poisson_llr(zone_cases, zone_expected, total_cases)
    
    if observed_llr.max() <= 0:
        if logger:
            logger.info("Scan found no zone with an elevated rate")
        return result
    
    rng = np.random.default_rng(seed)
    simulated = rng.multinomial(int(round(total_cases)), population / total_population, size=nsim)
    sim_max = poisson_llr(simulated @ membership.T, zone_expected, total_cases).max(axis=1)
    
    if logger:
        logger.info(
            f"Scan: {len(zones):,} zones, max LLR={observed_llr.max():.3f}, "
            f"{nsim} replicates (null max median={np.median(sim_max):.3f})"
        )
    
    covered = np.zeros(len(cases), dtype=bool)
    for z in np.argsort(-observed_llr, kind="stable"):
        llr = float(observed_llr[z])
        if llr <= 0:
            break
        center, members = zones[z]
        if covered[members].any():
            continue
        
        pvalue = float((1 + np.sum(sim_max >= llr)) / (nsim + 1))
        if pvalue > alpha:
            # Later zones have smaller LLR, so none can be significant
            break
        
        covered[members] = True
        result.clusters.append(ScanCluster(
            rank=len(result.clusters) + 1,
            center=int(center),
            locids=[int(m) for m in members],
            cases=float(zone_cases[z]),
            population=float(zone_population[z]),
            expected=float(zone_expected[z]),
            relative_risk=_relative_risk(zone_cases[z], zone_expected[z], total_cases),
            loglikrat=llr,
            pvalue=pvalue,
        ))
    
    return result


# =============================================================================
# Cluster labels
# =============================================================================

def assign_cluster_labels(
    n_regions: int,
    clusters: List[ScanCluster],
    max_labels: int = DEFAULT_MAX_LABELED_CLUSTERS,
    logger=None,
) -> Tuple[pd.Series, List[Dict[str, int]]]:
    """
    Map each region to at most one cluster label (1..max_labels).
    
    Clusters are visited in rank order and a region keeps the label of the
    first cluster that contains it; a later cluster never overwrites it.
    Conflicts are returned (and logged) instead of silently resolved.
    
    Returns:
        Tuple of (Int64 Series of labels by position, list of conflicts)
    """
    labels = pd.Series(pd.NA, index=range(n_regions), dtype="Int64")
    conflicts = []
    
    for cluster in clusters[:max_labels]:
        for locid in cluster.locids:
            if pd.isna(labels.iloc[locid]):
                labels.iloc[locid] = cluster.rank
            else:
                conflicts.append({
                    "locid": locid,
                    "kept_cluster": int(labels.iloc[locid]),
                    "ignored_cluster": cluster.rank,
                })
    
    if conflicts and logger:
        logger.warning(f"{len(conflicts)} regions fall in more than one cluster; first label kept",
                       extra={"conflicts": conflicts})
    
    return labels, conflicts


def detect_district_clusters(
    districts: pd.DataFrame,
    nsim: int = DEFAULT_NSIM,
    alpha: float = DEFAULT_ALPHA,
    ubpop: float = DEFAULT_UBPOP,
    max_labels: int = DEFAULT_MAX_LABELED_CLUSTERS,
    model: str = "poisson",
    seed: Optional[int] = None,
    logger=None,
) -> Tuple[pd.DataFrame, ScanResult]:
    """
    Scan district aggregates for clusters of non-compliant responses.
    
    Uses centroid_x/centroid_y as locations, non_compliant_count as cases and
    response_count as population. Districts with no responses are left out
    of the scan and stay unlabeled.
    
    Returns:
        Tuple of (DataFrame with district_id and Int64 `cluster`, ScanResult)
    """
    in_scan = _in_scan_mask(districts)
    scanned = districts.loc[in_scan].reset_index(drop=True)

    if logger and (~in_scan).any():
        logger.info(f"Excluding {int((~in_scan).sum())} districts with no responses from the scan")
    
    result = scan_test(
        coords=scanned[["centroid_x", "centroid_y"]].to_numpy(dtype="float64"),
        cases=scanned["non_compliant_count"].astype("float64").to_numpy(),
        population=scanned["response_count"].astype("float64").to_numpy(),
        nsim=nsim,
        alpha=alpha,
        ubpop=ubpop,
        model=model,
        seed=seed,
        logger=logger,
    )
    
    labels, _ = assign_cluster_labels(len(scanned), result.clusters, max_labels, logger)
    
    assignments = pd.DataFrame({
        DISTRICT_ID: scanned[DISTRICT_ID].astype("Int64"),
        "cluster": labels.to_numpy(),
    })
    out = districts[[DISTRICT_ID]].merge(assignments, on=DISTRICT_ID, how="left")
    out["cluster"] = out["cluster"].astype("Int64")
    
    if logger:
        logger.info(f"Detected {len(result.clusters)} significant clusters; "
                    f"{int(out['cluster'].notna().sum())} districts labeled")
    
    return out, result


def _in_scan_mask(districts: pd.DataFrame) -> pd.Series:
    return districts["response_count"].fillna(0).astype("int64") > 0


def clusters_to_frame(result: ScanResult, districts: pd.DataFrame) -> pd.DataFrame:
    """
    One row per detected cluster with member district ids.

    `districts` is the same table that was passed to detect_district_clusters.
    """
    ids = list(districts.loc[_in_scan_mask(districts), DISTRICT_ID].astype("Int64"))
    rows = []
    for c in result.clusters:
        rows.append({
            "cluster": c.rank,
            "center_district_id": int(ids[c.center]),
            "district_ids": ",".join(str(int(ids[i])) for i in c.locids),
            "n_districts": len(c.locids),
            "cases": c.cases,
            "population": c.population,
            "expected": c.expected,
            "relative_risk": c.relative_risk,
            "loglikrat": c.loglikrat,
            "pvalue": c.pvalue,
        })
    columns = [
        "cluster", "center_district_id", "district_ids", "n_districts", "cases",
        "population", "expected", "relative_risk", "loglikrat", "pvalue",
    ]
    return pd.DataFrame(rows, columns=columns)
