"""
Static district maps.

All layers passed in here must share one projected CRS: Min/Max markers are
placed at centroid_x / centroid_y, which are projected coordinates.
"""

from pathlib import Path
from typing import Optional

import geopandas as gpd
import matplotlib.pyplot as plt
import pandas as pd
from matplotlib.lines import Line2D
from matplotlib.patches import Patch

from ems_district.bivariate import BIVARIATE_PALETTE, NULL_COLOR
from ems_district.schemas import DISTRICT_ID

BORDER_COLOR = "#404040"
CLUSTER_COLORS = ["#d73027", "#fc8d59", "#fee090", "#91bfdb", "#4575b4"]
MARKER_STYLES = {
    "Max": {"marker": "^", "color": "#b2182b"},
    "Min": {"marker": "v", "color": "#2166ac"},
}


def _save_figure(fig, output_path: Path) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return output_path


def _set_titles(fig, ax, title: str, subtitle: Optional[str]) -> None:
    fig.suptitle(title, fontsize=14, fontweight="bold")
    if subtitle:
        ax.set_title(subtitle, fontsize=10, color="#555555")
    ax.set_axis_off()


def _label_districts(ax, districts: pd.DataFrame) -> None:
    for _, row in districts.iterrows():
        ax.annotate(
            str(row[DISTRICT_ID]),
            xy=(row["centroid_x"], row["centroid_y"]),
            ha="center",
            va="center",
            fontsize=7,
            color="#222222",
        )


def plot_choropleth(
    districts: gpd.GeoDataFrame,
    column: str,
    output_path: Path,
    title: str,
    subtitle: Optional[str] = None,
    markers: Optional[pd.DataFrame] = None,
    legend_label: Optional[str] = None,
    cmap: str = "YlOrRd",
) -> Path:
    """
    Continuous choropleth of one district metric with Min/Max markers.
    
    Districts with a missing value are drawn in NULL_COLOR.
    """
    fig, ax = plt.subplots(figsize=(8, 8))
    
    districts.plot(
        column=column,
        ax=ax,
        cmap=cmap,
        edgecolor=BORDER_COLOR,
        linewidth=0.6,
        legend=True,
        legend_kwds={"label": legend_label or column, "shrink": 0.6},
        missing_kwds={"color": NULL_COLOR, "edgecolor": BORDER_COLOR, "label": "No data"},
    )
    
    if markers is not None and len(markers) > 0:
        handles = []
        for _, row in markers.iterrows():
            style = MARKER_STYLES.get(row["label"], {"marker": "o", "color": "black"})
            ax.scatter(
                row["centroid_x"],
                row["centroid_y"],
                s=120,
                marker=style["marker"],
                color=style["color"],
                edgecolor="white",
                linewidth=1,
                zorder=5,
            )
            handles.append(Line2D(
                [], [], linestyle="", marker=style["marker"], color=style["color"],
                label=f"{row['label']}: district {row[DISTRICT_ID]} ({row['value']:,.2f})",
            ))
        ax.legend(handles=handles, loc="lower left", fontsize=8, frameon=False)
    
    _set_titles(fig, ax, title, subtitle)
    return _save_figure(fig, output_path)


def cluster_map_subtitle(summary: pd.DataFrame, labels: pd.Series, nsim: int, alpha: float) -> str:
    """
    Subtitle for the cluster map.

    Significant clusters are the rows of the scan summary; labeled ones are
    those that still own a district after first-wins labeling.
    """
    n_significant = len(summary)
    n_labeled = int(labels.dropna().nunique())
    return (
        f"Poisson scan, {nsim} replicates, alpha={alpha}; "
        f"{n_significant} significant clusters, {n_labeled} labeled"
    )


def plot_cluster_map(
    districts: gpd.GeoDataFrame,
    output_path: Path,
    stations: Optional[gpd.GeoDataFrame] = None,
    title: str = "Clusters of non-compliant EMS responses",
    subtitle: Optional[str] = None,
) -> Path:
    """
    Districts colored by cluster label with fire stations on top.
    
    Unlabeled districts are drawn in NULL_COLOR.
    """
    fig, ax = plt.subplots(figsize=(8, 8))
    
    labels = districts["cluster"]
    colors = [
        NULL_COLOR if pd.isna(c) else CLUSTER_COLORS[(int(c) - 1) % len(CLUSTER_COLORS)]
        for c in labels
    ]
    districts.plot(ax=ax, color=colors, edgecolor=BORDER_COLOR, linewidth=0.6)
    _label_districts(ax, districts)
    
    handles = [
        Patch(facecolor=CLUSTER_COLORS[(int(c) - 1) % len(CLUSTER_COLORS)],
              edgecolor=BORDER_COLOR, label=f"Cluster {int(c)}")
        for c in sorted(labels.dropna().unique())
    ]
    handles.append(Patch(facecolor=NULL_COLOR, edgecolor=BORDER_COLOR, label="No cluster"))
    
    if stations is not None and len(stations) > 0:
        stations.plot(ax=ax, marker="s", color="black", markersize=18, zorder=5)
        handles.append(Line2D([], [], linestyle="", marker="s", color="black", label="Fire station"))
    
    ax.legend(handles=handles, loc="lower left", fontsize=8, frameon=False)
    _set_titles(fig, ax, title, subtitle)
    return _save_figure(fig, output_path)


def plot_bivariate_map(
    districts: gpd.GeoDataFrame,
    output_path: Path,
    title: str = "Household income vs. average response time",
    subtitle: Optional[str] = None,
    x_label: str = "Higher income",
    y_label: str = "Slower response",
) -> Path:
    """
    Districts filled with their bivariate color plus an inset 3x3 legend.
    
    Expects the bi_color column from classify_bivariate.
    """
    fig, ax = plt.subplots(figsize=(8, 8))
    districts.plot(ax=ax, color=districts["bi_color"].tolist(), edgecolor=BORDER_COLOR, linewidth=0.6)
    _set_titles(fig, ax, title, subtitle)
    
    n = len(BIVARIATE_PALETTE)
    legend_ax = fig.add_axes([0.68, 0.12, 0.18, 0.18])
    for row in range(n):
        for col in range(n):
            legend_ax.add_patch(plt.Rectangle((col, row), 1, 1, color=BIVARIATE_PALETTE[row][col]))
    legend_ax.set_xlim(0, n)
    legend_ax.set_ylim(0, n)
    legend_ax.set_xticks([])
    legend_ax.set_yticks([])
    legend_ax.set_xlabel(f"{x_label} →", fontsize=8)
    legend_ax.set_ylabel(f"{y_label} →", fontsize=8)
    for spine in legend_ax.spines.values():
        spine.set_visible(False)
    
    return _save_figure(fig, output_path)
