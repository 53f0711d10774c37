from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from tm_track import (
    HeartRateSample,
    TrackPoint,
    compute_bounds,
    format_distance_label,
    split_by_source,
)


HR_COLOR = "#dc2626"
START_COLOR = "#28a745"
END_COLOR = "#dc3545"
SEGMENT_COLORS = ("#3b82f6", "#dc2626", "#ec4899", "#8b5cf6", "#06b6d4", "#7c3aed")

_MATPLOTLIB_STYLE_READY = False


def _ensure_matplotlib_style(plt) -> None:
    global _MATPLOTLIB_STYLE_READY
    if not _MATPLOTLIB_STYLE_READY:
        try:
            plt.style.use("ggplot")
        except OSError:
            pass
        _MATPLOTLIB_STYLE_READY = True


def _import_pyplot():
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except Exception as e:  # pragma: no cover
        raise RuntimeError("matplotlib is required for plotting. Install with: pip install matplotlib") from e
    _ensure_matplotlib_style(plt)
    return plt


def segment_color(source_index: int) -> str:
    return SEGMENT_COLORS[source_index % len(SEGMENT_COLORS)]


def _plot_heart_rate(
    samples: Sequence[HeartRateSample],
    out_png: str,
    title: Optional[str] = None,
    n_xticks: int = 6,
) -> bool:
    """Heart rate against route distance. Returns False when there is nothing to draw."""
    if not samples:
        logging.info("No heart rate data available; skipping %s", out_png)
        return False
    plt = _import_pyplot()

    xs = [s.distance_m for s in samples]
    ys = [s.heart_rate for s in samples]
    lo, hi = min(ys), max(ys)
    pad = (hi - lo) * 0.1
    y_min = max(0.0, lo - pad)
    y_max = hi + pad
    if y_max <= y_min:
        y_max = y_min + 1.0

    fig, ax = plt.subplots(figsize=(10, 4))
    ax.plot(xs, ys, color=HR_COLOR, linewidth=1.6)
    ax.set_ylim(y_min, y_max)
    ax.set_ylabel("Heart rate (bpm)")
    ax.set_xlabel("Distance")

    n_ticks = min(n_xticks, len(xs))
    if n_ticks > 1:
        step = (xs[-1] - xs[0]) / (n_ticks - 1)
        ticks: List[float] = [xs[0] + step * i for i in range(n_ticks)]
    else:
        ticks = [xs[0]]
    ax.set_xticks(ticks)
    ax.set_xticklabels([format_distance_label(t) for t in ticks])
    if title:
        ax.set_title(title)

    fig.tight_layout()
    fig.savefig(out_png, dpi=150)
    plt.close(fig)
    logging.info("Wrote: %s", out_png)
    return True


def _plot_route(
    points: Sequence[TrackPoint],
    out_png: str,
    labels: Optional[Sequence[str]] = None,
    title: Optional[str] = None,
) -> bool:
    """Route coloured by source file with start and end markers."""
    bounds = compute_bounds(points)
    if bounds is None:
        logging.info("No points to draw; skipping %s", out_png)
        return False
    plt = _import_pyplot()

    fig, ax = plt.subplots(figsize=(8, 8))
    seen = set()
    for seg in split_by_source(points):
        label = None
        if labels is not None and seg.source_index not in seen and seg.source_index < len(labels):
            label = labels[seg.source_index]
            seen.add(seg.source_index)
        ax.plot(
            [p.longitude for p in seg.points],
            [p.latitude for p in seg.points],
            color=segment_color(seg.source_index),
            linewidth=3,
            alpha=0.9,
            solid_joinstyle="round",
            solid_capstyle="round",
            label=label,
        )
    ax.plot(points[0].longitude, points[0].latitude, "o", color=START_COLOR, markersize=7, label="Start")
    ax.plot(points[-1].longitude, points[-1].latitude, "o", color=END_COLOR, markersize=7, label="End")

    lat_pad = max((bounds.max_lat - bounds.min_lat) * 0.05, 1e-4)
    lon_pad = max((bounds.max_lon - bounds.min_lon) * 0.05, 1e-4)
    ax.set_xlim(bounds.min_lon - lon_pad, bounds.max_lon + lon_pad)
    ax.set_ylim(bounds.min_lat - lat_pad, bounds.max_lat + lat_pad)
    ax.set_aspect("equal", adjustable="datalim")
    ax.set_xlabel("Longitude")
    ax.set_ylabel("Latitude")
    ax.legend(loc="best", fontsize="small")
    if title:
        ax.set_title(title)

    fig.tight_layout()
    fig.savefig(out_png, dpi=150)
    plt.close(fig)
    logging.info("Wrote: %s", out_png)
    return True
