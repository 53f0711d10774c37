import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Literal, Mapping, NamedTuple, Optional, Sequence, Tuple

import numpy as np


EARTH_RADIUS_M = 6371000.0
GAP_THRESHOLD_FACTOR = 10.0
DEFAULT_SMOOTHING_WINDOW = 10
DEFAULT_TRACK_NAME = "Merged GPX"
DEFAULT_FILENAME = "merged-activity"
NOT_AVAILABLE = "n/a"

ActivityMode = Literal["bike", "run"]

ACTIVITY_LABELS = {
    "bike": "Bike Ride",
    "run": "Run",
}


# -----------------
# Data structures
# -----------------

@dataclass(frozen=True)
class TrackPoint:
    latitude: float
    longitude: float
    elevation: Optional[float] = None
    time: Optional[datetime] = None
    heart_rate: Optional[float] = None
    source_index: int = 0


@dataclass(frozen=True)
class Track:
    name: Optional[str]
    time: Optional[datetime]
    points: Tuple[TrackPoint, ...]


@dataclass(frozen=True)
class MergedTrack:
    points: Tuple[TrackPoint, ...]
    name: str = DEFAULT_TRACK_NAME
    merged_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Stats:
    distance_m: float = 0.0
    elevation_gain_m: float = 0.0
    elevation_loss_m: float = 0.0
    point_count: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def duration_s(self) -> float:
        if self.start_time is None or self.end_time is None:
            return float("nan")
        return (self.end_time - self.start_time).total_seconds()


@dataclass
class HeartRateStats:
    avg: int
    max: float
    min: float


@dataclass
class HeartRateSample:
    distance_m: float
    heart_rate: float


@dataclass
class Bounds:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float


@dataclass
class Segment:
    source_index: int
    points: List[TrackPoint]


class Gap(NamedTuple):
    start: datetime
    end: datetime
    length_s: float


# -----------------
# Geodesy
# -----------------

def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine great-circle distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def _haversine_np(lat1: np.ndarray, lon1: np.ndarray, lat2: np.ndarray, lon2: np.ndarray) -> np.ndarray:
    phi1 = np.radians(lat1)
    phi2 = np.radians(lat2)
    dphi = np.radians(lat2 - lat1)
    dlmb = np.radians(lon2 - lon1)
    a = np.sin(dphi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(dlmb / 2) ** 2
    c = 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def cumulative_distance_m(points: Sequence[TrackPoint]) -> np.ndarray:
    """Distance from the first point to every point along the route."""
    n = len(points)
    out = np.zeros(n, dtype=np.float64)
    if n <= 1:
        return out
    lat = np.array([p.latitude for p in points], dtype=np.float64)
    lon = np.array([p.longitude for p in points], dtype=np.float64)
    steps = _haversine_np(lat[:-1], lon[:-1], lat[1:], lon[1:])
    out[1:] = np.cumsum(steps)
    return out


# -----------------
# Track model
# -----------------

def _coerce_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(out):
        return None
    return out


def _coerce_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    elif isinstance(value, (int, float)) and math.isfinite(float(value)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_track(
    raw_points: Iterable[Mapping[str, Any]],
    name: Optional[str] = None,
    time: Optional[Any] = None,
) -> Track:
    """Build a Track from raw point records (``lat``, ``lon``, ``ele``, ``time``, ``hr``).

    Records without usable coordinates are dropped. Optional fields that are
    missing or not finite become ``None``; a heart rate must be positive.
    """
    points: List[TrackPoint] = []
    dropped = 0
    for rec in raw_points:
        lat = _coerce_float(rec.get("lat"))
        lon = _coerce_float(rec.get("lon"))
        if lat is None or lon is None or not (-90.0 <= lat <= 90.0) or not (-180.0 <= lon <= 180.0):
            dropped += 1
            continue
        hr = _coerce_float(rec.get("hr"))
        if hr is not None and hr <= 0:
            hr = None
        points.append(
            TrackPoint(
                latitude=lat,
                longitude=lon,
                elevation=_coerce_float(rec.get("ele")),
                time=_coerce_time(rec.get("time")),
                heart_rate=hr,
            )
        )
    if dropped:
        logging.warning("Dropped %d point(s) without valid coordinates%s", dropped, f" in {name}" if name else "")
    return Track(name=name, time=_coerce_time(time), points=tuple(points))


# -----------------
# Temporal merge
# -----------------

def merge(tracks: Sequence[Track]) -> List[TrackPoint]:
    """Interleave the points of all tracks by time, tagging each with its track index.

    Timed points come first in ascending time order; untimed points follow in
    their original order. Python's sort is stable, so equal timestamps keep
    the order in which the tracks were passed.
    """
    allpoints = [
        replace(p, source_index=idx)
        for idx, track in enumerate(tracks)
        for p in track.points
    ]
    timed = [p for p in allpoints if p.time is not None]
    untimed = [p for p in allpoints if p.time is None]
    timed.sort(key=lambda p: p.time)
    return timed + untimed


def merge_tracks(
    tracks: Sequence[Track],
    remove_gaps: bool = False,
    name: str = DEFAULT_TRACK_NAME,
) -> MergedTrack:
    points = merge(tracks)
    logging.debug("Merged %d point(s) from %d track(s)", len(points), len(tracks))
    if remove_gaps and points:
        points = remove_time_gaps(points)
    return MergedTrack(points=tuple(points), name=name)


# -----------------
# Gap normaliser
# -----------------

def _timed_deltas_s(points: Sequence[TrackPoint]) -> np.ndarray:
    times = [p.time for p in points if p.time is not None]
    if len(times) < 2:
        return np.zeros(0, dtype=np.float64)
    return np.array(
        [(times[i] - times[i - 1]).total_seconds() for i in range(1, len(times))],
        dtype=np.float64,
    )


def median_interval_s(points: Sequence[TrackPoint]) -> Optional[float]:
    """Expected sampling interval: the upper median of consecutive timed deltas."""
    deltas = _timed_deltas_s(points)
    if deltas.size == 0:
        return None
    ordered = np.sort(deltas)
    return float(ordered[ordered.size // 2])


def remove_time_gaps(points: Sequence[TrackPoint]) -> List[TrackPoint]:
    """Collapse abnormally long pauses down to one median sampling step.

    A pause is any interval between consecutive timed points longer than
    ``GAP_THRESHOLD_FACTOR`` times the median interval. Every later timestamp
    is shifted back by the removed time; untimed points pass through.
    """
    median = median_interval_s(points)
    if median is None:
        return list(points)
    threshold = median * GAP_THRESHOLD_FACTOR

    offset_s = 0.0
    prev_original: Optional[datetime] = None
    out: List[TrackPoint] = []
    for p in points:
        if p.time is None:
            out.append(p)
            continue
        if prev_original is None:
            prev_original = p.time
            out.append(p)
            continue
        elapsed = (p.time - prev_original).total_seconds()
        if elapsed > threshold:
            offset_s += elapsed - median
            logging.debug("Gap of %.1fs at %s collapsed to %.1fs", elapsed, p.time.isoformat(), median)
        prev_original = p.time
        out.append(replace(p, time=p.time - timedelta(seconds=offset_s)))
    return out


def find_gaps(points: Sequence[TrackPoint], threshold_s: Optional[float] = None) -> List[Gap]:
    """List intervals between consecutive timed points longer than ``threshold_s``.

    Without an explicit threshold the gap normaliser's rule is used.
    """
    if threshold_s is None:
        median = median_interval_s(points)
        if median is None:
            return []
        threshold_s = median * GAP_THRESHOLD_FACTOR
    gaps: List[Gap] = []
    prev: Optional[datetime] = None
    for p in points:
        if p.time is None:
            continue
        if prev is not None:
            dt = (p.time - prev).total_seconds()
            if dt > threshold_s:
                gaps.append(Gap(prev, p.time, dt))
        prev = p.time
    return gaps


# -----------------
# Stats
# -----------------

def compute_stats(points: Sequence[TrackPoint]) -> Stats:
    stats = Stats(point_count=len(points))
    if not points:
        return stats
    prev = points[0]
    for cur in points[1:]:
        stats.distance_m += distance_m(prev.latitude, prev.longitude, cur.latitude, cur.longitude)
        if prev.elevation is not None and cur.elevation is not None:
            delta = cur.elevation - prev.elevation
            if delta > 0:
                stats.elevation_gain_m += delta
            elif delta < 0:
                stats.elevation_loss_m += -delta
        prev = cur
    # Merged input may be out of order or partially untimed.
    times = [p.time for p in points if p.time is not None]
    if times:
        stats.start_time = min(times)
        stats.end_time = max(times)
    return stats


def compute_heart_rate_stats(points: Sequence[TrackPoint]) -> Optional[HeartRateStats]:
    values = [p.heart_rate for p in points if p.heart_rate is not None and p.heart_rate > 0]
    if not values:
        return None
    avg = sum(values) / len(values)
    # Half rounds up, not to even.
    return HeartRateStats(avg=int(math.floor(avg + 0.5)), max=max(values), min=min(values))


def compute_bounds(points: Sequence[TrackPoint]) -> Optional[Bounds]:
    if not points:
        return None
    lats = [p.latitude for p in points]
    lons = [p.longitude for p in points]
    return Bounds(min(lats), max(lats), min(lons), max(lons))


def split_by_source(points: Sequence[TrackPoint]) -> List[Segment]:
    """Group consecutive points that came from the same source track."""
    segments: List[Segment] = []
    for p in points:
        if segments and segments[-1].source_index == p.source_index:
            segments[-1].points.append(p)
        else:
            segments.append(Segment(p.source_index, [p]))
    return segments


# -----------------
# Heart-rate series
# -----------------

def smooth_heart_rate(values: Sequence[float], window: int = DEFAULT_SMOOTHING_WINDOW) -> List[float]:
    """Centered moving average over ``[i - w//2, i + ceil(w/2))``, shrinking at the edges.

    Sequences shorter than the window are returned unsmoothed.
    """
    n = len(values)
    if window <= 0 or n < window:
        return [float(v) for v in values]
    arr = np.asarray(values, dtype=np.float64)
    csum = np.concatenate(([0.0], np.cumsum(arr)))
    idx = np.arange(n)
    starts = np.maximum(0, idx - window // 2)
    ends = np.minimum(n, idx + (window + 1) // 2)
    out = (csum[ends] - csum[starts]) / (ends - starts)
    return out.tolist()


def build_heart_rate_series(
    points: Sequence[TrackPoint],
    smoothing_window: int = DEFAULT_SMOOTHING_WINDOW,
) -> List[HeartRateSample]:
    if not points:
        return []
    cum = cumulative_distance_m(points)
    kept = [
        (float(cum[i]), float(p.heart_rate))
        for i, p in enumerate(points)
        if p.heart_rate is not None and p.heart_rate > 0 and p.time is not None
    ]
    if not kept:
        return []
    smoothed = smooth_heart_rate([hr for _, hr in kept], smoothing_window)
    return [HeartRateSample(d, hr) for (d, _), hr in zip(kept, smoothed)]


# -----------------
# Formatting
# -----------------

def format_distance(meters: float) -> str:
    if not math.isfinite(meters):
        return NOT_AVAILABLE
    if meters >= 1000:
        return f"{meters / 1000:.2f} km"
    return f"{meters:.0f} m"


def format_duration(seconds: float) -> str:
    """Elapsed seconds (not milliseconds) as "1h 2m 3s", "2m 3s" or "3s"; fractions are truncated."""
    if not math.isfinite(seconds) or seconds < 0:
        return NOT_AVAILABLE
    total = int(math.floor(seconds))
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    if h > 0:
        return f"{h}h {m}m {s}s"
    if m > 0:
        return f"{m}m {s}s"
    return f"{s}s"


def format_speed(km_per_hour: float) -> str:
    if not math.isfinite(km_per_hour) or km_per_hour <= 0:
        return NOT_AVAILABLE
    return f"{km_per_hour:.1f} km/h"


def format_pace(min_per_km: float) -> str:
    if not math.isfinite(min_per_km) or min_per_km <= 0:
        return NOT_AVAILABLE
    minutes = int(math.floor(min_per_km))
    seconds = int(math.floor((min_per_km - minutes) * 60 + 0.5))
    if seconds == 60:
        minutes += 1
        seconds = 0
    return f"{minutes}:{seconds:02d} min/km"


def format_distance_label(meters: float) -> str:
    """Short axis label for distance ticks."""
    if not math.isfinite(meters):
        return "0"
    if meters >= 1000:
        return f"{meters / 1000:.1f} km"
    return f"{int(math.floor(meters + 0.5))} m"


# -----------------
# Summaries
# -----------------

def average_speed_kmh(stats: Stats) -> float:
    hours = stats.duration_s / 3600.0
    if not hours > 0:
        return 0.0
    return (stats.distance_m / 1000.0) / hours


def average_pace_min_per_km(stats: Stats) -> float:
    km = stats.distance_m / 1000.0
    if km <= 0:
        return 0.0
    return (stats.duration_s / 60.0) / km


def summarize(points: Sequence[TrackPoint], mode: ActivityMode = "bike") -> Dict[str, str]:
    """Human-readable labels for the merged activity."""
    if mode not in ACTIVITY_LABELS:
        raise ValueError(f"Unknown activity mode: {mode!r} (expected bike|run)")
    stats = compute_stats(points)
    summary: Dict[str, str] = {
        "distance": format_distance(stats.distance_m),
        "duration": format_duration(stats.duration_s),
    }
    if mode == "bike":
        summary["speed"] = format_speed(average_speed_kmh(stats))
    else:
        summary["pace"] = format_pace(average_pace_min_per_km(stats))
    summary["elevation"] = f"+{int(math.floor(stats.elevation_gain_m + 0.5))} m"
    hr = compute_heart_rate_stats(points)
    if hr is not None:
        summary["hr_avg"] = str(hr.avg)
        summary["hr_max"] = f"{hr.max:g}"
        summary["hr_min"] = f"{hr.min:g}"
    return summary


def time_of_day_label(dt: datetime) -> str:
    hour = dt.hour
    if 5 <= hour < 11:
        return "Morning"
    if 11 <= hour < 14:
        return "Lunch"
    if 14 <= hour < 18:
        return "Afternoon"
    if 18 <= hour < 22:
        return "Evening"
    return "Night"


def suggest_filename(points: Sequence[TrackPoint], mode: ActivityMode = "bike") -> str:
    start = compute_stats(points).start_time
    if start is None:
        return DEFAULT_FILENAME
    # Label by the wall clock of the machine, not UTC.
    local = start.astimezone()
    return f"{time_of_day_label(local)} {ACTIVITY_LABELS.get(mode, ACTIVITY_LABELS['bike'])}"


def ensure_gpx_suffix(filename: str) -> str:
    name = filename.strip() or DEFAULT_FILENAME
    if not name.lower().endswith(".gpx"):
        name += ".gpx"
    return name
