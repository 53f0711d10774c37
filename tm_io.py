from __future__ import annotations

# Readers and writers around the core in tm_track: GPX (gpxpy) and FIT
# (fitparse) into raw point records, GPX and CSV out.

import csv
import logging
import os
import xml.etree.ElementTree as ET
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from tm_track import (
    HeartRateSample,
    MergedTrack,
    Track,
    parse_track,
)

try:
    import gpxpy
    import gpxpy.gpx
except Exception:  # pragma: no cover
    gpxpy = None  # type: ignore

try:
    from fitparse import FitFile, FitParseError
except Exception:  # pragma: no cover
    FitFile = None  # type: ignore
    FitParseError = None  # type: ignore


GPXTPX_NS = "http://www.garmin.com/xmlschemas/TrackPointExtension/v1"
GPX_CREATOR = "trackmerge"
SEMICIRCLES_TO_DEG = 180.0 / (2 ** 31)

PathLike = Union[str, "os.PathLike[str]"]


class TrackParseError(ValueError):
    """A source file could not be turned into a Track."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source
        self.message = message


def _require_dependency(dep, name: str, install_hint: Optional[str] = None) -> None:
    if dep is None:
        hint = f"\nInstall with: {install_hint}" if install_hint else ""
        raise RuntimeError(
            f"Missing dependency: {name}. {hint}".strip()
        )


# -----------------
# GPX
# -----------------

def _extension_heart_rate(point) -> Optional[str]:
    for extension in point.extensions or []:
        for elem in extension.iter():
            tag = str(elem.tag)
            if (tag.endswith("}hr") or tag == "hr") and elem.text:
                return elem.text.strip()
    return None


def parse_gpx_text(text: str, source: str = "<gpx>") -> Track:
    _require_dependency(gpxpy, "gpxpy", "pip install gpxpy")
    try:
        gpx = gpxpy.parse(text)
    except (gpxpy.gpx.GPXException, ValueError) as exc:
        raise TrackParseError(source, f"invalid GPX ({exc})") from exc

    name = gpx.name
    if not name:
        name = next((trk.name for trk in gpx.tracks if trk.name), None)
    raw: List[Dict[str, Any]] = []
    for trk in gpx.tracks:
        for seg in trk.segments:
            for pt in seg.points:
                raw.append({
                    "lat": pt.latitude,
                    "lon": pt.longitude,
                    "ele": pt.elevation,
                    "time": pt.time,
                    "hr": _extension_heart_rate(pt),
                })
    return parse_track(raw, name=name, time=gpx.time)


def read_gpx(path: PathLike) -> Track:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise TrackParseError(str(path), str(exc)) from exc
    return parse_gpx_text(text, source=str(path))


def build_gpx(merged: MergedTrack) -> str:
    """Render the merged track as GPX 1.1 with Garmin heart-rate extensions."""
    _require_dependency(gpxpy, "gpxpy", "pip install gpxpy")
    gpx = gpxpy.gpx.GPX()
    gpx.creator = GPX_CREATOR
    gpx.name = merged.name
    gpx.time = merged.merged_at
    gpx.nsmap["gpxtpx"] = GPXTPX_NS

    trk = gpxpy.gpx.GPXTrack(name=merged.name)
    seg = gpxpy.gpx.GPXTrackSegment()
    for p in merged.points:
        pt = gpxpy.gpx.GPXTrackPoint(
            latitude=p.latitude,
            longitude=p.longitude,
            elevation=p.elevation,
            time=p.time,
        )
        if p.heart_rate is not None and p.heart_rate > 0:
            ext = ET.Element(f"{{{GPXTPX_NS}}}TrackPointExtension")
            hr = ET.SubElement(ext, f"{{{GPXTPX_NS}}}hr")
            hr.text = f"{p.heart_rate:g}"
            pt.extensions.append(ext)
        seg.points.append(pt)
    trk.segments.append(seg)
    gpx.tracks.append(trk)
    return gpx.to_xml(version="1.1")


# -----------------
# FIT
# -----------------

def read_fit(path: PathLike) -> Track:
    _require_dependency(FitFile, "fitparse", "pip install fitparse")
    source = str(path)
    try:
        fit = FitFile(source)
        fit.parse()
    except (OSError, FitParseError) as exc:
        raise TrackParseError(source, f"invalid FIT ({exc})") from exc

    created = None
    for msg in fit.get_messages("file_id"):
        created = msg.get_values().get("time_created")
        if created is not None:
            break

    raw: List[Dict[str, Any]] = []
    for msg in fit.get_messages("record"):
        vals = msg.get_values()
        lat = vals.get("position_lat")
        lon = vals.get("position_long")
        # Records without a fix carry no position.
        if lat is None or lon is None:
            continue
        alt = vals.get("enhanced_altitude")
        if alt is None:
            alt = vals.get("altitude")
        raw.append({
            "lat": float(lat) * SEMICIRCLES_TO_DEG,
            "lon": float(lon) * SEMICIRCLES_TO_DEG,
            "ele": alt,
            "time": vals.get("timestamp"),
            "hr": vals.get("heart_rate"),
        })
    return parse_track(raw, name=None, time=created)


# -----------------
# Loading
# -----------------

_READERS = {
    ".gpx": read_gpx,
    ".fit": read_fit,
}


def read_track(path: PathLike) -> Track:
    suffix = Path(path).suffix.lower()
    reader = _READERS.get(suffix)
    if reader is None:
        raise TrackParseError(str(path), f"unsupported file type '{suffix or '?'}' (expected .gpx or .fit)")
    return reader(path)


def load_tracks(
    paths: Sequence[PathLike],
    parse_workers: int = 0,
) -> Tuple[List[Track], List[str], List[Tuple[str, str]]]:
    """Read every path; a file that fails is reported and skipped.

    Returns the parsed tracks and their paths in argument order, and
    ``(path, message)`` for each failure.
    """
    logging.info("Reading %d file(s)...", len(paths))
    results: List[Optional[Track]] = [None] * len(paths)
    errors: List[Optional[str]] = [None] * len(paths)

    def _read(idx: int) -> None:
        path = paths[idx]
        logging.info("Parsing: %s", path)
        try:
            results[idx] = read_track(path)
        except TrackParseError as exc:
            errors[idx] = exc.message
            logging.error("Failed to parse %s: %s", path, exc.message)

    if parse_workers != 1 and len(paths) > 1:
        max_workers = parse_workers if parse_workers and parse_workers > 0 else min(len(paths), max(1, (os.cpu_count() or 1)))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [executor.submit(_read, idx) for idx in range(len(paths))]
            for future in as_completed(futures):
                future.result()
    else:
        for idx in range(len(paths)):
            _read(idx)

    tracks = [t for t in results if t is not None]
    failures = [(str(paths[i]), msg) for i, msg in enumerate(errors) if msg is not None]
    sources = [str(paths[i]) for i, t in enumerate(results) if t is not None]
    return tracks, sources, failures


# -----------------
# CSV
# -----------------

def write_heart_rate_csv(samples: Sequence[HeartRateSample], output: PathLike) -> None:
    with open(output, "w", newline="") as fh:
        writer = csv.writer(fh)
        writer.writerow(["distance_m", "heart_rate_bpm"])
        for s in samples:
            writer.writerow([round(s.distance_m, 3), round(s.heart_rate, 3)])
