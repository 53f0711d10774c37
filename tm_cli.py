from __future__ import annotations

# CLI orchestration for trackmerge. The merge and metrics engine lives in
# tm_track, file formats in tm_io and matplotlib output in tm_plotting.

import json
import logging
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from tm_io import build_gpx, load_tracks, write_heart_rate_csv
from tm_plotting import _plot_heart_rate, _plot_route
from tm_track import (
    ACTIVITY_LABELS,
    DEFAULT_SMOOTHING_WINDOW,
    DEFAULT_TRACK_NAME,
    MergedTrack,
    build_heart_rate_series,
    ensure_gpx_suffix,
    find_gaps,
    merge,
    remove_time_gaps,
    suggest_filename,
    summarize,
)

try:
    import typer
except Exception:  # pragma: no cover
    typer = None  # type: ignore


SUMMARY_LABELS = {
    "distance": "Distance",
    "duration": "Duration",
    "speed": "Avg. speed",
    "pace": "Avg. pace",
    "elevation": "Elevation",
    "hr_avg": "Avg HR",
    "hr_max": "Max HR",
    "hr_min": "Min HR",
}


class _StageProfiler:
    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self._last = time.perf_counter()

    def lap(self, label: str) -> None:
        if not self.enabled:
            return
        now = time.perf_counter()
        logging.info("Profile %-18s %.3fs", label, now - self._last)
        self._last = now


def _setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    logging.getLogger().setLevel(level)
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)
    # Suppress very chatty third-party DEBUG logs (e.g., matplotlib findfont)
    logging.getLogger("matplotlib").setLevel(logging.WARNING)
    logging.getLogger("matplotlib.font_manager").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.INFO)


def _check_mode(mode: str) -> str:
    mode_norm = mode.lower()
    if mode_norm not in ACTIVITY_LABELS:
        raise typer.BadParameter("mode must be 'bike' or 'run'")
    return mode_norm


def _load_merged(
    files: List[str],
    remove_gaps: bool,
    name: str,
    parse_workers: int,
    profiler: _StageProfiler,
) -> Tuple[Optional[MergedTrack], List[str]]:
    tracks, sources, failures = load_tracks(files, parse_workers=parse_workers)
    profiler.lap("parse")
    if failures:
        logging.warning("Skipped %d of %d file(s) that failed to parse", len(failures), len(files))
    if not tracks:
        logging.error("No readable track in the given files.")
        return None, []
    labels = [Path(src).name for src in sources]

    points = merge(tracks)
    if remove_gaps and points:
        for gap in find_gaps(points):
            logging.info("Gap: %s -> %s (%.0fs)", gap.start.isoformat(), gap.end.isoformat(), gap.length_s)
        points = remove_time_gaps(points)
    merged = MergedTrack(points=tuple(points), name=name)
    logging.info("Merged points: %d from %d track(s)", len(merged.points), len(tracks))
    profiler.lap("merge")
    return merged, labels


def _log_summary(summary: Dict[str, str]) -> None:
    for key, value in summary.items():
        logging.info("%-11s %s", SUMMARY_LABELS.get(key, key) + ":", value)


def _run_merge(
    files: List[str],
    output: Optional[str],
    remove_gaps: bool = False,
    name: str = DEFAULT_TRACK_NAME,
    mode: str = "bike",
    png: Optional[str] = None,
    route_png: Optional[str] = None,
    window: int = DEFAULT_SMOOTHING_WINDOW,
    parse_workers: int = 0,
    verbose: bool = False,
    log_file: Optional[str] = None,
    profile: bool = False,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    profiler = _StageProfiler(profile)
    merged, labels = _load_merged(files, remove_gaps, name, parse_workers, profiler)
    if merged is None:
        return 2

    _log_summary(summarize(merged.points, mode))
    profiler.lap("stats")

    out_path = ensure_gpx_suffix(output or suggest_filename(merged.points, mode))
    try:
        Path(out_path).write_text(build_gpx(merged), encoding="utf-8")
        logging.info("Wrote: %s", out_path)
    except OSError as exc:
        logging.error("Failed to write GPX: %s", exc)
        return 2
    profiler.lap("gpx")

    try:
        if png:
            series = build_heart_rate_series(merged.points, window)
            _plot_heart_rate(series, png, title=merged.name)
        if route_png:
            _plot_route(merged.points, route_png, labels=labels, title=merged.name)
    except (OSError, RuntimeError) as exc:
        logging.error("Failed to write plot: %s", exc)
        return 2
    if png or route_png:
        profiler.lap("plot")
    return 0


def _run_summary(
    files: List[str],
    remove_gaps: bool = False,
    mode: str = "bike",
    as_json: bool = False,
    parse_workers: int = 0,
    verbose: bool = False,
) -> int:
    _setup_logging(verbose)
    merged, _ = _load_merged(files, remove_gaps, DEFAULT_TRACK_NAME, parse_workers, _StageProfiler(False))
    if merged is None:
        return 2
    summary = summarize(merged.points, mode)
    if as_json:
        typer.echo(json.dumps(summary, indent=2))
    else:
        for key, value in summary.items():
            typer.echo(f"{SUMMARY_LABELS.get(key, key)}: {value}")
    return 0


def _run_export_hr(
    files: List[str],
    output: str,
    window: int = DEFAULT_SMOOTHING_WINDOW,
    remove_gaps: bool = False,
    parse_workers: int = 0,
    verbose: bool = False,
) -> int:
    _setup_logging(verbose)
    merged, _ = _load_merged(files, remove_gaps, DEFAULT_TRACK_NAME, parse_workers, _StageProfiler(False))
    if merged is None:
        return 2
    series = build_heart_rate_series(merged.points, window)
    if not series:
        logging.warning("No heart rate data available.")
    try:
        write_heart_rate_csv(series, output)
        logging.info("Wrote: %s (%d samples)", output, len(series))
    except OSError as exc:
        logging.error("Failed to write export: %s", exc)
        return 2
    return 0


def _build_typer_app():  # pragma: no cover
    app = typer.Typer(add_completion=False, help="Merge GPX/FIT recordings into one track and summarise it.")

    @app.command(name="merge")
    def merge_cmd(
        files: List[str] = typer.Argument(..., help="One or more input .gpx or .fit files"),
        output: Optional[str] = typer.Option(None, "--output", "-o", help="Output GPX path (defaults to a name from the start time)"),
        remove_gaps: bool = typer.Option(False, "--remove-gaps/--keep-gaps", help="Remove time gaps between files"),
        name: str = typer.Option(DEFAULT_TRACK_NAME, "--name", help="Track name written to the GPX"),
        mode: str = typer.Option("bike", "--mode", help="Activity mode: bike|run"),
        png: Optional[str] = typer.Option(None, "--png", help="Optional heart rate chart PNG path"),
        route_png: Optional[str] = typer.Option(None, "--route-png", help="Optional route PNG path coloured by source file"),
        window: int = typer.Option(DEFAULT_SMOOTHING_WINDOW, "--window", help="Heart rate smoothing window (samples)"),
        parse_workers: int = typer.Option(0, "--parse-workers", help="Number of worker threads for parsing (0=auto, 1=serial)"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path"),
        profile: bool = typer.Option(False, "--profile/--no-profile", help="Log stage timings"),
    ) -> None:
        """Merge recordings by time and write a single GPX."""
        code = _run_merge(
            files,
            output,
            remove_gaps=remove_gaps,
            name=name,
            mode=_check_mode(mode),
            png=png,
            route_png=route_png,
            window=window,
            parse_workers=parse_workers,
            verbose=verbose,
            log_file=log_file,
            profile=profile,
        )
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def summary(
        files: List[str] = typer.Argument(..., help="One or more input .gpx or .fit files"),
        remove_gaps: bool = typer.Option(False, "--remove-gaps/--keep-gaps", help="Remove time gaps between files"),
        mode: str = typer.Option("bike", "--mode", help="Activity mode: bike|run"),
        as_json: bool = typer.Option(False, "--json", help="Print the summary as JSON"),
        parse_workers: int = typer.Option(0, "--parse-workers", help="Number of worker threads for parsing (0=auto, 1=serial)"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
    ) -> None:
        """Print distance, duration, speed or pace, elevation and heart rate."""
        code = _run_summary(
            files,
            remove_gaps=remove_gaps,
            mode=_check_mode(mode),
            as_json=as_json,
            parse_workers=parse_workers,
            verbose=verbose,
        )
        if code != 0:
            raise typer.Exit(code)

    @app.command(name="export-hr")
    def export_hr(
        files: List[str] = typer.Argument(..., help="One or more input .gpx or .fit files"),
        output: str = typer.Option("heart_rate.csv", "--output", "-o", help="Output CSV path"),
        window: int = typer.Option(DEFAULT_SMOOTHING_WINDOW, "--window", help="Heart rate smoothing window (samples)"),
        remove_gaps: bool = typer.Option(False, "--remove-gaps/--keep-gaps", help="Remove time gaps between files"),
        parse_workers: int = typer.Option(0, "--parse-workers", help="Number of worker threads for parsing (0=auto, 1=serial)"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
    ) -> None:
        """Write the smoothed heart rate against route distance as CSV."""
        code = _run_export_hr(
            files,
            output,
            window=window,
            remove_gaps=remove_gaps,
            parse_workers=parse_workers,
            verbose=verbose,
        )
        if code != 0:
            raise typer.Exit(code)

    return app


def main_cli() -> int:
    if typer is None:
        print(
            "Typer is not installed. Install with: pip install typer",
            file=sys.stderr,
        )
        return 2
    app = _build_typer_app()
    app()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main_cli())
