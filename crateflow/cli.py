# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

# Command line front end
#
#  crateflow validate library.xml
#  crateflow map library.xml /Volumes/USB/PIONEER/USBANLZ -o map.json
#  crateflow analyze library.xml --mapping map.json --csv out.csv
#  crateflow cluster library.xml --folder ROOT/Techno
#  crateflow search library.xml 1234

import argparse
import logging
import os
import sys

import rich.console
import rich.progress
import rich.table

from .analyzer import run_baseline_analysis
from .cachedb import SimilarityCache
from .clustering import generate_playlist_clusters
from .config import load_settings
from .correlator import build_analysis_mapping, load_mapping, save_mapping
from .errors import CrateflowError, LibraryValidationError
from .export import build_analysis_csv, build_analysis_json
from .library import filter_tracks_by_folders, summarize_library
from .parse_worker import start_background_parse
from .search import find_similar_tracks
from .waveforms import attach_waveform_summaries

logger = logging.getLogger(__name__)

console = rich.console.Console()


def _progress():
    return rich.progress.Progress(
        rich.progress.SpinnerColumn(),
        rich.progress.TextColumn("[progress.description]{task.description:.20s}"),
        rich.progress.BarColumn(),
        rich.progress.MofNCompleteColumn(),
        rich.progress.TimeRemainingColumn(),
        rich.progress.TimeElapsedColumn(),
        expand=True,
    )


def load_library(xml_path):
    with _progress() as progress:
        task_id = progress.add_task("Parsing", total=100)
        return start_background_parse(
            xml_path, on_progress=lambda x: progress.update(task_id, completed=x)
        )


def load_tracks(args, settings, cache):
    library = load_library(args.xml)
    tracks = filter_tracks_by_folders(library, args.folder)

    if args.mapping:
        tracks, stats = attach_waveform_summaries(
            tracks, load_mapping(args.mapping), cache, settings.waveform
        )
        logger.info(f"Waveform attachment: {stats}")

    return library, tracks


def cmd_validate(args, settings):
    try:
        library = load_library(args.xml)
        issues = library.validation.issues
        summary = summarize_library(library)
    except LibraryValidationError as e:
        issues = e.issues
        summary = None
        console.print(f"[red]{e}[/red]")

    table = rich.table.Table(title="Validation issues")
    table.add_column("Severity")
    table.add_column("Code")
    table.add_column("Message")
    table.add_column("Context")
    for issue in issues[: args.limit]:
        table.add_row(issue.severity, issue.code, issue.message, str(issue.context))
    console.print(table)

    if summary is None:
        return 1

    stats = rich.table.Table(title="Library")
    stats.add_column("Field")
    stats.add_column("Count", justify="right")
    for key, value in summary.items():
        stats.add_row(key, str(value))
    console.print(stats)
    return 0


def cmd_map(args, settings):
    library = load_library(args.xml)

    with _progress() as progress:
        task_id = progress.add_task("Analysis files", total=None)

        def on_progress(update):
            progress.update(task_id, total=update["total"], completed=update["scanned"])

        report = build_analysis_mapping(
            library.tracks, args.anlz_root, settings.correlator, on_progress=on_progress
        )

    path = save_mapping(report, args.output)
    table = rich.table.Table(title=f"Mapping written to {path}")
    table.add_column("Stat")
    table.add_column("Value", justify="right")
    for key, value in report.stats.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)
    return 0


def cmd_analyze(args, settings):
    if args.max_pairs is not None:
        settings.analysis.max_pairs = args.max_pairs

    with SimilarityCache.open(settings.cache.db_path) as cache:
        library, tracks = load_tracks(args, settings, cache)

        with _progress() as progress:
            task_id = progress.add_task("Scoring", total=None)

            def on_progress(update):
                progress.update(task_id, total=update["total_pairs"], completed=update["pair_count"])

            result = run_baseline_analysis(
                tracks,
                cache,
                settings.scoring,
                settings.analysis,
                source_xml_path=args.xml,
                selected_folders=args.folder,
                on_progress=on_progress,
            )

    tracks_by_id = library.tracks_by_id
    table = rich.table.Table(
        title=f"Top matches ({result.pair_count} pairs, {result.cache_hits} cached)"
    )
    table.add_column("Track A")
    table.add_column("Track B")
    table.add_column("Score", justify="right")
    table.add_column("Why")
    for match in result.top_matches:
        a = tracks_by_id.get(match.track_a_id)
        b = tracks_by_id.get(match.track_b_id)
        table.add_row(
            f"{a.artist} - {a.title}" if a else match.track_a_id,
            f"{b.artist} - {b.title}" if b else match.track_b_id,
            f"{match.score:.3f}",
            match.reason,
        )
    console.print(table)

    if args.csv:
        with open(args.csv, "w", encoding="utf-8", newline="") as f:
            f.write(build_analysis_csv(result, tracks_by_id))
    if args.json:
        with open(args.json, "w", encoding="utf-8") as f:
            f.write(build_analysis_json(result, tracks_by_id))
    return 0


def cmd_cluster(args, settings):
    if args.threshold is not None:
        settings.clustering.similarity_threshold = args.threshold
    if args.strict:
        settings.clustering.strict_mode = True

    with SimilarityCache.open(settings.cache.db_path) as cache:
        library, tracks = load_tracks(args, settings, cache)
        result = generate_playlist_clusters(
            tracks,
            cache,
            settings.clustering,
            settings.scoring,
            source_xml_path=args.xml,
            selected_folders=args.folder,
        )

    tracks_by_id = library.tracks_by_id
    for cluster in result.clusters:
        table = rich.table.Table(
            title=(
                f"{cluster.id}: {cluster.size} tracks, avg {cluster.avg_score:.3f}, "
                f"{cluster.confidence_label}"
            ),
            caption="; ".join(cluster.reasons + cluster.warnings),
        )
        table.add_column("#", justify="right")
        table.add_column("Artist")
        table.add_column("Title")
        table.add_column("BPM", justify="right")
        table.add_column("Key")
        for i, track_id in enumerate(cluster.track_ids, start=1):
            track = tracks_by_id[track_id]
            table.add_row(
                str(i),
                track.artist,
                track.title,
                f"{track.bpm:.1f}" if track.bpm is not None else "",
                track.key,
            )
        console.print(table)

    console.print(
        f"{len(result.clusters)} clusters from {result.pair_count} pairs "
        f"(threshold {result.similarity_threshold:.2f})"
    )
    return 0


def cmd_search(args, settings):
    if args.limit is not None:
        settings.search.limit = args.limit
    if args.min_score is not None:
        settings.search.min_score = args.min_score

    with SimilarityCache.open(settings.cache.db_path) as cache:
        library, tracks = load_tracks(args, settings, cache)
        result = find_similar_tracks(
            tracks,
            args.track_id,
            cache,
            settings.search,
            settings.scoring,
            source_xml_path=args.xml,
            selected_folders=args.folder,
        )

    tracks_by_id = library.tracks_by_id
    target = tracks_by_id[result.target_id]
    table = rich.table.Table(title=f"Similar to {target.artist} - {target.title}")
    table.add_column("Artist")
    table.add_column("Title")
    table.add_column("Score", justify="right")
    table.add_column("Why")
    table.add_column("Source")
    for match in result.matches:
        track = tracks_by_id[match.track_id]
        table.add_row(
            track.artist,
            track.title,
            f"{match.score:.3f}",
            match.reason,
            "cache" if match.from_cache else "computed",
        )
    console.print(table)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(description="Crateflow library analyzer")
    parser.add_argument(
        "-c", "--config", default=None, help="Path to a YAML config file"
    )
    parser.add_argument(
        "-d",
        "--db-path",
        default=None,
        dest="db_path",
        help="Path to the similarity cache database",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose logging"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Validate a library export")
    validate.add_argument("xml", help="Path to the library XML export")
    validate.add_argument(
        "-l", "--limit", type=int, default=50, help="Maximum number of issues to show"
    )
    validate.set_defaults(func=cmd_validate)

    mapper = subparsers.add_parser("map", help="Match tracks to analysis files")
    mapper.add_argument("xml", help="Path to the library XML export")
    mapper.add_argument("anlz_root", help="Directory holding the analysis files")
    mapper.add_argument(
        "-o", "--output", default="./anlz-track-map.json", help="Where to write the mapping"
    )
    mapper.set_defaults(func=cmd_map)

    def add_track_options(sub):
        sub.add_argument("xml", help="Path to the library XML export")
        sub.add_argument(
            "-f",
            "--folder",
            action="append",
            default=[],
            help="Only use tracks from playlists under this folder (repeatable)",
        )
        sub.add_argument(
            "-m", "--mapping", default=None, help="Analysis file mapping for waveforms"
        )

    analyze = subparsers.add_parser("analyze", help="Score pairs of tracks")
    add_track_options(analyze)
    analyze.add_argument("--max-pairs", type=int, default=None, dest="max_pairs")
    analyze.add_argument("--csv", default=None, help="Write the top matches as CSV")
    analyze.add_argument("--json", default=None, help="Write the top matches as JSON")
    analyze.set_defaults(func=cmd_analyze)

    cluster = subparsers.add_parser("cluster", help="Group tracks into playlists")
    add_track_options(cluster)
    cluster.add_argument("-t", "--threshold", type=float, default=None)
    cluster.add_argument("--strict", action="store_true", help="Raise the threshold a little")
    cluster.set_defaults(func=cmd_cluster)

    search = subparsers.add_parser("search", help="Find tracks similar to one track")
    add_track_options(search)
    search.add_argument("track_id", help="Id of the target track")
    search.add_argument("-l", "--limit", type=int, default=None)
    search.add_argument("-s", "--min-score", type=float, default=None, dest="min_score")
    search.set_defaults(func=cmd_search)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    # set up the logger
    log_level = logging.DEBUG if args.verbose else logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler()],
    )

    try:
        settings = load_settings(args.config)
        if args.db_path:
            settings.cache.db_path = os.path.join(args.db_path, "similarity.db")
        return args.func(args, settings)
    except CrateflowError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
