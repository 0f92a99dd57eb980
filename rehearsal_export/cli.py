"""CLI interface: export a rehearsal project to a single composed recording."""

import argparse
import logging
import os
import shutil
import sys

from rehearsal_export.capture import codec_candidates, ffmpeg_binary, ffmpeg_supports
from rehearsal_export.config import normalization_from_env
from rehearsal_export.constants import (
    CAPTURE_FPS,
    DEFAULT_F0_METHOD,
    DEFAULT_INDEX_RATE,
    OUTPUT_DIR,
    SURFACE_HEIGHT,
    SURFACE_WIDTH,
    VERSION,
)
from rehearsal_export.engine import export_video
from rehearsal_export.errors import ExportError
from rehearsal_export.exporter import export, slug_from_path
from rehearsal_export.models import can_export, load_project
from rehearsal_export.normalization import NormalizationConfig


def _check_ffmpeg():
    """Verify the ffmpeg binaries that capture and decoding use."""
    binary = ffmpeg_binary()
    if not (os.path.isfile(binary) or shutil.which(binary)):
        print(f"Error: ffmpeg is required but not found ({binary}).", file=sys.stderr)
        print("Install with: brew install ffmpeg, or set FFMPEG_BINARY", file=sys.stderr)
        raise SystemExit(1)
    # pydub shells out to the ffmpeg on PATH for anything but WAV
    if not shutil.which("ffmpeg"):
        print("Warning: no ffmpeg on PATH; only WAV speech clips can be decoded.", file=sys.stderr)


def _load(project_path: str):
    if not os.path.exists(project_path):
        print(f"Error: File not found: {project_path}", file=sys.stderr)
        raise SystemExit(1)
    try:
        return load_project(project_path)
    except ValueError as e:
        print(f"Error: Could not parse project file {project_path}: {e}", file=sys.stderr)
        raise SystemExit(1)


def _normalization_config(args) -> NormalizationConfig | None:
    """CLI flags override RVC_* environment variables."""
    env_config = normalization_from_env()
    api_url = args.rvc_url or (env_config.api_url if env_config else "")
    model_name = args.rvc_model or (env_config.model_name if env_config else "")
    if not api_url or not model_name:
        if args.rvc_url or args.rvc_model:
            print("Error: voice normalization needs both --rvc-url and --rvc-model", file=sys.stderr)
            raise SystemExit(1)
        return None

    f0_method = args.f0_method or (env_config.f0_method if env_config else DEFAULT_F0_METHOD)
    index_rate = args.index_rate
    if index_rate is None:
        index_rate = env_config.index_rate if env_config else DEFAULT_INDEX_RATE
    try:
        return NormalizationConfig(api_url=api_url, model_name=model_name, f0_method=f0_method, index_rate=index_rate)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)


def _print_progress(progress):
    if progress.current_segment is not None:
        print(f"  [{progress.progress:5.1f}%] {progress.stage} {progress.current_segment}/{progress.total_segments}")
    else:
        print(f"  [{progress.progress:5.1f}%] {progress.stage}")


def cmd_export(args):
    """Export a project to one composed recording."""
    _check_ffmpeg()

    segments, backdrop = _load(args.project)
    backdrop = args.image or backdrop
    if not backdrop:
        print("Error: No backdrop image (set 'backdrop' in the project or pass --image).", file=sys.stderr)
        raise SystemExit(1)
    if not can_export(segments):
        print("Error: No segments with completed audio available for export.", file=sys.stderr)
        raise SystemExit(1)

    normalization = _normalization_config(args)
    if normalization:
        print(f"Voice normalization: {normalization.model_name} via {normalization.endpoint}")

    try:
        result = export_video(
            segments,
            backdrop,
            normalization=normalization,
            on_progress=_print_progress if args.verbose else None,
            realtime=args.realtime,
        )
    except ExportError as e:
        print(f"Error: Export failed: {e}", file=sys.stderr)
        raise SystemExit(1)

    for segment_id, reason in result.normalization_failures.items():
        print(f"Warning: normalization failed for {segment_id}, used original audio: {reason}", file=sys.stderr)
    for timing in result.timeline:
        if timing.timing_warning:
            print(f"Warning: {timing.segment_id}: {timing.timing_warning}", file=sys.stderr)

    settings = {
        "surface": f"{SURFACE_WIDTH}x{SURFACE_HEIGHT}",
        "fps": CAPTURE_FPS,
        "realtime": args.realtime,
        "normalization": {
            "model": normalization.model_name,
            "f0_method": normalization.f0_method,
            "index_rate": normalization.index_rate,
        } if normalization else None,
    }
    output_path = export(result, args.output_dir, slug_from_path(args.project), settings)

    if result.cancelled:
        print(f"Stopped early after {len(result.timeline)} segments.")
    print(f"Done: {output_path} ({result.duration:.1f}s, {len(result.timeline)} segments)")


def cmd_check(args):
    """Show which segments are ready for export."""
    segments, backdrop = _load(args.project)
    ready = sum(1 for s in segments if s.has_audio)
    print(f"Project:  {args.project}")
    print(f"Backdrop: {backdrop or 'none'}")
    print(f"Segments: {len(segments)} ({ready} ready)")
    for i, seg in enumerate(segments):
        marker = "[ready]" if seg.has_audio else "[----]"
        visual = f"video ({seg.gesture})" if seg.expects_video else "image"
        print(f"  {marker} {i + 1:>3} {seg.id:<16} {visual}")
    if not can_export(segments):
        raise SystemExit(1)


def cmd_codecs(args):
    """List output types supported by the local ffmpeg."""
    print("Output types (preference order):")
    for candidate in codec_candidates():
        marker = "[ok]" if ffmpeg_supports(candidate) else "[--]"
        print(f"  {marker} {candidate.mime_type:<42} {candidate.video_codec}+{candidate.audio_codec}")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="rehearsal-export",
        description="Rehearsal Export: compose speech and gesture clips into one recording",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # export
    export_parser = subparsers.add_parser("export", help="Export a project to one recording")
    export_parser.add_argument("project", help="Path to the project JSON file")
    export_parser.add_argument("--image", help="Backdrop image (overrides the project's)")
    export_parser.add_argument("--output-dir", default=OUTPUT_DIR, help="Output directory")
    export_parser.add_argument("--rvc-url", help="Voice conversion API root, e.g. http://localhost:8001")
    export_parser.add_argument("--rvc-model", help="Voice conversion model name")
    export_parser.add_argument("--f0-method", help=f"Pitch extraction method (default {DEFAULT_F0_METHOD})")
    export_parser.add_argument("--index-rate", type=float, help=f"Retrieval blend ratio 0-1 (default {DEFAULT_INDEX_RATE})")
    export_parser.add_argument("--realtime", action="store_true", help="Pace capture to wall-clock time")
    export_parser.add_argument("-v", "--verbose", action="store_true", help="Show progress and segment timings")
    export_parser.set_defaults(func=cmd_export)

    # check
    check_parser = subparsers.add_parser("check", help="Show which segments are ready")
    check_parser.add_argument("project", help="Path to the project JSON file")
    check_parser.set_defaults(func=cmd_check)

    # codecs
    codecs_parser = subparsers.add_parser("codecs", help="List supported output types")
    codecs_parser.set_defaults(func=cmd_codecs)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    verbose = getattr(args, "verbose", False)
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    args.func(args)


if __name__ == "__main__":
    main()
