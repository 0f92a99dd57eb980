"""Write a captured recording to disk with a provenance manifest."""

import json
import os
import re
from datetime import datetime, timezone

from rehearsal_export.constants import OUTPUT_PREFIX, VERSION
from rehearsal_export.models import ExportResult


def slug_from_path(project_path: str) -> str:
    """Convert a project filename to an output directory slug.

    "Pitch Rehearsal.json" → "pitch_rehearsal"
    """
    basename = os.path.splitext(os.path.basename(project_path))[0]
    return re.sub(r"[^a-zA-Z0-9]+", "_", basename).strip("_").lower() or "rehearsal"


def export(
    result: ExportResult,
    output_dir: str,
    slug: str,
    settings: dict | None = None,
) -> str:
    """Write the recording and its manifest.

    Creates:
      - <output_dir>/<slug>/rehearsal-composed-<timestamp>.<ext> (the recording)
      - <output_dir>/<slug>/output.json (provenance manifest)

    Returns path to the recording.
    """
    project_dir = os.path.join(output_dir, slug)
    os.makedirs(project_dir, exist_ok=True)

    now = datetime.now(timezone.utc)
    filename = f"{OUTPUT_PREFIX}-{int(now.timestamp() * 1000)}.{result.output.extension}"
    output_path = os.path.join(project_dir, filename)
    with open(output_path, "wb") as f:
        f.write(result.output.data)

    manifest = {
        "project": slug,
        "file": filename,
        "generated_at": now.isoformat(),
        "exporter_version": VERSION,
        "mime_type": result.output.mime_type,
        "settings": settings or {},
        "cancelled": result.cancelled,
        "timeline": [
            {
                "segment": t.segment_id,
                "audio_seconds": round(t.audio_duration, 3),
                "video_seconds": round(t.video_duration, 3) if t.video_duration is not None else None,
                "seconds": round(t.duration, 3),
                "normalized": t.normalized,
                "normalization_error": t.normalization_error,
                "timing_warning": t.timing_warning,
            }
            for t in result.timeline
        ],
        "stats": {
            "segments": len(result.timeline),
            "with_video": sum(1 for t in result.timeline if t.video_duration is not None),
            "normalized": sum(1 for t in result.timeline if t.normalized),
            "duration_seconds": round(result.duration, 1),
            "bytes": len(result.output.data),
        },
    }

    manifest_path = os.path.join(project_dir, "output.json")
    with open(manifest_path, "w") as f:
        json.dump(manifest, f, indent=2)

    return output_path
