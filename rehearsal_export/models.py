"""Data models for rehearsal export."""

import json
import os
from dataclasses import dataclass, field

from rehearsal_export.constants import GESTURE_TYPES, NO_GESTURE, SEGMENT_STATUSES, STATUS_COMPLETED


@dataclass
class Segment:
    id: str
    text: str                          # spoken text
    gesture: str = NO_GESTURE          # "none", "beat", "deictic", "iconic", "metaphoric"
    audio: str | bytes | None = None   # speech audio: path, URL or raw bytes
    video: str | None = None           # gesture video: path or URL
    normalized_audio: bytes | None = None
    audio_status: str = STATUS_COMPLETED
    video_status: str = STATUS_COMPLETED
    gesture_description: str = ""

    @property
    def has_audio(self) -> bool:
        return bool(self.audio) and self.audio_status == STATUS_COMPLETED

    @property
    def expects_video(self) -> bool:
        """True when a visual asset should be composited for this segment."""
        return (
            self.gesture != NO_GESTURE
            and bool(self.video)
            and self.video_status == STATUS_COMPLETED
        )


@dataclass(frozen=True)
class EffectiveAudio:
    """Audio actually used for one segment during one export."""

    source: str | bytes
    duration: float
    normalized: bool = False


@dataclass(frozen=True)
class CaptureOutput:
    data: bytes
    mime_type: str
    extension: str


@dataclass
class SegmentTiming:
    index: int
    segment_id: str
    audio_duration: float
    video_duration: float | None
    duration: float
    normalized: bool = False
    normalization_error: str | None = None
    timing_warning: str | None = None


@dataclass
class ExportResult:
    output: CaptureOutput
    timeline: list[SegmentTiming] = field(default_factory=list)
    cancelled: bool = False

    @property
    def normalization_failures(self) -> dict[str, str]:
        return {
            t.segment_id: t.normalization_error
            for t in self.timeline
            if t.normalization_error
        }

    @property
    def duration(self) -> float:
        return sum(t.duration for t in self.timeline)


@dataclass(frozen=True)
class ExportProgress:
    stage: str          # preparing, loading, normalizing, compositing, finalizing, complete
    progress: float     # 0–100
    current_segment: int | None = None
    total_segments: int | None = None


def segment_duration(audio_duration: float, video_duration: float | None = None) -> float:
    """Wall-clock length of one segment in a single export run."""
    return max(audio_duration, video_duration or 0.0)


def ready_segments(segments: list[Segment]) -> list[Segment]:
    """Segments whose speech audio is available, in order."""
    return [s for s in segments if s.has_audio]


def can_export(segments: list[Segment]) -> bool:
    return any(s.has_audio for s in segments)


def _resolve_ref(ref: str | None, base_dir: str) -> str | None:
    if not ref:
        return None
    if "://" in ref or os.path.isabs(ref):
        return ref
    return os.path.join(base_dir, ref)


def segment_from_dict(data: dict, base_dir: str = "") -> Segment:
    """Build a Segment from a project-file entry.

    Accepts both snake_case keys and the camelCase keys written by the
    authoring tool (spokenText, gestureType, audioUrl, videoUrl, ...).
    Raises ValueError on an unknown gesture or status.
    """
    gesture = str(data.get("gesture", data.get("gestureType", NO_GESTURE))).lower()
    if gesture not in GESTURE_TYPES:
        raise ValueError(f"Unknown gesture {gesture!r} (expected one of {', '.join(GESTURE_TYPES)})")
    audio_status = str(data.get("audio_status", data.get("audioStatus", STATUS_COMPLETED))).lower()
    video_status = str(data.get("video_status", data.get("videoStatus", STATUS_COMPLETED))).lower()
    for status in (audio_status, video_status):
        if status not in SEGMENT_STATUSES:
            raise ValueError(f"Unknown asset status {status!r}")

    return Segment(
        id=str(data.get("id", "")),
        text=data.get("text", data.get("spokenText", "")),
        gesture=gesture,
        audio=_resolve_ref(data.get("audio", data.get("audioUrl")), base_dir),
        video=_resolve_ref(data.get("video", data.get("videoUrl")), base_dir),
        audio_status=audio_status,
        video_status=video_status,
        gesture_description=data.get("gesture_description", data.get("gestureDescription", "")) or "",
    )


def load_project(path: str) -> tuple[list[Segment], str | None]:
    """Read a project JSON file. Returns (segments, backdrop path or None)."""
    with open(path) as f:
        data = json.load(f)
    base_dir = os.path.dirname(os.path.abspath(path))
    segments = []
    for i, entry in enumerate(data.get("segments", [])):
        seg = segment_from_dict(entry, base_dir)
        if not seg.id:
            seg.id = f"segment-{i + 1}"
        segments.append(seg)
    return segments, _resolve_ref(data.get("backdrop"), base_dir)
