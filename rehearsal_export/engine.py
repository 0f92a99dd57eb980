"""Export orchestration: load, normalize, composite and capture every segment.

Speech audio is the timing master. Segments play strictly one after another
on a single timeline; within a segment the audio and optional video clocks
run side by side under one frame loop until both report completion.
"""

import asyncio
import logging
import threading

from rehearsal_export.capture import CaptureSession
from rehearsal_export.compositor import RenderLoop, RenderSurface, load_backdrop
from rehearsal_export.constants import DURATION_DIVERGENCE_WARN
from rehearsal_export.errors import (
    AssetLoadError,
    ExportBusyError,
    ExportError,
    ExtractionError,
    NormalizationError,
)
from rehearsal_export.extractor import extract_audio_track
from rehearsal_export.media import MediaHost, resolve_duration
from rehearsal_export.models import ExportProgress, ExportResult, Segment, SegmentTiming, ready_segments
from rehearsal_export.normalization import NormalizationConfig, convert_voice
from rehearsal_export.playback import SegmentMedia, SegmentPlayback
from rehearsal_export.wav import encode_wav

logger = logging.getLogger(__name__)

_export_lock = threading.Lock()


def _annotate(error: ExportError, stage: str, index: int | None) -> ExportError:
    if error.stage is None:
        error.stage = stage
    if error.segment_index is None:
        error.segment_index = index
    return error


class _Progress:
    def __init__(self, callback, total: int):
        self.callback = callback
        self.total = total

    def __call__(self, stage: str, progress: float, current: int | None = None) -> None:
        if self.callback is None:
            return
        self.callback(ExportProgress(
            stage=stage,
            progress=round(min(100.0, max(0.0, progress)), 1),
            current_segment=current,
            total_segments=self.total if current is not None else None,
        ))


async def load_segment_media(host: MediaHost, segment: Segment, index: int) -> SegmentMedia:
    """Open and resolve every asset of one segment."""
    speech = host.open_audio(segment.audio)
    await resolve_duration(speech)

    video = None
    if segment.expects_video:
        video = host.open_video(segment.video)
        await resolve_duration(video)

    normalized = None
    if segment.normalized_audio:
        normalized = host.open_audio(segment.normalized_audio)
        await resolve_duration(normalized)

    return SegmentMedia(index=index, segment=segment, speech=speech, video=video, normalized=normalized)


def check_divergence(media: SegmentMedia, threshold: float = DURATION_DIVERGENCE_WARN) -> str | None:
    """Flag normalized audio whose length drifts from the original speech clip.

    Upstream video was sized to the original speech, so a large drift changes
    segment timing relative to it.
    """
    if media.normalized is None:
        return None
    original = media.speech.duration
    converted = media.normalized.duration
    if abs(converted - original) <= threshold:
        return None
    message = (
        f"normalized audio is {converted:.2f}s but original speech is {original:.2f}s "
        f"(diff {converted - original:+.2f}s)"
    )
    logger.warning("Segment %d (%s): %s", media.index + 1, media.segment.id, message)
    media.timing_warning = message
    return message


async def normalize_segment(host: MediaHost, media: SegmentMedia, config: NormalizationConfig):
    """Replace the segment's effective audio with a voice-converted version.

    The video's own audio is the source when the segment has a visual asset,
    otherwise the speech clip.
    """
    if media.video is not None:
        source_wav = await extract_audio_track(media.video, host)
    else:
        speech = media.speech
        source_wav = encode_wav(speech.samples, speech.channels, speech.sample_rate)

    converted = await convert_voice(source_wav, config)
    handle = host.open_audio(converted)
    try:
        await resolve_duration(handle)
    except AssetLoadError as e:
        raise NormalizationError(f"Converted audio could not be decoded: {e}") from e
    return handle


async def export_composed_video(
    segments: list[Segment],
    backdrop,
    normalization: NormalizationConfig | None = None,
    on_progress=None,
    *,
    host: MediaHost | None = None,
    candidates=None,
    supports=None,
    sink_factory=None,
    cancel: threading.Event | None = None,
    realtime: bool = False,
) -> ExportResult:
    """Composite ready segments over backdrop and capture one recording.

    Fatal errors (AssetLoadError, CodecNegotiationError, CaptureError) abort
    the export with no output. Normalization failures only fall back to the
    segment's original audio and are reported in the result's timeline.
    """
    if not _export_lock.acquire(blocking=False):
        raise ExportBusyError("Another export is already running", stage="preparing")
    try:
        with (host if host is not None else MediaHost(realtime=realtime)) as media_host:
            return await _export(
                media_host, segments, backdrop, normalization, on_progress,
                candidates, supports, sink_factory, cancel,
            )
    finally:
        _export_lock.release()


async def _export(host, segments, backdrop, normalization, on_progress,
                  candidates, supports, sink_factory, cancel) -> ExportResult:
    ready = ready_segments(segments)
    if not ready:
        raise ExportError("No segments with completed audio available for export", stage="preparing")

    total = len(ready)
    progress = _Progress(on_progress, total)
    stage, index = "preparing", None
    progress(stage, 0)

    surface = RenderSurface()
    session = CaptureSession(host, surface, candidates=candidates, supports=supports, sink_factory=sink_factory)
    try:
        session.negotiate()
        loop = RenderLoop(host, surface, load_backdrop(backdrop))

        stage = "loading"
        media_list = []
        for index, segment in enumerate(ready):
            progress(stage, 5 + index / total * 20, index + 1)
            media_list.append(await load_segment_media(host, segment, index))
        index = None

        if normalization is not None:
            stage = "normalizing"
            for index, media in enumerate(media_list):
                progress(stage, 25 + index / total * 10, index + 1)
                if media.normalized is not None:
                    continue
                try:
                    media.normalized = await normalize_segment(host, media, normalization)
                except (NormalizationError, ExtractionError) as e:
                    logger.warning(
                        "Voice normalization failed for segment %d (%s), keeping original audio: %s",
                        index + 1, media.segment.id, e,
                    )
                    media.normalization_error = str(e)
            index = None
        for media in media_list:
            check_divergence(media)

        stage = "compositing"
        timeline = []
        cancelled = False
        session.start()
        try:
            for index, media in enumerate(media_list):
                progress(stage, 35 + index / total * 50, index + 1)
                effective = media.effective_audio
                playback = SegmentPlayback(media, host.graph)
                await playback.prime()
                await playback.start()
                await loop.run(playback)

                logger.info(
                    "Segment %d: audio=%.2fs video=%s using=%.2fs%s",
                    index + 1,
                    effective.duration,
                    f"{media.video_duration:.2f}s" if media.has_visual else "-",
                    media.duration,
                    " (normalized)" if effective.normalized else "",
                )
                timeline.append(SegmentTiming(
                    index=index,
                    segment_id=media.segment.id,
                    audio_duration=effective.duration,
                    video_duration=media.video_duration,
                    duration=media.duration,
                    normalized=effective.normalized,
                    normalization_error=media.normalization_error,
                    timing_warning=media.timing_warning,
                ))
                if cancel is not None and cancel.is_set() and index < total - 1:
                    logger.info("Export cancelled after segment %d of %d", index + 1, total)
                    cancelled = True
                    break
            index = None

            stage = "finalizing"
            progress(stage, 85)
            output = session.stop()
        finally:
            session.abort()
    except ExportError as e:
        _annotate(e, stage, index)
        raise

    progress("complete", 100)
    return ExportResult(output=output, timeline=timeline, cancelled=cancelled)


def export_video(*args, **kwargs) -> ExportResult:
    """Synchronous wrapper around export_composed_video()."""
    return asyncio.run(export_composed_video(*args, **kwargs))
