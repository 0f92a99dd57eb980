"""Per-segment playback synchronization.

State machine: IDLE -> PRIMING -> PLAYING -> COMPLETING -> DONE.

Completion uses two independent latches, audio_done and video_done. Each is
set by the element's own ended notification. As a backstop for a missing
event, the render loop also sets it when the position sits within a small
tolerance of the duration and has stopped advancing between polls.
The segment is DONE only when both are set, so neither track cuts the other
short and a missing ended event cannot hang the export.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass

from rehearsal_export.constants import COMPLETION_TOLERANCE
from rehearsal_export.errors import ProgrammingError
from rehearsal_export.graph import AudioGraph
from rehearsal_export.media import AudioHandle, MediaHandle, VideoHandle
from rehearsal_export.models import EffectiveAudio, Segment, segment_duration

logger = logging.getLogger(__name__)


class PlaybackState(enum.Enum):
    IDLE = "idle"
    PRIMING = "priming"
    PLAYING = "playing"
    COMPLETING = "completing"
    DONE = "done"


class Latch:
    """Boolean that can only go from False to True."""

    __slots__ = ("_value",)

    def __init__(self):
        self._value = False

    def set(self) -> None:
        self._value = True

    def __bool__(self) -> bool:
        return self._value


@dataclass
class SegmentMedia:
    """Loaded handles for one segment in one export."""

    index: int
    segment: Segment
    speech: AudioHandle
    video: VideoHandle | None = None
    normalized: AudioHandle | None = None
    normalization_error: str | None = None
    timing_warning: str | None = None

    @property
    def has_visual(self) -> bool:
        return self.video is not None

    @property
    def audio(self) -> AudioHandle:
        """Effective audio handle: normalized if available, else the speech clip."""
        return self.normalized if self.normalized is not None else self.speech

    @property
    def effective_audio(self) -> EffectiveAudio:
        handle = self.audio
        return EffectiveAudio(
            source=handle.source,
            duration=handle.duration,
            normalized=self.normalized is not None,
        )

    @property
    def video_duration(self) -> float | None:
        return self.video.duration if self.video is not None else None

    @property
    def duration(self) -> float:
        return segment_duration(self.audio.duration, self.video_duration)


class SegmentPlayback:
    """Drives one segment's audio (and optional video) through one pass."""

    def __init__(self, media: SegmentMedia, graph: AudioGraph, tolerance: float = COMPLETION_TOLERANCE):
        self.media = media
        self.graph = graph
        self.tolerance = tolerance
        self.state = PlaybackState.IDLE
        self.audio_done = Latch()
        self.video_done = Latch()
        self.audible = None
        self._node = None
        self._positions = {}

    @property
    def audio(self) -> AudioHandle:
        return self.media.audio

    @property
    def video(self) -> VideoHandle | None:
        return self.media.video

    @property
    def done(self) -> bool:
        return self.state is PlaybackState.DONE

    def _require(self, *states: PlaybackState) -> None:
        if self.state not in states:
            raise ProgrammingError(
                f"Segment {self.media.index + 1} is {self.state.value}, "
                f"expected {' or '.join(s.value for s in states)}"
            )

    def _choose_audible(self) -> MediaHandle:
        """Exactly one audible source per segment.

        normalized audio > the video's own audio > the speech clip. The
        speech clip still plays (muted) under a video so its clock counts.
        """
        audio, video = self.audio, self.video
        if self.media.normalized is not None:
            if video is not None:
                video.muted = True
            return audio
        if video is not None:
            video.muted = False
            audio.muted = True
            return video
        return audio

    async def prime(self) -> None:
        self._require(PlaybackState.IDLE)
        self.state = PlaybackState.PRIMING

        audio, video = self.audio, self.video
        await audio.load()
        audio.seek(0)
        audio.muted = False
        audio.on_ended(lambda _handle: self.audio_done.set())

        if video is not None:
            await video.load()
            video.seek(0)
            video.on_ended(lambda _handle: self.video_done.set())
        else:
            self.video_done.set()

        self.audible = self._choose_audible()
        self._node = self.graph.create_source(self.audible)
        self._node.connect(self.graph.destination)

    async def start(self) -> None:
        self._require(PlaybackState.PRIMING)
        self.state = PlaybackState.PLAYING
        players = [self.audio.play()]
        if self.video is not None:
            players.append(self.video.play())
        await asyncio.gather(*players)

    def _reached_end(self, handle: MediaHandle) -> bool:
        """Ended, or stalled within tolerance of the end without an ended event."""
        if handle.ended:
            return True
        position = handle.current_time
        stalled = self._positions.get(handle) == position
        self._positions[handle] = position
        return stalled and position >= max(0.0, handle.duration - self.tolerance)

    def poll(self) -> bool:
        """Evaluate both completion flags; finish the segment once both hold."""
        self._require(PlaybackState.PLAYING, PlaybackState.COMPLETING)

        if not self.audio_done and self._reached_end(self.audio):
            self.audio_done.set()
        if not self.video_done and self.video is not None and self._reached_end(self.video):
            self.video_done.set()

        # video_done is preset when there is no video; only a finished track counts
        if self.audio_done or (self.video is not None and self.video_done):
            self.state = PlaybackState.COMPLETING
        if self.audio_done and self.video_done:
            self._finish()
            return True
        return False

    def _finish(self) -> None:
        video = self.video
        if video is not None:
            video.pause()
            video.muted = True
        self.audio.pause()
        self.audio.muted = False
        self.media.speech.pause()
        self.media.speech.muted = False
        self._node.disconnect()
        self.state = PlaybackState.DONE
        logger.debug("Segment %d done", self.media.index + 1)
