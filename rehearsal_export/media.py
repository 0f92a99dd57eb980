"""Playable media handles, the frame clock and the per-export media host.

A MediaHost is built fresh for every export and owns every handle, the audio
graph and the frame clock for that run; nothing here is module-level state.
Each host frame advances all playing handles by one frame period, mixes the
audio of wired, unmuted handles into the graph destination, then hands the
mixed block to the registered frame listeners (the capture sink).
"""

import asyncio
import io
import logging

import numpy as np
from pydub import AudioSegment

from rehearsal_export.constants import CAPTURE_FPS, MIX_CHANNELS, MIX_SAMPLE_RATE
from rehearsal_export.errors import AssetLoadError, ProgrammingError
from rehearsal_export.graph import AudioGraph
from rehearsal_export.sources import describe, fetch_bytes, looks_like_wav
from rehearsal_export.wav import pcm16_from_float

logger = logging.getLogger(__name__)


def decode_audio(data: bytes) -> AudioSegment:
    """Decode encoded audio bytes with pydub (WAV natively, anything else via ffmpeg)."""
    fmt = "wav" if looks_like_wav(data) else None
    return AudioSegment.from_file(io.BytesIO(data), format=fmt)


def audio_to_samples(audio: AudioSegment, sample_rate: int, channels: int) -> np.ndarray:
    """Resample/remix an AudioSegment to a (frames, channels) int16 array."""
    if audio.channels > 2 and channels <= 2:
        audio = audio.set_channels(1)
    audio = audio.set_frame_rate(sample_rate).set_channels(channels).set_sample_width(2)
    samples = np.array(audio.get_array_of_samples(), dtype=np.int16)
    return samples.reshape((-1, channels))


def _match_channels(samples: np.ndarray, channels: int) -> np.ndarray:
    if samples.ndim == 1:
        samples = samples.reshape((-1, 1))
    have = samples.shape[1]
    if have == channels:
        return samples
    if channels == 1:
        return samples.mean(axis=1, keepdims=True)
    if have == 1:
        return np.repeat(samples, channels, axis=1)
    return samples[:, :channels]


class MediaHandle:
    """One playable element: position, play/pause, mute, ended notification.

    Duration is unknown until load() has completed; reading it earlier is a
    ProgrammingError.
    """

    kind = "media"

    def __init__(self, source, sample_rate: int = MIX_SAMPLE_RATE, channels: int = MIX_CHANNELS):
        self.source = source
        self.sample_rate = sample_rate
        self.channels = channels
        self.muted = False
        self.paused = True
        self.ended = False
        self._duration = None
        self._cursor = 0
        self._node = None
        self._ended_callbacks = []
        self._load_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {describe(self.source)}>"

    @property
    def loaded(self) -> bool:
        return self._duration is not None

    @property
    def duration(self) -> float:
        if self._duration is None:
            raise ProgrammingError(f"Duration of {self!r} read before its metadata loaded")
        return self._duration

    @property
    def wired(self) -> bool:
        return self._node is not None

    @property
    def current_time(self) -> float:
        return min(self._cursor / self.sample_rate, self.duration)

    @property
    def total_samples(self) -> int:
        return int(round(self.duration * self.sample_rate))

    async def load(self) -> float:
        """Read metadata once; later calls return the cached duration."""
        async with self._load_lock:
            if self._duration is None:
                try:
                    duration = await asyncio.to_thread(self._read_metadata)
                except AssetLoadError:
                    raise
                except Exception as e:
                    raise AssetLoadError(
                        f"Failed to load {self.kind} {describe(self.source)}: {e}",
                        asset=describe(self.source),
                    ) from e
                self._duration = max(0.0, float(duration))
                logger.debug("Loaded %r (%.2fs)", self, self._duration)
        return self._duration

    def seek(self, seconds: float = 0.0) -> None:
        self._cursor = max(0, int(round(seconds * self.sample_rate)))
        self.ended = False

    async def play(self) -> None:
        if not self.loaded:
            raise ProgrammingError(f"{self!r} played before load()")
        self.paused = False
        if self._cursor >= self.total_samples:
            self._finish()
        await asyncio.sleep(0)

    def pause(self) -> None:
        self.paused = True

    def on_ended(self, callback) -> None:
        self._ended_callbacks.append(callback)

    def close(self) -> None:
        self.paused = True
        if self._node is not None:
            self._node.disconnect()

    def _attach(self, node) -> None:
        self._node = node

    def _advance(self, frames: int) -> None:
        if self.paused or self.ended:
            return
        if self._node is not None and not self.muted:
            self._node.push(self._render_audio(self._cursor, frames))
        self._cursor += frames
        if self._cursor >= self.total_samples:
            self._finish()

    def _finish(self) -> None:
        self.ended = True
        self.paused = True
        for callback in self._ended_callbacks:
            callback(self)

    def _read_metadata(self) -> float:
        raise NotImplementedError

    def _render_audio(self, start: int, frames: int) -> np.ndarray:
        return np.zeros((frames, self.channels), dtype=np.int16)


class AudioHandle(MediaHandle):
    kind = "audio"

    def __init__(self, source, sample_rate: int = MIX_SAMPLE_RATE, channels: int = MIX_CHANNELS):
        super().__init__(source, sample_rate, channels)
        self._samples = None

    @property
    def samples(self) -> np.ndarray:
        if self._samples is None:
            raise ProgrammingError(f"Samples of {self!r} read before its metadata loaded")
        return self._samples

    @property
    def total_samples(self) -> int:
        return len(self.samples)

    def _read_metadata(self) -> float:
        audio = decode_audio(fetch_bytes(self.source))
        self._samples = audio_to_samples(audio, self.sample_rate, self.channels)
        return audio.duration_seconds

    def _render_audio(self, start: int, frames: int) -> np.ndarray:
        chunk = self._samples[start:start + frames]
        if len(chunk) < frames:
            pad = np.zeros((frames - len(chunk), self.channels), dtype=np.int16)
            chunk = np.concatenate([chunk, pad])
        return chunk


class VideoHandle(MediaHandle):
    kind = "video"

    def __init__(self, source, sample_rate: int = MIX_SAMPLE_RATE, channels: int = MIX_CHANNELS):
        super().__init__(source, sample_rate, channels)
        self._clip = None

    @property
    def size(self) -> tuple[int, int]:
        return tuple(self._clip.size)

    def _read_metadata(self) -> float:
        from moviepy import VideoFileClip

        if not isinstance(self.source, str):
            raise AssetLoadError("Video sources must be a path or URL", asset=describe(self.source))
        self._clip = VideoFileClip(self.source)
        return self._clip.duration or 0.0

    def frame_at(self, seconds: float) -> np.ndarray:
        """RGB uint8 frame at seconds, clamped inside the clip."""
        last = max(0.0, self.duration - 1.0 / CAPTURE_FPS)
        frame = self._clip.get_frame(min(max(0.0, seconds), last))
        if frame.dtype != np.uint8:
            frame = np.clip(frame, 0, 255).astype(np.uint8)
        return frame

    def _render_audio(self, start: int, frames: int) -> np.ndarray:
        out = np.zeros((frames, self.channels), dtype=np.int16)
        track = self._clip.audio if self._clip is not None else None
        if track is None:
            return out
        times = (start + np.arange(frames)) / self.sample_rate
        times = times[times < track.duration]
        if len(times) == 0:
            return out
        chunk = _match_channels(np.asarray(track.get_frame(times)), self.channels)
        out[:len(chunk)] = pcm16_from_float(chunk)
        return out

    def close(self) -> None:
        super().close()
        if self._clip is not None:
            self._clip.close()
            self._clip = None


class FrameClock:
    """Per-frame callback source for the render loop.

    In realtime mode each tick waits for the next wall-clock frame deadline;
    otherwise it only yields to the event loop and time is virtual.
    """

    def __init__(self, fps: int = CAPTURE_FPS, sample_rate: int = MIX_SAMPLE_RATE, realtime: bool = False):
        self.fps = fps
        self.sample_rate = sample_rate
        self.realtime = realtime
        self.frame = 0
        self._started_at = None

    @property
    def time(self) -> float:
        return self.frame / self.fps

    def block_size(self) -> int:
        """Audio frames covered by the current tick (drift-free integer split)."""
        return (
            (self.frame + 1) * self.sample_rate // self.fps
            - self.frame * self.sample_rate // self.fps
        )

    async def wait(self) -> None:
        if not self.realtime:
            await asyncio.sleep(0)
            return
        loop = asyncio.get_running_loop()
        if self._started_at is None:
            self._started_at = loop.time()
        deadline = self._started_at + (self.frame + 1) / self.fps
        await asyncio.sleep(max(0.0, deadline - loop.time()))

    def advance(self) -> None:
        self.frame += 1


class MediaHost:
    """Capabilities for one export: handle factory, audio graph, frame clock."""

    audio_handle_class = AudioHandle
    video_handle_class = VideoHandle

    def __init__(
        self,
        fps: int = CAPTURE_FPS,
        sample_rate: int = MIX_SAMPLE_RATE,
        channels: int = MIX_CHANNELS,
        realtime: bool = False,
    ):
        self.fps = fps
        self.sample_rate = sample_rate
        self.channels = channels
        self.realtime = realtime
        self.clock = FrameClock(fps, sample_rate, realtime)
        self.graph = AudioGraph(sample_rate, channels)
        self._handles = []
        self._frame_listeners = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def _register(self, handle: MediaHandle) -> MediaHandle:
        if self.closed:
            raise ProgrammingError("Media host is closed")
        self._handles.append(handle)
        return handle

    def open_audio(self, source) -> AudioHandle:
        return self._register(self.audio_handle_class(source, self.sample_rate, self.channels))

    def open_video(self, source) -> VideoHandle:
        return self._register(self.video_handle_class(source, self.sample_rate, self.channels))

    def isolated(self) -> "MediaHost":
        """A sibling host with its own graph and clock, same settings."""
        return type(self)(self.fps, self.sample_rate, self.channels, self.realtime)

    def add_frame_listener(self, listener) -> None:
        self._frame_listeners.append(listener)

    def remove_frame_listener(self, listener) -> None:
        if listener in self._frame_listeners:
            self._frame_listeners.remove(listener)

    async def next_frame(self) -> None:
        """Advance one frame period: pace, play, mix, notify listeners."""
        await self.clock.wait()
        destination = self.graph.destination
        destination.begin_block(self.clock.block_size())
        for handle in self._handles:
            handle._advance(self.clock.block_size())
        block = destination.end_block()
        for listener in list(self._frame_listeners):
            listener(self.clock.frame, block)
        self.clock.advance()

    def close(self) -> None:
        if self.closed:
            return
        for handle in self._handles:
            handle.close()
        self._handles = []
        self._frame_listeners = []
        self.graph.close()
        self.closed = True


async def resolve_duration(handle: MediaHandle) -> float:
    """Duration in seconds once the handle's metadata is available."""
    return await handle.load()
