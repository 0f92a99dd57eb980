"""Shared fixtures for rehearsal export tests."""

import subprocess

import numpy as np
import pytest
from PIL import Image

from rehearsal_export.capture import ffmpeg_binary
from rehearsal_export.media import MediaHost, VideoHandle
from rehearsal_export.models import Segment
from rehearsal_export.wav import encode_wav

VIDEO_LEVEL = 1000      # constant sample value of fake video audio
VIDEO_COLOR = (0, 255, 0)
BACKDROP_COLOR = (255, 0, 0)


def make_wav(seconds: float, level: int = 3000, sample_rate: int = 8000, channels: int = 1) -> bytes:
    """WAV bytes holding a constant (DC) signal, or silence when level=0."""
    frames = int(round(seconds * sample_rate))
    samples = np.full((frames, channels), level, dtype=np.int16)
    return encode_wav(samples, channels, sample_rate)


class FakeVideoHandle(VideoHandle):
    """Video handle for sources like "fake-video:8.0" (or "fake-video:8.0:silent").

    Frames are solid green 64x36 (16:9); audio is a constant VIDEO_LEVEL.
    """

    metadata_reads = 0

    def _read_metadata(self) -> float:
        if not isinstance(self.source, str) or not self.source.startswith("fake-video:"):
            raise OSError(f"cannot open {self.source}")
        FakeVideoHandle.metadata_reads += 1
        parts = self.source.split(":")
        self.silent = len(parts) > 2 and parts[2] == "silent"
        return float(parts[1])

    @property
    def size(self):
        return (64, 36)

    def frame_at(self, seconds: float) -> np.ndarray:
        self.duration  # frames are only available once loaded
        frame = np.zeros((36, 64, 3), dtype=np.uint8)
        frame[:, :] = VIDEO_COLOR
        return frame

    def _render_audio(self, start: int, frames: int) -> np.ndarray:
        out = np.zeros((frames, self.channels), dtype=np.int16)
        if not self.silent:
            remaining = max(0, self.total_samples - start)
            out[:min(frames, remaining)] = VIDEO_LEVEL
        return out


class FakeHost(MediaHost):
    video_handle_class = FakeVideoHandle


class MemorySink:
    """Capture sink keeping per-frame samples in memory."""

    def __init__(self, codec, size, fps, sample_rate, channels):
        self.codec = codec
        self.size = size
        self.fps = fps
        self.sample_rate = sample_rate
        self.channels = channels
        self.frames = 0
        self.centers = []
        self.corners = []
        self.audio = []
        self.finished = False
        self.discarded = False

    def write(self, frame, audio):
        height, width = frame.shape[:2]
        self.centers.append(tuple(int(v) for v in frame[height // 2, width // 2]))
        self.corners.append(tuple(int(v) for v in frame[0, 0]))
        self.audio.append(audio.copy())
        self.frames += 1

    def finish(self) -> bytes:
        self.finished = True
        return b"recording:%d" % self.frames

    def discard(self):
        self.discarded = True

    @property
    def seconds(self) -> float:
        return self.frames / self.fps

    def samples(self) -> np.ndarray:
        if not self.audio:
            return np.zeros((0, self.channels), dtype=np.int16)
        return np.concatenate(self.audio)


@pytest.fixture
def host():
    with FakeHost() as h:
        yield h


@pytest.fixture
def sinks():
    """(sink_factory, created sinks) pair for export tests."""
    created = []

    def factory(*args):
        sink = MemorySink(*args)
        created.append(sink)
        return sink

    return factory, created


@pytest.fixture
def backdrop():
    """Solid red 9:16 image that fills the whole surface."""
    return Image.new("RGB", (90, 160), BACKDROP_COLOR)


@pytest.fixture
def sample_segments():
    """Three audio-only segments (0.5s, 0.7s, 0.3s)."""
    return [
        Segment(id="s1", text="Hello there.", audio=make_wav(0.5)),
        Segment(id="s2", text="Let me show you.", audio=make_wav(0.7)),
        Segment(id="s3", text="Thanks.", audio=make_wav(0.3)),
    ]


@pytest.fixture
def real_video(tmp_path):
    """Path to a 1s 320x180 MP4 with a 440 Hz tone, rendered by moviepy's ffmpeg."""
    path = tmp_path / "clip.mp4"
    cmd = [
        ffmpeg_binary(), "-y", "-loglevel", "error",
        "-f", "lavfi", "-i", "testsrc=size=320x180:rate=30:duration=1",
        "-f", "lavfi", "-i", "sine=frequency=440:duration=1",
        "-c:v", "mpeg4", "-pix_fmt", "yuv420p",
        "-c:a", "aac", "-shortest",
        str(path),
    ]
    try:
        subprocess.run(cmd, check=True, capture_output=True)
    except (OSError, subprocess.CalledProcessError) as e:
        pytest.skip(f"ffmpeg could not render a test clip: {e}")
    return str(path)
