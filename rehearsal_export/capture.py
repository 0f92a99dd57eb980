"""Capture session: codec negotiation, recording sinks and finalization."""

import functools
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass

import numpy as np

from rehearsal_export.constants import CODEC_PREFERENCES, VIDEO_BITRATE
from rehearsal_export.errors import CaptureError, CodecNegotiationError, ProgrammingError
from rehearsal_export.models import CaptureOutput
from rehearsal_export.wav import encode_wav

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CodecCandidate:
    mime_type: str
    extension: str
    video_codec: str
    audio_codec: str


def codec_candidates(preferences=CODEC_PREFERENCES) -> list[CodecCandidate]:
    return [CodecCandidate(*entry) for entry in preferences]


def ffmpeg_binary() -> str:
    """The ffmpeg executable moviepy is configured to use."""
    from moviepy.config import FFMPEG_BINARY

    return FFMPEG_BINARY


@functools.lru_cache(maxsize=None)
def available_encoders(binary: str) -> frozenset:
    """Encoder names reported by `ffmpeg -encoders`."""
    try:
        result = subprocess.run(
            [binary, "-hide_banner", "-encoders"],
            capture_output=True, text=True, check=True,
        )
    except (OSError, subprocess.CalledProcessError) as e:
        logger.warning("Could not list ffmpeg encoders (%s): %s", binary, e)
        return frozenset()

    names = set()
    in_table = False
    for line in result.stdout.splitlines():
        parts = line.split()
        if not in_table:
            # Legend rows precede the "------" separator
            in_table = bool(parts) and set(parts[0]) == {"-"}
            continue
        # Encoder rows look like " V....D libx264   description"
        if len(parts) >= 2 and len(parts[0]) == 6 and parts[0][0] in "VAS":
            names.add(parts[1])
    return frozenset(names)


def ffmpeg_supports(candidate: CodecCandidate) -> bool:
    encoders = available_encoders(ffmpeg_binary())
    return candidate.video_codec in encoders and candidate.audio_codec in encoders


def negotiate_codec(candidates: list[CodecCandidate], supports=ffmpeg_supports) -> CodecCandidate:
    """First candidate that supports() accepts, in preference order."""
    for candidate in candidates:
        if supports(candidate):
            logger.info("Using output type %s", candidate.mime_type)
            return candidate
        logger.debug("Output type not supported: %s", candidate.mime_type)
    raise CodecNegotiationError(
        "No supported output container/codec: tried "
        + ", ".join(c.mime_type for c in candidates),
        stage="preparing",
    )


class FfmpegCaptureSink:
    """Writes frames through moviepy's ffmpeg writer and muxes the mixed audio.

    Everything lives in a private temporary directory that is removed on
    finish() or discard().
    """

    def __init__(self, codec: CodecCandidate, size: tuple[int, int], fps: int,
                 sample_rate: int, channels: int, bitrate: str = VIDEO_BITRATE):
        from moviepy.video.io.ffmpeg_writer import FFMPEG_VideoWriter

        self.codec = codec
        self.sample_rate = sample_rate
        self.channels = channels
        self.frames = 0
        self._tmpdir = tempfile.mkdtemp(prefix="rehearsal-export-")
        self._video_path = os.path.join(self._tmpdir, f"video.{codec.extension}")
        self._pcm_path = os.path.join(self._tmpdir, "audio.pcm")
        self._pcm = open(self._pcm_path, "wb")
        try:
            self._writer = FFMPEG_VideoWriter(
                self._video_path, size, fps,
                codec=codec.video_codec,
                bitrate=bitrate,
            )
        except Exception:
            self._pcm.close()
            shutil.rmtree(self._tmpdir, ignore_errors=True)
            raise

    def write(self, frame: np.ndarray, audio: np.ndarray) -> None:
        self._writer.write_frame(frame)
        self._pcm.write(audio.astype("<i2", copy=False).tobytes())
        self.frames += 1

    def _close_inputs(self) -> None:
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        if not self._pcm.closed:
            self._pcm.close()

    def finish(self) -> bytes:
        try:
            self._close_inputs()
            if self.frames == 0:
                raise CaptureError("Nothing was captured", stage="finalizing")

            with open(self._pcm_path, "rb") as f:
                wav = encode_wav(f.read(), self.channels, self.sample_rate)
            wav_path = os.path.join(self._tmpdir, "audio.wav")
            with open(wav_path, "wb") as f:
                f.write(wav)

            output_path = os.path.join(self._tmpdir, f"output.{self.codec.extension}")
            cmd = [
                ffmpeg_binary(), "-y", "-loglevel", "error",
                "-i", self._video_path,
                "-i", wav_path,
                "-map", "0:v:0", "-map", "1:a:0",
                "-c:v", "copy",
                "-c:a", self.codec.audio_codec,
                output_path,
            ]
            try:
                subprocess.run(cmd, check=True, capture_output=True)
            except subprocess.CalledProcessError as e:
                stderr = e.stderr.decode(errors="replace").strip() if e.stderr else ""
                raise CaptureError(f"Muxing failed: {stderr or e}", stage="finalizing") from e

            with open(output_path, "rb") as f:
                return f.read()
        finally:
            shutil.rmtree(self._tmpdir, ignore_errors=True)

    def discard(self) -> None:
        try:
            self._close_inputs()
        except OSError as e:
            logger.debug("Ignoring error while discarding capture: %s", e)
        finally:
            shutil.rmtree(self._tmpdir, ignore_errors=True)


class CaptureSession:
    """Binds a render surface and the host's mixed audio to a recording sink."""

    def __init__(self, host, surface, candidates: list[CodecCandidate] | None = None,
                 supports=None, sink_factory=None):
        self.host = host
        self.surface = surface
        self.candidates = candidates if candidates is not None else codec_candidates()
        self.supports = supports or ffmpeg_supports
        self.sink_factory = sink_factory or FfmpegCaptureSink
        self.codec = None
        self._sink = None

    @property
    def active(self) -> bool:
        return self._sink is not None

    def negotiate(self) -> CodecCandidate:
        self.codec = negotiate_codec(self.candidates, self.supports)
        return self.codec

    def start(self) -> None:
        if self._sink is not None:
            raise ProgrammingError("Capture session already started")
        if self.codec is None:
            self.negotiate()
        try:
            self._sink = self.sink_factory(
                self.codec, self.surface.size, self.host.fps,
                self.host.sample_rate, self.host.channels,
            )
        except Exception as e:
            raise CaptureError(f"Could not start recording: {e}", stage="compositing") from e
        self.host.add_frame_listener(self._on_frame)

    def _on_frame(self, frame_index: int, audio: np.ndarray) -> None:
        try:
            self._sink.write(self.surface.pixels, audio)
        except CaptureError:
            raise
        except Exception as e:
            raise CaptureError(f"Recording sink failed at frame {frame_index}: {e}") from e

    def stop(self) -> CaptureOutput:
        if self._sink is None:
            raise ProgrammingError("Capture session was not started")
        self.host.remove_frame_listener(self._on_frame)
        sink, self._sink = self._sink, None
        try:
            data = sink.finish()
        except CaptureError:
            raise
        except Exception as e:
            raise CaptureError(f"Could not finalize recording: {e}", stage="finalizing") from e
        logger.info("Captured %.2f MB (%s)", len(data) / 1024 / 1024, self.codec.extension)
        return CaptureOutput(data=data, mime_type=self.codec.mime_type, extension=self.codec.extension)

    def abort(self) -> None:
        """Stop recording and throw away everything captured so far."""
        if self._sink is None:
            return
        self.host.remove_frame_listener(self._on_frame)
        sink, self._sink = self._sink, None
        sink.discard()


class AudioRecorder:
    """Collects a host's mixed audio blocks and returns them as a WAV file."""

    def __init__(self, host):
        self.host = host
        self._blocks = []

    def _on_frame(self, frame_index: int, audio: np.ndarray) -> None:
        self._blocks.append(audio.copy())

    def start(self) -> None:
        self._blocks = []
        self.host.add_frame_listener(self._on_frame)

    def stop(self) -> bytes:
        self.host.remove_frame_listener(self._on_frame)
        if self._blocks:
            samples = np.concatenate(self._blocks)
        else:
            samples = np.zeros((0, self.host.channels), dtype=np.int16)
        self._blocks = []
        return encode_wav(samples, self.host.channels, self.host.sample_rate)
