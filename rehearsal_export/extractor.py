"""Pull a standalone audio track out of a video asset.

Strategies are tried in order and the first success wins:

1. fetch-decode: read the asset's bytes and decode them directly. Near
   instant, but fails when the bytes cannot be fetched (e.g. a remote host
   refusing direct downloads) or the container cannot be decoded this way.
2. realtime-capture: open a fresh clone of the video in an isolated host,
   wire the clone into that host's audio graph and record it while it plays
   start to finish. Always works, costs the clip's duration in realtime mode.

The handle passed in is never wired; only the disposable clone is.
"""

import asyncio
import logging

import numpy as np
from pydub import AudioSegment

from rehearsal_export.capture import AudioRecorder
from rehearsal_export.constants import COMPLETION_TOLERANCE
from rehearsal_export.errors import ExtractionError, ProgrammingError
from rehearsal_export.media import MediaHost, VideoHandle, decode_audio, resolve_duration
from rehearsal_export.sources import describe, fetch_bytes
from rehearsal_export.wav import encode_wav

logger = logging.getLogger(__name__)


def _to_wav(audio: AudioSegment) -> bytes:
    audio = audio.set_sample_width(2)
    samples = np.array(audio.get_array_of_samples(), dtype=np.int16)
    return encode_wav(samples, audio.channels, audio.frame_rate)


async def fetch_and_decode(video: VideoHandle, host: MediaHost) -> bytes:
    data = await asyncio.to_thread(fetch_bytes, video.source)
    audio = await asyncio.to_thread(decode_audio, data)
    return _to_wav(audio)


async def capture_realtime(video: VideoHandle, host: MediaHost) -> bytes:
    with host.isolated() as isolated:
        clone = isolated.open_video(video.source)
        duration = await resolve_duration(clone)

        node = isolated.graph.create_source(clone)
        node.connect(isolated.graph.destination)
        recorder = AudioRecorder(isolated)

        clone.seek(0)
        recorder.start()
        await clone.play()
        last = None
        while not clone.ended:
            position = clone.current_time
            # No ended event: stop once the position is stuck at the end
            if position == last and position >= max(0.0, duration - COMPLETION_TOLERANCE):
                break
            last = position
            await isolated.next_frame()
        captured = recorder.stop()
        node.disconnect()

    audio = await asyncio.to_thread(decode_audio, captured)
    return _to_wav(audio)


EXTRACTION_STRATEGIES = [
    ("fetch-decode", fetch_and_decode),
    ("realtime-capture", capture_realtime),
]


async def extract_audio_track(video: VideoHandle, host: MediaHost, strategies=None) -> bytes:
    """WAV bytes of video's audio track. Raises ExtractionError if every strategy fails."""
    if strategies is None:
        strategies = EXTRACTION_STRATEGIES

    failures = []
    for name, strategy in strategies:
        try:
            wav = await strategy(video, host)
        except ProgrammingError:
            raise
        except Exception as e:
            logger.warning("Audio extraction via %s failed for %s: %s", name, describe(video.source), e)
            failures.append(f"{name}: {e}")
            continue
        logger.debug("Extracted audio from %s via %s", describe(video.source), name)
        return wav

    raise ExtractionError("Could not extract audio track (" + "; ".join(failures) + ")")
