"""Raw 16-bit PCM to WAV container encoding."""

import io
import struct

import numpy as np

_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")
HEADER_SIZE = _HEADER.size  # 44


def pcm16_from_float(samples: np.ndarray) -> np.ndarray:
    """Convert float samples in [-1, 1] to int16.

    Values are clipped first; negatives scale by 32768 and positives by
    32767 so both ends of the range are reachable.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return np.trunc(scaled).astype(np.int16)


def _as_pcm_bytes(samples, channels: int) -> bytes:
    if isinstance(samples, (bytes, bytearray, memoryview)):
        data = bytes(samples)
        if len(data) % 2:
            raise ValueError("PCM byte buffer must hold whole 16-bit samples")
        count = len(data) // 2
    else:
        array = np.asarray(samples)
        if array.dtype != np.int16:
            raise ValueError(f"Expected int16 samples, got {array.dtype}")
        if array.ndim == 2 and array.shape[1] != channels:
            raise ValueError(
                f"Sample array has {array.shape[1]} channels, expected {channels}"
            )
        if array.ndim > 2:
            raise ValueError("Sample array must be 1-D interleaved or 2-D (frames, channels)")
        count = array.size
        data = array.astype("<i2", copy=False).tobytes()
    if count % channels:
        raise ValueError(
            f"{count} samples is not a whole number of {channels}-channel frames"
        )
    return data


def encode_wav(samples, channels: int, sample_rate: int) -> bytes:
    """Build a minimal single-chunk WAV file from interleaved int16 samples.

    samples may be raw little-endian bytes, a 1-D interleaved int16 array or a
    (frames, channels) int16 array. The output is fully determined by
    (channels, sample_rate, samples).
    """
    if channels < 1:
        raise ValueError(f"channels must be >= 1, got {channels}")
    if sample_rate < 1:
        raise ValueError(f"sample_rate must be >= 1, got {sample_rate}")

    data = _as_pcm_bytes(samples, channels)
    block_align = channels * 2
    header = _HEADER.pack(
        b"RIFF",
        HEADER_SIZE - 8 + len(data),
        b"WAVE",
        b"fmt ",
        16,               # fmt sub-block size
        1,                # linear PCM
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        16,               # bits per sample
        b"data",
        len(data),
    )
    return header + data


def wav_stream(samples, channels: int, sample_rate: int) -> io.BytesIO:
    """Same bytes as encode_wav(), wrapped in a rewound stream."""
    stream = io.BytesIO(encode_wav(samples, channels, sample_rate))
    stream.seek(0)
    return stream
