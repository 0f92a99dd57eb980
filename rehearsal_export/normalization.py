"""Voice timbre normalization via an external voice-conversion service.

Compatible with the POST /voice2voice endpoint of RVC FastAPI servers: the
source audio goes up as a multipart file, the converted audio comes back as
the raw response body.
"""

import asyncio
import logging
from dataclasses import dataclass

import requests

from rehearsal_export.constants import DEFAULT_F0_METHOD, DEFAULT_INDEX_RATE, NORMALIZATION_TIMEOUT
from rehearsal_export.errors import NormalizationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizationConfig:
    api_url: str
    model_name: str
    f0_method: str | None = DEFAULT_F0_METHOD
    index_rate: float | None = DEFAULT_INDEX_RATE
    timeout: float = NORMALIZATION_TIMEOUT

    def __post_init__(self):
        if not self.api_url:
            raise ValueError("api_url is required")
        if not self.model_name:
            raise ValueError("model_name is required")
        if self.index_rate is not None and not 0.0 <= self.index_rate <= 1.0:
            raise ValueError(f"index_rate must be between 0 and 1, got {self.index_rate}")

    @property
    def endpoint(self) -> str:
        return self.api_url.rstrip("/") + "/voice2voice"


def convert_voice_sync(audio_wav: bytes, config: NormalizationConfig) -> bytes:
    """Submit WAV bytes for conversion and return the converted audio bytes."""
    files = {"input_file": ("input.wav", audio_wav, "audio/wav")}
    data = {"model_name": config.model_name}
    if config.f0_method is not None:
        data["f0method"] = config.f0_method
    if config.index_rate is not None:
        data["index_rate"] = str(config.index_rate)

    try:
        response = requests.post(config.endpoint, files=files, data=data, timeout=config.timeout)
    except requests.RequestException as e:
        raise NormalizationError(f"Voice conversion request failed: {e}") from e

    if not response.ok:
        reason = response.text.strip() or response.reason
        raise NormalizationError(
            f"Voice conversion failed ({response.status_code}): {reason}",
            status_code=response.status_code,
        )
    if not response.content:
        raise NormalizationError("Voice conversion returned no audio", status_code=response.status_code)

    logger.debug("Converted %d bytes -> %d bytes via %s", len(audio_wav), len(response.content), config.endpoint)
    return response.content


async def convert_voice(audio_wav: bytes, config: NormalizationConfig) -> bytes:
    return await asyncio.to_thread(convert_voice_sync, audio_wav, config)
