"""Fetch raw bytes for media references (paths, http(s) URLs, data URLs)."""

import base64
import binascii
import logging

import requests

from rehearsal_export.constants import FETCH_TIMEOUT
from rehearsal_export.errors import AssetLoadError

logger = logging.getLogger(__name__)


def is_remote(source) -> bool:
    return isinstance(source, str) and source.startswith(("http://", "https://"))


def describe(source) -> str:
    """Short printable label for a source (never dumps raw bytes)."""
    if isinstance(source, (bytes, bytearray)):
        return f"<{len(source)} bytes>"
    if isinstance(source, str) and source.startswith("data:"):
        return source[:32] + "..."
    return str(source)


def _decode_data_url(source: str) -> bytes:
    header, _, payload = source.partition(",")
    if ";base64" in header:
        return base64.b64decode(payload, validate=True)
    return payload.encode()


def fetch_bytes(source, timeout: float = FETCH_TIMEOUT) -> bytes:
    """Return the raw bytes behind source.

    Raises AssetLoadError when the source cannot be read.
    """
    if isinstance(source, (bytes, bytearray)):
        return bytes(source)
    if not isinstance(source, str) or not source:
        raise AssetLoadError(f"Unsupported media reference: {source!r}", asset=describe(source))

    if source.startswith("data:"):
        try:
            return _decode_data_url(source)
        except (binascii.Error, ValueError) as e:
            raise AssetLoadError(f"Malformed data URL: {e}", asset=describe(source)) from e

    if is_remote(source):
        try:
            response = requests.get(source, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise AssetLoadError(f"Could not fetch {source}: {e}", asset=source) from e
        logger.debug("Fetched %d bytes from %s", len(response.content), source)
        return response.content

    try:
        with open(source, "rb") as f:
            return f.read()
    except OSError as e:
        raise AssetLoadError(f"Could not read {source}: {e}", asset=source) from e


def looks_like_wav(data: bytes) -> bool:
    return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE"
