"""Render/composite loop: paints each frame and drives completion checks."""

import io
import logging

import numpy as np
from PIL import Image, UnidentifiedImageError

from rehearsal_export.constants import BACKGROUND_RGB, SURFACE_HEIGHT, SURFACE_WIDTH
from rehearsal_export.errors import AssetLoadError
from rehearsal_export.media import MediaHost
from rehearsal_export.playback import SegmentPlayback
from rehearsal_export.sources import describe, fetch_bytes

logger = logging.getLogger(__name__)


def fit_rect(src_width: int, src_height: int, dst_width: int, dst_height: int) -> tuple[int, int, int, int]:
    """Largest aspect-preserving (x, y, width, height) of src centred in dst.

    Wider sources are letterboxed (bars top/bottom), taller ones pillarboxed.
    """
    if src_width <= 0 or src_height <= 0:
        raise ValueError(f"Invalid source size {src_width}x{src_height}")
    src_aspect = src_width / src_height
    dst_aspect = dst_width / dst_height

    if src_aspect > dst_aspect:
        width = dst_width
        height = max(1, min(dst_height, round(dst_width / src_aspect)))
        return 0, (dst_height - height) // 2, width, height

    height = dst_height
    width = max(1, min(dst_width, round(dst_height * src_aspect)))
    return (dst_width - width) // 2, 0, width, height


def load_backdrop(source) -> Image.Image:
    """Open the static fallback image (path, URL, data URL or bytes) as RGB."""
    if isinstance(source, Image.Image):
        return source.convert("RGB")
    data = fetch_bytes(source)
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise AssetLoadError(f"Failed to load backdrop image: {e}", asset=describe(source)) from e


class RenderSurface:
    """Fixed-size RGB output surface."""

    def __init__(self, width: int = SURFACE_WIDTH, height: int = SURFACE_HEIGHT, background=BACKGROUND_RGB):
        self.width = width
        self.height = height
        self.background = np.array(background, dtype=np.uint8)
        self.pixels = np.zeros((height, width, 3), dtype=np.uint8)
        self.clear()

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height

    def clear(self) -> None:
        self.pixels[:, :] = self.background

    def place(self, image: Image.Image) -> tuple[np.ndarray, tuple[int, int, int, int]]:
        """Scale image to fit; returns (pixels, rect) ready for blit()."""
        x, y, w, h = fit_rect(image.width, image.height, self.width, self.height)
        scaled = image.convert("RGB").resize((w, h), Image.BILINEAR)
        return np.asarray(scaled, dtype=np.uint8), (x, y, w, h)

    def blit(self, pixels: np.ndarray, rect: tuple[int, int, int, int]) -> None:
        x, y, w, h = rect
        self.pixels[y:y + h, x:x + w] = pixels

    def draw(self, image) -> None:
        if isinstance(image, np.ndarray):
            image = Image.fromarray(image)
        self.blit(*self.place(image))


class RenderLoop:
    """Once per host frame: clear, draw video frame or backdrop, check completion.

    Runs at the host clock's rate, which is also the capture sink's rate.
    """

    def __init__(self, host: MediaHost, surface: RenderSurface, backdrop: Image.Image):
        self.host = host
        self.surface = surface
        self._backdrop = surface.place(backdrop)

    def paint(self, playback: SegmentPlayback) -> None:
        self.surface.clear()
        video = playback.video
        if video is not None and not video.ended:
            self.surface.draw(video.frame_at(video.current_time))
        else:
            self.surface.blit(*self._backdrop)

    async def run(self, playback: SegmentPlayback) -> int:
        """Paint frames until the segment is done. Returns frames advanced."""
        frames = 0
        while True:
            self.paint(playback)
            if playback.poll():
                return frames
            await self.host.next_frame()
            frames += 1
