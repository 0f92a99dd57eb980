"""Audio-routing graph: source nodes feeding a mixed destination.

A playable handle can be wired into a graph exactly once in its lifetime.
Wiring reroutes the handle's audio permanently, so a second attempt is a
ProgrammingError rather than a silent rewire.
"""

import logging

import numpy as np

from rehearsal_export.constants import MIX_CHANNELS, MIX_SAMPLE_RATE
from rehearsal_export.errors import ProgrammingError

logger = logging.getLogger(__name__)


class MixDestination:
    """Sums every block written during one host frame into a single int16 block."""

    def __init__(self, sample_rate: int = MIX_SAMPLE_RATE, channels: int = MIX_CHANNELS):
        self.sample_rate = sample_rate
        self.channels = channels
        self._acc = None

    def begin_block(self, frames: int) -> None:
        self._acc = np.zeros((frames, self.channels), dtype=np.int32)

    def write(self, block: np.ndarray) -> None:
        if self._acc is None:
            raise ProgrammingError("MixDestination.write() outside of a frame block")
        n = min(len(block), len(self._acc))
        self._acc[:n] += block[:n]

    def end_block(self) -> np.ndarray:
        if self._acc is None:
            raise ProgrammingError("MixDestination.end_block() without begin_block()")
        mixed = np.clip(self._acc, -32768, 32767).astype(np.int16)
        self._acc = None
        return mixed


class SourceNode:
    def __init__(self, graph: "AudioGraph", handle):
        self.graph = graph
        self.handle = handle
        self._outputs = []

    @property
    def connected(self) -> bool:
        return bool(self._outputs)

    def connect(self, destination: MixDestination) -> None:
        if any(out is destination for out in self._outputs):
            raise ProgrammingError(f"{self.handle!r} is already connected to this destination")
        self._outputs.append(destination)

    def disconnect(self) -> None:
        self._outputs = []

    def push(self, block: np.ndarray) -> None:
        for destination in self._outputs:
            destination.write(block)


class AudioGraph:
    def __init__(self, sample_rate: int = MIX_SAMPLE_RATE, channels: int = MIX_CHANNELS):
        self.sample_rate = sample_rate
        self.channels = channels
        self.destination = MixDestination(sample_rate, channels)
        self._nodes = []
        self.closed = False

    def create_source(self, handle) -> SourceNode:
        """Wire handle into this graph. Allowed once per handle."""
        if self.closed:
            raise ProgrammingError("Audio graph is closed")
        if handle.wired:
            raise ProgrammingError(
                f"{handle!r} is already wired into an audio graph; "
                "use a fresh handle (clone) instead"
            )
        node = SourceNode(self, handle)
        handle._attach(node)
        self._nodes.append(node)
        logger.debug("Wired %r into audio graph", handle)
        return node

    def close(self) -> None:
        for node in self._nodes:
            node.disconnect()
        self._nodes = []
        self.closed = True
