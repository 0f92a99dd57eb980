"""Tests for media module."""

import asyncio

import numpy as np
import pytest

from rehearsal_export.errors import AssetLoadError, ProgrammingError
from rehearsal_export.media import AudioHandle, FrameClock, MediaHost, resolve_duration

from conftest import FakeHost, FakeVideoHandle, make_wav


def test_duration_before_load_raises():
    """Reading duration before metadata loads is a programming error."""
    handle = AudioHandle(make_wav(0.5))
    assert not handle.loaded
    with pytest.raises(ProgrammingError):
        handle.duration


def test_resolve_duration():
    handle = AudioHandle(make_wav(0.5))
    assert asyncio.run(resolve_duration(handle)) == pytest.approx(0.5)
    assert handle.loaded
    assert handle.duration == pytest.approx(0.5)


def test_resolve_duration_idempotent():
    """Resolving an already-loaded handle returns the same value without reloading."""
    FakeVideoHandle.metadata_reads = 0
    handle = FakeVideoHandle("fake-video:2.5")

    async def run():
        first = await resolve_duration(handle)
        second, third = await asyncio.gather(resolve_duration(handle), resolve_duration(handle))
        return first, second, third

    assert asyncio.run(run()) == (2.5, 2.5, 2.5)
    assert FakeVideoHandle.metadata_reads == 1


def test_resolve_missing_file(tmp_path):
    """Unreadable sources surface as AssetLoadError."""
    handle = AudioHandle(str(tmp_path / "nope.wav"))
    with pytest.raises(AssetLoadError):
        asyncio.run(resolve_duration(handle))


def test_resolve_undecodable_bytes():
    handle = AudioHandle(b"RIFF\x00\x00\x00\x00WAVEgarbage")
    with pytest.raises(AssetLoadError):
        asyncio.run(resolve_duration(handle))


def test_samples_resampled_to_mix_format():
    """8kHz mono speech is resampled to the 48kHz stereo mix format."""
    handle = AudioHandle(make_wav(0.5, level=1200), 48000, 2)
    asyncio.run(handle.load())
    assert handle.samples.shape[1] == 2
    assert handle.total_samples == pytest.approx(24000, abs=48)
    assert int(np.median(handle.samples)) == 1200


def test_zero_length_clip_ends_on_play():
    """A zero-length clip reports ended as soon as it plays."""
    handle = AudioHandle(make_wav(0.0))
    ended = []
    handle.on_ended(ended.append)

    async def run():
        await handle.load()
        await handle.play()

    asyncio.run(run())
    assert handle.duration == 0.0
    assert handle.ended
    assert ended == [handle]


def test_play_before_load():
    with pytest.raises(ProgrammingError):
        asyncio.run(AudioHandle(make_wav(0.1)).play())


def test_frame_clock_blocks_are_drift_free():
    """Block sizes over one second add up to exactly the sample rate."""
    clock = FrameClock(fps=30, sample_rate=44100)
    total = 0
    for _ in range(30):
        total += clock.block_size()
        clock.advance()
    assert total == 44100
    assert clock.time == pytest.approx(1.0)


def test_host_advances_and_mixes_wired_handle():
    """Only wired, unmuted, playing handles reach the mix."""
    with MediaHost(fps=10, sample_rate=8000, channels=1) as host:
        wired = host.open_audio(make_wav(1.0, level=100))
        unwired = host.open_audio(make_wav(1.0, level=5000))
        blocks = []
        host.add_frame_listener(lambda index, block: blocks.append((index, block.copy())))

        async def run():
            await wired.load()
            await unwired.load()
            host.graph.create_source(wired).connect(host.graph.destination)
            await wired.play()
            await unwired.play()
            await host.next_frame()
            wired.muted = True
            await host.next_frame()

        asyncio.run(run())

    assert [index for index, _ in blocks] == [0, 1]
    assert blocks[0][1].shape == (800, 1)
    assert set(blocks[0][1][:, 0].tolist()) == {100}
    assert set(blocks[1][1][:, 0].tolist()) == {0}
    assert wired.current_time == pytest.approx(0.2)
    assert unwired.current_time == pytest.approx(0.2)


def test_handle_ends_after_duration():
    with MediaHost(fps=10, sample_rate=8000, channels=1) as host:
        handle = host.open_audio(make_wav(0.25))

        async def run():
            await handle.load()
            await handle.play()
            frames = 0
            while not handle.ended:
                await host.next_frame()
                frames += 1
            return frames

        assert asyncio.run(run()) == 3
    assert handle.current_time == pytest.approx(0.25)


def test_isolated_host_is_separate():
    """An isolated host shares settings but not the graph, clock or handles."""
    with FakeHost(fps=12) as host:
        with host.isolated() as sibling:
            assert isinstance(sibling, FakeHost)
            assert sibling.fps == 12
            assert sibling.graph is not host.graph
            assert sibling.clock is not host.clock


def test_closed_host_rejects_handles():
    host = MediaHost()
    host.close()
    with pytest.raises(ProgrammingError):
        host.open_audio(b"")


# --- moviepy-backed video ---

def test_video_handle_decodes_real_clip(real_video):
    """VideoFileClip supplies duration, frames and the audio track."""
    with MediaHost() as host:
        video = host.open_video(real_video)
        assert asyncio.run(resolve_duration(video)) == pytest.approx(1.0, abs=0.1)
        assert video.size == (320, 180)

        frame = video.frame_at(0.5)
        assert frame.shape == (180, 320, 3)
        assert frame.dtype == np.uint8
        # past the end clamps to the last frame
        assert video.frame_at(5.0).shape == (180, 320, 3)

        audio = video._render_audio(0, host.sample_rate // 10)
        assert audio.shape == (host.sample_rate // 10, host.channels)
        assert np.any(audio)
