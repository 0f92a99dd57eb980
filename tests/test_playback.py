"""Tests for playback module."""

import asyncio

import pytest

from rehearsal_export.errors import ProgrammingError
from rehearsal_export.models import Segment
from rehearsal_export.playback import Latch, PlaybackState, SegmentMedia, SegmentPlayback

from conftest import FakeHost, make_wav


def _make_media(host, audio_seconds=1.0, video_seconds=None, normalized_seconds=None):
    segment = Segment(id="s1", text="hi", audio=make_wav(audio_seconds))
    speech = host.open_audio(segment.audio)
    video = host.open_video(f"fake-video:{video_seconds}") if video_seconds is not None else None
    normalized = host.open_audio(make_wav(normalized_seconds, level=2000)) if normalized_seconds is not None else None
    return SegmentMedia(index=0, segment=segment, speech=speech, video=video, normalized=normalized)


async def _drive(host, playback, watch=None):
    """Run one segment to completion; returns (frames, frame watch latched at or None)."""
    await playback.prime()
    await playback.start()
    frames = 0
    seen = None
    while not playback.poll():
        if watch is not None and seen is None and watch():
            seen = frames
        await host.next_frame()
        frames += 1
    return frames, seen


def test_latch():
    latch = Latch()
    assert not latch
    latch.set()
    latch.set()
    assert latch


def test_audio_only_segment():
    """Without a video the segment ends with its audio."""
    with FakeHost() as host:
        playback = SegmentPlayback(_make_media(host, 0.5), host.graph)
        frames, _ = asyncio.run(_drive(host, playback))
    assert playback.state is PlaybackState.DONE
    assert playback.video_done
    assert frames / host.fps == pytest.approx(0.5, abs=0.05 + 1 / host.fps)


def test_longer_video_holds_segment_open():
    """Audio 1s, video 2s: audio latches near 1s, segment ends near 2s."""
    with FakeHost() as host:
        playback = SegmentPlayback(_make_media(host, 1.0, 2.0), host.graph)
        frames, audio_done_at = asyncio.run(
            _drive(host, playback, watch=lambda: bool(playback.audio_done))
        )
    assert audio_done_at / host.fps == pytest.approx(1.0, abs=0.05 + 1 / host.fps)
    assert frames / host.fps == pytest.approx(2.0, abs=0.05 + 1 / host.fps)


def test_longer_audio_holds_segment_open():
    """Audio 2s, video 1s: video ending first does not cut the audio."""
    with FakeHost() as host:
        playback = SegmentPlayback(_make_media(host, 2.0, 1.0), host.graph)
        frames, video_done_at = asyncio.run(
            _drive(host, playback, watch=lambda: bool(playback.video_done))
        )
    assert video_done_at / host.fps == pytest.approx(1.0, abs=0.05 + 1 / host.fps)
    assert frames / host.fps == pytest.approx(2.0, abs=0.05 + 1 / host.fps)


def test_position_near_end_waits_for_ended():
    """Within tolerance but still advancing: the latch waits for the ended event."""
    with FakeHost() as host:
        media = _make_media(host, 1.0, 2.0)
        playback = SegmentPlayback(media, host.graph)
        frames, audio_done_at = asyncio.run(
            _drive(host, playback, watch=lambda: bool(playback.audio_done))
        )
    assert audio_done_at == host.fps
    assert media.speech.ended


def test_stalled_position_without_ended_event_completes():
    """A handle that never fires ended but stops advancing at its end still completes."""
    with FakeHost() as host:
        media = _make_media(host, 0.5, 0.8)
        playback = SegmentPlayback(media, host.graph)
        media.speech._finish = lambda: None
        media.video._finish = lambda: None

        async def run():
            await playback.prime()
            await playback.start()
            frames = 0
            while not playback.poll():
                await host.next_frame()
                frames += 1
                assert frames < 10 * host.fps
            return frames

        frames = asyncio.run(run())
    assert playback.done
    assert not media.speech.ended
    assert not media.video.ended
    assert frames / host.fps >= 0.8
    assert frames / host.fps == pytest.approx(0.8, abs=0.05 + 2 / host.fps)


def test_first_poll_without_video_stays_playing():
    """The preset video latch of an audio-only segment does not mean completing."""
    with FakeHost() as host:
        playback = SegmentPlayback(_make_media(host, 1.0), host.graph)

        async def run():
            await playback.prime()
            await playback.start()
            return playback.poll()

        assert not asyncio.run(run())
    assert playback.video_done
    assert not playback.audio_done
    assert playback.state is PlaybackState.PLAYING


def test_zero_length_audio_completes_immediately():
    with FakeHost() as host:
        playback = SegmentPlayback(_make_media(host, 0.0), host.graph)
        frames, _ = asyncio.run(_drive(host, playback))
    assert frames == 0
    assert playback.done


def test_policy_video_audio_audible():
    """Without normalization the video's audio is audible and speech is muted."""
    with FakeHost() as host:
        media = _make_media(host, 1.0, 1.0)
        playback = SegmentPlayback(media, host.graph)
        asyncio.run(playback.prime())
    assert playback.audible is media.video
    assert media.speech.muted
    assert not media.video.muted


def test_policy_normalized_audible():
    """Normalized audio wins over the video's own audio."""
    with FakeHost() as host:
        media = _make_media(host, 1.0, 1.0, normalized_seconds=1.0)
        playback = SegmentPlayback(media, host.graph)
        asyncio.run(playback.prime())
    assert playback.audible is media.normalized
    assert media.video.muted
    assert not media.normalized.muted


def test_policy_speech_audible():
    with FakeHost() as host:
        media = _make_media(host, 1.0)
        playback = SegmentPlayback(media, host.graph)
        asyncio.run(playback.prime())
    assert playback.audible is media.speech
    assert not media.speech.muted


def test_finish_restores_mute_state():
    """After a segment, video is paused and muted and speech is unmuted."""
    with FakeHost() as host:
        media = _make_media(host, 0.3, 0.3)
        playback = SegmentPlayback(media, host.graph)
        asyncio.run(_drive(host, playback))
    assert media.video.paused and media.video.muted
    assert media.speech.paused and not media.speech.muted


def test_one_audible_source_in_mix():
    """Only the video's constant level reaches the mix while it plays."""
    from conftest import VIDEO_LEVEL

    with FakeHost() as host:
        playback = SegmentPlayback(_make_media(host, 0.5, 0.5), host.graph)
        blocks = []
        host.add_frame_listener(lambda index, block: blocks.append(block))
        asyncio.run(_drive(host, playback))
    assert blocks
    assert set(int(v) for v in blocks[0].ravel()) == {VIDEO_LEVEL}


def test_state_order_enforced():
    with FakeHost() as host:
        playback = SegmentPlayback(_make_media(host, 0.2), host.graph)
        with pytest.raises(ProgrammingError):
            asyncio.run(playback.start())
        with pytest.raises(ProgrammingError):
            playback.poll()


def test_replaying_same_handles_raises():
    """Handles are wired once; a second playback over them is refused."""
    with FakeHost() as host:
        media = _make_media(host, 0.2)
        asyncio.run(_drive(host, SegmentPlayback(media, host.graph)))
        with pytest.raises(ProgrammingError):
            asyncio.run(SegmentPlayback(media, host.graph).prime())
