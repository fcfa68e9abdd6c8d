import pytest

from party_server.clock import PlaybackSnapshot, materialize, now_ms
from party_shared.protocol import VideoRef


def test_paused_materialization_is_idempotent() -> None:
    snapshot = PlaybackSnapshot(playing=False, position=42.5, updated_ms=1_000)

    first = materialize(snapshot, 5_000)
    second = materialize(first, 9_000)

    assert first.position == 42.5
    assert second.position == first.position
    assert second.updated_ms == 9_000


def test_playing_position_tracks_elapsed_time() -> None:
    snapshot = PlaybackSnapshot(playing=True, position=10.0, updated_ms=1_000)

    at_t1 = materialize(snapshot, 3_000)
    at_t2 = materialize(snapshot, 4_500)

    assert at_t1.position == pytest.approx(12.0)
    assert at_t2.position >= at_t1.position
    assert at_t2.position - at_t1.position == pytest.approx(1.5)


def test_chained_materialization_does_not_double_count() -> None:
    snapshot = PlaybackSnapshot(playing=True, position=0.0, updated_ms=0)

    stepped = materialize(materialize(materialize(snapshot, 1_000), 2_000), 3_000)
    direct = materialize(snapshot, 3_000)

    assert stepped.position == pytest.approx(direct.position)
    assert stepped.position == pytest.approx(3.0)


def test_position_never_goes_negative() -> None:
    # clock skew: now earlier than the stored stamp
    snapshot = PlaybackSnapshot(playing=True, position=0.5, updated_ms=10_000)
    assert materialize(snapshot, 8_000).position == 0.0


def test_materialize_does_not_mutate_input() -> None:
    snapshot = PlaybackSnapshot(playing=True, position=1.0, updated_ms=0)
    materialize(snapshot, 1_000)
    assert snapshot.position == 1.0
    assert snapshot.updated_ms == 0


def test_wire_format() -> None:
    empty = PlaybackSnapshot()
    assert empty.to_wire() == {"video": None, "playing": False, "time": 0.0}

    video = VideoRef(provider="youtube", url="https://youtube.com/watch?v=X")
    playing = PlaybackSnapshot(video=video, playing=True, position=3.25, updated_ms=now_ms())
    assert playing.to_wire() == {
        "video": {"provider": "youtube", "url": "https://youtube.com/watch?v=X"},
        "playing": True,
        "time": 3.25,
    }
