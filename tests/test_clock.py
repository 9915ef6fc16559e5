"""
Tests for clock offset estimation and beat alignment.
"""
import pytest

from party.clock import (
    MAX_DELAY_MS,
    BeatAligner,
    ClockSync,
    beat_duration_ms,
    clamp_delay,
    recommended_delay_ms,
)
from party.errors import ClockOffsetUnavailable
from party.state import Snapshot


def make_snapshot(bpm=120.0, origin=0, server_time=0, version=1) -> Snapshot:
    return Snapshot(
        tempo_bpm=bpm,
        beat_origin_ms=origin if bpm is not None else None,
        version=version,
        host_connected=True,
        server_time_ms=server_time,
    )


class TestRecommendedDelay:

    def test_reference_example(self) -> None:
        """120 BPM, origin 0, no offset, 1250 ms in: 250 ms to the next beat."""
        assert recommended_delay_ms(120, 0, 0, 1250) == 250

    def test_beat_duration(self) -> None:
        assert beat_duration_ms(120) == 500
        assert beat_duration_ms(60) == 1000

    def test_on_a_beat_waits_a_full_beat(self) -> None:
        assert recommended_delay_ms(120, 0, 0, 1000) == 500

    def test_now_before_origin_is_normalized(self) -> None:
        """(250 - 1000) mod 500 is 250, not -250."""
        assert recommended_delay_ms(120, 1000, 0, 250) == 250

    def test_offset_is_applied(self) -> None:
        assert recommended_delay_ms(120, 0, 100, 1250) == 150
        assert recommended_delay_ms(120, 0, -100, 1250) == 350

    @pytest.mark.parametrize("now", [0, 1, 499, 500, 12345, -777])
    def test_result_within_one_beat(self, now) -> None:
        delay = recommended_delay_ms(97.3, 42, 13, now)
        assert 0 < delay <= beat_duration_ms(97.3)


class TestClampDelay:

    @pytest.mark.parametrize("value,expected", [
        (-5, 0.0),
        (0, 0.0),
        (300, 300.0),
        (2500, float(MAX_DELAY_MS)),
        (float("nan"), 0.0),
    ])
    def test_clamp(self, value, expected) -> None:
        assert clamp_delay(value) == expected

    def test_custom_range(self) -> None:
        assert clamp_delay(900, max_delay_ms=500) == 500


class TestClockSync:

    def test_offset_from_snapshot(self, clock) -> None:
        """serverTime 10000 received at local 9000 gives an offset of 1000."""
        clock.now = 9000
        sync = ClockSync(clock)

        assert sync.update(make_snapshot(server_time=10000)) == 1000
        assert sync.offset_ms == 1000
        assert sync.received_at_ms == 9000

    def test_offset_follows_latest_snapshot(self, clock) -> None:
        sync = ClockSync(clock)
        clock.now = 9000
        sync.update(make_snapshot(server_time=10000))
        clock.now = 20000
        sync.update(make_snapshot(server_time=20950))
        assert sync.offset_ms == 950

    def test_unavailable_before_first_snapshot(self, clock) -> None:
        sync = ClockSync(clock)
        assert sync.offset_ms is None
        assert not sync.has_offset
        assert sync.to_server_time() is None
        assert sync.to_local_time(123) is None
        with pytest.raises(ClockOffsetUnavailable):
            sync.require_offset()

    def test_time_translation(self, clock) -> None:
        clock.now = 9000
        sync = ClockSync(clock)
        sync.update(make_snapshot(server_time=10000))

        assert sync.to_server_time() == 10000
        assert sync.to_server_time(9500) == 10500
        assert sync.to_local_time(10500) == 9500

    def test_reset(self, clock) -> None:
        sync = ClockSync(clock)
        sync.update(make_snapshot(server_time=10000))
        sync.reset()
        assert sync.offset_ms is None
        assert sync.received_at_ms is None


class TestBeatAligner:

    def test_matches_formula_with_offset(self, clock) -> None:
        """Offset from ClockSync feeds the alignment formula exactly."""
        clock.now = 9000
        sync = ClockSync(clock)
        snapshot = make_snapshot(bpm=120, origin=9700, server_time=10000)
        sync.update(snapshot)
        aligner = BeatAligner(sync)

        clock.now = 9250
        expected = recommended_delay_ms(120, 9700, 1000, 9250)
        assert aligner.recommend(snapshot) == expected
        # now on server clock is 10250, 550 ms past origin -> 50 ms into a beat
        assert expected == 450

    def test_no_snapshot(self, clock) -> None:
        assert BeatAligner(ClockSync(clock)).recommend(None) is None

    def test_no_tempo(self, clock) -> None:
        sync = ClockSync(clock)
        snapshot = make_snapshot(bpm=None)
        sync.update(snapshot)
        assert BeatAligner(sync).recommend(snapshot) is None

    def test_no_offset_yet(self, clock) -> None:
        assert BeatAligner(ClockSync(clock)).recommend(make_snapshot()) is None
