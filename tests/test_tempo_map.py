import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from sequencer import Note, TempoMap, beat_from_dict, note_from_dict


def test_constant_tempo():
    tempo = TempoMap.constant(120)
    assert tempo.beat_to_seconds(0) == 0.0
    assert tempo.beat_to_seconds(1) == pytest.approx(0.5)
    assert tempo.beat_to_seconds(8) == pytest.approx(4.0)


def test_piecewise_tempo():
    tempo = TempoMap([(0, 120), (8, 60)])
    assert tempo.beat_to_seconds(8) == pytest.approx(4.0)
    assert tempo.beat_to_seconds(12) == pytest.approx(8.0)
    assert tempo.beat_to_seconds(16) == pytest.approx(12.0)
    assert tempo.bpm_at(7.99) == 120
    assert tempo.bpm_at(8) == 60


def test_tempo_map_is_continuous_at_breakpoints():
    tempo = TempoMap([(0, 90), (4, 150), (10, 70)])
    for beat in (4, 10):
        assert tempo.beat_to_seconds(beat - 1e-9) == pytest.approx(tempo.beat_to_seconds(beat), abs=1e-6)


def test_playback_speed_scales_time():
    tempo = TempoMap([(0, 120), (8, 60)])
    assert tempo.beat_to_seconds(16, speed=2.0) == pytest.approx(6.0)
    with pytest.raises(ValueError):
        tempo.beat_to_seconds(1, speed=0.0)


def test_default_bpm_before_first_breakpoint():
    tempo = TempoMap([(4, 60)], default_bpm=120)
    assert tempo.breakpoints == ((0.0, 120.0), (4.0, 60.0))
    assert tempo.beat_to_seconds(5) == pytest.approx(3.0)
    assert len(tempo) == 2


@pytest.mark.parametrize(
    "points",
    [
        [(0, 0)],
        [(0, -10)],
        [(-1, 120)],
        [(0, 120), (0, 90)],
        [(0, 120), (8, 100), (4, 90)],
    ],
)
def test_invalid_breakpoints(points):
    with pytest.raises(ValueError):
        TempoMap(points)


def test_from_session():
    assert TempoMap.from_session({"bpm": 100}).to_list() == [[0.0, 100.0]]
    tempo = TempoMap.from_session({"bpm": 100, "tempo_map": [[0, 90], [4, 180]]})
    assert tempo.to_list() == [[0.0, 90.0], [4.0, 180.0]]
    assert tempo.initial_bpm == 90


def test_note_from_dict():
    note = note_from_dict({"pitch": 64, "start": 1.5, "length": 0.5, "id": "n1"})
    assert (note.track, note.pitch, note.start, note.length, note.velocity, note.id) == (0, 64, 1.5, 0.5, 100, "n1")
    assert note.end == 2.0
    assert Note(track=0, pitch=60, start=0, length=1).id != Note(track=0, pitch=60, start=0, length=1).id


def test_note_from_dict_rejects_bad_input():
    with pytest.raises(KeyError):
        note_from_dict({"start": 0, "length": 1})
    with pytest.raises(ValueError):
        note_from_dict({"pitch": 60, "start": 0, "length": 0})
    with pytest.raises(ValueError):
        beat_from_dict({"position": -1})


def test_beat_from_dict():
    beat = beat_from_dict({"track": 1, "position": 2, "velocity": 90})
    assert (beat.track, beat.position, beat.velocity) == (1, 2.0, 90)
    assert beat.id.startswith("beat-")
