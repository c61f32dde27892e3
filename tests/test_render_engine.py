import asyncio
import math
import os
import sys
import threading

import numpy as np
import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from dsp_core import damped_sine, linear_resample, midi_to_frequency
from errors import RenderCancelled
from render_engine import (
    BEAT_DURATION_S,
    DEFAULT_MASTER_GAIN,
    MELODIC_GAIN,
    PERCUSSIVE_GAIN,
    AudioRenderEngine,
    RenderProgress,
)
from sample_sources import FileSource, SineSource
from sequencer import Beat, Note, TempoMap

SR = 8000


def _mix(block_size, sr=SR):
    notes = [
        Note(track=0, pitch=69, start=0.0, length=1.0, velocity=100),
        Note(track=1, pitch=48, start=0.75, length=2.0, velocity=60),
        Note(track=0, pitch=76, start=1.25, length=0.5, velocity=127),
    ]
    beats = [Beat(track=1, position=0.0), Beat(track=0, position=1.0), Beat(track=2, position=2.5)]
    source = FileSource.from_array(np.linspace(-0.5, 0.5, 2000), SR)
    engine = AudioRenderEngine(
        notes,
        beats,
        TempoMap([(0, 120), (2, 90)]),
        note_sources={1: source},
        sample_rate=sr,
        block_size=block_size,
    )
    return engine.render()


def test_sine_note_starts_at_zero_and_spans_its_length():
    engine = AudioRenderEngine([Note(track=0, pitch=69, start=0.0, length=1.0, velocity=127)], [], sample_rate=SR)
    audio = engine.render()
    assert audio.num_channels == 2
    assert audio.sample_rate == SR
    assert audio.length == int(round(0.5 * SR))
    assert audio.channels[0][0] == 0.0
    assert audio.channels[0].dtype == np.float32
    np.testing.assert_array_equal(audio.channels[0], audio.channels[1])


def test_sine_note_matches_damped_sine():
    engine = AudioRenderEngine([Note(track=0, pitch=69, start=0.0, length=1.0, velocity=127)], [], sample_rate=SR)
    audio = engine.render()
    t = np.arange(audio.length) / SR
    expected = damped_sine(440.0, t, 0.5) * DEFAULT_MASTER_GAIN * MELODIC_GAIN
    np.testing.assert_allclose(audio.channels[0], expected, atol=1e-6)


def test_render_is_identical_across_block_sizes():
    reference = _mix(1 << 20).as_array()
    for block in (1, 97, 1024, 16384):
        np.testing.assert_array_equal(_mix(block).as_array(), reference)


def test_beat_gain_and_frequency():
    engine = AudioRenderEngine([], [Beat(track=0, position=0.0, velocity=127)], sample_rate=SR)
    audio = engine.render()
    assert audio.length == int(round(BEAT_DURATION_S * SR))
    t = np.arange(audio.length) / SR
    expected = damped_sine(200.0, t, BEAT_DURATION_S) * DEFAULT_MASTER_GAIN * PERCUSSIVE_GAIN
    np.testing.assert_allclose(audio.channels[0], expected, atol=1e-6)

    other = AudioRenderEngine([], [Beat(track=3, position=0.0, velocity=127)], sample_rate=SR).render()
    expected = damped_sine(150.0, t, BEAT_DURATION_S) * DEFAULT_MASTER_GAIN * PERCUSSIVE_GAIN
    np.testing.assert_allclose(other.channels[0], expected, atol=1e-6)


def test_velocity_scales_linearly():
    loud = AudioRenderEngine([Note(track=0, pitch=60, start=0, length=1, velocity=127)], [], sample_rate=SR).render()
    soft = AudioRenderEngine([Note(track=0, pitch=60, start=0, length=1, velocity=0)], [], sample_rate=SR).render()
    assert np.max(np.abs(loud.channels[0])) > 0.0
    assert np.max(np.abs(soft.channels[0])) == 0.0


def test_pitch_is_clamped_to_piano_range():
    low = AudioRenderEngine([Note(track=0, pitch=0, start=0, length=1)], [], sample_rate=SR).render()
    a0 = AudioRenderEngine([Note(track=0, pitch=21, start=0, length=1)], [], sample_rate=SR).render()
    np.testing.assert_array_equal(low.channels[0], a0.channels[0])


def test_file_source_playback_rate():
    ramp = np.arange(4000, dtype=np.float32) / 4000.0
    source = FileSource.from_array(ramp, SR, pitch_shift=0.0)
    at_reference = AudioRenderEngine(
        [Note(track=0, pitch=60, start=0, length=1, velocity=127)], [], note_sources={0: source}, sample_rate=SR
    ).render()
    gain = DEFAULT_MASTER_GAIN * MELODIC_GAIN
    np.testing.assert_allclose(at_reference.channels[0], ramp * gain, atol=1e-6)

    octave_up = AudioRenderEngine(
        [Note(track=0, pitch=72, start=0, length=1, velocity=127)], [], note_sources={0: source}, sample_rate=SR
    ).render()
    np.testing.assert_allclose(octave_up.channels[0][:2000], ramp[0:4000:2] * gain, atol=1e-6)
    assert np.all(octave_up.channels[0][2000:] == 0.0)

    shifted = FileSource.from_array(ramp, SR, pitch_shift=12.0)
    shifted_audio = AudioRenderEngine(
        [Note(track=0, pitch=60, start=0, length=1, velocity=127)], [], note_sources={0: shifted}, sample_rate=SR
    ).render()
    np.testing.assert_array_equal(shifted_audio.channels[0], octave_up.channels[0])


def test_stereo_file_source_feeds_each_channel():
    left = np.full(SR, 0.5, dtype=np.float32)
    right = np.full(SR, -0.25, dtype=np.float32)
    source = FileSource.from_array(np.stack([left, right], axis=1), SR)
    assert source.num_channels == 2
    assert source.plane_for(5) is source.planes[1]
    audio = AudioRenderEngine(
        [], [Beat(track=0, position=0.0, velocity=127)], beat_sources={0: source}, sample_rate=SR
    ).render()
    gain = DEFAULT_MASTER_GAIN * PERCUSSIVE_GAIN
    assert audio.channels[0][10] == pytest.approx(0.5 * gain)
    assert audio.channels[1][10] == pytest.approx(-0.25 * gain)


def test_resample_edges_are_silent():
    src = np.array([1.0, 2.0, 3.0])
    out = linear_resample(src, np.array([-0.5, 0.0, 0.5, 2.0, 2.5, 3.0]))
    np.testing.assert_allclose(out, [0.0, 1.0, 1.5, 3.0, 1.5, 0.0])


def test_output_is_not_clamped():
    notes = [Note(track=t, pitch=69, start=0, length=1, velocity=127) for t in range(8)]
    audio = AudioRenderEngine(notes, [], sample_rate=SR).render()
    assert np.max(np.abs(audio.channels[0])) > 1.0


def test_tempo_map_and_speed_place_voices():
    tempo = TempoMap([(0, 120), (8, 60)])
    engine = AudioRenderEngine([], [Beat(track=0, position=12.0)], tempo, sample_rate=SR)
    audio = engine.render()
    start = int(math.floor(8.0 * SR))
    assert np.all(audio.channels[0][:start] == 0.0)
    assert audio.channels[0][start + 1] != 0.0

    fast = AudioRenderEngine([], [Beat(track=0, position=12.0)], tempo, speed=2.0, sample_rate=SR)
    assert fast.beat_to_seconds(12.0) == pytest.approx(4.0)


def test_explicit_duration_and_tail():
    note = [Note(track=0, pitch=60, start=0, length=1)]
    assert AudioRenderEngine(note, [], sample_rate=SR, tail_s=0.25).total_samples == int(round(0.75 * SR))
    assert AudioRenderEngine(note, [], sample_rate=SR, duration_s=2.0).total_samples == 2 * SR
    clipped = AudioRenderEngine(note, [], sample_rate=SR, duration_s=0.1).render()
    assert clipped.length == int(round(0.1 * SR))


def test_empty_timeline_renders_nothing():
    progress = []
    audio = AudioRenderEngine([], [], sample_rate=SR).render(on_progress=lambda p, t: progress.append((p, t)))
    assert audio.length == 0
    assert progress == [(0, 0)]


def test_progress_is_monotonic_and_complete():
    engine = AudioRenderEngine([Note(track=0, pitch=60, start=0, length=2)], [], sample_rate=SR, block_size=1000)
    seen = []
    engine.render(on_progress=lambda processed, total: seen.append((processed, total)))
    total = engine.total_samples
    assert [p for p, _ in seen] == sorted(p for p, _ in seen)
    assert seen[-1] == (total, total)
    assert len(seen) == math.ceil(total / 1000)


def test_iter_render_yields_progress_objects():
    engine = AudioRenderEngine([Note(track=0, pitch=60, start=0, length=1)], [], sample_rate=SR, block_size=500)
    gen = engine.iter_render()
    first = next(gen)
    assert isinstance(first, RenderProgress)
    assert 0.0 < first.fraction < 1.0


def test_cancel_between_blocks():
    cancel = threading.Event()
    engine = AudioRenderEngine([Note(track=0, pitch=60, start=0, length=4)], [], sample_rate=SR, block_size=256)

    def on_progress(processed, total):
        if processed >= 1024:
            cancel.set()

    with pytest.raises(RenderCancelled):
        engine.render(on_progress=on_progress, cancel_event=cancel)


def test_render_async_matches_render():
    notes = [Note(track=0, pitch=64, start=0, length=1)]
    sync_audio = AudioRenderEngine(notes, [], sample_rate=SR, block_size=333).render()
    async_audio = asyncio.run(AudioRenderEngine(notes, [], sample_rate=SR, block_size=333).render_async())
    np.testing.assert_array_equal(sync_audio.as_array(), async_audio.as_array())


def test_invalid_engine_arguments():
    with pytest.raises(ValueError):
        AudioRenderEngine([], [], sample_rate=0)
    with pytest.raises(ValueError):
        AudioRenderEngine([], [], block_size=0)
    with pytest.raises(ValueError):
        AudioRenderEngine([], [], speed=0)


def test_sine_source_is_default():
    explicit = AudioRenderEngine(
        [Note(track=0, pitch=60, start=0, length=1)], [], note_sources={0: SineSource()}, sample_rate=SR
    ).render()
    default = AudioRenderEngine([Note(track=0, pitch=60, start=0, length=1)], [], sample_rate=SR).render()
    np.testing.assert_array_equal(explicit.channels[0], default.channels[0])
    assert midi_to_frequency(69) == 440.0
