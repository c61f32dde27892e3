import json
import os
import sys
import tempfile
import wave

import numpy as np
import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import midi_parser
from errors import InvalidSessionError
from render import import_midi, load_config_safe, load_session, run_session
from sample_sources import FileSource, SineSource

from tests._test_utils import prepare_config, sine_session


def _write_wav(path, samples, sample_rate=8000):
    pcm = (np.asarray(samples) * 32767).astype("<i2")
    with wave.open(path, "wb") as w:
        w.setnchannels(1)
        w.setsampwidth(2)
        w.setframerate(sample_rate)
        w.writeframes(pcm.tobytes())


def test_config_defaults_are_injected(tmp_path):
    path = tmp_path / "partial.yaml"
    path.write_text("audio:\n  sample_rate: 22050  # low\nexport:\n  filenames:\n    wav: \"{name}-mix.wav\"\n")
    cfg = load_config_safe(str(path), use_cache=False)
    assert cfg["audio"]["sample_rate"] == 22050
    assert cfg["audio"]["channels"] == 2
    assert cfg["midi"]["ticks_per_quarter"] == 480
    assert cfg["export"]["filenames"] == {"wav": "{name}-mix.wav", "midi": "{name}.mid"}
    assert cfg["paths"]["output"] == os.path.join(str(tmp_path), "output")


def test_config_missing_file_warns(tmp_path):
    with pytest.warns(UserWarning):
        cfg = load_config_safe(str(tmp_path / "absent.yaml"), use_cache=False)
    assert cfg["logging"]["level"] == "INFO"


@pytest.mark.parametrize("text", ["{not json", "audio\n  sample_rate 8000\n"])
def test_config_unparsable_file_warns(tmp_path, text):
    path = tmp_path / "broken.yaml"
    path.write_text(text)
    with pytest.warns(UserWarning, match="could not be parsed"):
        cfg = load_config_safe(str(path), use_cache=False)
    assert cfg["audio"]["sample_rate"] == 44100
    assert cfg["midi"]["ticks_per_quarter"] == 480


def test_config_invalid_section_warns(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"audio": [1, 2], "midi": {"tempo_default": 100}}))
    with pytest.warns(UserWarning):
        cfg = load_config_safe(str(path), use_cache=False)
    assert cfg["audio"]["sample_rate"] == 44100
    assert cfg["midi"]["tempo_default"] == 100


def test_config_cache_returns_copies(tmp_path):
    path = tmp_path / "cfg.yaml"
    path.write_text("audio:\n  block_size: 512\n")
    first = load_config_safe(str(path))
    first["audio"]["block_size"] = 1
    assert load_config_safe(str(path))["audio"]["block_size"] == 512


def test_repository_config_parses():
    cfg = load_config_safe(os.path.join(ROOT, "config.yaml"), use_cache=False)
    assert cfg["audio"]["sample_rate"] == 44100
    assert cfg["midi"]["export_tempo_map"] is True
    assert cfg["export"]["filenames"]["midi"] == "{name}.mid"
    assert cfg["logging"]["level"] == "INFO"


def test_load_session_with_sources(tmp_path):
    _write_wav(str(tmp_path / "piano.wav"), np.linspace(0, 0.5, 400))
    session = load_session(
        {
            "name": "my song!",
            "bpm": 100,
            "tempo_map": [[0, 100], [4, 50]],
            "speed": 1.5,
            "notes": [{"track": 0, "pitch": 60, "start": 0, "length": 1}],
            "beats": [{"track": 1, "position": 0}],
            "samples": {"melody": {"0": {"path": "piano.wav", "pitch_shift": -2}}, "beats": {"1": "sine"}},
        },
        base_dir=str(tmp_path),
    )
    assert session.name == "my-song"
    assert session.explicit_tempo_map
    assert session.tempo_map.to_list() == [[0.0, 100.0], [4.0, 50.0]]
    assert session.speed == 1.5
    source = session.note_sources[0]
    assert isinstance(source, FileSource)
    assert source.sample_rate == 8000 and source.length == 400 and source.pitch_shift == -2.0
    assert isinstance(session.beat_sources[1], SineSource)


@pytest.mark.parametrize(
    "raw",
    [
        [],
        {"notes": [{"start": 0, "length": 1}]},
        {"beats": [{"position": -2}]},
        {"bpm": 0},
        {"speed": 0},
        {"tempo_map": [[0, 120], [0, 60]]},
        {"samples": {"melody": {"0": {"path": "missing.wav"}}}},
        {"samples": ["piano.wav"]},
    ],
)
def test_invalid_sessions(raw, tmp_path):
    with pytest.raises(InvalidSessionError):
        load_session(raw, base_dir=str(tmp_path))


def test_run_session_writes_midi_and_wav():
    with tempfile.TemporaryDirectory() as tmp:
        config_path, _cfg = prepare_config(tmp, sample_rate=8000, tail_seconds=0.0)
        seen = []
        report = run_session(
            sine_session(beats=[{"track": 1, "position": 0.5}]),
            config_path=config_path,
            on_progress=lambda stage, fraction: seen.append((stage, fraction)),
        )
        assert report["notes"] == 1 and report["beats"] == 1
        assert os.path.exists(report["paths"]["midi"])
        assert os.path.exists(report["paths"]["wav"])
        assert report["paths"]["wav"].endswith("sine.wav")

        with wave.open(report["paths"]["wav"], "rb") as w:
            assert w.getframerate() == 8000
            assert w.getnchannels() == 2
            assert w.getnframes() == 4000

        midi = midi_parser.load(report["paths"]["midi"])
        assert len(midi.tracks) == 3

        assert {stage for stage, _ in seen} == {"render", "encode"}
        assert seen[-1] == ("encode", 1.0)
        fractions = [f for stage, f in seen if stage == "render"]
        assert fractions == sorted(fractions)


def test_run_session_is_deterministic():
    with tempfile.TemporaryDirectory() as tmp:
        config_path, _cfg = prepare_config(tmp, sample_rate=8000)
        session = sine_session(tempo_map=[[0, 120], [1, 60]], beats=[{"track": 0, "position": 1}])
        first = run_session(session, config_path=config_path)
        with open(first["paths"]["wav"], "rb") as fh:
            wav_a = fh.read()
        with open(first["paths"]["midi"], "rb") as fh:
            midi_a = fh.read()
        second = run_session(session, config_path=config_path)
        with open(second["paths"]["wav"], "rb") as fh:
            assert fh.read() == wav_a
        with open(second["paths"]["midi"], "rb") as fh:
            assert fh.read() == midi_a


def test_run_session_midi_only():
    with tempfile.TemporaryDirectory() as tmp:
        config_path, _cfg = prepare_config(tmp)
        report = run_session(sine_session(), config_path=config_path, audio=False)
        assert "wav" not in report["paths"]
        assert report["midi_bytes"] > 0


def test_import_midi_returns_session_dict():
    with tempfile.TemporaryDirectory() as tmp:
        config_path, _cfg = prepare_config(tmp)
        session = sine_session(bpm=140, beats=[{"track": 1, "position": 2}])
        report = run_session(session, config_path=config_path, audio=False)
        imported = import_midi(report["paths"]["midi"])

    assert imported["name"] == "sine"
    assert imported["bpm"] == 140
    assert imported["grid_size"] == 3
    assert [(n["track"], n["pitch"], n["start"], n["length"]) for n in imported["notes"]] == [(0, 69, 0.0, 1.0)]
    assert [(b["track"], b["position"]) for b in imported["beats"]] == [(1, 2.0)]
    json.dumps(imported)
    reloaded = load_session(imported)
    assert len(reloaded.notes) == 1 and len(reloaded.beats) == 1
