import argparse
import json
import logging
import os
import tempfile
import time
import tracemalloc
import wave
from collections.abc import Callable
from pathlib import Path

from errors import BeatgridError
from render import _configure_logging, import_midi, load_config_safe, load_session, run_session

logger = logging.getLogger(__name__)


def run_selftest(cfg: dict) -> None:
    """Run the self-test battery and raise if any check fails."""

    time_limit_s = 15.0
    memory_limit_bytes = 256 * 1024 * 1024

    tracemalloc.start()
    start_time = time.perf_counter()

    def run_check(name: str, func: Callable[[], str]) -> None:
        try:
            message = func()
        except Exception as exc:
            print(f"[FAIL] {name}: {exc}")
            raise
        else:
            print(f"[PASS] {name}: {message}")

    def _check_vlq() -> str:
        from midi_parser import decode_vlq
        from midi_writer import VLQ_MAX, encode_vlq

        samples = (0, 0x40, 0x7F, 0x80, 0x2000, 0x3FFF, 0x4000, 0x1FFFFF, 0x200000, VLQ_MAX)
        for value in samples:
            encoded = encode_vlq(value)
            decoded, used = decode_vlq(encoded)
            if decoded != value or used != len(encoded):
                raise RuntimeError(f"VLQ {value:#x} decoded as {decoded:#x} ({used} byte(s))")
        return f"{len(samples)} value(s) up to {VLQ_MAX:#x}"

    def _check_tempo_symmetry() -> str:
        from midi_converter import decode_tempo, encode_tempo

        for bpm in (40, 60, 90, 120, 140, 200, 300):
            decoded = decode_tempo(encode_tempo(bpm))
            if abs(decoded - bpm) > 1:
                raise RuntimeError(f"tempo {bpm} BPM decoded as {decoded}")
        return "40..300 BPM within +/-1"

    def _check_midi_round_trip() -> str:
        import midi_parser
        import midi_writer
        from midi_converter import midi_to_sequencer, sequencer_to_midi
        from sequencer import Beat, Note

        notes = [
            Note(track=0, pitch=60, start=0.0, length=1.0, velocity=100),
            Note(track=0, pitch=64, start=1.0, length=0.5, velocity=90),
            Note(track=2, pitch=48, start=2.0, length=2.0, velocity=70),
        ]
        beats = [Beat(track=1, position=0.0), Beat(track=0, position=1.0)]
        data = midi_writer.write(sequencer_to_midi(notes, beats, bpm=128))
        imported = midi_to_sequencer(midi_parser.parse(data))
        if imported.bpm != 128:
            raise RuntimeError(f"tempo {imported.bpm} != 128")
        got = sorted((n.track, n.pitch, n.start, n.length, n.velocity) for n in imported.notes)
        want = sorted((n.track, n.pitch, n.start, n.length, n.velocity) for n in notes)
        if got != want:
            raise RuntimeError(f"notes differ: {got} != {want}")
        got_beats = sorted((b.track, b.position) for b in imported.beats)
        if got_beats != [(0, 1.0), (1, 0.0)]:
            raise RuntimeError(f"beats differ: {got_beats}")
        return f"{len(data)} byte(s), {len(imported.notes)} note(s), {len(imported.beats)} beat(s)"

    def _check_tempo_map() -> str:
        from sequencer import TempoMap

        tempo = TempoMap([(0, 120), (8, 60)])
        at_8 = tempo.beat_to_seconds(8)
        at_16 = tempo.beat_to_seconds(16)
        if abs(at_8 - 4.0) > 1e-9 or abs(at_16 - 12.0) > 1e-9:
            raise RuntimeError(f"beat 8 -> {at_8}s, beat 16 -> {at_16}s")
        return "beat 8 -> 4.0s, beat 16 -> 12.0s"

    def _check_render_determinism() -> str:
        import numpy as np

        from render_engine import AudioRenderEngine
        from sequencer import Beat, Note

        notes = [Note(track=0, pitch=69, start=0.0, length=1.0), Note(track=1, pitch=57, start=0.5, length=1.5)]
        beats = [Beat(track=0, position=0.0), Beat(track=1, position=1.0)]
        sr = int(cfg["audio"]["sample_rate"])
        rendered = [
            AudioRenderEngine(notes, beats, sample_rate=sr, block_size=block).render().as_array()
            for block in (257, 4096, 1 << 20)
        ]
        for other in rendered[1:]:
            if not np.array_equal(rendered[0], other):
                raise RuntimeError("render differs between block sizes")
        peak = float(np.max(np.abs(rendered[0])))
        return f"{rendered[0].shape[0]} frame(s), peak {peak:.3f}, identical for 3 block sizes"

    def _check_wav_header() -> str:
        import numpy as np

        from render_engine import RenderedAudio
        from wav_encoder import encode_wav

        audio = RenderedAudio([np.zeros(100, dtype=np.float32)] * 2, sample_rate=44100)
        data = encode_wav(audio)
        if len(data) != 44 + 400:
            raise RuntimeError(f"WAV size {len(data)} != 444")
        if data[:4] != b"RIFF" or int.from_bytes(data[4:8], "little") != 436:
            raise RuntimeError("RIFF header mismatch")
        if int.from_bytes(data[40:44], "little") != 400:
            raise RuntimeError("data chunk length mismatch")
        return "44-byte header, RIFF 436, data 400"

    def _check_session_smoke() -> str:
        session = {
            "name": "selftest",
            "bpm": 120,
            "notes": [{"track": 0, "pitch": 60, "start": 0, "length": 1}],
            "beats": [{"track": 1, "position": 0}],
        }
        with tempfile.TemporaryDirectory() as tmpdir:
            quick_cfg = {
                "audio": dict(cfg["audio"], tail_seconds=0.0),
                "paths": {"base": tmpdir, "output": os.path.join(tmpdir, "output")},
            }
            cfg_path = Path(tmpdir) / "config.json"
            cfg_path.write_text(json.dumps(quick_cfg), encoding="utf-8")
            report = run_session(session, config_path=str(cfg_path))
            with wave.open(report["paths"]["wav"], "rb") as wh:
                frames = wh.getnframes()
                rate = wh.getframerate()
            imported = import_midi(report["paths"]["midi"])
        if frames != int(round(0.5 * rate)):
            raise RuntimeError(f"{frames} frame(s) rendered, expected {int(round(0.5 * rate))}")
        if len(imported["notes"]) != 1 or len(imported["beats"]) != 1:
            raise RuntimeError("exported MIDI does not import back")
        return f"{frames} frame(s) at {rate} Hz, MIDI re-imported"

    run_check("VLQ", _check_vlq)
    run_check("Tempo encoding", _check_tempo_symmetry)
    run_check("MIDI round trip", _check_midi_round_trip)
    run_check("Tempo map", _check_tempo_map)
    run_check("Render determinism", _check_render_determinism)
    run_check("WAV header", _check_wav_header)
    run_check("Session smoke", _check_session_smoke)

    duration = time.perf_counter() - start_time
    _current, peak = tracemalloc.get_traced_memory()
    tracemalloc.stop()

    def _check_resources() -> str:
        peak_mb = peak / (1024 * 1024)
        if duration > time_limit_s:
            raise RuntimeError(f"time {duration:.2f}s > {time_limit_s:.2f}s")
        if peak > memory_limit_bytes:
            raise RuntimeError(
                f"peak memory {peak_mb:.1f} MiB > {memory_limit_bytes / (1024 * 1024):.0f} MiB"
            )
        return f"time {duration:.2f}s, peak memory {peak_mb:.1f} MiB"

    run_check("Resources", _check_resources)
    print(f"Self-test finished in {duration:.2f}s, peak memory {peak / (1024 * 1024):.1f} MiB.")


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="beatgrid: MIDI and WAV export of note/beat sessions")
    ap.add_argument("--session", help="Session JSON file to export")
    ap.add_argument("--import", dest="import_path", help="MIDI file to convert into a session JSON")
    ap.add_argument("--out", help="Where to write the imported session JSON (default: stdout)")
    ap.add_argument("--config", default="config.yaml", help="Path to the YAML or JSON config file")
    ap.add_argument("--no-audio", action="store_true", help="Skip the WAV export")
    ap.add_argument("--no-midi", action="store_true", help="Skip the MIDI export")
    ap.add_argument("--selftest", action="store_true", help="Run the self-test battery and exit")
    ap.add_argument("--dry-run", action="store_true", help="Print the parsed session without exporting")
    args = ap.parse_args(argv)

    cfg = load_config_safe(args.config)
    _configure_logging(cfg)

    if args.selftest:
        run_selftest(cfg)
        return 0

    try:
        if args.import_path:
            session = import_midi(args.import_path)
            text = json.dumps(session, indent=2)
            if args.out:
                Path(args.out).write_text(text + "\n", encoding="utf-8")
                logger.info("Wrote %s", args.out)
            else:
                print(text)
            return 0

        if not args.session:
            ap.error("--session or --import is required (use --selftest for the checks only)")

        if args.dry_run:
            session = load_session(args.session, default_bpm=float(cfg["midi"]["tempo_default"]))
            plan = {
                "name": session.name,
                "notes": len(session.notes),
                "beats": len(session.beats),
                "bpm": session.bpm,
                "tempo_map": session.tempo_map.to_list(),
                "speed": session.speed,
                "output": cfg["paths"]["output"],
            }
            print(json.dumps(plan, indent=2))
            return 0

        rep = run_session(
            args.session,
            args.config,
            midi=not args.no_midi,
            audio=not args.no_audio,
        )
    except (BeatgridError, OSError) as exc:
        logger.error("%s", exc)
        return 1

    print(json.dumps(rep, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
