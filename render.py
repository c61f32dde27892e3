"""Configuration loading and the export/import sessions.

``run_session`` takes a session description (notes, beats, tempo, sample
sources), writes the MIDI file and renders plus encodes the WAV file, and
returns a JSON-friendly report.  ``import_midi`` goes the other way and turns
a MIDI file back into a session description.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
import ast
import copy
import json
import logging
import os
import re
import warnings

from errors import InvalidSessionError
from midi_converter import ImportedSequence, midi_to_sequencer, sequencer_to_midi
import midi_parser
import midi_writer
from render_engine import AudioRenderEngine
from sample_sources import SampleSource, SineSource, load_wav_source
from sequencer import Beat, Note, TempoMap, beat_from_dict, note_from_dict
from wav_encoder import EncodeJob, progress_step

CONFIG_CACHE: Dict[str, Dict[str, Any]] = {}

logger = logging.getLogger(__name__)

_DEFAULT_AUDIO = {
    "sample_rate": 44100,
    "channels": 2,
    "bit_depth": 16,
    "master_gain": 0.7,
    "block_size": 16384,
    "tail_seconds": 0.5,
}

_DEFAULT_MIDI = {
    "ticks_per_quarter": 480,
    "tempo_default": 120,
    "export_tempo_map": True,
}

_DEFAULT_EXPORT = {
    "progress_updates": 200,
    "progress_min_frames": 65536,
    "filenames": {
        "midi": "{name}.mid",
        "wav": "{name}.wav",
    },
}

_DEFAULT_PATHS = {
    "base": ".",
    "output": "./output",
}

_DEFAULT_LOGGING = {
    "level": "INFO",
}

ProgressCallback = Callable[[str, float], None]


# ----------------------------------------------------------------------------
# Config

def _parse_scalar(token: str) -> Any:
    token = token.strip()
    if not token or token.lower() in {"null", "~"}:
        return None
    lowered = token.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if token[0] in "\"'" and token[-1] == token[0] and len(token) >= 2:
        return token[1:-1]
    if token[0] in "[{":
        try:
            return ast.literal_eval(token)
        except (ValueError, SyntaxError):
            return token
    try:
        return int(token)
    except ValueError:
        pass
    try:
        return float(token)
    except ValueError:
        return token


def _load_yaml_like(text: str) -> Dict[str, Any]:
    """Parse JSON, or the nested ``key: value`` mappings used by config.yaml."""

    stripped = text.strip()
    if not stripped:
        return {}
    if stripped.startswith("{"):
        return json.loads(stripped)

    root: Dict[str, Any] = {}
    stack: List[Tuple[int, Dict[str, Any]]] = [(-1, root)]
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.split(" #", 1)[0].rstrip() if not raw.lstrip().startswith("#") else ""
        if not line.strip():
            continue
        indent = len(line) - len(line.lstrip(" "))
        key, sep, value = line.strip().partition(":")
        if not sep:
            raise ValueError(f"invalid config line {lineno}: {raw!r}")
        while indent <= stack[-1][0]:
            stack.pop()
        parent = stack[-1][1]
        key = key.strip().strip("\"'")
        if value.strip():
            parent[key] = _parse_scalar(value)
        else:
            child: Dict[str, Any] = {}
            parent[key] = child
            stack.append((indent, child))
    return root


def _resolve_path(base_dir: str, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    path = os.path.expanduser(str(value))
    if not os.path.isabs(path):
        path = os.path.abspath(os.path.join(base_dir, path))
    return path


def load_config_safe(path: str = "config.yaml", *, use_cache: bool = True) -> Dict[str, Any]:
    """Load the config file, injecting defaults and caching the result."""

    abs_path = os.path.abspath(path)
    if use_cache and abs_path in CONFIG_CACHE:
        return copy.deepcopy(CONFIG_CACHE[abs_path])

    base_dir = os.path.dirname(abs_path)
    try:
        with open(abs_path, "r", encoding="utf-8") as f:
            cfg_raw = _load_yaml_like(f.read()) or {}
    except FileNotFoundError:
        warnings.warn(f"Config file '{path}' not found, using defaults.")
        cfg_raw = {}
    except ValueError as exc:
        warnings.warn(f"Config file '{path}' could not be parsed ({exc}), using defaults.")
        cfg_raw = {}

    if not isinstance(cfg_raw, dict):
        warnings.warn("Config must be a mapping, using defaults.")
        cfg_raw = {}

    cfg: Dict[str, Any] = copy.deepcopy(cfg_raw)

    def _ensure_section(key: str, defaults: Dict[str, Any]) -> Dict[str, Any]:
        section = cfg.get(key)
        if not isinstance(section, dict):
            if key in cfg:
                warnings.warn(f"Config section '{key}' is invalid, using defaults.")
            section = copy.deepcopy(defaults)
        for sub_key, default_value in defaults.items():
            current = section.get(sub_key)
            if isinstance(default_value, dict):
                if not isinstance(current, dict):
                    section[sub_key] = copy.deepcopy(default_value)
                else:
                    for leaf_key, leaf_default in default_value.items():
                        current.setdefault(leaf_key, leaf_default)
            else:
                section.setdefault(sub_key, copy.deepcopy(default_value))
        cfg[key] = section
        return section

    _ensure_section("audio", _DEFAULT_AUDIO)
    _ensure_section("midi", _DEFAULT_MIDI)
    _ensure_section("export", _DEFAULT_EXPORT)
    _ensure_section("logging", _DEFAULT_LOGGING)
    paths = _ensure_section("paths", _DEFAULT_PATHS)

    if int(cfg["audio"]["bit_depth"]) != 16:
        warnings.warn("Only 16-bit PCM export is supported, forcing audio.bit_depth=16.")
        cfg["audio"]["bit_depth"] = 16

    paths["base"] = _resolve_path(base_dir, paths.get("base")) or base_dir
    paths["output"] = _resolve_path(paths["base"], paths.get("output"))
    cfg["_base_dir"] = paths["base"]

    CONFIG_CACHE[abs_path] = copy.deepcopy(cfg)
    return copy.deepcopy(cfg)


def _configure_logging(cfg: Dict[str, Any]) -> None:
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        level_name = str(cfg.get("logging", {}).get("level", "INFO")).upper()
        level = getattr(logging, level_name, logging.INFO)
        logging.basicConfig(level=level)


# ----------------------------------------------------------------------------
# Sessions

@dataclass
class Session:
    name: str
    notes: List[Note]
    beats: List[Beat]
    tempo_map: TempoMap
    bpm: float
    speed: float = 1.0
    note_sources: Dict[int, SampleSource] = field(default_factory=dict)
    beat_sources: Dict[int, SampleSource] = field(default_factory=dict)
    explicit_tempo_map: bool = False


def _sanitize_component(*parts: Any) -> str:
    raw = "_".join(str(p) for p in parts if p is not None).strip()
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", raw).strip("-_")
    return cleaned or "session"


def _load_sources(raw: Mapping[str, Any], base_dir: str) -> Dict[int, SampleSource]:
    sources: Dict[int, SampleSource] = {}
    for key, spec in raw.items():
        track = int(key)
        if spec in (None, "sine") or (isinstance(spec, dict) and spec.get("type") == "sine"):
            sources[track] = SineSource()
            continue
        if isinstance(spec, str):
            spec = {"path": spec}
        path = _resolve_path(base_dir, spec["path"])
        sources[track] = load_wav_source(path, float(spec.get("pitch_shift", 0.0)))
    return sources


def load_session(
    raw: Any,
    *,
    base_dir: str = ".",
    default_bpm: float = 120.0,
) -> Session:
    """Build a :class:`Session` from a JSON path or an already-decoded dict."""

    if isinstance(raw, str):
        base_dir = os.path.dirname(os.path.abspath(raw))
        default_name = os.path.splitext(os.path.basename(raw))[0]
        with open(raw, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    else:
        default_name = "session"
    if not isinstance(raw, dict):
        raise InvalidSessionError("A session must be a JSON object.")

    try:
        notes = [note_from_dict(n) for n in raw.get("notes", [])]
        beats = [beat_from_dict(b) for b in raw.get("beats", [])]
        bpm = float(raw.get("bpm", default_bpm))
        explicit_map = bool(raw.get("tempo_map"))
        tempo_map = TempoMap.from_session({**raw, "bpm": bpm})
        samples = raw.get("samples") or {}
        note_sources = _load_sources(samples.get("melody") or {}, base_dir)
        beat_sources = _load_sources(samples.get("beats") or {}, base_dir)
        speed = float(raw.get("speed", 1.0))
        if speed <= 0.0:
            raise ValueError("speed must be > 0")
    except (AttributeError, KeyError, TypeError, ValueError, OSError) as exc:
        raise InvalidSessionError(f"Invalid session: {exc}") from exc

    return Session(
        name=_sanitize_component(raw.get("name", default_name)),
        notes=notes,
        beats=beats,
        tempo_map=tempo_map,
        bpm=bpm,
        speed=speed,
        note_sources=note_sources,
        beat_sources=beat_sources,
        explicit_tempo_map=explicit_map,
    )


def _stage_progress(on_progress: Optional[ProgressCallback], stage: str) -> Callable[[int, int], None]:
    def report(processed: int, total: int) -> None:
        fraction = 1.0 if total <= 0 else min(1.0, processed / total)
        logger.debug("%s: %d/%d", stage, processed, total)
        if on_progress is not None:
            on_progress(stage, fraction)
    return report


def export_midi(session: Session, cfg: Dict[str, Any]) -> bytes:
    tempo_map = session.tempo_map if session.explicit_tempo_map and cfg["midi"]["export_tempo_map"] else None
    midi_file = sequencer_to_midi(
        session.notes,
        session.beats,
        bpm=session.bpm,
        ticks_per_quarter=int(cfg["midi"]["ticks_per_quarter"]),
        tempo_map=tempo_map,
    )
    return midi_writer.write(midi_file)


def export_wav(
    session: Session,
    cfg: Dict[str, Any],
    on_progress: Optional[ProgressCallback] = None,
) -> bytes:
    audio_cfg = cfg["audio"]
    engine = AudioRenderEngine(
        session.notes,
        session.beats,
        session.tempo_map,
        speed=session.speed,
        note_sources=session.note_sources,
        beat_sources=session.beat_sources,
        sample_rate=int(audio_cfg["sample_rate"]),
        num_channels=int(audio_cfg["channels"]),
        master_gain=float(audio_cfg["master_gain"]),
        block_size=int(audio_cfg["block_size"]),
        tail_s=float(audio_cfg["tail_seconds"]),
    )
    audio = engine.render(on_progress=_stage_progress(on_progress, "render"))
    step = progress_step(
        audio.length,
        int(cfg["export"]["progress_updates"]),
        int(cfg["export"]["progress_min_frames"]),
    )
    job = EncodeJob(audio, on_progress=_stage_progress(on_progress, "encode"), step=step)
    return job.start().result()


def run_session(
    session: Any,
    config_path: str = "config.yaml",
    *,
    midi: bool = True,
    audio: bool = True,
    on_progress: Optional[ProgressCallback] = None,
) -> Dict[str, Any]:
    """Export a session to MIDI and WAV files and return a report."""

    cfg = load_config_safe(config_path)
    _configure_logging(cfg)

    if not isinstance(session, Session):
        session = load_session(
            session,
            base_dir=cfg["paths"]["base"],
            default_bpm=float(cfg["midi"]["tempo_default"]),
        )

    output_dir = cfg["paths"]["output"]
    os.makedirs(output_dir, exist_ok=True)
    names = cfg["export"]["filenames"]
    report: Dict[str, Any] = {
        "name": session.name,
        "notes": len(session.notes),
        "beats": len(session.beats),
        "bpm": session.bpm,
        "tempo_map": session.tempo_map.to_list(),
        "paths": {},
    }

    if midi:
        data = export_midi(session, cfg)
        midi_path = os.path.join(output_dir, names["midi"].format(name=session.name))
        with open(midi_path, "wb") as fh:
            fh.write(data)
        report["paths"]["midi"] = midi_path
        report["midi_bytes"] = len(data)
        logger.info("Wrote %s (%d bytes)", midi_path, len(data))

    if audio:
        data = export_wav(session, cfg, on_progress)
        wav_path = os.path.join(output_dir, names["wav"].format(name=session.name))
        with open(wav_path, "wb") as fh:
            fh.write(data)
        report["paths"]["wav"] = wav_path
        report["wav_bytes"] = len(data)
        logger.info("Wrote %s (%d bytes)", wav_path, len(data))

    return report


def sequence_to_dict(imported: ImportedSequence) -> Dict[str, Any]:
    return {
        "bpm": imported.bpm,
        "grid_size": imported.grid_size,
        "instrument_codes": {str(ch): prog for ch, prog in sorted(imported.instrument_codes.items())},
        "notes": [
            {
                "id": n.id,
                "track": n.track,
                "pitch": n.pitch,
                "start": n.start,
                "length": n.length,
                "velocity": n.velocity,
            }
            for n in imported.notes
        ],
        "beats": [
            {"id": b.id, "track": b.track, "position": b.position, "velocity": b.velocity}
            for b in imported.beats
        ],
    }


def import_midi(path: str) -> Dict[str, Any]:
    """Read a MIDI file and return it as a session dict."""

    imported = midi_to_sequencer(midi_parser.load(path))
    logger.info(
        "Imported %s: %d note(s), %d beat(s) at %s BPM",
        path,
        len(imported.notes),
        len(imported.beats),
        imported.bpm,
    )
    result = sequence_to_dict(imported)
    result["name"] = _sanitize_component(os.path.splitext(os.path.basename(path))[0])
    return result
