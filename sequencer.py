"""Timeline model shared by the MIDI converter and the audio renderer.

Notes and beats are positioned in quarter-note beats.  The :class:`TempoMap`
turns those beat positions into seconds under a piecewise-constant tempo.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple
import bisect
import uuid

__all__ = [
    "DEFAULT_BPM",
    "Note",
    "Beat",
    "TempoMap",
    "new_id",
    "note_from_dict",
    "beat_from_dict",
]

DEFAULT_BPM = 120.0


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


@dataclass
class Note:
    track: int
    pitch: int          # 0..127
    start: float        # beats
    length: float       # beats
    velocity: int = 100
    id: str = field(default_factory=lambda: new_id("note"))

    @property
    def end(self) -> float:
        return self.start + self.length


@dataclass
class Beat:
    track: int          # rhythm channel index
    position: float     # beats
    velocity: int = 100
    id: str = field(default_factory=lambda: new_id("beat"))


def _require(mapping: Mapping[str, Any], key: str) -> Any:
    if key not in mapping:
        raise KeyError(f"missing field '{key}'")
    return mapping[key]


def note_from_dict(raw: Mapping[str, Any]) -> Note:
    note = Note(
        track=int(raw.get("track", 0)),
        pitch=int(_require(raw, "pitch")),
        start=float(_require(raw, "start")),
        length=float(_require(raw, "length")),
        velocity=int(raw.get("velocity", 100)),
    )
    if raw.get("id"):
        note.id = str(raw["id"])
    if note.start < 0.0 or note.length <= 0.0:
        raise ValueError(f"note {note.id} needs start >= 0 and length > 0")
    return note


def beat_from_dict(raw: Mapping[str, Any]) -> Beat:
    beat = Beat(
        track=int(raw.get("track", 0)),
        position=float(_require(raw, "position")),
        velocity=int(raw.get("velocity", 100)),
    )
    if raw.get("id"):
        beat.id = str(raw["id"])
    if beat.position < 0.0:
        raise ValueError(f"beat {beat.id} needs position >= 0")
    return beat


class TempoMap:
    """Ordered ``(beat, bpm)`` breakpoints with an implied entry at beat 0.

    Each breakpoint holds until the next one.  When no breakpoint sits at beat
    0, ``default_bpm`` covers the stretch before the first one.
    """

    def __init__(
        self,
        breakpoints: Iterable[Sequence[float]] = (),
        *,
        default_bpm: float = DEFAULT_BPM,
    ) -> None:
        points: List[Tuple[float, float]] = []
        for raw in breakpoints:
            beat, bpm = float(raw[0]), float(raw[1])
            if beat < 0.0:
                raise ValueError(f"tempo breakpoint at negative beat {beat}")
            if bpm <= 0.0:
                raise ValueError(f"tempo must be > 0 BPM (got {bpm} at beat {beat})")
            if points and beat <= points[-1][0]:
                raise ValueError("tempo breakpoints must have strictly increasing beat positions")
            points.append((beat, bpm))
        if not points or points[0][0] > 0.0:
            if default_bpm <= 0.0:
                raise ValueError("default tempo must be > 0 BPM")
            points.insert(0, (0.0, float(default_bpm)))
        self._points = points
        self._starts = [p[0] for p in points]

    @classmethod
    def constant(cls, bpm: float) -> "TempoMap":
        return cls([(0.0, bpm)])

    @property
    def breakpoints(self) -> Tuple[Tuple[float, float], ...]:
        return tuple(self._points)

    @property
    def initial_bpm(self) -> float:
        return self._points[0][1]

    def __len__(self) -> int:
        return len(self._points)

    def __repr__(self) -> str:
        return f"TempoMap({self._points!r})"

    def bpm_at(self, beat: float) -> float:
        idx = bisect.bisect_right(self._starts, float(beat)) - 1
        return self._points[max(0, idx)][1]

    def beat_to_seconds(self, beat: float, speed: float = 1.0) -> float:
        """Seconds elapsed from beat 0 to ``beat`` at playback ``speed``."""

        if speed <= 0.0:
            raise ValueError("playback speed must be > 0")
        beat = max(0.0, float(beat))
        seconds = 0.0
        last = len(self._points) - 1
        for idx, (seg_start, bpm) in enumerate(self._points):
            seconds_per_beat = 60.0 / (bpm * speed)
            if idx == last or beat < self._points[idx + 1][0]:
                return seconds + (beat - seg_start) * seconds_per_beat
            seconds += (self._points[idx + 1][0] - seg_start) * seconds_per_beat
        return seconds

    def to_list(self) -> List[List[float]]:
        return [[beat, bpm] for beat, bpm in self._points]

    @classmethod
    def from_session(cls, raw: Dict[str, Any]) -> "TempoMap":
        bpm = float(raw.get("bpm", DEFAULT_BPM))
        points = raw.get("tempo_map") or []
        return cls(points, default_bpm=bpm) if points else cls.constant(bpm)
