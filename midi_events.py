"""In-memory model of a Standard MIDI File.

Every event kind is its own frozen dataclass carrying only the fields that
make sense for it, and ``MidiEvent`` is the union of those kinds.  Pitch bend
has no dedicated type: it is a :class:`Controller` whose ``controller`` is
``None`` and whose ``value`` holds the 14-bit bend amount.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Union

__all__ = [
    "META_END_OF_TRACK",
    "META_TEMPO",
    "PERCUSSION_CHANNEL",
    "NoteOn",
    "NoteOff",
    "Controller",
    "ProgramChange",
    "Meta",
    "SysEx",
    "Unknown",
    "MidiEvent",
    "MidiTrack",
    "MidiFile",
]

META_END_OF_TRACK = 0x2F
META_TEMPO = 0x51

PERCUSSION_CHANNEL = 9


@dataclass(frozen=True)
class NoteOn:
    channel: int
    note: int
    velocity: int
    delta_time: int = 0


@dataclass(frozen=True)
class NoteOff:
    channel: int
    note: int
    velocity: int = 0
    delta_time: int = 0


@dataclass(frozen=True)
class Controller:
    channel: int
    controller: Optional[int]   # None for pitch bend
    value: int                  # 0..127, or 0..16383 for pitch bend
    delta_time: int = 0

    @property
    def is_pitch_bend(self) -> bool:
        return self.controller is None


@dataclass(frozen=True)
class ProgramChange:
    channel: int
    program: int
    delta_time: int = 0


@dataclass(frozen=True)
class Meta:
    meta_type: int
    data: bytes = b""
    delta_time: int = 0

    @property
    def is_end_of_track(self) -> bool:
        return self.meta_type == META_END_OF_TRACK

    @property
    def is_tempo(self) -> bool:
        return self.meta_type == META_TEMPO


@dataclass(frozen=True)
class SysEx:
    data: bytes = b""
    status: int = 0xF0
    delta_time: int = 0


@dataclass(frozen=True)
class Unknown:
    status: int
    delta_time: int = 0


MidiEvent = Union[NoteOn, NoteOff, Controller, ProgramChange, Meta, SysEx, Unknown]


@dataclass
class MidiTrack:
    events: List[MidiEvent] = field(default_factory=list)


@dataclass
class MidiFile:
    format: int = 1
    ticks_per_quarter: int = 480
    tracks: List[MidiTrack] = field(default_factory=list)
