"""Conversion between the note/beat timeline and :class:`MidiFile` structures.

Export layout (format 1):

* track 0 holds the tempo meta event(s) and an end-of-track marker;
* one track per note track, in ascending order, using the track number as
  MIDI channel;
* one percussion track on channel 9 holding every beat (kick 36 for rhythm
  track 1, snare 38 otherwise).

A note whose NoteOff rounds onto (or before) its NoteOn tick is lengthened to
end one tick later.  Events at equal ticks are written NoteOff first, so a
zero-length note would otherwise be closed before it is opened.

Import walks every track with a running tick counter and pairs NoteOn/NoteOff
events per ``(channel, pitch)``.  Only the first tempo event is honoured.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging
import math
import struct

from midi_events import (
    META_END_OF_TRACK,
    META_TEMPO,
    PERCUSSION_CHANNEL,
    Meta,
    MidiEvent,
    MidiFile,
    MidiTrack,
    NoteOff,
    NoteOn,
    ProgramChange,
)
from sequencer import DEFAULT_BPM, Beat, Note, TempoMap, new_id

__all__ = [
    "KICK_NOTE",
    "SNARE_NOTE",
    "ImportedSequence",
    "encode_tempo",
    "decode_tempo",
    "sequencer_to_midi",
    "midi_to_sequencer",
]

logger = logging.getLogger(__name__)

KICK_NOTE = 36
SNARE_NOTE = 38
MIN_IMPORTED_LENGTH = 0.1

# Event ordering at identical ticks: note-offs first so back-to-back notes
# on the same pitch do not swallow each other.
_PRIO_OFF = 0
_PRIO_ON = 1


@dataclass
class ImportedSequence:
    notes: List[Note] = field(default_factory=list)
    beats: List[Beat] = field(default_factory=list)
    instrument_codes: Dict[int, int] = field(default_factory=dict)
    bpm: float = DEFAULT_BPM
    grid_size: int = 0


def _clamp7(value: int) -> int:
    return int(max(0, min(127, int(value))))


def encode_tempo(bpm: float) -> bytes:
    """Tempo meta payload: microseconds per quarter note, 3 bytes big-endian."""

    if bpm <= 0:
        raise ValueError("Tempo must be > 0 BPM")
    mpqn = int(round(60_000_000 / float(bpm)))
    mpqn = max(1, min(mpqn, 0xFFFFFF))
    return struct.pack(">I", mpqn)[1:]


def decode_tempo(data: bytes) -> int:
    """Rounded BPM of a tempo payload; 120 when the payload is malformed."""

    if len(data) != 3:
        return int(DEFAULT_BPM)
    mpqn = (data[0] << 16) | (data[1] << 8) | data[2]
    if mpqn == 0:
        return int(DEFAULT_BPM)
    return int(math.floor(60_000_000 / mpqn + 0.5))


def _end_of_track() -> Meta:
    return Meta(meta_type=META_END_OF_TRACK, data=b"")


def _delta_encode(timed: Iterable[Tuple[int, int, MidiEvent]]) -> List[MidiEvent]:
    ordered = sorted(timed, key=lambda item: (item[0], item[1]))
    events: List[MidiEvent] = []
    last_tick = 0
    for tick, _prio, event in ordered:
        events.append(_with_delta(event, tick - last_tick))
        last_tick = tick
    events.append(_end_of_track())
    return events


def _with_delta(event: MidiEvent, delta: int) -> MidiEvent:
    return replace(event, delta_time=int(delta))


def _tempo_track(bpm: float, tempo_map: Optional[TempoMap], ticks_per_quarter: int) -> MidiTrack:
    if tempo_map is None:
        return MidiTrack(events=[Meta(meta_type=META_TEMPO, data=encode_tempo(bpm)), _end_of_track()])
    timed = [
        (int(round(beat * ticks_per_quarter)), 0, Meta(meta_type=META_TEMPO, data=encode_tempo(point_bpm)))
        for beat, point_bpm in tempo_map.breakpoints
    ]
    return MidiTrack(events=_delta_encode(timed))


def _note_track(notes: Sequence[Note], channel: int, ticks_per_quarter: int) -> MidiTrack:
    timed: List[Tuple[int, int, MidiEvent]] = []
    for n in notes:
        on_tick = int(round(n.start * ticks_per_quarter))
        off_tick = int(round((n.start + n.length) * ticks_per_quarter))
        if off_tick <= on_tick:
            off_tick = on_tick + 1
        pitch = _clamp7(n.pitch)
        timed.append((on_tick, _PRIO_ON, NoteOn(channel=channel, note=pitch, velocity=_clamp7(n.velocity))))
        timed.append((off_tick, _PRIO_OFF, NoteOff(channel=channel, note=pitch, velocity=0)))
    return MidiTrack(events=_delta_encode(timed))


def _beat_track(beats: Sequence[Beat], ticks_per_quarter: int) -> MidiTrack:
    hit_ticks = max(1, ticks_per_quarter // 8)
    timed: List[Tuple[int, int, MidiEvent]] = []
    for b in beats:
        on_tick = int(round(b.position * ticks_per_quarter))
        note = KICK_NOTE if b.track == 1 else SNARE_NOTE
        timed.append(
            (on_tick, _PRIO_ON, NoteOn(channel=PERCUSSION_CHANNEL, note=note, velocity=_clamp7(b.velocity)))
        )
        timed.append(
            (on_tick + hit_ticks, _PRIO_OFF, NoteOff(channel=PERCUSSION_CHANNEL, note=note, velocity=0))
        )
    return MidiTrack(events=_delta_encode(timed))


def sequencer_to_midi(
    notes: Sequence[Note],
    beats: Sequence[Beat],
    bpm: float = DEFAULT_BPM,
    ticks_per_quarter: int = 480,
    *,
    tempo_map: Optional[TempoMap] = None,
) -> MidiFile:
    """Build a format 1 :class:`MidiFile` from the timeline.

    When ``tempo_map`` is given its breakpoints replace the single ``bpm``
    tempo event in the tempo track.
    """

    if ticks_per_quarter <= 0 or ticks_per_quarter > 0x7FFF:
        raise ValueError("ticks_per_quarter must be in 1..32767")

    midi_file = MidiFile(format=1, ticks_per_quarter=int(ticks_per_quarter), tracks=[])
    midi_file.tracks.append(_tempo_track(bpm, tempo_map, ticks_per_quarter))

    by_track: Dict[int, List[Note]] = {}
    for n in notes:
        by_track.setdefault(int(n.track), []).append(n)
    for track_number in sorted(by_track):
        channel = track_number & 0x0F
        if channel != track_number:
            logger.warning("Note track %d folded onto MIDI channel %d", track_number, channel)
        midi_file.tracks.append(_note_track(by_track[track_number], channel, ticks_per_quarter))

    if beats:
        midi_file.tracks.append(_beat_track(beats, ticks_per_quarter))

    logger.debug(
        "Exported %d note(s) and %d beat(s) into %d MIDI track(s)",
        len(notes),
        len(beats),
        len(midi_file.tracks),
    )
    return midi_file


def midi_to_sequencer(midi_file: MidiFile) -> ImportedSequence:
    """Rebuild notes, beats, instruments and tempo from a parsed file."""

    result = ImportedSequence()
    ticks_per_quarter = midi_file.ticks_per_quarter or 480
    tempo_captured = False
    note_closed = False
    max_end_beat = 0.0

    for track in midi_file.tracks:
        open_notes: Dict[Tuple[int, int], Tuple[float, int]] = {}
        current_ticks = 0

        for event in track.events:
            current_ticks += event.delta_time
            current_beat = current_ticks / ticks_per_quarter

            if isinstance(event, Meta):
                if event.is_tempo and not tempo_captured and not note_closed:
                    result.bpm = decode_tempo(event.data)
                    tempo_captured = True
                elif event.is_end_of_track:
                    max_end_beat = max(max_end_beat, current_beat)
            elif isinstance(event, NoteOn):
                if event.velocity > 0:
                    open_notes[(event.channel, event.note)] = (current_beat, event.velocity)
                else:
                    note_closed |= _close_note(result, open_notes, event.channel, event.note, current_beat)
            elif isinstance(event, NoteOff):
                note_closed |= _close_note(result, open_notes, event.channel, event.note, current_beat)
            elif isinstance(event, ProgramChange):
                if event.channel != PERCUSSION_CHANNEL:
                    result.instrument_codes.setdefault(event.channel, event.program)

        if open_notes:
            logger.debug("%d note(s) left open at end of track", len(open_notes))

    result.grid_size = int(math.ceil(max_end_beat))
    logger.debug(
        "Imported %d note(s), %d beat(s), bpm=%s, grid=%d",
        len(result.notes),
        len(result.beats),
        result.bpm,
        result.grid_size,
    )
    return result


def _close_note(
    result: ImportedSequence,
    open_notes: Dict[Tuple[int, int], Tuple[float, int]],
    channel: int,
    pitch: int,
    current_beat: float,
) -> bool:
    entry = open_notes.pop((channel, pitch), None)
    if entry is None:
        return False
    start, velocity = entry
    length = max(MIN_IMPORTED_LENGTH, current_beat - start)
    if channel == PERCUSSION_CHANNEL:
        result.beats.append(
            Beat(track=1 if pitch == KICK_NOTE else 0, position=start, velocity=velocity, id=new_id("beat"))
        )
    else:
        result.notes.append(
            Note(track=channel, pitch=pitch, start=start, length=length, velocity=velocity, id=new_id("note"))
        )
    return True
