"""Standard MIDI File decoder.

``parse`` turns raw SMF bytes into a :class:`midi_events.MidiFile`.  The
decoder keeps no module level state: the running-status byte and the read
cursor live in a :class:`ParserState` owned by the track being decoded, so
independent files can be parsed concurrently from any thread.

Every read is checked against the length declared by the enclosing chunk.
Reading past it raises :class:`errors.TruncatedDataError`; a wrong chunk id or
header size raises :class:`errors.FormatError`.  Unknown status bytes are not
fatal, they are logged and skipped.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple
import logging
import struct

from errors import FormatError, TruncatedDataError
from midi_events import (
    Controller,
    Meta,
    MidiEvent,
    MidiFile,
    MidiTrack,
    NoteOff,
    NoteOn,
    ProgramChange,
    SysEx,
    Unknown,
)

__all__ = ["ParserState", "decode_vlq", "parse", "load"]

logger = logging.getLogger(__name__)

_HEADER_ID = b"MThd"
_TRACK_ID = b"MTrk"
_HEADER_LENGTH = 6
_VLQ_MAX_BYTES = 4


@dataclass
class ParserState:
    """Cursor and running status for one track payload."""

    data: bytes
    cursor: int = 0
    last_status: int = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.cursor

    def read_byte(self) -> int:
        if self.cursor >= len(self.data):
            raise TruncatedDataError(
                f"unexpected end of track data at byte {self.cursor}"
            )
        value = self.data[self.cursor]
        self.cursor += 1
        return value

    def read_bytes(self, count: int) -> bytes:
        if count > self.remaining:
            raise TruncatedDataError(
                f"need {count} byte(s) at offset {self.cursor}, only {self.remaining} left"
            )
        chunk = bytes(self.data[self.cursor:self.cursor + count])
        self.cursor += count
        return chunk

    def read_vlq(self) -> int:
        value, used = decode_vlq(self.data, self.cursor)
        self.cursor += used
        return value


def decode_vlq(data: bytes, pos: int = 0) -> Tuple[int, int]:
    """Decode a variable-length quantity starting at ``pos``.

    Returns ``(value, bytes_read)``.  At most four bytes are consumed, as the
    SMF format caps quantities at 28 bits.
    """

    value = 0
    used = 0
    while used < _VLQ_MAX_BYTES:
        idx = pos + used
        if idx >= len(data):
            raise TruncatedDataError(f"variable-length quantity truncated at byte {idx}")
        byte = data[idx]
        value = (value << 7) | (byte & 0x7F)
        used += 1
        if not byte & 0x80:
            break
    return value, used


def _read_chunk(
    data: bytes, pos: int, expected_id: bytes, what: str, expected_length: Optional[int] = None
) -> Tuple[bytes, int]:
    """Return (payload, end) of the chunk at ``pos``.

    The id and, when given, the declared length are validated before the
    payload is bounds-checked, so a non-MIDI file is a format error rather
    than a truncation.
    """

    if pos + 8 > len(data):
        raise TruncatedDataError(f"chunk header truncated at byte {pos}")
    chunk_id = bytes(data[pos:pos + 4])
    if chunk_id != expected_id:
        raise FormatError(f"Invalid {what}: missing {expected_id.decode()} header (got {chunk_id!r})")
    (length,) = struct.unpack(">I", data[pos + 4:pos + 8])
    if expected_length is not None and length != expected_length:
        raise FormatError(f"Invalid MIDI header length {length} (expected {expected_length})")
    start = pos + 8
    end = start + length
    if end > len(data):
        raise TruncatedDataError(
            f"chunk {chunk_id!r} declares {length} bytes but only {len(data) - start} remain"
        )
    return bytes(data[start:end]), end


def _decode_event(state: ParserState, status: int, first_data: Optional[int], delta: int) -> MidiEvent:
    def data_byte() -> int:
        nonlocal first_data
        if first_data is not None:
            value, first_data = first_data, None
            return value
        return state.read_byte()

    kind = status & 0xF0
    channel = status & 0x0F

    if kind == 0x80:
        note = data_byte()
        return NoteOff(channel=channel, note=note, velocity=data_byte(), delta_time=delta)
    if kind == 0x90:
        note = data_byte()
        velocity = data_byte()
        if velocity == 0:
            return NoteOff(channel=channel, note=note, velocity=0, delta_time=delta)
        return NoteOn(channel=channel, note=note, velocity=velocity, delta_time=delta)
    if kind == 0xB0:
        number = data_byte()
        return Controller(channel=channel, controller=number, value=data_byte(), delta_time=delta)
    if kind == 0xC0:
        return ProgramChange(channel=channel, program=data_byte(), delta_time=delta)
    if kind == 0xE0:
        lsb = data_byte()
        msb = data_byte()
        return Controller(channel=channel, controller=None, value=lsb | (msb << 7), delta_time=delta)
    if kind == 0xA0:
        # Polyphonic aftertouch: not modelled, but both data bytes are consumed.
        data_byte()
        data_byte()
        return Unknown(status=status, delta_time=delta)
    if kind == 0xD0:
        data_byte()
        return Unknown(status=status, delta_time=delta)
    if status == 0xFF:
        meta_type = state.read_byte()
        length = state.read_vlq()
        return Meta(meta_type=meta_type, data=state.read_bytes(length), delta_time=delta)
    if status in (0xF0, 0xF7):
        length = state.read_vlq()
        return SysEx(data=state.read_bytes(length), status=status, delta_time=delta)

    logger.warning("Unknown MIDI event 0x%02X at byte %d, skipping", status, state.cursor)
    return Unknown(status=status, delta_time=delta)


def _parse_track(payload: bytes) -> MidiTrack:
    state = ParserState(payload)
    events: List[MidiEvent] = []
    while state.remaining > 0:
        delta = state.read_vlq()
        byte = state.read_byte()
        if byte & 0x80:
            status = byte
            first_data = None
            # Meta and SysEx events cancel running status.
            state.last_status = status if status < 0xF0 else 0
        else:
            status = state.last_status
            first_data = byte
        if status < 0x80:
            logger.warning("Data byte 0x%02X without running status at byte %d", byte, state.cursor - 1)
            events.append(Unknown(status=status, delta_time=delta))
            continue
        events.append(_decode_event(state, status, first_data, delta))
    return MidiTrack(events=events)


def parse(data: bytes) -> MidiFile:
    """Decode Standard MIDI File bytes."""

    data = bytes(data)
    header, pos = _read_chunk(data, 0, _HEADER_ID, "MIDI file", _HEADER_LENGTH)

    fmt, track_count, division = struct.unpack(">HHH", header)
    if division & 0x8000:
        logger.warning("SMPTE division 0x%04X is not supported; ticks are left uninterpreted", division)

    midi_file = MidiFile(format=fmt, ticks_per_quarter=division, tracks=[])
    for index in range(track_count):
        payload, pos = _read_chunk(data, pos, _TRACK_ID, f"track chunk {index}")
        midi_file.tracks.append(_parse_track(payload))

    logger.debug(
        "Parsed MIDI format %d, %d track(s), %d ticks/quarter",
        fmt,
        len(midi_file.tracks),
        division,
    )
    return midi_file


def load(path: str) -> MidiFile:
    with open(path, "rb") as fh:
        return parse(fh.read())
