"""Standard MIDI File encoder.

``write`` is the inverse of :func:`midi_parser.parse` for every event kind the
converter produces (notes, controllers, meta events) and additionally for
program changes, SysEx and pitch bend, so a parsed file can be written back
without losing anything but :class:`midi_events.Unknown` events.

The encoder restates the status byte for every event; running status is never
emitted.  Chunks are framed as a 4-byte ASCII id followed by a big-endian
32-bit length.
"""

from __future__ import annotations

from typing import List, Optional
import logging
import struct

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

__all__ = ["VLQ_MAX", "encode_vlq", "encode_event", "write", "save"]

logger = logging.getLogger(__name__)

VLQ_MAX = 0x0FFFFFFF


def encode_vlq(value: int) -> bytes:
    """Encode ``value`` as a minimal big-endian base-128 quantity."""

    value = int(value)
    if value < 0 or value > VLQ_MAX:
        raise ValueError(f"variable-length quantity out of range: {value}")
    out = [value & 0x7F]
    value >>= 7
    while value:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    return bytes(reversed(out))


def _chunk(chunk_id: bytes, payload: bytes) -> bytes:
    return chunk_id + struct.pack(">I", len(payload)) + payload


def encode_event(event: MidiEvent) -> Optional[bytes]:
    """Return the status and data bytes of ``event`` (without delta time).

    ``None`` is returned for events that cannot be serialised.
    """

    if isinstance(event, NoteOn):
        return bytes([0x90 | (event.channel & 0x0F), event.note & 0x7F, event.velocity & 0x7F])
    if isinstance(event, NoteOff):
        return bytes([0x80 | (event.channel & 0x0F), event.note & 0x7F, event.velocity & 0x7F])
    if isinstance(event, Controller):
        ch = event.channel & 0x0F
        if event.is_pitch_bend:
            bend = max(0, min(0x3FFF, int(event.value)))
            return bytes([0xE0 | ch, bend & 0x7F, (bend >> 7) & 0x7F])
        return bytes([0xB0 | ch, int(event.controller) & 0x7F, event.value & 0x7F])
    if isinstance(event, ProgramChange):
        return bytes([0xC0 | (event.channel & 0x0F), event.program & 0x7F])
    if isinstance(event, Meta):
        data = bytes(event.data)
        return bytes([0xFF, event.meta_type & 0xFF]) + encode_vlq(len(data)) + data
    if isinstance(event, SysEx):
        data = bytes(event.data)
        status = event.status if event.status in (0xF0, 0xF7) else 0xF0
        return bytes([status]) + encode_vlq(len(data)) + data
    return None


def _track_payload(track: MidiTrack) -> bytes:
    out = bytearray()
    carry = 0   # ticks of dropped events, folded into the next written one
    for event in track.events:
        msg = encode_event(event)
        if msg is None:
            status = event.status if isinstance(event, Unknown) else 0
            logger.warning("Dropping unserialisable MIDI event (status 0x%02X)", status)
            carry += event.delta_time
            continue
        out += encode_vlq(event.delta_time + carry) + msg
        carry = 0
    return bytes(out)


def write(midi_file: MidiFile) -> bytes:
    """Encode ``midi_file`` into SMF bytes."""

    header = struct.pack(
        ">HHH",
        int(midi_file.format) & 0xFFFF,
        len(midi_file.tracks),
        int(midi_file.ticks_per_quarter) & 0xFFFF,
    )
    chunks: List[bytes] = [_chunk(b"MThd", header)]
    chunks.extend(_chunk(b"MTrk", _track_payload(tr)) for tr in midi_file.tracks)
    return b"".join(chunks)


def save(midi_file: MidiFile, filename: str) -> None:
    data = write(midi_file)
    with open(filename, "wb") as fh:
        fh.write(data)
