"""Exception hierarchy shared by the codec, renderer and encoder."""
from __future__ import annotations


class BeatgridError(Exception):
    """Base error for the beatgrid modules."""


class MidiError(BeatgridError, ValueError):
    """Raised when Standard MIDI File bytes cannot be decoded."""


class FormatError(MidiError):
    """Raised on a bad chunk id or an invalid header length."""


class TruncatedDataError(MidiError):
    """Raised when a declared length runs past the available bytes."""


class EncodeError(BeatgridError):
    """Raised when the WAV encoder worker reports a failure."""


class RenderCancelled(BeatgridError):
    """Raised when a render or encode job is cancelled between blocks."""


class InvalidSessionError(BeatgridError, ValueError):
    """Raised when a session description cannot be turned into notes and beats."""
