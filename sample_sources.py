"""Sound sources the renderer can assign to note and beat tracks.

``SineSource`` synthesises a damped sine at the pitch of each note.
``FileSource`` plays back a decoded recording, pitch-shifted by resampling.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple, Union
import logging
import wave

import numpy as np

from dsp_core import as_plane

__all__ = ["SineSource", "FileSource", "SampleSource", "load_wav_source"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SineSource:
    """Damped sine fallback; frequency follows the MIDI pitch."""


@dataclass(frozen=True, eq=False)
class FileSource:
    planes: Tuple[np.ndarray, ...]
    sample_rate: int
    pitch_shift: float = 0.0    # semitones

    def __post_init__(self) -> None:
        if not self.planes:
            raise ValueError("a file source needs at least one channel plane")
        if self.sample_rate <= 0:
            raise ValueError("sample rate must be positive")
        planes = tuple(as_plane(p) for p in self.planes)
        if len({p.size for p in planes}) != 1:
            raise ValueError("all channel planes must have the same length")
        object.__setattr__(self, "planes", planes)

    @property
    def num_channels(self) -> int:
        return len(self.planes)

    @property
    def length(self) -> int:
        return int(self.planes[0].size)

    def plane_for(self, channel: int) -> np.ndarray:
        """Plane feeding output ``channel``; mono sources feed every channel."""

        return self.planes[min(channel, len(self.planes) - 1)]

    @classmethod
    def from_array(cls, data: np.ndarray, sample_rate: int, pitch_shift: float = 0.0) -> "FileSource":
        """Build from a 1-D array or a ``(frames, channels)`` array."""

        arr = np.asarray(data, dtype=np.float32)
        if arr.ndim == 1:
            planes = (arr,)
        elif arr.ndim == 2:
            planes = tuple(arr[:, ch].copy() for ch in range(arr.shape[1]))
        else:
            raise ValueError("sample data must be 1-D or (frames, channels)")
        return cls(planes=planes, sample_rate=int(sample_rate), pitch_shift=float(pitch_shift))


SampleSource = Union[SineSource, FileSource]


def _pcm_to_float(raw: bytes, sampwidth: int) -> np.ndarray:
    if sampwidth == 1:
        return (np.frombuffer(raw, dtype=np.uint8).astype(np.float32) - 128.0) / 128.0
    if sampwidth == 2:
        return np.frombuffer(raw, dtype="<i2").astype(np.float32) / 32768.0
    if sampwidth == 3:
        b = np.frombuffer(raw, dtype=np.uint8).reshape(-1, 3).astype(np.int32)
        val = b[:, 0] | (b[:, 1] << 8) | (b[:, 2] << 16)
        val = (val ^ 0x800000) - 0x800000
        return val.astype(np.float32) / 8388608.0
    if sampwidth == 4:
        return np.frombuffer(raw, dtype="<i4").astype(np.float32) / 2147483648.0
    raise ValueError(f"unsupported sample width: {sampwidth} byte(s)")


def load_wav_source(path: str, pitch_shift: float = 0.0) -> FileSource:
    """Decode a PCM WAV file into a :class:`FileSource`."""

    with wave.open(path, "rb") as w:
        nchan = w.getnchannels()
        sampwidth = w.getsampwidth()
        rate = w.getframerate()
        raw = w.readframes(w.getnframes())
    samples = _pcm_to_float(raw, sampwidth).reshape(-1, nchan)
    logger.debug("Loaded %s: %d frame(s), %d channel(s) at %d Hz", path, samples.shape[0], nchan, rate)
    return FileSource.from_array(samples, rate, pitch_shift)
