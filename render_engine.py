"""Offline, tempo-mapped mixdown of notes and beats into float PCM.

The engine works in two passes.  The precompute pass resolves every note and
beat to a :class:`_Voice`: its sample range under the tempo map, its gain and
its sound source.  The mixing pass walks the output in fixed-size blocks,
adds every voice that overlaps the block and reports progress after each one.

Each voice waveform is evaluated once over its whole span and then sliced
into blocks, so the block size changes scheduling only: the PCM is identical
bit for bit whatever block size is used.  Mixing is accumulated in float64 and
returned as float32 without clamping; clipping happens when the audio is
quantised by :mod:`wav_encoder`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Generator, Iterable, List, Mapping, Optional
import asyncio
import logging
import math
import threading

import numpy as np

from dsp_core import damped_sine, linear_resample, midi_to_frequency, semitones_to_ratio
from errors import RenderCancelled
from sample_sources import FileSource, SampleSource, SineSource
from sequencer import Beat, Note, TempoMap

__all__ = [
    "MELODIC_GAIN",
    "PERCUSSIVE_GAIN",
    "BEAT_DURATION_S",
    "RenderedAudio",
    "RenderProgress",
    "AudioRenderEngine",
]

logger = logging.getLogger(__name__)

MELODIC_GAIN = 0.5
PERCUSSIVE_GAIN = 0.7
DEFAULT_MASTER_GAIN = 0.7
DEFAULT_BLOCK_SIZE = 16384
BEAT_DURATION_S = 0.2
BEAT_SINE_HZ = {0: 200.0}
BEAT_SINE_FALLBACK_HZ = 150.0
MIN_RENDER_PITCH = 21
MAX_RENDER_PITCH = 108
FILE_REFERENCE_PITCH = 60

ProgressCallback = Callable[[int, int], None]


@dataclass
class RenderedAudio:
    """One float32 plane per output channel."""

    channels: List[np.ndarray]
    sample_rate: int

    @property
    def num_channels(self) -> int:
        return len(self.channels)

    @property
    def length(self) -> int:
        return int(self.channels[0].size) if self.channels else 0

    @property
    def duration_s(self) -> float:
        return self.length / float(self.sample_rate)

    def as_array(self) -> np.ndarray:
        """Interleaved ``(frames, channels)`` view of the planes."""

        if not self.channels:
            return np.zeros((0, 0), dtype=np.float32)
        return np.stack(self.channels, axis=1)


@dataclass(frozen=True)
class RenderProgress:
    processed: int
    total: int

    @property
    def fraction(self) -> float:
        return 1.0 if self.total <= 0 else min(1.0, self.processed / self.total)


@dataclass
class _Voice:
    start: int
    end: int
    gain: float
    duration: float
    frequency: float = 0.0
    source: Optional[FileSource] = None
    playback_rate: float = 1.0
    _waves: Optional[List[np.ndarray]] = field(default=None, repr=False)

    def waves(self, sample_rate: int) -> List[np.ndarray]:
        """Unscaled waveform over ``[start, end)``, one array per source plane."""

        if self._waves is None:
            t = np.arange(self.end - self.start, dtype=np.float64) / float(sample_rate)
            if self.source is None:
                self._waves = [damped_sine(self.frequency, t, self.duration)]
            else:
                positions = t * self.playback_rate * float(self.source.sample_rate)
                self._waves = [linear_resample(plane, positions) for plane in self.source.planes]
        return self._waves

    def release(self) -> None:
        self._waves = None


def _clamp(value: float, lo: int, hi: int) -> int:
    return int(max(lo, min(hi, int(value))))


class AudioRenderEngine:
    """Render notes and beats under a tempo map into :class:`RenderedAudio`."""

    def __init__(
        self,
        notes: Iterable[Note],
        beats: Iterable[Beat],
        tempo_map: Optional[TempoMap] = None,
        *,
        speed: float = 1.0,
        note_sources: Optional[Mapping[int, SampleSource]] = None,
        beat_sources: Optional[Mapping[int, SampleSource]] = None,
        sample_rate: int = 44100,
        num_channels: int = 2,
        duration_s: Optional[float] = None,
        master_gain: float = DEFAULT_MASTER_GAIN,
        block_size: int = DEFAULT_BLOCK_SIZE,
        tail_s: float = 0.0,
    ) -> None:
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if num_channels <= 0:
            raise ValueError("num_channels must be positive")
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        if speed <= 0.0:
            raise ValueError("playback speed must be > 0")

        self.notes = list(notes)
        self.beats = list(beats)
        self.tempo_map = tempo_map or TempoMap()
        self.speed = float(speed)
        self.note_sources = dict(note_sources or {})
        self.beat_sources = dict(beat_sources or {})
        self.sample_rate = int(sample_rate)
        self.num_channels = int(num_channels)
        self.master_gain = float(master_gain)
        self.block_size = int(block_size)
        if duration_s is None:
            duration_s = self.timeline_duration(tail_s)
        self.duration_s = max(0.0, float(duration_s))

    # ------------------------------------------------------------------
    # Timing
    def beat_to_seconds(self, beat: float) -> float:
        return self.tempo_map.beat_to_seconds(beat, self.speed)

    def timeline_duration(self, tail_s: float = 0.0) -> float:
        """Seconds until the last note or beat has finished, plus ``tail_s``."""

        end = 0.0
        for n in self.notes:
            end = max(end, self.beat_to_seconds(n.start + n.length))
        for b in self.beats:
            end = max(end, self.beat_to_seconds(b.position) + BEAT_DURATION_S)
        return end + max(0.0, float(tail_s))

    @property
    def total_samples(self) -> int:
        return int(round(self.duration_s * self.sample_rate))

    # ------------------------------------------------------------------
    # Precompute pass
    def _note_voice(self, note: Note) -> Optional[_Voice]:
        sr = self.sample_rate
        t0 = self.beat_to_seconds(note.start)
        t1 = self.beat_to_seconds(note.start + note.length)
        start = int(math.floor(t0 * sr))
        end = int(math.floor(t1 * sr))
        if end <= start:
            return None
        pitch = _clamp(note.pitch, MIN_RENDER_PITCH, MAX_RENDER_PITCH)
        gain = self.master_gain * (_clamp(note.velocity, 0, 127) / 127.0) * MELODIC_GAIN
        source = self.note_sources.get(note.track, SineSource())
        if isinstance(source, FileSource):
            rate = semitones_to_ratio(pitch - FILE_REFERENCE_PITCH + source.pitch_shift)
            return _Voice(start, end, gain, t1 - t0, source=source, playback_rate=rate)
        return _Voice(start, end, gain, t1 - t0, frequency=midi_to_frequency(pitch))

    def _beat_voice(self, beat: Beat) -> Optional[_Voice]:
        sr = self.sample_rate
        t0 = self.beat_to_seconds(beat.position)
        start = int(math.floor(t0 * sr))
        end = int(math.floor((t0 + BEAT_DURATION_S) * sr))
        if end <= start:
            return None
        gain = self.master_gain * (_clamp(beat.velocity, 0, 127) / 127.0) * PERCUSSIVE_GAIN
        source = self.beat_sources.get(beat.track, SineSource())
        if isinstance(source, FileSource):
            rate = semitones_to_ratio(source.pitch_shift)
            return _Voice(start, end, gain, BEAT_DURATION_S, source=source, playback_rate=rate)
        freq = BEAT_SINE_HZ.get(beat.track, BEAT_SINE_FALLBACK_HZ)
        return _Voice(start, end, gain, BEAT_DURATION_S, frequency=freq)

    def _voices(self) -> List[_Voice]:
        voices: List[_Voice] = []
        for note in self.notes:
            v = self._note_voice(note)
            if v is not None:
                voices.append(v)
        for beat in self.beats:
            v = self._beat_voice(beat)
            if v is not None:
                voices.append(v)
        # Stable sort keeps note-before-beat summation order for equal starts.
        voices.sort(key=lambda v: v.start)
        return voices

    # ------------------------------------------------------------------
    # Mixing pass
    def iter_render(
        self, cancel_event: Optional[threading.Event] = None
    ) -> Generator[RenderProgress, None, RenderedAudio]:
        """Render block by block, yielding progress after each block.

        The finished :class:`RenderedAudio` is the generator's return value.
        """

        sr = self.sample_rate
        total = self.total_samples
        voices = self._voices()
        acc = [np.zeros(total, dtype=np.float64) for _ in range(self.num_channels)]
        logger.debug(
            "Rendering %d voice(s) into %d sample(s) x %d channel(s) at %d Hz",
            len(voices),
            total,
            self.num_channels,
            sr,
        )

        first_pending = 0
        block_start = 0
        while block_start < total:
            if cancel_event is not None and cancel_event.is_set():
                raise RenderCancelled(f"render cancelled at sample {block_start}/{total}")
            block_end = min(total, block_start + self.block_size)

            while first_pending < len(voices) and voices[first_pending].end <= block_start:
                first_pending += 1
            for voice in voices[first_pending:]:
                if voice.start >= block_end:
                    break
                if voice.end <= block_start:
                    continue
                lo = max(block_start, voice.start)
                hi = min(block_end, voice.end)
                waves = voice.waves(sr)
                a = lo - voice.start
                b = hi - voice.start
                for ch in range(self.num_channels):
                    wave = waves[min(ch, len(waves) - 1)]
                    acc[ch][lo:hi] += wave[a:b] * voice.gain
                if voice.end <= block_end:
                    voice.release()

            block_start = block_end
            yield RenderProgress(block_start, total)

        if total == 0:
            yield RenderProgress(0, 0)
        return RenderedAudio(channels=[plane.astype(np.float32) for plane in acc], sample_rate=sr)

    def render(
        self,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RenderedAudio:
        gen = self.iter_render(cancel_event)
        while True:
            try:
                progress = next(gen)
            except StopIteration as stop:
                audio = stop.value
                break
            if on_progress is not None:
                on_progress(progress.processed, progress.total)
        logger.info("Rendered %.2fs of audio (%d channel(s))", audio.duration_s, audio.num_channels)
        return audio

    async def render_async(
        self,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RenderedAudio:
        """Like :meth:`render` but hands control back to the event loop per block."""

        gen = self.iter_render(cancel_event)
        while True:
            try:
                progress = next(gen)
            except StopIteration as stop:
                return stop.value
            if on_progress is not None:
                on_progress(progress.processed, progress.total)
            await asyncio.sleep(0)
