"""16-bit PCM WAV encoding on a dedicated worker thread.

An :class:`EncodeJob` takes ownership of the channel planes of a
:class:`render_engine.RenderedAudio` (the caller's object is emptied) and
encodes them on its own thread.  The worker talks back through a queue:

* ``progress`` messages at most every ``max(65536, ceil(total / 200))``
  frames, plus one for the final frame;
* then exactly one ``done`` message carrying the WAV bytes, or one ``error``
  message carrying a description of the failure.

The container is the canonical 44-byte RIFF/WAVE header written by the
standard :mod:`wave` module followed by interleaved little-endian samples.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence
import io
import logging
import math
import queue
import threading
import wave

import numpy as np

from dsp_core import quantize_pcm16
from errors import EncodeError, RenderCancelled
from render_engine import RenderedAudio

__all__ = [
    "BITS_PER_SAMPLE",
    "EncodeMessage",
    "EncodeJob",
    "progress_step",
    "encode_pcm16",
    "encode_wav",
]

logger = logging.getLogger(__name__)

BITS_PER_SAMPLE = 16
PROGRESS_UPDATES = 200
PROGRESS_MIN_FRAMES = 65536

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class EncodeMessage:
    kind: str                   # "progress" | "done" | "error"
    processed: int = 0
    total: int = 0
    data: Optional[bytes] = None
    error: Optional[str] = None


def progress_step(total: int, updates: int = PROGRESS_UPDATES, min_frames: int = PROGRESS_MIN_FRAMES) -> int:
    """Frames between two progress reports."""

    return max(int(min_frames), int(math.ceil(total / max(1, updates))))


def encode_pcm16(
    planes: Sequence[np.ndarray],
    sample_rate: int,
    *,
    report: Optional[ProgressCallback] = None,
    cancel_event: Optional[threading.Event] = None,
    step: Optional[int] = None,
) -> bytes:
    """Encode float planes into WAV bytes on the calling thread."""

    if not planes:
        raise ValueError("at least one channel is required")
    if sample_rate <= 0:
        raise ValueError("sample_rate must be positive")
    total = int(np.asarray(planes[0]).size)
    if any(int(np.asarray(p).size) != total for p in planes):
        raise ValueError("all channel planes must have the same length")

    chunk = int(step) if step else progress_step(total)
    buf = io.BytesIO()
    with wave.open(buf, "wb") as w:
        w.setnchannels(len(planes))
        w.setsampwidth(BITS_PER_SAMPLE // 8)
        w.setframerate(int(sample_rate))
        w.setnframes(total)
        for start in range(0, total, chunk):
            if cancel_event is not None and cancel_event.is_set():
                raise RenderCancelled(f"encode cancelled at frame {start}/{total}")
            end = min(total, start + chunk)
            frames = np.stack([quantize_pcm16(p[start:end]) for p in planes], axis=1)
            # wave expects native byte order and swaps on big-endian hosts.
            w.writeframesraw(np.ascontiguousarray(frames, dtype=np.int16).tobytes())
            if report is not None:
                report(end, total)
    if total == 0 and report is not None:
        report(0, 0)
    return buf.getvalue()


class EncodeJob:
    """One WAV encode running on its own thread."""

    def __init__(
        self,
        audio: RenderedAudio,
        *,
        on_progress: Optional[ProgressCallback] = None,
        step: Optional[int] = None,
    ) -> None:
        self._planes: Optional[List[np.ndarray]] = list(audio.channels)
        self._sample_rate = int(audio.sample_rate)
        audio.channels = []
        self.on_progress = on_progress
        self._step = step
        self._queue: "queue.Queue[EncodeMessage]" = queue.Queue()
        self._cancel = threading.Event()
        self._finished = False
        self._thread = threading.Thread(target=self._run, name="wav-encoder", daemon=True)

    def start(self) -> "EncodeJob":
        self._thread.start()
        return self

    def cancel(self) -> None:
        """Ask the worker to stop at the next chunk boundary."""

        self._cancel.set()

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _post_progress(self, processed: int, total: int) -> None:
        self._queue.put(EncodeMessage("progress", processed=processed, total=total))

    def _run(self) -> None:
        planes, self._planes = self._planes, None
        try:
            data = encode_pcm16(
                planes,
                self._sample_rate,
                report=self._post_progress,
                cancel_event=self._cancel,
                step=self._step,
            )
        except Exception as exc:
            logger.error("WAV encoding failed: %s", exc, exc_info=True)
            self._queue.put(EncodeMessage("error", error=f"{type(exc).__name__}: {exc}"))
        else:
            self._queue.put(EncodeMessage("done", data=data))
        finally:
            del planes

    def messages(self, timeout: Optional[float] = None) -> Iterator[EncodeMessage]:
        """Yield worker messages up to and including the final one."""

        while not self._finished:
            try:
                msg = self._queue.get(timeout=timeout)
            except queue.Empty:
                raise EncodeError(f"no message from the encoder within {timeout}s") from None
            if msg.kind in ("done", "error"):
                self._finished = True
            yield msg

    def result(self, timeout: Optional[float] = None) -> bytes:
        """Block until the worker finishes; returns the WAV bytes.

        Progress messages are forwarded to ``on_progress`` on the calling
        thread.  A worker failure raises :class:`errors.EncodeError`.
        """

        for msg in self.messages(timeout):
            if msg.kind == "progress":
                if self.on_progress is not None:
                    self.on_progress(msg.processed, msg.total)
            elif msg.kind == "error":
                raise EncodeError(msg.error or "unknown encoder error")
            elif msg.kind == "done":
                if msg.data is None:
                    raise EncodeError("encoder finished without data")
                return msg.data
        raise EncodeError("encoder already delivered its result")


def encode_wav(audio: RenderedAudio, on_progress: Optional[ProgressCallback] = None) -> bytes:
    """Encode ``audio`` on a worker thread and wait for the bytes."""

    return EncodeJob(audio, on_progress=on_progress).start().result()
