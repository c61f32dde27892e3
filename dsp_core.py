import numpy as np

EPSILON = 1e-9


def as_plane(signal) -> np.ndarray:
    """Return ``signal`` as a one-dimensional float32 array."""

    plane = np.asarray(signal, dtype=np.float32)
    if plane.ndim != 1:
        raise ValueError("signal must be one-dimensional")
    return plane


def midi_to_frequency(pitch: float) -> float:
    return 440.0 * 2.0 ** ((float(pitch) - 69.0) / 12.0)


def semitones_to_ratio(semitones: float) -> float:
    return 2.0 ** (float(semitones) / 12.0)


def damped_sine(frequency: float, t: np.ndarray, duration: float) -> np.ndarray:
    """``sin(2*pi*f*t) * exp(-t / duration)`` evaluated in float64.

    ``duration`` is floored at :data:`EPSILON` so zero-length voices stay finite.
    """

    t = np.asarray(t, dtype=np.float64)
    decay = max(EPSILON, float(duration))
    return np.sin(2.0 * np.pi * float(frequency) * t) * np.exp(-t / decay)


def linear_resample(source: np.ndarray, positions: np.ndarray) -> np.ndarray:
    """Read ``source`` at fractional ``positions`` with linear interpolation.

    No band-limiting is applied.  Positions outside ``[0, len(source))`` read
    as silence; the sample after the last one is treated as zero.
    """

    src = np.asarray(source, dtype=np.float64)
    pos = np.asarray(positions, dtype=np.float64)
    out = np.zeros(pos.shape, dtype=np.float64)
    n = src.size
    if n == 0 or pos.size == 0:
        return out
    valid = (pos >= 0.0) & (pos < n)
    if not np.any(valid):
        return out
    p = pos[valid]
    idx = np.floor(p).astype(np.int64)
    frac = p - idx
    padded = np.concatenate([src, np.zeros(1, dtype=np.float64)])
    a = padded[idx]
    b = padded[idx + 1]
    out[valid] = a + (b - a) * frac
    return out


def clamp_unit(signal: np.ndarray) -> np.ndarray:
    return np.clip(np.asarray(signal, dtype=np.float64), -1.0, 1.0)


def quantize_pcm16(signal: np.ndarray) -> np.ndarray:
    """Map float samples to int16: negatives scale by 0x8000, the rest by 0x7FFF.

    Values are clamped to [-1, 1] first and rounded half up.
    """

    x = clamp_unit(signal)
    scaled = np.where(x < 0.0, x * 32768.0, x * 32767.0)
    return np.floor(scaled + 0.5).astype(np.int16)
