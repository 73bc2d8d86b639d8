"""Waveform tables, noise buffers and quantization curves.

Everything here is a pure function of its cache key. ``WaveformFactory`` memoizes
the backend objects built from these tables per engine instance; inserts use
``dict.setdefault`` so a race only costs a redundant computation.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, TypeAlias

import numpy as np
from numpy.typing import NDArray

from .backend import AudioBackend, AudioBuffer, FloatArray, PeriodicWave

_LOGGER = logging.getLogger("sqaudio.waveforms")

Harmonics: TypeAlias = tuple[NDArray[np.float64], NDArray[np.float64]]

PULSE_HARMONICS = 64
WAVETABLE_MAX_HARMONICS = 32
NOISE_SECONDS = 2.0
CURVE_MIN_POINTS = 2048
BIT_DEPTH_RANGE = (2, 16)
DUTY_RANGE = (0.01, 0.99)

# Oscillator types the backend renders natively (no periodic wave needed).
NATIVE_SHAPES: Mapping[str, str] = MappingProxyType(
    {"sine": "sine", "square": "square", "triangle": "triangle", "sawtooth": "sawtooth"}
)


# =============================================================================
# Pure table builders
# =============================================================================


def duty_key(duty: float) -> float:
    """Clamp a duty cycle and quantize it to 1e-3 (the pulse cache key)."""
    d = float(duty) if math.isfinite(duty) else 0.5
    d = min(DUTY_RANGE[1], max(DUTY_RANGE[0], d))
    return round(d * 1000.0) / 1000.0


def pulse_harmonics(duty: float, harmonics: int = PULSE_HARMONICS) -> Harmonics:
    """Fourier series of a rectangular pulse with the DC term removed.

    ``real[k] = 2 sin(k pi d) / (k pi)``, ``imag[k] = 0``.
    """
    d = duty_key(duty)
    k = np.arange(harmonics + 1, dtype=np.float64)
    real = np.zeros(harmonics + 1, dtype=np.float64)
    real[1:] = 2.0 * np.sin(k[1:] * np.pi * d) / (k[1:] * np.pi)
    imag = np.zeros(harmonics + 1, dtype=np.float64)
    return real, imag


def decode_nibbles(nibbles: str) -> NDArray[np.float64]:
    """Hex nibble string -> samples in [-1, 1] via ``v/15*2-1``; bad chars read as nibble 0 (-1.0)."""
    key = nibbles.strip().upper()
    values = []
    for ch in key:
        try:
            v = int(ch, 16)
        except ValueError:
            v = 0
        values.append(v / 15.0 * 2.0 - 1.0)
    return np.asarray(values, dtype=np.float64)


def wavetable_harmonics(samples: NDArray[np.float64] | list[float]) -> Harmonics:
    """Discrete Fourier transform of one cycle, limited to min(32, N) harmonics."""
    s = np.asarray(samples, dtype=np.float64)
    n = int(s.size)
    if n == 0:
        raise ValueError("wavetable needs at least one sample")
    count = max(2, min(WAVETABLE_MAX_HARMONICS, n))
    real = np.zeros(count, dtype=np.float64)
    imag = np.zeros(count, dtype=np.float64)
    idx = np.arange(n, dtype=np.float64)
    for k in range(1, count):
        phase = 2.0 * np.pi * k * idx / n
        real[k] = float(np.sum(s * np.cos(phase))) / n
        imag[k] = float(np.sum(s * np.sin(phase))) / n
    return real, imag


def sample_and_hold(raw: FloatArray, step: int) -> FloatArray:
    """Hold every ``step``-th value of ``raw`` for ``step`` samples."""
    step = max(1, int(step))
    held = np.repeat(np.asarray(raw)[::step], step)[: raw.size]
    return held.astype(np.float32)


def noise_samples(
    sample_rate: int,
    rate_hz: float = 0.0,
    *,
    seconds: float = NOISE_SECONDS,
    rng: np.random.Generator | None = None,
) -> FloatArray:
    """Uniform white noise, optionally decimated to ``rate_hz`` by sample-and-hold."""
    generator = rng if rng is not None else np.random.default_rng()
    length = max(1, int(math.floor(sample_rate * seconds)))
    raw = generator.uniform(-1.0, 1.0, length).astype(np.float32)
    if not (math.isfinite(rate_hz) and rate_hz > 0):
        return raw
    step = max(1, int(math.floor(sample_rate / max(1.0, rate_hz))))
    return sample_and_hold(raw, step)


def clamp_bit_depth(bits: float) -> int:
    if not math.isfinite(bits):
        return 12
    return max(BIT_DEPTH_RANGE[0], min(BIT_DEPTH_RANGE[1], int(bits)))


def bit_depth_curve(bits: float) -> FloatArray:
    """Monotonic waveshaper curve quantizing [-1, 1] to ``2**bits`` levels.

    The curve has at least two points per level so every level is reachable and
    re-applying the curve to its own output is the identity.
    """
    levels = 2 ** clamp_bit_depth(bits)
    points = max(CURVE_MIN_POINTS, 2 * levels)
    x = np.linspace(-1.0, 1.0, points, dtype=np.float64)
    q = np.round((x * 0.5 + 0.5) * (levels - 1)) / (levels - 1)
    return (q * 2.0 - 1.0).astype(np.float32)


def apply_curve(curve: FloatArray, signal: NDArray[np.floating[Any]]) -> FloatArray:
    """Static transfer function, interpolated the way a waveshaper reads its curve."""
    x = np.clip(np.asarray(signal, dtype=np.float64), -1.0, 1.0)
    grid = np.linspace(-1.0, 1.0, curve.size, dtype=np.float64)
    return np.interp(x, grid, curve.astype(np.float64)).astype(np.float32)


def crush_step(output_rate: float, target_rate: float) -> int | None:
    """Hold length for SR crush, or None when the crush is bypassed."""
    if not (math.isfinite(target_rate) and target_rate > 0):
        return None
    if target_rate >= output_rate - 1:
        return None
    return max(1, int(math.floor(output_rate / max(1.0, target_rate))))


def sample_rate_crush(
    samples: NDArray[np.floating[Any]], output_rate: float, target_rate: float
) -> FloatArray:
    """Zero-order-hold decimation of a whole signal."""
    data = np.asarray(samples, dtype=np.float32)
    step = crush_step(output_rate, target_rate)
    if step is None:
        return data
    return sample_and_hold(data, step)


class SampleRateCrusher:
    """Block kernel for SR crush; the hold state carries across blocks.

    Blocks are indexed by sample along axis 0, so (frames, channels) input holds
    all channels on the same latch points.
    """

    def __init__(self, output_rate: float, target_rate: float) -> None:
        step = crush_step(output_rate, target_rate)
        self.step = step if step is not None else 1
        self._last: NDArray[np.float32] = np.zeros((), dtype=np.float32)
        self._counter = 0

    def __call__(self, block: FloatArray) -> FloatArray:
        data = np.asarray(block, dtype=np.float32)
        out = np.empty_like(data)
        n = int(data.shape[0]) if data.ndim else 0
        if n == 0:
            return out
        held = self._counter
        latches = np.arange(held, n, self.step)
        if latches.size == 0:
            out[:] = self._last
            self._counter = held - n
            return out
        out[:held] = self._last
        bounds = np.append(latches, n)
        out[held:] = np.repeat(data[latches], np.diff(bounds), axis=0)
        self._last = np.array(data[latches[-1]], dtype=np.float32)
        self._counter = self.step - (n - int(latches[-1]))
        return out


# =============================================================================
# Per-engine cache of backend objects
# =============================================================================


class WaveformFactory:
    """Instance-scoped cache of periodic waves, noise buffers and curves."""

    def __init__(self, backend: AudioBackend, *, rng: np.random.Generator | None = None) -> None:
        self._backend = backend
        self._rng = rng if rng is not None else np.random.default_rng()
        self._rng_lock = threading.Lock()
        self._pulse: dict[float, PeriodicWave] = {}
        self._wavetables: dict[str, PeriodicWave] = {}
        self._bank_waves: dict[str, PeriodicWave] = {}
        self._noise: dict[int, AudioBuffer] = {}
        self._curves: dict[int, FloatArray] = {}

    def pulse_wave(self, duty: float) -> PeriodicWave:
        key = duty_key(duty)
        cached = self._pulse.get(key)
        if cached is not None:
            return cached
        real, imag = pulse_harmonics(key)
        return self._pulse.setdefault(key, self._backend.create_periodic_wave(real, imag))

    def nibble_wave(self, nibbles: str) -> PeriodicWave | None:
        key = nibbles.strip().upper()
        if not key:
            return None
        cached = self._wavetables.get(key)
        if cached is not None:
            return cached
        real, imag = wavetable_harmonics(decode_nibbles(key))
        return self._wavetables.setdefault(key, self._backend.create_periodic_wave(real, imag))

    def load_wave_bank(self, waves: Mapping[str, Any]) -> None:
        """Replace bank waves with backend periodic waves built from real/imag lists."""
        built: dict[str, PeriodicWave] = {}
        for wave_id, wave in waves.items():
            real = np.asarray(wave.real, dtype=np.float64)
            imag = np.asarray(wave.imag, dtype=np.float64) if wave.imag else np.zeros_like(real)
            built[wave_id] = self._backend.create_periodic_wave(real, imag)
        self._bank_waves = built
        _LOGGER.debug("Installed %d bank waves", len(built))

    def bank_wave(self, wave_id: str) -> PeriodicWave | None:
        return self._bank_waves.get(wave_id)

    def noise_buffer(self, rate_hz: float | None = None) -> AudioBuffer:
        rate = rate_hz if rate_hz is not None and math.isfinite(rate_hz) else 0.0
        key = int(math.floor(rate)) if rate > 0 else 0
        cached = self._noise.get(key)
        if cached is not None:
            return cached
        sample_rate = int(self._backend.sample_rate)
        with self._rng_lock:
            samples = noise_samples(sample_rate, float(key), rng=self._rng)
        return self._noise.setdefault(key, self._backend.create_buffer(samples, sample_rate))

    def bit_depth_curve(self, bits: float) -> FloatArray:
        key = clamp_bit_depth(bits)
        cached = self._curves.get(key)
        if cached is not None:
            return cached
        return self._curves.setdefault(key, bit_depth_curve(key))
