"""Offline rendering of the automated graph with numpy and scipy.

``OfflineBackend`` records the graph exactly like ``VirtualBackend`` and renders
any time span of it on demand. Nodes are pulled from the destination; every
signal is ``(frames, channels)`` float64 with 1 or 2 channels, and mono is
copied to both channels where channel counts meet (WebAudio "speakers" mixing).
Filters and processor kernels run in 128-frame render quanta.
"""

from __future__ import annotations

import logging
import math
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray
from scipy.signal import lfilter  # type: ignore[import]

from .audio import write_wav
from .virtual import (
    VirtualBackend,
    VirtualBiquadFilter,
    VirtualBufferSource,
    VirtualGain,
    VirtualNode,
    VirtualOscillator,
    VirtualParam,
    VirtualPeriodicWave,
    VirtualProcessor,
    VirtualSourceNode,
    VirtualStereoPanner,
    VirtualWaveShaper,
)
from .waveforms import apply_curve

if TYPE_CHECKING:
    from .engine import AudioEngine

_LOGGER = logging.getLogger("sqaudio.offline")

Signal = NDArray[np.float64]

RENDER_QUANTUM = 128
TABLE_SIZE = 4096


def _to_channels(signal: Signal, channels: int) -> Signal:
    if signal.shape[1] == channels:
        return signal
    if signal.shape[1] == 1:
        return np.repeat(signal, channels, axis=1)
    return signal.mean(axis=1, keepdims=True)


def _mix(signals: list[Signal], frames: int) -> Signal:
    if not signals:
        return np.zeros((frames, 1), dtype=np.float64)
    channels = max(s.shape[1] for s in signals)
    out = np.zeros((frames, channels), dtype=np.float64)
    for signal in signals:
        out += _to_channels(signal, channels)
    return out


@lru_cache(maxsize=64)
def _native_table(shape: str) -> Signal:
    phase = np.arange(TABLE_SIZE, dtype=np.float64) / TABLE_SIZE
    match shape:
        case "square":
            return np.where(phase < 0.5, 1.0, -1.0)
        case "sawtooth":
            return 2.0 * ((phase + 0.5) % 1.0) - 1.0
        case "triangle":
            return 1.0 - 4.0 * np.abs(((phase + 0.25) % 1.0) - 0.5)
        case _:
            return np.sin(2.0 * np.pi * phase)


def _wave_table(wave: VirtualPeriodicWave) -> Signal:
    """One normalized cycle of a periodic wave (peak scaled to 1)."""
    phase = np.arange(TABLE_SIZE, dtype=np.float64) / TABLE_SIZE
    table = np.zeros(TABLE_SIZE, dtype=np.float64)
    for k in range(1, wave.real.size):
        angle = 2.0 * np.pi * k * phase
        table += wave.real[k] * np.cos(angle) + wave.imag[k] * np.sin(angle)
    peak = float(np.max(np.abs(table)))
    return table / peak if peak > 0 else table


def _quantize(value: float, step: float = 0.01) -> float:
    return round(value / step) * step


@lru_cache(maxsize=4096)
def biquad_coefficients(
    kind: str, frequency: float, q: float, gain_db: float, sample_rate: int
) -> tuple[tuple[float, float, float], tuple[float, float, float]]:
    """RBJ cookbook coefficients, normalized so ``a[0] == 1``."""
    nyquist = sample_rate / 2.0
    f = min(max(frequency, 10.0), nyquist * 0.999)
    w0 = 2.0 * math.pi * f / sample_rate
    cos_w = math.cos(w0)
    sin_w = math.sin(w0)
    big_a = 10.0 ** (gain_db / 40.0)
    match kind:
        case "lowpass" | "highpass":
            # Resonance is given in dB for these two types.
            alpha = sin_w / (2.0 * 10.0 ** (q / 20.0))
        case "lowshelf" | "highshelf":
            alpha = sin_w / 2.0 * math.sqrt(2.0)
        case _:
            alpha = sin_w / (2.0 * max(q, 1e-4))

    match kind:
        case "lowpass":
            b = ((1 - cos_w) / 2, 1 - cos_w, (1 - cos_w) / 2)
            a = (1 + alpha, -2 * cos_w, 1 - alpha)
        case "highpass":
            b = ((1 + cos_w) / 2, -(1 + cos_w), (1 + cos_w) / 2)
            a = (1 + alpha, -2 * cos_w, 1 - alpha)
        case "bandpass":
            b = (alpha, 0.0, -alpha)
            a = (1 + alpha, -2 * cos_w, 1 - alpha)
        case "notch":
            b = (1.0, -2 * cos_w, 1.0)
            a = (1 + alpha, -2 * cos_w, 1 - alpha)
        case "allpass":
            b = (1 - alpha, -2 * cos_w, 1 + alpha)
            a = (1 + alpha, -2 * cos_w, 1 - alpha)
        case "peaking":
            b = (1 + alpha * big_a, -2 * cos_w, 1 - alpha * big_a)
            a = (1 + alpha / big_a, -2 * cos_w, 1 - alpha / big_a)
        case "lowshelf":
            root = 2 * math.sqrt(big_a) * alpha
            b = (
                big_a * ((big_a + 1) - (big_a - 1) * cos_w + root),
                2 * big_a * ((big_a - 1) - (big_a + 1) * cos_w),
                big_a * ((big_a + 1) - (big_a - 1) * cos_w - root),
            )
            a = (
                (big_a + 1) + (big_a - 1) * cos_w + root,
                -2 * ((big_a - 1) + (big_a + 1) * cos_w),
                (big_a + 1) + (big_a - 1) * cos_w - root,
            )
        case "highshelf":
            root = 2 * math.sqrt(big_a) * alpha
            b = (
                big_a * ((big_a + 1) + (big_a - 1) * cos_w + root),
                -2 * big_a * ((big_a - 1) + (big_a + 1) * cos_w),
                big_a * ((big_a + 1) + (big_a - 1) * cos_w - root),
            )
            a = (
                (big_a + 1) - (big_a - 1) * cos_w + root,
                2 * ((big_a - 1) - (big_a + 1) * cos_w),
                (big_a + 1) - (big_a - 1) * cos_w - root,
            )
        case _:
            raise ValueError(f"unsupported biquad type: {kind}")
    a0 = a[0]
    return (b[0] / a0, b[1] / a0, b[2] / a0), (1.0, a[1] / a0, a[2] / a0)


class _RenderPass:
    """Pulls one span of the graph; node outputs are memoized per pass."""

    def __init__(self, backend: "OfflineBackend", start_time: float, frames: int) -> None:
        self.backend = backend
        self.sample_rate = backend.sample_rate
        self.frames = frames
        self.times = start_time + np.arange(frames, dtype=np.float64) / self.sample_rate
        self._outputs: dict[int, Signal] = {}
        self._active: set[int] = set()

    def output(self, node: VirtualNode) -> Signal:
        cached = self._outputs.get(node.node_id)
        if cached is not None:
            return cached
        if node.node_id in self._active:
            raise RuntimeError(f"cycle in audio graph at {node!r}")
        self._active.add(node.node_id)
        try:
            result = self._render(node)
        finally:
            self._active.discard(node.node_id)
        self._outputs[node.node_id] = result
        return result

    def input_mix(self, node: VirtualNode) -> Signal:
        return _mix([self.output(source) for source in node.inputs], self.frames)

    def param(self, param: VirtualParam) -> Signal:
        """Automation curve plus any audio-rate modulation connected to the param."""
        values = param.sample(self.times)
        for source in param.inputs:
            values = values + _to_channels(self.output(source), 1)[:, 0]
        return values

    def _render(self, node: VirtualNode) -> Signal:
        match node:
            case VirtualOscillator():
                return self._oscillator(node)
            case VirtualBufferSource():
                return self._buffer_source(node)
            case VirtualGain():
                return self.input_mix(node) * self.param(node.gain)[:, None]
            case VirtualBiquadFilter():
                return self._biquad(node)
            case VirtualWaveShaper():
                signal = self.input_mix(node)
                if node.curve is None:
                    return signal
                return apply_curve(node.curve, signal).astype(np.float64)
            case VirtualStereoPanner():
                return self._panner(node)
            case VirtualProcessor():
                return self._processor(node)
            case _:
                return self.input_mix(node)

    def _active_span(self, node: VirtualSourceNode) -> tuple[int, int]:
        if node.start_time is None:
            return 0, 0
        first = int(np.searchsorted(self.times, node.start_time, side="left"))
        stop = node.stop_time if node.stop_time is not None else math.inf
        last = int(np.searchsorted(self.times, stop, side="left"))
        return first, max(first, last)

    def _oscillator(self, node: VirtualOscillator) -> Signal:
        out = np.zeros((self.frames, 1), dtype=np.float64)
        first, last = self._active_span(node)
        if last <= first or node.start_time is None:
            return out
        freq = self.param(node.frequency)[first:last]
        detune = self.param(node.detune)[first:last]
        hz = freq * np.power(2.0, detune / 1200.0)
        # Phase advances from the start time, including frames rendered earlier.
        offset = (self.times[first] - node.start_time) * float(hz[0])
        phase = offset + np.concatenate(([0.0], np.cumsum(hz[:-1]))) / self.sample_rate
        table = (
            self.backend.wave_table(node.periodic_wave)
            if node.periodic_wave is not None
            else _native_table(node.type)
        )
        index = np.mod(phase, 1.0) * TABLE_SIZE
        out[first:last, 0] = np.interp(index, np.arange(TABLE_SIZE + 1), np.append(table, table[0]))
        return out

    def _buffer_source(self, node: VirtualBufferSource) -> Signal:
        out = np.zeros((self.frames, 1), dtype=np.float64)
        first, last = self._active_span(node)
        if last <= first or node.buffer is None or node.start_time is None or len(node.buffer) == 0:
            return out
        data = node.buffer.get_channel_data(0).astype(np.float64)
        rate = node.buffer.sample_rate
        position = np.round((self.times[first:last] - node.start_time) * rate).astype(np.int64)
        if node.loop:
            out[first:last, 0] = data[np.mod(position, data.size)]
        else:
            valid = position < data.size
            out[first:last, 0][valid] = data[position[valid]]
        return out

    def _biquad(self, node: VirtualBiquadFilter) -> Signal:
        signal = self.input_mix(node)
        freq = self.param(node.frequency)
        q = self.param(node.Q)
        gain = self.param(node.gain)
        state = self.backend.filter_state(node.node_id, signal.shape[1])
        out = np.empty_like(signal)
        for lo in range(0, self.frames, RENDER_QUANTUM):
            hi = min(self.frames, lo + RENDER_QUANTUM)
            b, a = biquad_coefficients(
                node.type,
                _quantize(float(freq[lo])),
                _quantize(float(q[lo])),
                _quantize(float(gain[lo])),
                self.sample_rate,
            )
            for ch in range(signal.shape[1]):
                filtered, state[ch] = lfilter(b, a, signal[lo:hi, ch], zi=state[ch])
                out[lo:hi, ch] = filtered
        return out

    def _panner(self, node: VirtualStereoPanner) -> Signal:
        signal = self.input_mix(node)
        pan = np.clip(self.param(node.pan), -1.0, 1.0)
        out = np.zeros((self.frames, 2), dtype=np.float64)
        if signal.shape[1] == 1:
            x = (pan + 1.0) / 2.0
            out[:, 0] = signal[:, 0] * np.cos(x * np.pi / 2.0)
            out[:, 1] = signal[:, 0] * np.sin(x * np.pi / 2.0)
            return out
        left, right = signal[:, 0], signal[:, 1]
        x = np.where(pan <= 0.0, pan + 1.0, pan)
        gain_l = np.cos(x * np.pi / 2.0)
        gain_r = np.sin(x * np.pi / 2.0)
        out[:, 0] = np.where(pan <= 0.0, left + right * gain_l, left * gain_l)
        out[:, 1] = np.where(pan <= 0.0, right * gain_r, right + left * gain_r)
        return out

    def _processor(self, node: VirtualProcessor) -> Signal:
        signal = _to_channels(self.input_mix(node), 2).astype(np.float32)
        out = np.empty(signal.shape, dtype=np.float64)
        for lo in range(0, self.frames, RENDER_QUANTUM):
            hi = min(self.frames, lo + RENDER_QUANTUM)
            out[lo:hi] = node.kernel(signal[lo:hi])
        return out


class OfflineBackend(VirtualBackend):
    """Recording backend that can also render what it recorded."""

    def __init__(self, sample_rate: int = 44_100, *, start_time: float = 0.0) -> None:
        super().__init__(sample_rate, start_time=start_time)
        self._tables: dict[int, Signal] = {}
        self._filter_states: dict[int, list[NDArray[np.float64]]] = {}

    def wave_table(self, wave: VirtualPeriodicWave) -> Signal:
        key = id(wave)
        cached = self._tables.get(key)
        if cached is not None:
            return cached
        return self._tables.setdefault(key, _wave_table(wave))

    def filter_state(self, node_id: int, channels: int) -> list[NDArray[np.float64]]:
        state = self._filter_states.get(node_id)
        if state is None or len(state) != channels:
            state = [np.zeros(2, dtype=np.float64) for _ in range(channels)]
            self._filter_states[node_id] = state
        return state

    def render(self, start_time: float, seconds: float) -> NDArray[np.float32]:
        """Render ``seconds`` of the destination from ``start_time`` as (frames, 2)."""
        frames = max(0, int(round(seconds * self.sample_rate)))
        if frames == 0:
            return np.zeros((0, 2), dtype=np.float32)
        self._filter_states.clear()
        render_pass = _RenderPass(self, start_time, frames)
        mixed = _to_channels(render_pass.output(self.destination), 2)
        _LOGGER.debug("Rendered %d frames from %.4f", frames, start_time)
        return mixed.astype(np.float32)


def render_engine(engine: "AudioEngine", seconds: float, *, step_sec: float | None = None) -> NDArray[np.float32]:
    """Drive ``engine``'s scheduler through ``seconds`` of clock, then render the span.

    The engine must run on an :class:`OfflineBackend`; with ``background_pump``
    disabled the result is deterministic.
    """
    backend = engine.backend
    if not isinstance(backend, OfflineBackend):
        raise TypeError("render_engine needs an engine built on OfflineBackend")
    step = step_sec if step_sec is not None else engine.options.interval_ms / 1000.0
    start = backend.current_time
    end = start + seconds
    for _ in range(max(0, math.ceil(seconds / step))):
        engine.scheduler.pump()
        backend.advance(max(0.0, min(step, end - backend.current_time)))
    engine.scheduler.pump()
    return backend.render(start, seconds)


def render_to_wav(engine: "AudioEngine", path: str | Path, seconds: float) -> Path:
    audio = render_engine(engine, seconds)
    return write_wav(path, audio, sample_rate=engine.backend.sample_rate)
