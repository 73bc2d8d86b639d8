"""Recording backend with a manual clock.

Nodes and automation are kept as plain Python objects so that callers can
inspect the graph the engine built and evaluate parameter curves at any time.
Automation follows WebAudio timeline semantics: a ramp runs from the previous
event to its own end time, ``set`` events hold until the next event.
"""

from __future__ import annotations

import bisect
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Literal

import numpy as np
from numpy.typing import NDArray

from .backend import BlockKernel, FloatArray

_LOGGER = logging.getLogger("sqaudio.virtual")

AutomationKind = Literal["set", "linear", "exp"]


@dataclass(frozen=True, slots=True)
class AutomationEvent:
    kind: AutomationKind
    value: float
    time: float


def _ramp(
    kind: AutomationKind,
    v0: float,
    v1: float,
    t0: float,
    t1: float,
    times: NDArray[np.float64],
) -> NDArray[np.float64]:
    if t1 <= t0:
        return np.full(times.shape, v1, dtype=np.float64)
    frac = np.clip((times - t0) / (t1 - t0), 0.0, 1.0)
    if kind == "linear":
        return v0 + (v1 - v0) * frac
    if v0 == 0.0 or v1 == 0.0 or (v0 > 0.0) != (v1 > 0.0):
        # Exponential ramps across zero are undefined; the value holds.
        return np.full(times.shape, v0, dtype=np.float64)
    return v0 * np.power(v1 / v0, frac)


class VirtualParam:
    def __init__(self, name: str, default: float) -> None:
        self.name = name
        self._default = float(default)
        self.events: list[AutomationEvent] = []
        self.inputs: list[VirtualNode] = []

    @property
    def value(self) -> float:
        return self._default

    @value.setter
    def value(self, value: float) -> None:
        self._default = float(value)

    def _insert(self, event: AutomationEvent) -> None:
        times = [e.time for e in self.events]
        self.events.insert(bisect.bisect_right(times, event.time), event)

    def set_value_at_time(self, value: float, time: float) -> None:
        self._insert(AutomationEvent("set", float(value), float(time)))

    def linear_ramp_to_value_at_time(self, value: float, time: float) -> None:
        self._insert(AutomationEvent("linear", float(value), float(time)))

    def exponential_ramp_to_value_at_time(self, value: float, time: float) -> None:
        if value == 0.0:
            raise ValueError(f"{self.name}: exponential ramp target must be non-zero")
        self._insert(AutomationEvent("exp", float(value), float(time)))

    def cancel_scheduled_values(self, time: float) -> None:
        self.events = [e for e in self.events if e.time < time]

    def cancel_and_hold_at_time(self, time: float) -> None:
        held = self.value_at(time)
        upcoming = [e for e in self.events if e.time > time]
        self.events = [e for e in self.events if e.time <= time]
        if upcoming and upcoming[0].kind != "set":
            # Truncate the in-progress ramp so it ends on the held value.
            self._insert(AutomationEvent(upcoming[0].kind, held, float(time)))
        else:
            self._insert(AutomationEvent("set", held, float(time)))

    def sample(self, times: NDArray[np.float64]) -> NDArray[np.float64]:
        """Evaluate the automation timeline (without modulation inputs) at ``times``."""
        times = np.asarray(times, dtype=np.float64)
        out = np.full(times.shape, self._default, dtype=np.float64)
        lower = -np.inf
        prev_time = 0.0
        prev_value = self._default
        for event in self.events:
            mask = (times >= lower) & (times < event.time)
            if np.any(mask):
                if event.kind == "set":
                    out[mask] = prev_value
                else:
                    out[mask] = _ramp(
                        event.kind, prev_value, event.value, prev_time, event.time, times[mask]
                    )
            lower = event.time
            prev_time = event.time
            prev_value = event.value
        tail = times >= lower
        out[tail] = prev_value
        return out

    def value_at(self, time: float) -> float:
        return float(self.sample(np.array([time], dtype=np.float64))[0])


class VirtualNode:
    kind = "node"

    def __init__(self, backend: "VirtualBackend") -> None:
        self.backend = backend
        self.node_id = backend.register(self)
        self.outputs: list[VirtualNode | VirtualParam] = []
        self.inputs: list[VirtualNode] = []

    def connect(self, destination: Any) -> Any:
        if not isinstance(destination, (VirtualNode, VirtualParam)):
            raise TypeError(f"cannot connect {self.kind} to {type(destination).__name__}")
        self.outputs.append(destination)
        destination.inputs.append(self)
        return destination

    def disconnect(self) -> None:
        for destination in self.outputs:
            if self in destination.inputs:
                destination.inputs.remove(self)
        self.outputs.clear()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} #{self.node_id}>"


class VirtualSourceNode(VirtualNode):
    def __init__(self, backend: "VirtualBackend") -> None:
        super().__init__(backend)
        self.start_time: float | None = None
        self.stop_time: float | None = None

    def start(self, when: float) -> None:
        if self.start_time is not None:
            raise RuntimeError(f"{self!r}: start() called more than once")
        self.start_time = float(when)

    def stop(self, when: float) -> None:
        if self.start_time is None:
            raise RuntimeError(f"{self!r}: stop() before start()")
        if self.stop_time is not None and self.stop_time <= self.backend.current_time:
            raise RuntimeError(f"{self!r}: source already stopped")
        self.stop_time = float(when)

    def is_active(self, time: float) -> bool:
        if self.start_time is None or time < self.start_time:
            return False
        return self.stop_time is None or time < self.stop_time


@dataclass(frozen=True, slots=True)
class VirtualPeriodicWave:
    real: NDArray[np.float64]
    imag: NDArray[np.float64]


class VirtualBuffer:
    def __init__(self, samples: FloatArray, sample_rate: int) -> None:
        self.samples: FloatArray = np.asarray(samples, dtype=np.float32)
        self.sample_rate = int(sample_rate)

    def get_channel_data(self, channel: int = 0) -> FloatArray:
        if channel != 0:
            raise IndexError("mono buffers only")
        return self.samples

    def __len__(self) -> int:
        return int(self.samples.size)


class VirtualOscillator(VirtualSourceNode):
    kind = "oscillator"

    def __init__(self, backend: "VirtualBackend") -> None:
        super().__init__(backend)
        self.type = "sine"
        self.frequency = VirtualParam("frequency", 440.0)
        self.detune = VirtualParam("detune", 0.0)
        self.periodic_wave: VirtualPeriodicWave | None = None

    def set_periodic_wave(self, wave: Any) -> None:
        self.periodic_wave = wave
        self.type = "custom"


class VirtualBufferSource(VirtualSourceNode):
    kind = "buffer_source"

    def __init__(self, backend: "VirtualBackend") -> None:
        super().__init__(backend)
        self.buffer: VirtualBuffer | None = None
        self.loop = False


class VirtualGain(VirtualNode):
    kind = "gain"

    def __init__(self, backend: "VirtualBackend") -> None:
        super().__init__(backend)
        self.gain = VirtualParam("gain", 1.0)


class VirtualBiquadFilter(VirtualNode):
    kind = "biquad"

    def __init__(self, backend: "VirtualBackend") -> None:
        super().__init__(backend)
        self.type = "lowpass"
        self.frequency = VirtualParam("frequency", 350.0)
        self.Q = VirtualParam("Q", 1.0)
        self.gain = VirtualParam("gain", 0.0)


class VirtualWaveShaper(VirtualNode):
    kind = "wave_shaper"

    def __init__(self, backend: "VirtualBackend") -> None:
        super().__init__(backend)
        self.curve: FloatArray | None = None
        self.oversample = "none"


class VirtualStereoPanner(VirtualNode):
    kind = "stereo_panner"

    def __init__(self, backend: "VirtualBackend") -> None:
        super().__init__(backend)
        self.pan = VirtualParam("pan", 0.0)


class VirtualProcessor(VirtualNode):
    kind = "processor"

    def __init__(self, backend: "VirtualBackend", kernel: BlockKernel) -> None:
        super().__init__(backend)
        self.kernel = kernel


class VirtualDestination(VirtualNode):
    kind = "destination"


class VirtualBackend:
    """In-memory backend; time only moves when :meth:`advance` is called."""

    def __init__(self, sample_rate: int = 44_100, *, start_time: float = 0.0) -> None:
        self.sample_rate = int(sample_rate)
        self._time = float(start_time)
        self._state = "suspended"
        self._next_id = 0
        self.nodes: list[VirtualNode] = []
        self._destination = VirtualDestination(self)

    # --- clock / lifecycle ---
    @property
    def current_time(self) -> float:
        return self._time

    @property
    def state(self) -> str:
        return self._state

    @property
    def destination(self) -> VirtualDestination:
        return self._destination

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError("the audio clock is monotonic")
        self._time += float(seconds)
        return self._time

    def resume(self) -> None:
        self._state = "running"

    def suspend(self) -> None:
        self._state = "suspended"

    def register(self, node: VirtualNode) -> int:
        node_id = self._next_id
        self._next_id += 1
        self.nodes.append(node)
        return node_id

    def nodes_of(self, kind: str) -> list[Any]:
        return [node for node in self.nodes if node.kind == kind]

    # --- factories ---
    def create_oscillator(self) -> VirtualOscillator:
        return VirtualOscillator(self)

    def create_buffer_source(self) -> VirtualBufferSource:
        return VirtualBufferSource(self)

    def create_gain(self) -> VirtualGain:
        return VirtualGain(self)

    def create_biquad_filter(self) -> VirtualBiquadFilter:
        return VirtualBiquadFilter(self)

    def create_wave_shaper(self) -> VirtualWaveShaper:
        return VirtualWaveShaper(self)

    def create_stereo_panner(self) -> VirtualStereoPanner:
        return VirtualStereoPanner(self)

    def create_processor(self, kernel: BlockKernel) -> VirtualProcessor:
        return VirtualProcessor(self, kernel)

    def create_periodic_wave(
        self,
        real: Sequence[float] | NDArray[np.float64],
        imag: Sequence[float] | NDArray[np.float64],
    ) -> VirtualPeriodicWave:
        real_arr = np.asarray(real, dtype=np.float64)
        imag_arr = np.asarray(imag, dtype=np.float64)
        if real_arr.shape != imag_arr.shape or real_arr.size < 2:
            raise ValueError("periodic wave needs matching real/imag arrays of length >= 2")
        return VirtualPeriodicWave(real_arr, imag_arr)

    def create_buffer(self, samples: FloatArray, sample_rate: int) -> VirtualBuffer:
        _LOGGER.debug("Created %d-sample buffer at %d Hz", np.size(samples), sample_rate)
        return VirtualBuffer(samples, sample_rate)
