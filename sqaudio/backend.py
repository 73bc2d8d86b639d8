"""Audio backend contract consumed by the engine.

The engine never touches samples. It builds graphs out of these primitives and
commits parameter automation ahead of time; a backend renders them (a browser
WebAudio bridge, the offline numpy renderer in ``sqaudio.offline``, or the
recording ``VirtualBackend`` used in tests).
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, Protocol, runtime_checkable

import numpy as np
from numpy.typing import NDArray

FloatArray = NDArray[np.float32]
BlockKernel = Callable[[FloatArray], FloatArray]


@runtime_checkable
class AudioParam(Protocol):
    value: float

    def set_value_at_time(self, value: float, time: float) -> None: ...

    def linear_ramp_to_value_at_time(self, value: float, time: float) -> None: ...

    def exponential_ramp_to_value_at_time(self, value: float, time: float) -> None: ...

    def cancel_scheduled_values(self, time: float) -> None: ...

    def cancel_and_hold_at_time(self, time: float) -> None: ...


class AudioNode(Protocol):
    def connect(self, destination: Any) -> Any: ...

    def disconnect(self) -> None: ...


class SourceNode(AudioNode, Protocol):
    def start(self, when: float) -> None: ...

    def stop(self, when: float) -> None: ...


class PeriodicWave(Protocol):
    real: NDArray[np.float64]
    imag: NDArray[np.float64]


class AudioBuffer(Protocol):
    sample_rate: int

    def get_channel_data(self, channel: int = 0) -> FloatArray: ...


class OscillatorNode(SourceNode, Protocol):
    type: str
    frequency: AudioParam
    detune: AudioParam

    def set_periodic_wave(self, wave: PeriodicWave) -> None: ...


class BufferSourceNode(SourceNode, Protocol):
    buffer: AudioBuffer | None
    loop: bool


class GainNode(AudioNode, Protocol):
    gain: AudioParam


class BiquadFilterNode(AudioNode, Protocol):
    type: str
    frequency: AudioParam
    Q: AudioParam
    gain: AudioParam


class WaveShaperNode(AudioNode, Protocol):
    curve: FloatArray | None
    oversample: str


class StereoPannerNode(AudioNode, Protocol):
    pan: AudioParam


class ProcessorNode(AudioNode, Protocol):
    """Runs a stateful block kernel on its input (AudioWorklet equivalent)."""

    kernel: BlockKernel


class AudioBackend(Protocol):
    sample_rate: int

    @property
    def current_time(self) -> float: ...

    @property
    def state(self) -> str: ...

    @property
    def destination(self) -> AudioNode: ...

    def resume(self) -> None: ...

    def suspend(self) -> None: ...

    def create_oscillator(self) -> OscillatorNode: ...

    def create_buffer_source(self) -> BufferSourceNode: ...

    def create_gain(self) -> GainNode: ...

    def create_biquad_filter(self) -> BiquadFilterNode: ...

    def create_wave_shaper(self) -> WaveShaperNode: ...

    def create_stereo_panner(self) -> StereoPannerNode: ...

    def create_processor(self, kernel: BlockKernel) -> ProcessorNode: ...

    def create_periodic_wave(
        self, real: Sequence[float] | NDArray[np.float64], imag: Sequence[float] | NDArray[np.float64]
    ) -> PeriodicWave: ...

    def create_buffer(self, samples: FloatArray, sample_rate: int) -> AudioBuffer: ...
