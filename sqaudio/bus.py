from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from .backend import (
    AudioBackend,
    AudioNode,
    BiquadFilterNode,
    GainNode,
    ProcessorNode,
    StereoPannerNode,
    WaveShaperNode,
)
from .config import BusPolicy, CrushDef
from .envelope import clamp, finite_or
from .errors import UnknownBusError
from .waveforms import SampleRateCrusher, WaveformFactory, crush_step

_LOGGER = logging.getLogger("sqaudio.bus")

MASTER_BUS = "master"


@dataclass(frozen=True, slots=True)
class FxChain:
    """highpass -> lowpass -> (SR crush) -> bit-depth shaper; feeds a bus gain."""

    settings: CrushDef
    highpass: BiquadFilterNode
    lowpass: BiquadFilterNode
    crusher: ProcessorNode | None
    shaper: WaveShaperNode

    @property
    def input(self) -> AudioNode:
        return self.highpass


def build_fx_chain(
    backend: AudioBackend,
    waveforms: WaveformFactory,
    crush: CrushDef,
    output: AudioNode,
) -> FxChain:
    highpass = backend.create_biquad_filter()
    highpass.type = "highpass"
    highpass.frequency.value = max(10.0, finite_or(crush.hpf_hz, 20.0))

    lowpass = backend.create_biquad_filter()
    lowpass.type = "lowpass"
    lowpass.frequency.value = max(10.0, finite_or(crush.lpf_hz, 12_000.0))

    shaper = backend.create_wave_shaper()
    shaper.curve = waveforms.bit_depth_curve(crush.bit_depth)
    shaper.oversample = "none"

    crusher: ProcessorNode | None = None
    target = finite_or(crush.sr_crush_hz, 0.0)
    if crush_step(backend.sample_rate, target) is not None:
        crusher = backend.create_processor(SampleRateCrusher(backend.sample_rate, target))

    highpass.connect(lowpass)
    if crusher is not None:
        lowpass.connect(crusher)
        crusher.connect(shaper)
    else:
        lowpass.connect(shaper)
    shaper.connect(output)
    return FxChain(crush, highpass, lowpass, crusher, shaper)


class Bus:
    def __init__(self, key: str, gain: GainNode, panner: StereoPannerNode) -> None:
        self.key = key
        self.gain = gain
        self.panner = panner
        self.fx: FxChain | None = None

    @property
    def input(self) -> AudioNode:
        """Where voices connect: the FX chain when one exists, else the gain."""
        return self.fx.input if self.fx is not None else self.gain


class BusRouter:
    """Per-engine bus registry. FX chains are frozen once built."""

    def __init__(
        self,
        backend: AudioBackend,
        waveforms: WaveformFactory,
        master: AudioNode,
        *,
        policy: BusPolicy = "shared",
    ) -> None:
        self._backend = backend
        self._waveforms = waveforms
        self._master = master
        self._policy = policy
        self._lock = threading.RLock()
        self._buses: dict[str, Bus] = {}

    @property
    def policy(self) -> BusPolicy:
        return self._policy

    def __contains__(self, key: object) -> bool:
        return key in self._buses

    def keys(self) -> list[str]:
        return list(self._buses)

    def create(
        self,
        key: str,
        *,
        gain: float = 1.0,
        pan: float = 0.0,
        crush: CrushDef | None = None,
    ) -> Bus:
        with self._lock:
            existing = self._buses.get(key)
            if existing is not None:
                _LOGGER.warning("Bus %r already exists; keeping the original", key)
                return existing
            gain_node = self._backend.create_gain()
            gain_node.gain.value = max(0.0, finite_or(gain, 1.0))
            panner = self._backend.create_stereo_panner()
            panner.pan.value = clamp(pan, -1.0, 1.0, default=0.0)
            gain_node.connect(panner)
            panner.connect(self._master)
            bus = Bus(key, gain_node, panner)
            self._buses[key] = bus
            if crush is not None:
                bus.fx = build_fx_chain(self._backend, self._waveforms, crush, gain_node)
            _LOGGER.debug("Created bus %r (fx=%s)", key, crush is not None)
            return bus

    def get(self, key: str) -> Bus:
        bus = self._buses.get(key)
        if bus is None:
            raise UnknownBusError(f"Unknown bus: {key}")
        return bus

    def set_gain(self, key: str, value: float) -> None:
        self.get(key).gain.gain.value = max(0.0, finite_or(value, 1.0))

    def input_for(self, key: str, crush: CrushDef | None) -> AudioNode:
        """Node a voice should connect to on bus ``key``."""
        with self._lock:
            bus = self.get(key)
            if crush is None:
                return bus.input
            if self._policy == "per_note":
                chain = build_fx_chain(self._backend, self._waveforms, crush, bus.gain)
                return chain.input
            if bus.fx is None:
                bus.fx = build_fx_chain(self._backend, self._waveforms, crush, bus.gain)
                _LOGGER.debug("Built FX chain for bus %r", key)
            elif bus.fx.settings != crush:
                _LOGGER.debug("Bus %r FX chain is frozen; ignoring new crush settings", key)
            return bus.fx.input
