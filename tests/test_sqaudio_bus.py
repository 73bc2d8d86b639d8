from __future__ import annotations

import logging

import pytest

from sqaudio.bus import MASTER_BUS, BusRouter, build_fx_chain
from sqaudio.config import CrushDef
from sqaudio.errors import UnknownBusError
from sqaudio.virtual import VirtualBackend
from sqaudio.waveforms import SampleRateCrusher, WaveformFactory


def _router(policy: str = "shared") -> tuple[BusRouter, VirtualBackend]:
    backend = VirtualBackend()
    master = backend.create_gain()
    master.connect(backend.destination)
    router = BusRouter(backend, WaveformFactory(backend), master, policy=policy)  # type: ignore[arg-type]
    router.create(MASTER_BUS)
    return router, backend


def test_create_wires_gain_and_panner_into_master() -> None:
    router, _ = _router()
    bus = router.create("drums", gain=0.5, pan=-2.0)
    assert bus.gain.gain.value == 0.5
    assert bus.panner.pan.value == -1.0
    assert bus.gain.outputs == [bus.panner]
    assert "drums" in router
    assert router.keys() == [MASTER_BUS, "drums"]
    assert bus.input is bus.gain


def test_create_twice_keeps_original(caplog: pytest.LogCaptureFixture) -> None:
    router, _ = _router()
    first = router.create("drums", gain=0.5)
    with caplog.at_level(logging.WARNING, logger="sqaudio.bus"):
        second = router.create("drums", gain=0.9)
    assert second is first
    assert first.gain.gain.value == 0.5
    assert "already exists" in caplog.text


def test_unknown_bus_raises() -> None:
    router, _ = _router()
    with pytest.raises(UnknownBusError):
        router.get("nope")
    with pytest.raises(UnknownBusError):
        router.input_for("nope", None)
    with pytest.raises(UnknownBusError):
        router.set_gain("nope", 1.0)


def test_set_gain_floors_at_zero() -> None:
    router, _ = _router()
    router.set_gain(MASTER_BUS, -3.0)
    assert router.get(MASTER_BUS).gain.gain.value == 0.0
    router.set_gain(MASTER_BUS, float("nan"))
    assert router.get(MASTER_BUS).gain.gain.value == 1.0


def test_fx_chain_order_and_bypassed_crusher() -> None:
    backend = VirtualBackend()
    output = backend.create_gain()
    chain = build_fx_chain(
        backend, WaveformFactory(backend), CrushDef(hpfHz=2.0, lpfHz=3000.0, bitDepth=4), output
    )
    assert chain.crusher is None
    assert chain.highpass.type == "highpass"
    assert chain.highpass.frequency.value == 10.0
    assert chain.lowpass.frequency.value == 3000.0
    assert chain.highpass.outputs == [chain.lowpass]
    assert chain.lowpass.outputs == [chain.shaper]
    assert chain.shaper.outputs == [output]
    assert chain.shaper.curve is not None
    assert len(set(chain.shaper.curve.tolist())) == 16


def test_fx_chain_inserts_sample_rate_crusher() -> None:
    backend = VirtualBackend(sample_rate=44_100)
    output = backend.create_gain()
    chain = build_fx_chain(backend, WaveformFactory(backend), CrushDef(srCrushHz=8000), output)
    assert chain.crusher is not None
    kernel = chain.crusher.kernel
    assert isinstance(kernel, SampleRateCrusher)
    assert kernel.step == 5
    assert chain.lowpass.outputs == [chain.crusher]
    assert chain.crusher.outputs == [chain.shaper]


def test_shared_chain_is_built_once_and_frozen() -> None:
    router, backend = _router("shared")
    router.create("fx")
    first = router.input_for("fx", CrushDef(bitDepth=4))
    again = router.input_for("fx", CrushDef(bitDepth=8))
    assert again is first
    assert len(backend.nodes_of("wave_shaper")) == 1
    bus = router.get("fx")
    assert bus.fx is not None
    assert bus.fx.settings.bit_depth == 4
    assert bus.input is first
    assert router.input_for("fx", None) is first


def test_per_note_policy_builds_a_chain_per_call() -> None:
    router, backend = _router("per_note")
    first = router.input_for(MASTER_BUS, CrushDef(bitDepth=4))
    second = router.input_for(MASTER_BUS, CrushDef(bitDepth=4))
    assert first is not second
    assert len(backend.nodes_of("wave_shaper")) == 2
    assert router.get(MASTER_BUS).fx is None
    assert router.policy == "per_note"


def test_bus_created_with_crush_routes_through_chain() -> None:
    router, _ = _router()
    bus = router.create("lofi", crush=CrushDef(bitDepth=6))
    assert bus.fx is not None
    assert bus.input is bus.fx.highpass
    assert bus.fx.shaper.outputs == [bus.gain]
