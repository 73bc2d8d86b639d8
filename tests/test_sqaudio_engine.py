from __future__ import annotations

from typing import Any

import numpy as np
import pytest

from sqaudio import (
    AudioEngine,
    BankNotLoadedError,
    EngineNotArmedError,
    EngineOptions,
    InvalidBankError,
    InvalidNoteError,
    UnknownBusError,
    UnknownToneError,
    VirtualBackend,
    linear_from_db,
    note_to_hz,
)
from sqaudio.engine import STOP_ALL_DELAY_SEC

TONE_BANK: dict[str, Any] = {
    "meta": {"name": "test"},
    "tones": {
        "lead": {"osc": {"type": "square"}, "env": {"a": 0.01, "d": 0.05, "s": 0.6, "r": 0.1}},
        "pulse": {"osc": {"type": "square", "duty": 0.25}},
        "bass": {"osc": {"type": "triangle"}, "env": {"r": 0.05}, "mono": "mono"},
        "pad": {"osc": {"type": "sine"}, "env": {"r": 0.2}, "mono": "softMono"},
        "hat": {"osc": {"type": "noise", "noiseRate": 4000}, "gain": 0.3},
        "chip": {"osc": {"type": "wave", "nibbles": "0123456789ABCDEFFEDCBA9876543210"}},
        "bank": {"osc": {"type": "wave", "waveId": "organ"}},
        "warm": {"osc": {"type": "sawtooth"}, "filter": {"type": "lowpass", "freq": 800, "q": 3}},
        "crushed": {"osc": {"type": "sawtooth"}, "crush": {"bitDepth": 4, "srCrushHz": 8000}},
    },
}
WAVE_BANK: dict[str, Any] = {"waves": {"organ": {"real": [0, 1, 0.5, 0.25], "imag": [0, 0, 0, 0]}}}


def _engine(**options: Any) -> tuple[AudioEngine, VirtualBackend]:
    backend = VirtualBackend()
    engine = AudioEngine(
        backend, EngineOptions(background_pump=False, **options), rng=np.random.default_rng(0)
    )
    engine.unlock()
    engine.load_banks(TONE_BANK, WAVE_BANK)
    return engine, backend


def test_note_to_hz_and_db_helpers() -> None:
    assert note_to_hz(69) == 440.0
    assert note_to_hz(81) == pytest.approx(880.0)
    assert note_to_hz(60) == pytest.approx(261.6255653)
    assert linear_from_db(0) == 1.0
    assert linear_from_db(-20) == pytest.approx(0.1)


class TestArming:
    def test_audio_calls_require_unlock(self) -> None:
        engine = AudioEngine(VirtualBackend(), {"background_pump": False})
        engine.load_banks(TONE_BANK, WAVE_BANK)
        assert engine.state == "init"
        assert not engine.armed
        with pytest.raises(EngineNotArmedError):
            engine.play_note({"toneId": "lead"})
        with pytest.raises(EngineNotArmedError):
            engine.play_phrase({"events": []}, tone_id="lead")
        with pytest.raises(EngineNotArmedError):
            engine.play_song({"tracks": []})
        assert engine.unlock() is True
        assert engine.armed
        assert engine.backend.state == "running"

    def test_suspend_and_resume(self) -> None:
        engine, backend = _engine()
        engine.play_phrase({"events": [{"t": 8}]}, tone_id="lead")
        engine.suspend()
        assert engine.state == "suspended"
        assert backend.state == "suspended"
        assert engine.scheduler.pending == 0
        with pytest.raises(EngineNotArmedError):
            engine.play_note({"toneId": "lead"})
        engine.resume()
        assert engine.armed
        assert engine.scheduler.running

    def test_close_is_final(self) -> None:
        engine, _ = _engine()
        engine.play_note({"toneId": "lead"})
        engine.close()
        engine.close()
        assert engine.state == "closed"
        assert engine.voices.active_count == 0
        with pytest.raises(EngineNotArmedError):
            engine.unlock()
        with pytest.raises(EngineNotArmedError):
            engine.resume()

    def test_hidden_drops_pending_work(self) -> None:
        engine, _ = _engine()
        engine.play_phrase({"events": [{"t": 8}, {"t": 9}]}, tone_id="lead")
        assert engine.scheduler.pending == 2
        engine.set_hidden(True)
        assert engine.hidden
        assert engine.scheduler.pending == 0
        assert not engine.scheduler.running
        engine.set_hidden(False)
        assert engine.scheduler.running

    def test_looped_song_continues_after_hide_cycle(self) -> None:
        engine, backend = _engine(loop_lead_sec=1.0)
        handle = engine.play_song(
            {
                "tempo": 120,
                "loop": {"start": 0, "end": 4},
                "tracks": [{"id": "a", "toneId": "lead", "events": [{"t": 0, "d": 1}]}],
            }
        )
        engine.scheduler.pump()
        engine.set_hidden(True)
        backend.advance(5.0)
        engine.set_hidden(False)
        assert engine.voices.active_count == 0
        assert engine.player.active_loops == [handle]

        for _ in range(40):
            backend.advance(0.25)
            engine.scheduler.pump()

        assert not handle.stopped
        assert handle.iterations_scheduled > 3
        starts = sorted(osc.start_time for osc in backend.nodes_of("oscillator"))
        # Resumes on the integer-indexed grid past the restart point.
        assert starts == pytest.approx([0.0, 6.0, 8.0, 10.0, 12.0, 14.0])

        handle.stop()
        engine.set_hidden(True)
        engine.set_hidden(False)
        assert engine.player.active_loops == []


def test_options_accept_mapping_and_reject_unknown_keys() -> None:
    engine = AudioEngine(VirtualBackend(), {"lookahead_sec": 0.2, "background_pump": False})
    assert engine.scheduler.lookahead_sec == 0.2
    with pytest.raises(ValueError):
        EngineOptions(lookahed_sec=0.2)  # type: ignore[call-arg]


class TestBanks:
    def test_not_loaded(self) -> None:
        engine = AudioEngine(VirtualBackend(), {"background_pump": False})
        engine.unlock()
        with pytest.raises(BankNotLoadedError):
            engine.play_note({"toneId": "lead"})

    def test_invalid_banks_install_nothing(self) -> None:
        engine = AudioEngine(VirtualBackend(), {"background_pump": False})
        bad_tones = {"tones": {"x": {"osc": {"type": "wave", "waveId": "missing"}}}}
        with pytest.raises(InvalidBankError) as excinfo:
            engine.load_banks(bad_tones, WAVE_BANK)
        assert any("/toneBank/tones/x/osc/waveId" in err for err in excinfo.value.errors)
        assert engine.tone_bank is None
        assert engine.wave_bank is None

    def test_tone_bank_checked_against_installed_waves(self) -> None:
        engine, _ = _engine()
        engine.load_banks({"tones": {"other": {"osc": {"type": "wave", "waveId": "organ"}}}})
        assert engine.tone_bank is not None
        assert list(engine.tone_bank.tones) == ["other"]
        with pytest.raises(InvalidBankError):
            engine.load_banks({"tones": {"y": {"osc": {"type": "wave", "waveId": "nope"}}}})

    def test_unknown_tone_and_bus(self) -> None:
        engine, _ = _engine()
        with pytest.raises(UnknownToneError):
            engine.play_note({"toneId": "ghost"})
        with pytest.raises(UnknownBusError):
            engine.play_note({"toneId": "lead", "busKey": "nowhere"})
        with pytest.raises(UnknownToneError):
            engine.play_phrase({"events": [{"t": 0, "toneId": "ghost"}]})
        assert engine.scheduler.pending == 0

    def test_unparseable_note(self) -> None:
        engine, _ = _engine()
        with pytest.raises(InvalidNoteError):
            engine.play_note({"n": 60})


class TestPlayNote:
    def test_voice_timing_and_cleanup(self) -> None:
        engine, backend = _engine()
        backend.advance(1.0)
        info = engine.play_note({"toneId": "lead", "n": 69, "dSec": 0.5})
        assert info.t0 == 1.0
        assert info.t_off == pytest.approx(1.5)
        assert info.t_release_end == pytest.approx(1.6)
        assert info.bus_key == "master"
        assert engine.voices.active_count == 1

        osc = backend.nodes_of("oscillator")[-1]
        assert osc.type == "square"
        assert osc.frequency.value_at(1.0) == 440.0
        assert osc.start_time == 1.0
        assert osc.stop_time == pytest.approx(1.62)

        backend.advance(0.8)
        engine.scheduler.pump()
        assert engine.voices.active_count == 0

    def test_past_t0_is_clamped_to_now(self) -> None:
        engine, backend = _engine()
        backend.advance(2.0)
        info = engine.play_note({"toneId": "lead", "t0": 0.5})
        assert info.t0 == 2.0

    def test_non_finite_inputs_fall_back(self) -> None:
        engine, backend = _engine()
        info = engine.play_note(
            {"toneId": "lead", "n": "nan", "hz": float("inf"), "dSec": "x", "v": None, "t0": "later"}
        )
        assert info.t0 == 0.0
        assert info.t_off == pytest.approx(0.25)
        osc = backend.nodes_of("oscillator")[-1]
        assert osc.frequency.value_at(0.0) == 440.0

    def test_hz_overrides_note_number(self) -> None:
        engine, backend = _engine()
        engine.play_note({"toneId": "lead", "n": 60, "hz": 100})
        assert backend.nodes_of("oscillator")[-1].frequency.value_at(0.0) == 100.0

    def test_velocity_scales_peak(self) -> None:
        engine, backend = _engine()
        engine.play_note({"toneId": "lead", "v": 0.5, "dSec": 1})
        envelope = backend.nodes_of("stereo_panner")[-1].inputs[0]
        assert envelope.gain.value_at(0.01) == pytest.approx(0.8 * 0.5)

    def test_pulse_and_native_square(self) -> None:
        engine, backend = _engine()
        engine.play_note({"toneId": "pulse"})
        engine.play_note({"toneId": "lead"})
        pulse, square = backend.nodes_of("oscillator")[-2:]
        assert pulse.type == "custom"
        assert pulse.periodic_wave.real[1] == pytest.approx(2 * np.sin(np.pi * 0.25) / np.pi)
        assert square.type == "square"

    def test_wave_tones(self) -> None:
        engine, backend = _engine()
        engine.play_note({"toneId": "chip"})
        engine.play_note({"toneId": "bank"})
        chip, bank = backend.nodes_of("oscillator")[-2:]
        assert chip.type == "custom"
        assert bank.periodic_wave.real.tolist() == [0, 1, 0.5, 0.25]

    def test_noise_uses_looped_held_buffer(self) -> None:
        engine, backend = _engine()
        engine.play_note({"toneId": "hat"})
        engine.play_note({"toneId": "hat"})
        first, second = backend.nodes_of("buffer_source")
        assert first.loop
        assert first.buffer is second.buffer
        samples = first.buffer.samples
        step = 44_100 // 4000
        assert np.all(samples[:step] == samples[0])

    def test_tone_filter_and_fx_override(self) -> None:
        engine, backend = _engine()
        info = engine.play_note({"toneId": "warm"})
        assert info.has_filter
        flt = backend.nodes_of("biquad")[-1]
        assert flt.frequency.value_at(0.0) == 800.0
        assert flt.Q.value_at(0.0) == 3.0

        engine.play_note(
            {
                "toneId": "lead",
                "fx": {"flt": {"type": "highpass", "from": 200, "to": 2000, "time": 1, "curve": "exp"}},
            }
        )
        swept = backend.nodes_of("biquad")[-1]
        assert swept.type == "highpass"
        assert swept.frequency.value_at(0.5) == pytest.approx(200 * 10**0.5)

    def test_pitch_sweep_in_cents_and_hz(self) -> None:
        engine, backend = _engine()
        engine.play_note({"toneId": "lead", "fx": {"pitch": {"from": -1200, "to": 0, "time": 0.1}}})
        osc = backend.nodes_of("oscillator")[-1]
        assert osc.detune.value_at(0.05) == pytest.approx(-600.0)
        engine.play_note(
            {"toneId": "lead", "hz": 100, "fx": {"pitch": {"mode": "hz", "to": 400, "time": 1, "curve": "exp"}}}
        )
        osc = backend.nodes_of("oscillator")[-1]
        assert osc.frequency.value_at(0.5) == pytest.approx(200.0)

    def test_vibrato_modulates_detune(self) -> None:
        engine, backend = _engine()
        engine.play_note(
            {"toneId": "lead", "dSec": 1, "fx": {"vib": {"rate": 6, "depth": 30, "attack": 0}}}
        )
        lfo = backend.nodes_of("oscillator")[-1]
        carrier = backend.nodes_of("oscillator")[-2]
        depth = lfo.outputs[0]
        assert lfo.frequency.value_at(0.0) == 6.0
        assert depth.outputs == [carrier.detune]
        assert depth.gain.value_at(0.5) == 30.0
        assert lfo.stop_time == carrier.stop_time

    def test_noise_ignores_pitch_fx(self) -> None:
        engine, backend = _engine()
        engine.play_note({"toneId": "hat", "fx": {"pitch": {"to": 1200, "time": 0.1}, "vib": {"depth": 10}}})
        assert backend.nodes_of("oscillator") == []

    def test_pan_defaults_to_tone_and_is_clamped(self) -> None:
        engine, backend = _engine()
        engine.play_note({"toneId": "lead", "pan": 5})
        assert backend.nodes_of("stereo_panner")[-1].pan.value_at(0.0) == 1.0


class TestMixer:
    def test_master_gain_and_db(self) -> None:
        engine, _ = _engine()
        engine.set_master_db(-6)
        assert engine.master.gain.value == pytest.approx(linear_from_db(-6))
        engine.set_master_gain(-1)
        assert engine.master.gain.value == 0.0

    def test_buses_route_voices(self) -> None:
        engine, backend = _engine()
        assert engine.create_bus("drums", gain=0.5) == "drums"
        engine.set_bus_gain("drums", 0.25)
        info = engine.play_note({"toneId": "hat", "busKey": "drums"})
        assert info.bus_key == "drums"
        bus = engine.buses.get("drums")
        assert bus.gain.gain.value == 0.25
        assert backend.nodes_of("stereo_panner")[-1].outputs == [bus.gain]

    def test_crushed_tones_share_chain_by_default(self) -> None:
        engine, backend = _engine()
        engine.play_note({"toneId": "crushed"})
        engine.play_note({"toneId": "crushed"})
        assert len(backend.nodes_of("wave_shaper")) == 1
        assert len(backend.nodes_of("processor")) == 1

    def test_per_note_policy_builds_chain_each_trigger(self) -> None:
        engine, backend = _engine(bus_policy="per_note")
        engine.play_note({"toneId": "crushed"})
        engine.play_note({"toneId": "crushed"})
        assert len(backend.nodes_of("wave_shaper")) == 2

    def test_create_bus_with_invalid_crush(self) -> None:
        engine, _ = _engine()
        with pytest.raises(InvalidBankError):
            engine.create_bus("bad", crush={"bitDepth": "many"})


def test_stop_all_voices_defaults_to_short_delay() -> None:
    engine, backend = _engine()
    engine.play_note({"toneId": "lead", "dSec": 2})
    engine.play_note({"toneId": "hat", "dSec": 2})
    backend.advance(0.5)
    assert engine.stop_all_voices() == 2
    assert engine.voices.active_count == 0
    for source in [*backend.nodes_of("oscillator"), *backend.nodes_of("buffer_source")]:
        assert source.stop_time == pytest.approx(0.5 + STOP_ALL_DELAY_SEC)


def test_phrase_plays_through_pump() -> None:
    engine, backend = _engine()
    info = engine.play_phrase(
        {"tempo": 120, "events": [{"t": 0, "n": 60}, {"t": 1, "n": 64}]}, tone_id="lead"
    )
    assert info.event_count == 2
    engine.scheduler.pump()
    assert engine.voices.active_count == 1
    backend.advance(0.45)
    engine.scheduler.pump()
    assert len(backend.nodes_of("oscillator")) == 2
    assert backend.nodes_of("oscillator")[-1].start_time == pytest.approx(0.5)
