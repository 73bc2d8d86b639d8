from __future__ import annotations

from typing import Any

import numpy as np
import pytest

from sqaudio import AudioEngine, EngineOptions, VirtualBackend
from sqaudio.voice_manager import CLEANUP_TAIL_SEC, DEFAULT_MONO_CUT_SEC

TONES: dict[str, Any] = {
    "tones": {
        "bass": {"osc": {"type": "triangle"}, "env": {"r": 0.05}, "mono": "mono"},
        "slow": {"osc": {"type": "triangle"}, "env": {"r": 0.05}, "mono": "mono", "monoCutMs": 40},
        "pad": {"osc": {"type": "sine"}, "env": {"r": 0.2}, "mono": "softMono"},
        "poly": {"osc": {"type": "sine"}},
        "drone": {"osc": {"type": "sine"}, "env": {"r": 0.3}, "mono": "softMono"},
    }
}


def _engine() -> tuple[AudioEngine, VirtualBackend]:
    backend = VirtualBackend()
    engine = AudioEngine(backend, EngineOptions(background_pump=False))
    engine.unlock()
    engine.load_banks(TONES)
    return engine, backend


def _envelope(backend: VirtualBackend, index: int) -> Any:
    return backend.nodes_of("stereo_panner")[index].inputs[0]


def test_mono_steal_silences_old_voice_by_new_onset() -> None:
    engine, backend = _engine()
    first = engine.play_note({"toneId": "bass", "dSec": 1})
    second = engine.play_note({"toneId": "bass", "t0": 0.5, "dSec": 1})
    assert first.mono_key == second.mono_key == "bass"

    old_env = _envelope(backend, 0)
    fade_start = 0.5 - DEFAULT_MONO_CUT_SEC
    assert old_env.gain.value_at(fade_start - 0.1) > 0.1
    assert old_env.gain.value_at(0.5) == pytest.approx(0.0, abs=1e-9)
    old_source = backend.nodes_of("oscillator")[0]
    assert old_source.stop_time == pytest.approx(0.52)

    assert engine.voices.mono_keys() == ["bass"]
    assert engine.voices.mono_voice("bass").voice_id == second.voice_id


def test_mono_cut_override() -> None:
    engine, backend = _engine()
    engine.play_note({"toneId": "slow", "dSec": 1})
    engine.play_note({"toneId": "slow", "dSec": 1})
    old_env = _envelope(backend, 0)
    # Onset is now, so the fade runs from now for the full cut.
    assert old_env.gain.value_at(0.02) > 0.0
    assert old_env.gain.value_at(0.04) == pytest.approx(0.0, abs=1e-9)
    assert backend.nodes_of("oscillator")[0].stop_time == pytest.approx(0.06)


def test_soft_mono_fades_over_old_release() -> None:
    engine, backend = _engine()
    engine.play_note({"toneId": "pad", "dSec": 2})
    engine.play_note({"toneId": "pad", "t0": 1.0, "dSec": 1})
    old_env = _envelope(backend, 0)
    assert old_env.gain.value_at(0.79) > 0.0
    assert old_env.gain.value_at(0.9) == pytest.approx(old_env.gain.value_at(0.8) / 2, rel=1e-6)
    assert old_env.gain.value_at(1.0) == pytest.approx(0.0, abs=1e-9)


def test_finished_voice_is_not_cut() -> None:
    engine, backend = _engine()
    engine.play_note({"toneId": "bass", "dSec": 0.1})
    engine.play_note({"toneId": "bass", "t0": 1.0})
    old_source = backend.nodes_of("oscillator")[0]
    assert old_source.stop_time == pytest.approx(0.1 + 0.05 + 0.02)


def test_mono_key_override_gives_separate_slots() -> None:
    engine, _ = _engine()
    engine.play_note({"toneId": "bass", "monoKey": "left"})
    engine.play_note({"toneId": "bass", "monoKey": "right"})
    assert sorted(engine.voices.mono_keys()) == ["left", "right"]


def test_poly_tones_never_steal() -> None:
    engine, backend = _engine()
    engine.play_note({"toneId": "poly", "dSec": 1})
    engine.play_note({"toneId": "poly", "dSec": 1})
    assert engine.voices.mono_keys() == []
    assert all(osc.stop_time == pytest.approx(1.08) for osc in backend.nodes_of("oscillator"))


def test_cleanup_keeps_newer_slot_occupant() -> None:
    engine, backend = _engine()
    engine.play_note({"toneId": "bass", "dSec": 1})
    second = engine.play_note({"toneId": "bass", "t0": 0.5, "dSec": 1})
    backend.advance(1.05 + CLEANUP_TAIL_SEC + 0.05)
    engine.scheduler.pump()
    assert engine.voices.active_count == 1
    assert engine.voices.mono_voice("bass").voice_id == second.voice_id

    backend.advance(1.0)
    engine.scheduler.pump()
    assert engine.voices.active_count == 0
    assert engine.voices.mono_keys() == []


def test_voice_ids_increase() -> None:
    engine, _ = _engine()
    ids = [engine.play_note({"toneId": "poly"}).voice_id for _ in range(3)]
    assert ids == sorted(ids)
    assert len(set(ids)) == 3


def test_stop_all_clears_slots() -> None:
    engine, _ = _engine()
    engine.play_note({"toneId": "bass"})
    engine.play_note({"toneId": "poly"})
    assert engine.voices.stop_all(0.0) == 2
    assert engine.voices.voices() == []
    assert engine.voices.mono_keys() == []
    assert engine.voices.stop_all(0.0) == 0


@pytest.mark.parametrize(
    ("tone_id", "second_t0"),
    [("drone", 1.1), ("bass", 1.005)],
)
def test_steal_before_onset_drops_pending_voice(tone_id: str, second_t0: float) -> None:
    engine, backend = _engine()
    engine.play_note({"toneId": tone_id, "t0": 1.0, "dSec": 0.1, "v": 0.1})
    engine.play_note({"toneId": tone_id, "t0": second_t0, "dSec": 0.5})

    old_env = _envelope(backend, 0)
    window = np.linspace(0.9, 1.6, 701)
    assert np.max(np.abs(old_env.gain.sample(window))) == pytest.approx(0.0, abs=1e-12)
    old_source = backend.nodes_of("oscillator")[0]
    assert old_source.stop_time == pytest.approx(1.0)
    assert not any(old_source.is_active(t) for t in window)

    new_env = _envelope(backend, 1)
    assert new_env.gain.value_at(second_t0 + 0.05) > 0.01
    assert engine.voices.mono_voice(tone_id).t0 == pytest.approx(second_t0)


def test_cleanup_survives_scheduler_restart() -> None:
    engine, backend = _engine()
    engine.play_note({"toneId": "bass", "dSec": 0.2})
    engine.play_note({"toneId": "poly", "dSec": 10})
    engine.set_hidden(True)
    assert engine.scheduler.pending == 0
    backend.advance(5.0)
    engine.set_hidden(False)
    assert engine.voices.active_count == 1
    assert engine.voices.mono_keys() == []
    assert engine.scheduler.pending == 1

    engine.suspend()
    backend.advance(10.0)
    engine.resume()
    assert engine.voices.active_count == 0
