"""Public engine: banks, buses, armed state and note/phrase/song triggers."""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Mapping
from typing import Any, Literal

import numpy as np

from .backend import AudioBackend, GainNode
from .bus import MASTER_BUS, BusRouter
from .config import (
    CrushDef,
    EngineOptions,
    LoopWindow,
    NoteParams,
    Phrase,
    PhraseInfo,
    Song,
    ToneBank,
    ToneDef,
    VoiceInfo,
    WaveBank,
    coerce_crush,
    coerce_note_params,
    validate_banks,
)
from .envelope import DEFAULT_NOTE_SECONDS, MIN_NOTE_SECONDS, clamp, finite_or
from .errors import BankNotLoadedError, EngineNotArmedError, UnknownToneError
from .player import PhraseSongPlayer, SongHandle
from .scheduler import ClockScheduler
from .voice import VoiceRequest, build_voice
from .voice_manager import VoiceManager
from .waveforms import WaveformFactory

_LOGGER = logging.getLogger("sqaudio.engine")

EngineState = Literal["init", "running", "suspended", "closed"]

STOP_ALL_DELAY_SEC = 0.01


def note_to_hz(note: float) -> float:
    """Equal-tempered frequency of a MIDI note number (A4 = 69 = 440 Hz)."""
    return 440.0 * 2.0 ** ((float(note) - 69.0) / 12.0)


def linear_from_db(db: float) -> float:
    return 10.0 ** (float(db) / 20.0)


class AudioEngine:
    """Explicit engine instance; caches, buses and voices live as long as it does.

    Every audio-producing call requires the engine to be armed by :meth:`unlock`
    (or :meth:`resume` after :meth:`suspend`). External calls and the scheduler
    pump are serialized by one re-entrant lock.
    """

    def __init__(
        self,
        backend: AudioBackend,
        options: EngineOptions | Mapping[str, Any] | None = None,
        *,
        rng: np.random.Generator | None = None,
    ) -> None:
        match options:
            case None:
                self.options = EngineOptions()
            case EngineOptions():
                self.options = options
            case _:
                self.options = EngineOptions.model_validate(options)

        self.backend = backend
        self._lock = threading.RLock()
        self._state: EngineState = "init"
        self._hidden = False

        self.master: GainNode = backend.create_gain()
        self.master.gain.value = self.options.master_gain
        self.master.connect(backend.destination)

        self.waveforms = WaveformFactory(backend, rng=rng)
        self.buses = BusRouter(backend, self.waveforms, self.master, policy=self.options.bus_policy)
        self.buses.create(MASTER_BUS)

        self.tone_bank: ToneBank | None = None
        self.wave_bank: WaveBank | None = None

        self.scheduler = ClockScheduler(
            lambda: self.backend.current_time,
            lookahead_sec=self.options.lookahead_sec,
            interval_ms=self.options.interval_ms,
            background=self.options.background_pump,
            guard=self._lock,
        )
        self.voices = VoiceManager(self.scheduler)
        self.player = PhraseSongPlayer(
            self.scheduler,
            lambda: self.backend.current_time,
            self._trigger,
            self._check_targets,
            self.stop_all_voices,
            loop_lead_sec=self.options.loop_lead_sec,
        )
        _LOGGER.debug(
            "Engine created (sr=%d, lookahead=%.3fs, policy=%s)",
            backend.sample_rate,
            self.options.lookahead_sec,
            self.options.bus_policy,
        )

    # --- state -------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def armed(self) -> bool:
        return self._state == "running"

    @property
    def hidden(self) -> bool:
        return self._hidden

    @property
    def current_time(self) -> float:
        return self.backend.current_time

    def _require_armed(self) -> None:
        if self._state != "running":
            raise EngineNotArmedError(f"engine is {self._state}; call unlock() first")

    # --- lifecycle ---------------------------------------------------------

    def unlock(self) -> bool:
        with self._lock:
            if self._state == "closed":
                raise EngineNotArmedError("engine is closed")
            if self.backend.state != "running":
                self.backend.resume()
            self._state = "running"
            if not self._hidden:
                self._start_pump()
            _LOGGER.info("Engine unlocked at %.4f", self.backend.current_time)
            return True

    def suspend(self) -> None:
        with self._lock:
            self.scheduler.stop()
            if self._state != "closed":
                self._state = "suspended"
            self.backend.suspend()

    def resume(self) -> None:
        with self._lock:
            if self._state == "closed":
                raise EngineNotArmedError("engine is closed")
            self.backend.resume()
            self._state = "running"
            if not self._hidden:
                self._start_pump()

    def set_hidden(self, hidden: bool) -> None:
        """Visibility hook: hiding stops the pump, showing restarts it and re-arms loops."""
        with self._lock:
            self._hidden = hidden
            if hidden:
                self.scheduler.stop()
            elif self._state == "running":
                self._start_pump()

    def _start_pump(self) -> None:
        """Start the scheduler; a restart restores cleanup and loop continuation."""
        if self.scheduler.running:
            return
        self.scheduler.start()
        self.voices.rearm_cleanups(self.backend.current_time)
        self.player.resume_loops()

    def close(self) -> None:
        with self._lock:
            if self._state == "closed":
                return
            self.voices.stop_all(self.backend.current_time)
            self.scheduler.stop()
            self.backend.suspend()
            self._state = "closed"
        self.scheduler.join()

    # --- mixer -------------------------------------------------------------

    def create_bus(
        self,
        key: str,
        gain: float = 1.0,
        pan: float = 0.0,
        crush: CrushDef | Mapping[str, Any] | None = None,
    ) -> str:
        with self._lock:
            self.buses.create(key, gain=gain, pan=pan, crush=coerce_crush(crush))
            return key

    def set_bus_gain(self, key: str, value: float) -> None:
        with self._lock:
            self.buses.set_gain(key, value)

    def set_master_gain(self, value: float) -> None:
        with self._lock:
            self.master.gain.value = max(0.0, finite_or(value, 1.0))

    def set_master_db(self, db: float) -> None:
        self.set_master_gain(linear_from_db(finite_or(db, 0.0)))

    # --- banks -------------------------------------------------------------

    def load_banks(
        self,
        tone_bank: ToneBank | Mapping[str, Any] | None = None,
        wave_bank: WaveBank | Mapping[str, Any] | None = None,
    ) -> None:
        """Validate both banks, then install; nothing is installed on error."""
        with self._lock:
            known = self.wave_bank.waves if self.wave_bank is not None else None
            tones, waves = validate_banks(tone_bank, wave_bank, known_waves=known)
            if waves is not None:
                self.waveforms.load_wave_bank(waves.waves)
                self.wave_bank = waves
            if tones is not None:
                self.tone_bank = tones
            _LOGGER.info(
                "Banks loaded: %d tones, %d waves",
                len(self.tone_bank.tones) if self.tone_bank else 0,
                len(self.wave_bank.waves) if self.wave_bank else 0,
            )

    def _tone(self, tone_id: str) -> ToneDef:
        if self.tone_bank is None:
            raise BankNotLoadedError("toneBank not loaded")
        tone = self.tone_bank.tones.get(tone_id)
        if tone is None:
            raise UnknownToneError(f"Unknown toneId: {tone_id}")
        return tone

    def _check_targets(self, tone_id: str, bus_key: str) -> None:
        self._tone(tone_id)
        self.buses.get(bus_key)

    # --- notes -------------------------------------------------------------

    def play_note(self, params: NoteParams | Mapping[str, Any]) -> VoiceInfo:
        note = coerce_note_params(params)
        with self._lock:
            self._require_armed()
            return self._trigger(note)

    def _trigger(self, note: NoteParams) -> VoiceInfo:
        with self._lock:
            tone = self._tone(note.tone_id)
            bus_key = note.bus_key or MASTER_BUS
            self.buses.get(bus_key)

            now = self.backend.current_time
            t0 = max(now, finite_or(note.t0, now))
            if note.hz is not None and math.isfinite(note.hz):
                hz = note.hz
            else:
                hz = note_to_hz(finite_or(note.n, 69.0))

            mono_key: str | None = None
            if tone.mono != "poly":
                mono_key = note.mono_key or note.tone_id
                self.voices.steal(
                    mono_key, mode=tone.mono, mono_cut_ms=tone.mono_cut_ms, now=now, onset=t0
                )

            request = VoiceRequest(
                voice_id=self.voices.next_voice_id(),
                tone_id=note.tone_id,
                bus_key=bus_key,
                t0=t0,
                d_sec=max(MIN_NOTE_SECONDS, finite_or(note.d_sec, DEFAULT_NOTE_SECONDS)),
                hz=hz,
                velocity=clamp(note.v, 0.0, 1.0, default=1.0),
                pan=clamp(note.pan if note.pan is not None else tone.pan, -1.0, 1.0, default=0.0),
                fx=note.fx,
                mono_key=mono_key,
            )
            destination = self.buses.input_for(bus_key, tone.crush)
            voice = build_voice(self.backend, self.waveforms, tone, request, destination)
            self.voices.register(voice)
            return voice.info()

    def play_phrase(
        self,
        phrase: Phrase | Mapping[str, Any] | None,
        *,
        tempo: float | None = None,
        bus_key: str | None = None,
        tone_id: str | None = None,
        start_time: float | None = None,
    ) -> PhraseInfo:
        with self._lock:
            self._require_armed()
            return self.player.play_phrase(
                phrase, tempo=tempo, bus_key=bus_key, tone_id=tone_id, start_time=start_time
            )

    def play_song(
        self,
        song: Song | Mapping[str, Any] | None,
        *,
        tempo: float | None = None,
        start_time: float | None = None,
        loop: LoopWindow | Mapping[str, Any] | None = None,
        loop_clamp: bool = True,
        loop_lead_sec: float | None = None,
    ) -> SongHandle:
        with self._lock:
            self._require_armed()
            return self.player.play_song(
                song,
                tempo=tempo,
                start_time=start_time,
                loop=loop,
                loop_clamp=loop_clamp,
                loop_lead_sec=loop_lead_sec,
            )

    def stop_all_voices(self, at_time: float | None = None) -> int:
        with self._lock:
            when = at_time if at_time is not None else self.backend.current_time + STOP_ALL_DELAY_SEC
            return self.voices.stop_all(when)
