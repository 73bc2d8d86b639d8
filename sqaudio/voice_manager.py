from __future__ import annotations

import logging
import threading

from .config import MonoMode
from .scheduler import ClockScheduler
from .voice import Voice

_LOGGER = logging.getLogger("sqaudio.voice_manager")

DEFAULT_MONO_CUT_SEC = 0.012
MIN_CUT_SEC = 0.001
CLEANUP_TAIL_SEC = 0.10


def cut_seconds(mode: MonoMode, mono_cut_ms: float | None, old: Voice) -> float:
    """Fade length when ``old`` is stolen: explicit cut, else mono default or softMono release."""
    if mono_cut_ms is not None and mono_cut_ms >= 0:
        return max(MIN_CUT_SEC, mono_cut_ms / 1000.0)
    if mode == "softMono":
        return max(MIN_CUT_SEC, old.release_sec)
    return DEFAULT_MONO_CUT_SEC


class VoiceManager:
    """Live voice registry with mono slots. Cleanup is a scheduled action per voice."""

    def __init__(self, scheduler: ClockScheduler) -> None:
        self._scheduler = scheduler
        self._lock = threading.RLock()
        self._voices: dict[int, Voice] = {}
        self._mono: dict[str, Voice] = {}
        self._next_id = 1

    def next_voice_id(self) -> int:
        with self._lock:
            voice_id = self._next_id
            self._next_id += 1
            return voice_id

    @property
    def active_count(self) -> int:
        return len(self._voices)

    def voices(self) -> list[Voice]:
        with self._lock:
            return list(self._voices.values())

    def mono_voice(self, key: str) -> Voice | None:
        return self._mono.get(key)

    def mono_keys(self) -> list[str]:
        with self._lock:
            return list(self._mono)

    def steal(
        self,
        key: str,
        *,
        mode: MonoMode,
        mono_cut_ms: float | None,
        now: float,
        onset: float,
    ) -> Voice | None:
        """Release the voice holding ``key`` so it is silent by ``onset`` when possible."""
        with self._lock:
            old = self._mono.pop(key, None)
        if old is None:
            return None
        cut = cut_seconds(mode, mono_cut_ms, old)
        # Fade ends no later than max(now + cut, onset).
        fade_start = max(now, onset - cut)
        fade_end = fade_start + cut
        if fade_start < old.t0:
            # The old note would start inside the fade, so it is dropped.
            old.silence(now)
            _LOGGER.debug("Mono key %r: pending voice %d dropped", key, old.voice_id)
        elif old.t_release <= fade_start:
            _LOGGER.debug("Mono key %r: voice %d already finished", key, old.voice_id)
        else:
            old.cut(fade_start, fade_end)
            _LOGGER.debug(
                "Mono key %r: voice %d fades %.4f..%.4f", key, old.voice_id, fade_start, fade_end
            )
        return old

    def register(self, voice: Voice) -> None:
        with self._lock:
            self._voices[voice.voice_id] = voice
            if voice.mono_key is not None:
                self._mono[voice.mono_key] = voice
        self._schedule_cleanup(voice)

    def _schedule_cleanup(self, voice: Voice) -> None:
        self._scheduler.schedule(
            voice.t_release + CLEANUP_TAIL_SEC, lambda _t, v=voice: self._cleanup(v)
        )

    def rearm_cleanups(self, now: float) -> int:
        """Restore cleanup actions after the scheduler dropped its queue.

        Voices already past their tail are removed at once; return how many.
        """
        swept = 0
        for voice in self.voices():
            if voice.t_release + CLEANUP_TAIL_SEC <= now:
                self._cleanup(voice)
                swept += 1
            else:
                self._schedule_cleanup(voice)
        if swept:
            _LOGGER.debug("Swept %d finished voices at %.4f", swept, now)
        return swept

    def _cleanup(self, voice: Voice) -> None:
        with self._lock:
            if self._voices.get(voice.voice_id) is voice:
                del self._voices[voice.voice_id]
            key = voice.mono_key
            # Compare-before-delete: a newer occupant of the slot stays.
            if key is not None and self._mono.get(key) is voice:
                del self._mono[key]

    def stop_all(self, at_time: float) -> int:
        with self._lock:
            voices = list(self._voices.values())
            self._voices.clear()
            self._mono.clear()
        for voice in voices:
            voice.stop(at_time)
        if voices:
            _LOGGER.debug("Hard-stopped %d voices at %.4f", len(voices), at_time)
        return len(voices)
