"""Beat-relative phrases and songs -> absolute-time note triggers."""

from __future__ import annotations

import itertools
import logging
import math
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .config import (
    LoopWindow,
    NoteParams,
    Phrase,
    PhraseEvent,
    PhraseInfo,
    Song,
    coerce_loop,
    coerce_phrase,
    coerce_song,
)
from .envelope import finite_or
from .scheduler import ClockScheduler

_LOGGER = logging.getLogger("sqaudio.player")

DEFAULT_TEMPO = 120.0
DEFAULT_BEATS = 0.25
MIN_NOTE_SECONDS = 0.001
DEFAULT_BUS = "master"

Trigger = Callable[[NoteParams], object]
TargetCheck = Callable[[str, str], None]
StopVoices = Callable[[float | None], object]

_song_ids = itertools.count(1)


def beat_seconds(tempo: float | None) -> float:
    return 60.0 / max(1.0, finite_or(tempo, DEFAULT_TEMPO))


@dataclass(frozen=True, slots=True)
class BeatWindow:
    """Half-open beat range; ``clamp`` clips notes crossing ``end``."""

    start: float
    end: float
    clamp: bool = False

    def contains(self, beat: float) -> bool:
        return self.start <= beat < self.end


def expand_events(
    events: Iterable[PhraseEvent],
    *,
    base_time: float,
    beat_sec: float,
    tone_id: str | None,
    bus_key: str,
    window: BeatWindow | None = None,
    origin_beat: float = 0.0,
    mono_key: str | None = None,
) -> tuple[list[NoteParams], int]:
    """Return note triggers for ``events`` and the number skipped for lacking a tone.

    Event beat ``b`` lands at ``base_time + (b - origin_beat) * beat_sec``.
    """
    notes: list[NoteParams] = []
    skipped = 0
    for event in events:
        beat = finite_or(event.t, 0.0)
        if window is not None and not window.contains(beat):
            continue
        beats = finite_or(event.d, DEFAULT_BEATS)
        if window is not None and window.clamp and math.isfinite(window.end):
            if beat + beats > window.end:
                beats = window.end - beat
                if beats <= 0.0:
                    continue
        tone = event.tone_id or tone_id
        if not tone:
            skipped += 1
            continue
        notes.append(
            NoteParams(
                toneId=tone,
                n=event.n,
                hz=event.hz,
                v=finite_or(event.v, 1.0),
                t0=base_time + (beat - origin_beat) * beat_sec,
                dSec=max(MIN_NOTE_SECONDS, beats * beat_sec),
                busKey=event.bus_key or bus_key,
                pan=event.pan,
                fx=event.fx,
                monoKey=mono_key,
            )
        )
    return notes, skipped


class SongHandle:
    """Stoppable handle for a playing song."""

    def __init__(
        self,
        song_id: str,
        stop_voices: StopVoices,
        *,
        loop_start_time: float | None = None,
        loop_len_sec: float | None = None,
    ) -> None:
        self.song_id = song_id
        self.loop_start_time = loop_start_time
        self.loop_len_sec = loop_len_sec
        self.iterations_scheduled = 0
        # Bumped when continuation is re-armed; older chains see a stale value and end.
        self.epoch = 0
        self._stop_voices = stop_voices
        self._stopped = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    @property
    def looping(self) -> bool:
        return self.loop_len_sec is not None

    def iteration_start(self, index: int) -> float:
        """Start time of loop iteration ``index`` (integer multiple, no accumulation)."""
        if self.loop_start_time is None or self.loop_len_sec is None:
            raise ValueError(f"{self.song_id} has no loop window")
        return self.loop_start_time + index * self.loop_len_sec

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        self._stop_voices(None)
        _LOGGER.debug("Stopped %s after %d loop iterations", self.song_id, self.iterations_scheduled)

    def __repr__(self) -> str:
        state = "stopped" if self.stopped else "playing"
        return f"<SongHandle {self.song_id} {state}>"


class PhraseSongPlayer:
    def __init__(
        self,
        scheduler: ClockScheduler,
        clock: Callable[[], float],
        trigger: Trigger,
        check_targets: TargetCheck,
        stop_voices: StopVoices,
        *,
        loop_lead_sec: float = 6.0,
    ) -> None:
        self._scheduler = scheduler
        self._clock = clock
        self._trigger = trigger
        self._check_targets = check_targets
        self._stop_voices = stop_voices
        self.loop_lead_sec = loop_lead_sec
        self._lock = threading.Lock()
        self._loops: list[tuple[SongHandle, Callable[[float], int]]] = []

    @property
    def active_loops(self) -> list[SongHandle]:
        with self._lock:
            return [handle for handle, _ in self._loops if not handle.stopped]

    def resume_loops(self) -> int:
        """Re-arm loop continuation after the scheduler dropped its queue.

        Each live loop resumes at the first integer-indexed iteration starting
        beyond the lookahead horizon, so nothing already triggered plays twice.
        """
        horizon = self._clock() + self._scheduler.lookahead_sec
        with self._lock:
            self._loops = [entry for entry in self._loops if not entry[0].stopped]
            loops = list(self._loops)
        for handle, rearm in loops:
            index = rearm(horizon)
            _LOGGER.debug("%s: loop resumed at iteration %d", handle.song_id, index)
        return len(loops)

    def _validate(self, notes: Iterable[NoteParams]) -> None:
        seen: set[tuple[str, str]] = set()
        for note in notes:
            pair = (note.tone_id, note.bus_key or DEFAULT_BUS)
            if pair not in seen:
                seen.add(pair)
                self._check_targets(*pair)

    def _enqueue(self, notes: Iterable[NoteParams], handle: SongHandle | None = None) -> None:
        for note in notes:
            self._scheduler.schedule(note.t0 or 0.0, self._make_action(note, handle))

    def _make_action(self, note: NoteParams, handle: SongHandle | None) -> Callable[[float], None]:
        def _fire(_target: float) -> None:
            if handle is not None and handle.stopped:
                return
            self._trigger(note)

        return _fire

    def play_phrase(
        self,
        phrase: Phrase | Mapping[str, Any] | None,
        *,
        tempo: float | None = None,
        bus_key: str | None = None,
        tone_id: str | None = None,
        start_time: float | None = None,
    ) -> PhraseInfo:
        parsed = coerce_phrase(phrase)
        bpm = max(1.0, finite_or(tempo if tempo is not None else parsed.tempo, DEFAULT_TEMPO))
        start = finite_or(start_time, self._clock())
        notes, skipped = expand_events(
            parsed.events,
            base_time=start,
            beat_sec=beat_seconds(bpm),
            tone_id=tone_id,
            bus_key=bus_key or DEFAULT_BUS,
        )
        if skipped:
            _LOGGER.warning("Skipped %d phrase events without a tone id", skipped)
        self._validate(notes)
        self._enqueue(notes)
        return PhraseInfo(start_time=start, tempo=bpm, event_count=len(parsed.events))

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
        parsed = coerce_song(song)
        window = coerce_loop(loop) if loop is not None else parsed.loop
        bpm = max(1.0, finite_or(tempo if tempo is not None else parsed.tempo, DEFAULT_TEMPO))
        beat_sec = beat_seconds(bpm)
        start = finite_or(start_time, self._clock())
        song_id = f"song_{next(_song_ids)}"

        def _expand(
            base_time: float, beat_window: BeatWindow | None, origin_beat: float
        ) -> list[NoteParams]:
            notes: list[NoteParams] = []
            skipped = 0
            for track in parsed.tracks:
                expanded, missing = expand_events(
                    track.events,
                    base_time=base_time,
                    beat_sec=beat_sec,
                    tone_id=track.tone_id,
                    bus_key=track.bus_key or DEFAULT_BUS,
                    window=beat_window,
                    origin_beat=origin_beat,
                    mono_key=track.id,
                )
                notes.extend(expanded)
                skipped += missing
            if skipped:
                _LOGGER.warning("%s: skipped %d events without a tone id", song_id, skipped)
            return notes

        if window is None:
            handle = SongHandle(song_id, self._stop_voices)
            notes = _expand(start, None, 0.0)
            self._validate(notes)
            self._enqueue(notes, handle)
            return handle

        loop_window = BeatWindow(window.start, window.end, clamp=loop_clamp)
        loop_start_time = start + window.start * beat_sec
        loop_len_sec = (window.end - window.start) * beat_sec
        handle = SongHandle(
            song_id,
            self._stop_voices,
            loop_start_time=loop_start_time,
            loop_len_sec=loop_len_sec,
        )
        prologue = _expand(start, BeatWindow(-math.inf, window.start), 0.0)
        epilogue = _expand(start, BeatWindow(window.end, math.inf), 0.0)
        first = _expand(loop_start_time, loop_window, window.start)
        self._validate([*prologue, *epilogue, *first])
        self._enqueue(prologue, handle)
        self._enqueue(epilogue, handle)
        self._enqueue(first, handle)
        handle.iterations_scheduled = 1

        lead = max(0.0, finite_or(loop_lead_sec, self.loop_lead_sec))

        def _continue(index: int, epoch: int) -> None:
            iteration_time = handle.iteration_start(index)

            def _schedule_next(_target: float) -> None:
                if handle.stopped or handle.epoch != epoch:
                    return
                self._enqueue(_expand(iteration_time, loop_window, window.start), handle)
                handle.iterations_scheduled = max(handle.iterations_scheduled, index + 1)
                _continue(index + 1, epoch)

            self._scheduler.schedule(iteration_time - lead, _schedule_next)

        def _rearm(horizon: float) -> int:
            index = max(0, math.floor((horizon - loop_start_time) / loop_len_sec) + 1)
            handle.epoch += 1
            _continue(index, handle.epoch)
            return index

        _continue(1, handle.epoch)
        with self._lock:
            self._loops.append((handle, _rearm))
        _LOGGER.debug(
            "%s: loop [%s, %s) beats, %.4fs per iteration", song_id, window.start, window.end,
            handle.loop_len_sec,
        )
        return handle
