"""Envelope and modulation automation planning.

Plans are pure data (``AutomationStep`` tuples) computed before anything touches
the backend, so every level and time can be checked for finiteness up front and
the same plan can be evaluated without a backend.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal

import numpy as np

from .backend import AudioParam
from .config import CurveKind, Envelope

StepKind = Literal["set", "linear", "exp"]

ENVELOPE_FLOOR = 1e-4
MIN_LEVEL = 2e-4
DEFAULT_NOTE_SECONDS = 0.25
MIN_NOTE_SECONDS = 0.001

DEFAULT_ADSR: Mapping[str, float] = MappingProxyType(
    {"attack": 0.005, "decay": 0.03, "sustain": 0.7, "release": 0.06}
)
ATTACK_RANGE = (0.001, 4.0)
DECAY_RANGE = (0.001, 4.0)
RELEASE_RANGE = (0.001, 6.0)


def finite_or(value: float | None, default: float) -> float:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def clamp(value: float | None, lo: float, hi: float, default: float | None = None) -> float:
    """Clamp ``value``; non-finite input falls back to ``default`` (or ``lo``)."""
    number = finite_or(value, default if default is not None else lo)
    return max(lo, min(hi, number))


def exp_at(v0: float, v1: float, t0: float, t1: float, t: float, floor: float = ENVELOPE_FLOOR) -> float:
    """Value of an exponential ramp v0@t0 -> v1@t1 at time t: ``a * (b/a) ** p``."""
    if not t1 > t0:
        return v1
    p = min(1.0, max(0.0, (t - t0) / (t1 - t0)))
    a = max(floor, v0)
    b = max(floor, v1)
    return a * (b / a) ** p


def peak_level(base_gain: float | None, velocity: float | None) -> float:
    gain = finite_or(base_gain, 0.8)
    vel = clamp(velocity, 0.0, 1.0, default=1.0)
    return max(MIN_LEVEL, gain * vel)


@dataclass(frozen=True, slots=True)
class AutomationStep:
    kind: StepKind
    value: float
    time: float


def apply_steps(param: AudioParam, steps: Sequence[AutomationStep]) -> None:
    for step in steps:
        match step.kind:
            case "set":
                param.set_value_at_time(step.value, step.time)
            case "linear":
                param.linear_ramp_to_value_at_time(step.value, step.time)
            case "exp":
                param.exponential_ramp_to_value_at_time(step.value, step.time)


def evaluate_steps(steps: Sequence[AutomationStep], t: float, initial: float = 0.0) -> float:
    """Value of a step timeline at ``t`` (same rules the backend applies)."""
    prev_time = 0.0
    prev_value = initial
    for step in steps:
        if step.time <= t:
            prev_time, prev_value = step.time, step.value
            continue
        match step.kind:
            case "set":
                return prev_value
            case "linear":
                p = (t - prev_time) / (step.time - prev_time)
                return prev_value + (step.value - prev_value) * p
            case "exp":
                if prev_value <= 0.0 or step.value <= 0.0:
                    return prev_value
                return exp_at(prev_value, step.value, prev_time, step.time, t, floor=0.0)
    return prev_value


@dataclass(frozen=True, slots=True)
class AdsrSettings:
    attack: float
    decay: float
    sustain: float
    release: float

    @classmethod
    def from_envelope(cls, env: Envelope | None) -> "AdsrSettings":
        attack = env.attack if env is not None else None
        decay = env.decay if env is not None else None
        sustain = env.sustain if env is not None else None
        release = env.release if env is not None else None
        return cls(
            attack=clamp(attack, *ATTACK_RANGE, default=DEFAULT_ADSR["attack"]),
            decay=clamp(decay, *DECAY_RANGE, default=DEFAULT_ADSR["decay"]),
            sustain=clamp(sustain, 0.0, 1.0, default=DEFAULT_ADSR["sustain"]),
            release=clamp(release, *RELEASE_RANGE, default=DEFAULT_ADSR["release"]),
        )


@dataclass(frozen=True, slots=True)
class EnvelopePlan:
    t0: float
    t_attack: float
    t_decay: float
    t_off: float
    t_release: float
    peak: float
    sustain_level: float
    level_at_off: float
    early_release: bool
    steps: tuple[AutomationStep, ...]

    def apply(self, param: AudioParam) -> None:
        apply_steps(param, self.steps)

    def level_at(self, t: float) -> float:
        return evaluate_steps(self.steps, t, initial=ENVELOPE_FLOOR)


def plan_envelope(t0: float, duration: float | None, settings: AdsrSettings, peak: float) -> EnvelopePlan:
    """Exponential ADSR that stays continuous when note-off lands mid-attack or mid-decay."""
    seconds = max(MIN_NOTE_SECONDS, finite_or(duration, DEFAULT_NOTE_SECONDS))
    peak = max(MIN_LEVEL, finite_or(peak, MIN_LEVEL))
    t_attack = t0 + settings.attack
    t_decay = t_attack + settings.decay
    t_off = t0 + seconds
    t_release = t_off + settings.release
    sustain_level = max(MIN_LEVEL, peak * settings.sustain)

    steps: list[AutomationStep] = [AutomationStep("set", ENVELOPE_FLOOR, t0)]
    early = t_off <= t_decay
    if early:
        # Truncate the in-progress ramp at note-off on the level it has reached.
        if t_off <= t_attack:
            level = exp_at(ENVELOPE_FLOOR, peak, t0, t_attack, t_off)
        else:
            level = exp_at(peak, sustain_level, t_attack, t_decay, t_off)
            steps.append(AutomationStep("exp", peak, t_attack))
        level = max(ENVELOPE_FLOOR, level)
        steps.append(AutomationStep("exp", level, t_off))
    else:
        level = sustain_level
        steps.append(AutomationStep("exp", peak, t_attack))
        steps.append(AutomationStep("exp", sustain_level, t_decay))
        steps.append(AutomationStep("set", sustain_level, t_off))
    steps.append(AutomationStep("exp", ENVELOPE_FLOOR, t_release))

    return EnvelopePlan(
        t0=t0,
        t_attack=t_attack,
        t_decay=t_decay,
        t_off=t_off,
        t_release=t_release,
        peak=peak,
        sustain_level=sustain_level,
        level_at_off=level,
        early_release=early,
        steps=tuple(steps),
    )


def plan_vibrato_depth(
    *,
    t0: float,
    t_off: float,
    t_release: float,
    depth: float,
    delay: float,
    attack: float,
    release: float,
) -> tuple[AutomationStep, ...]:
    """Linear depth envelope: 0 until delay, fade in, hold to note-off, fade out."""
    steps = [AutomationStep("set", 0.0, t0)]
    t_on = t0 + max(0.0, delay)
    if depth <= 0.0 or t_on >= t_off:
        return tuple(steps)
    steps.append(AutomationStep("set", 0.0, t_on))
    if attack > 0.0:
        t_peak = t_on + attack
        if t_peak <= t_off:
            level = depth
            steps.append(AutomationStep("linear", depth, t_peak))
        else:
            level = depth * (t_off - t_on) / attack
            steps.append(AutomationStep("linear", level, t_off))
    else:
        level = depth
        steps.append(AutomationStep("set", depth, t_on))
    steps.append(AutomationStep("set", level, t_off))
    t_rel = min(t_release, t_off + max(0.0, release))
    if t_rel > t_off:
        steps.append(AutomationStep("linear", 0.0, t_rel))
    else:
        steps.append(AutomationStep("set", 0.0, t_off))
    return tuple(steps)


def apply_sweep(
    param: AudioParam,
    *,
    t0: float,
    base: float,
    start: float | None,
    end: float | None,
    seconds: float | None,
    curve: CurveKind,
    floor: float | None = None,
) -> None:
    """Optional start value, then a linear (or, for positive endpoints, exponential) ramp."""

    def _floored(x: float) -> float:
        return max(floor, x) if floor is not None else x

    if start is not None:
        param.set_value_at_time(_floored(start), t0)
    if end is None:
        return
    span = max(0.0, finite_or(seconds, 0.0))
    if span <= 0.0:
        param.set_value_at_time(_floored(end), t0)
        return
    origin = _floored(start) if start is not None else base
    target = _floored(end)
    if curve == "exp" and origin > 0.0 and target > 0.0:
        param.exponential_ramp_to_value_at_time(target, t0 + span)
    else:
        param.linear_ramp_to_value_at_time(target, t0 + span)


def envelope_curve(plan: EnvelopePlan, times: Sequence[float]) -> np.ndarray:
    """Vectorized :meth:`EnvelopePlan.level_at` (handy for plotting and checks)."""
    return np.asarray([plan.level_at(float(t)) for t in times], dtype=np.float64)
