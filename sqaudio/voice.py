"""One sounding note: source -> (filter) -> envelope gain -> panner -> bus input."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .backend import (
    AudioBackend,
    AudioNode,
    BiquadFilterNode,
    GainNode,
    OscillatorNode,
    SourceNode,
    StereoPannerNode,
)
from .config import FilterDef, FilterFx, NoteFx, PitchFx, ToneDef, VibratoFx, VoiceInfo
from .envelope import (
    AdsrSettings,
    EnvelopePlan,
    apply_steps,
    apply_sweep,
    clamp,
    finite_or,
    peak_level,
    plan_envelope,
    plan_vibrato_depth,
)
from .waveforms import WaveformFactory, duty_key

_LOGGER = logging.getLogger("sqaudio.voice")

STOP_TAIL_SEC = 0.02
MIN_FILTER_HZ = 10.0
MIN_PITCH_HZ = 1.0
MIN_FILTER_Q = 1e-4
MIN_VIBRATO_RATE = 0.01


@dataclass(frozen=True, slots=True)
class VoiceRequest:
    """Sanitized trigger for a single voice."""

    voice_id: int
    tone_id: str
    bus_key: str
    t0: float
    d_sec: float
    hz: float
    velocity: float
    pan: float
    fx: NoteFx | None = None
    mono_key: str | None = None


def _safe_stop(node: SourceNode, when: float) -> None:
    try:
        node.stop(when)
    except Exception as exc:
        _LOGGER.debug("Ignoring stop failure on %r: %s", node, exc)


class Voice:
    def __init__(
        self,
        request: VoiceRequest,
        plan: EnvelopePlan,
        *,
        source: SourceNode,
        envelope: GainNode,
        panner: StereoPannerNode,
        filter_node: BiquadFilterNode | None = None,
        lfo: OscillatorNode | None = None,
        lfo_depth: GainNode | None = None,
    ) -> None:
        self.request = request
        self.plan = plan
        self.source = source
        self.envelope = envelope
        self.panner = panner
        self.filter_node = filter_node
        self.lfo = lfo
        self.lfo_depth = lfo_depth
        self.stopped_at: float | None = None

    @property
    def voice_id(self) -> int:
        return self.request.voice_id

    @property
    def mono_key(self) -> str | None:
        return self.request.mono_key

    @property
    def t0(self) -> float:
        return self.plan.t0

    @property
    def t_off(self) -> float:
        return self.plan.t_off

    @property
    def t_release(self) -> float:
        return self.plan.t_release

    @property
    def release_sec(self) -> float:
        return self.plan.t_release - self.plan.t_off

    def start(self) -> None:
        stop_at = self.plan.t_release + STOP_TAIL_SEC
        try:
            self.source.start(self.plan.t0)
            self.source.stop(stop_at)
            if self.lfo is not None:
                self.lfo.start(self.plan.t0)
                self.lfo.stop(stop_at)
        except Exception as exc:
            _LOGGER.debug("Voice %d start/stop failed: %s", self.voice_id, exc)

    def stop(self, when: float) -> None:
        """Hard stop: freeze the envelope at ``when`` and stop the sources."""
        try:
            self.envelope.gain.cancel_and_hold_at_time(when)
        except Exception as exc:
            _LOGGER.debug("Voice %d cancel failed: %s", self.voice_id, exc)
        _safe_stop(self.source, when)
        if self.lfo is not None:
            _safe_stop(self.lfo, when)
        self.stopped_at = when

    def cut(self, fade_start: float, fade_end: float) -> None:
        """Early release used by mono stealing: linear fade to silence, then stop."""
        gain = self.envelope.gain
        try:
            gain.cancel_and_hold_at_time(fade_start)
            gain.linear_ramp_to_value_at_time(0.0, fade_end)
        except Exception as exc:
            _LOGGER.debug("Voice %d fade failed: %s", self.voice_id, exc)
        stop_at = fade_end + STOP_TAIL_SEC
        _safe_stop(self.source, stop_at)
        if self.lfo is not None:
            _safe_stop(self.lfo, stop_at)
        self.stopped_at = stop_at

    def silence(self, now: float) -> None:
        """Drop a voice that has not started yet: it never sounds."""
        gain = self.envelope.gain
        try:
            gain.cancel_scheduled_values(now)
            gain.set_value_at_time(0.0, now)
        except Exception as exc:
            _LOGGER.debug("Voice %d silence failed: %s", self.voice_id, exc)
        stop_at = max(now, self.plan.t0)
        _safe_stop(self.source, stop_at)
        if self.lfo is not None:
            _safe_stop(self.lfo, stop_at)
        self.stopped_at = stop_at

    def info(self) -> VoiceInfo:
        return VoiceInfo(
            voice_id=self.voice_id,
            tone_id=self.request.tone_id,
            bus_key=self.request.bus_key,
            t0=self.plan.t0,
            t_off=self.plan.t_off,
            t_release_end=self.plan.t_release,
            mono_key=self.request.mono_key,
            has_filter=self.filter_node is not None,
        )


# -----------------------------------------------------------------------------
# Graph construction
# -----------------------------------------------------------------------------


def _build_source(
    backend: AudioBackend,
    waveforms: WaveformFactory,
    tone: ToneDef,
    request: VoiceRequest,
) -> tuple[SourceNode, OscillatorNode | None]:
    """Return the source and, for pitched tones, the oscillator to modulate."""
    osc = tone.osc
    if osc.type == "noise":
        buffer_source = backend.create_buffer_source()
        buffer_source.buffer = waveforms.noise_buffer(osc.noise_rate)
        buffer_source.loop = True
        return buffer_source, None

    node = backend.create_oscillator()
    match osc.type:
        case "wave":
            wave = waveforms.bank_wave(osc.wave_id) if osc.wave_id else None
            if wave is None and osc.nibbles:
                wave = waveforms.nibble_wave(osc.nibbles)
            if wave is not None:
                node.set_periodic_wave(wave)
            else:
                _LOGGER.warning("Tone %r: wave %r unavailable, using sine", request.tone_id, osc.wave_id)
                node.type = "sine"
        case "square" if osc.duty is not None and duty_key(osc.duty) != 0.5:
            node.set_periodic_wave(waveforms.pulse_wave(osc.duty))
        case _:
            node.type = osc.type

    if osc.detune_cents:
        node.detune.set_value_at_time(finite_or(osc.detune_cents, 0.0), request.t0)
    node.frequency.set_value_at_time(max(MIN_PITCH_HZ, request.hz), request.t0)
    return node, node


def _apply_pitch(node: OscillatorNode, pitch: PitchFx, request: VoiceRequest, detune: float) -> None:
    if pitch.mode == "hz":
        apply_sweep(
            node.frequency,
            t0=request.t0,
            base=max(MIN_PITCH_HZ, request.hz),
            start=pitch.from_,
            end=pitch.to,
            seconds=pitch.time,
            curve=pitch.curve,
            floor=MIN_PITCH_HZ,
        )
    else:
        apply_sweep(
            node.detune,
            t0=request.t0,
            base=detune,
            start=pitch.from_,
            end=pitch.to,
            seconds=pitch.time,
            curve=pitch.curve,
        )


def _build_vibrato(
    backend: AudioBackend,
    node: OscillatorNode,
    vib: VibratoFx,
    plan: EnvelopePlan,
) -> tuple[OscillatorNode, GainNode] | None:
    depth = max(0.0, finite_or(vib.depth, 0.0))
    if depth <= 0.0:
        return None
    rate = max(MIN_VIBRATO_RATE, finite_or(vib.rate, 5.0))
    lfo = backend.create_oscillator()
    lfo.type = "sine"
    lfo.frequency.set_value_at_time(rate, plan.t0)
    depth_gain = backend.create_gain()
    apply_steps(
        depth_gain.gain,
        plan_vibrato_depth(
            t0=plan.t0,
            t_off=plan.t_off,
            t_release=plan.t_release,
            depth=depth,
            delay=max(0.0, finite_or(vib.delay, 0.0)),
            attack=max(0.0, finite_or(vib.attack, 0.02)),
            release=max(0.0, finite_or(vib.release, 0.03)),
        ),
    )
    lfo.connect(depth_gain)
    depth_gain.connect(node.frequency if vib.mode == "hz" else node.detune)
    return lfo, depth_gain


def _build_filter(
    backend: AudioBackend,
    base: FilterDef | None,
    override: FilterFx | None,
    t0: float,
) -> BiquadFilterNode:
    node = backend.create_biquad_filter()
    base_freq = max(MIN_FILTER_HZ, finite_or(base.freq if base else None, 1200.0))
    node.type = base.type if base is not None else "lowpass"
    node.frequency.set_value_at_time(base_freq, t0)
    if base is not None and base.q is not None:
        node.Q.set_value_at_time(max(MIN_FILTER_Q, finite_or(base.q, 1.0)), t0)
    if base is not None and base.gain is not None:
        node.gain.set_value_at_time(finite_or(base.gain, 0.0), t0)

    if override is not None:
        if override.type:
            node.type = override.type
        if override.q is not None:
            node.Q.set_value_at_time(max(MIN_FILTER_Q, override.q), t0)
        if override.gain is not None:
            node.gain.set_value_at_time(override.gain, t0)
        apply_sweep(
            node.frequency,
            t0=t0,
            base=base_freq,
            start=override.from_,
            end=override.to,
            seconds=override.time,
            curve=override.curve,
            floor=MIN_FILTER_HZ,
        )
    return node


def build_voice(
    backend: AudioBackend,
    waveforms: WaveformFactory,
    tone: ToneDef,
    request: VoiceRequest,
    destination: AudioNode,
) -> Voice:
    """Wire one voice into ``destination`` and commit all of its automation."""
    plan = plan_envelope(
        request.t0,
        request.d_sec,
        AdsrSettings.from_envelope(tone.env),
        peak_level(tone.gain, request.velocity),
    )
    fx = request.fx

    envelope = backend.create_gain()
    plan.apply(envelope.gain)

    filter_node: BiquadFilterNode | None = None
    flt = fx.flt if fx is not None else None
    if tone.filter is not None or flt is not None:
        filter_node = _build_filter(backend, tone.filter, flt, request.t0)
        filter_node.connect(envelope)

    panner = backend.create_stereo_panner()
    panner.pan.set_value_at_time(clamp(request.pan, -1.0, 1.0, default=0.0), request.t0)
    envelope.connect(panner)
    panner.connect(destination)

    source, oscillator = _build_source(backend, waveforms, tone, request)
    lfo: OscillatorNode | None = None
    lfo_depth: GainNode | None = None
    if oscillator is not None and fx is not None:
        if fx.pitch is not None:
            _apply_pitch(oscillator, fx.pitch, request, finite_or(tone.osc.detune_cents, 0.0))
        if fx.vib is not None:
            built = _build_vibrato(backend, oscillator, fx.vib, plan)
            if built is not None:
                lfo, lfo_depth = built
    source.connect(filter_node if filter_node is not None else envelope)

    voice = Voice(
        request,
        plan,
        source=source,
        envelope=envelope,
        panner=panner,
        filter_node=filter_node,
        lfo=lfo,
        lfo_depth=lfo_depth,
    )
    voice.start()
    return voice
