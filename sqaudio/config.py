from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Annotated, Any, Literal, TypeVar, cast

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import InvalidBankError, InvalidNoteError, InvalidSongError

OscType = Literal["sine", "square", "triangle", "sawtooth", "noise", "wave"]
MonoMode = Literal["poly", "mono", "softMono"]
FilterType = Literal[
    "lowpass", "highpass", "bandpass", "notch", "peaking", "lowshelf", "highshelf", "allpass"
]
CurveKind = Literal["lin", "exp"]
PitchMode = Literal["cents", "hz"]
BusPolicy = Literal["shared", "per_note"]

_FILTER_TYPES: frozenset[str] = frozenset(
    ("lowpass", "highpass", "bandpass", "notch", "peaking", "lowshelf", "highshelf", "allpass")
)

M = TypeVar("M", bound=BaseModel)


def _lenient_number(value: object) -> float | None:
    """Coerce trigger numbers; anything unusable becomes None (=use default)."""
    match value:
        case None | bool():
            return None
        case int() | float():
            return float(value)
        case str():
            try:
                return float(value.strip())
            except ValueError:
                return None
        case _:
            return None


def _lenient_text(value: object) -> str | None:
    match value:
        case str() if value.strip():
            return value
        case _:
            return None


def _lenient_block(value: object) -> object:
    # Per-note fx blocks that are not objects are ignored rather than rejected.
    if isinstance(value, (Mapping, BaseModel)):
        return value
    return None


LenientFloat = Annotated[float | None, BeforeValidator(_lenient_number)]
LenientText = Annotated[str | None, BeforeValidator(_lenient_text)]


# -----------------------------------------------------------------------------
# Banks (strict: validated once at load time)
# -----------------------------------------------------------------------------


class _BankModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class OscDef(_BankModel):
    type: OscType
    wave_id: str | None = Field(default=None, alias="waveId")
    nibbles: str | None = None
    detune_cents: float = Field(default=0.0, alias="detuneCents")
    duty: float | None = None
    noise_rate: float | None = Field(default=None, alias="noiseRate")

    @model_validator(mode="after")
    def _check_wave_source(self) -> "OscDef":
        if self.type == "wave" and not self.wave_id and not (self.nibbles or "").strip():
            raise ValueError("osc.waveId (or osc.nibbles) required for type 'wave'")
        return self


class Envelope(_BankModel):
    """ADSR in seconds; sustain is a 0..1 level. Missing values use defaults."""

    attack: LenientFloat = Field(default=None, validation_alias=AliasChoices("attack", "a"))
    decay: LenientFloat = Field(default=None, validation_alias=AliasChoices("decay", "d"))
    sustain: LenientFloat = Field(default=None, validation_alias=AliasChoices("sustain", "s"))
    release: LenientFloat = Field(default=None, validation_alias=AliasChoices("release", "r"))


class FilterDef(_BankModel):
    type: FilterType = "lowpass"
    freq: float = 1200.0
    q: float | None = None
    gain: float | None = None


class CrushDef(_BankModel):
    """Bus FX chain parameters: HPF -> LPF -> SR crush -> bit depth."""

    hpf_hz: float = Field(default=20.0, alias="hpfHz")
    lpf_hz: float = Field(default=12_000.0, alias="lpfHz")
    bit_depth: int = Field(default=12, alias="bitDepth")
    sr_crush_hz: float | None = Field(default=None, alias="srCrushHz")


class ToneDef(_BankModel):
    osc: OscDef
    env: Envelope | None = None
    filter: FilterDef | None = None
    crush: CrushDef | None = None
    gain: float = 0.8
    pan: float = 0.0
    mono: MonoMode = "poly"
    mono_cut_ms: float | None = Field(default=None, alias="monoCutMs")


class ToneBank(_BankModel):
    meta: dict[str, Any] | None = None
    tones: dict[str, ToneDef]

    @field_validator("tones")
    @classmethod
    def _check_ids(cls, value: dict[str, ToneDef]) -> dict[str, ToneDef]:
        for tone_id in value:
            if not tone_id.strip():
                raise ValueError("tone id must be a non-empty string")
        return value


class WaveDef(_BankModel):
    real: list[float]
    imag: list[float] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_lengths(self) -> "WaveDef":
        if len(self.real) < 2:
            raise ValueError("real needs at least 2 coefficients")
        if self.imag and len(self.imag) != len(self.real):
            raise ValueError("imag must match real in length")
        return self


class WaveBank(_BankModel):
    meta: dict[str, Any] | None = None
    waves: dict[str, WaveDef]


# -----------------------------------------------------------------------------
# Phrase / song events (lenient: bad numbers fall back to defaults)
# -----------------------------------------------------------------------------


class _EventModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class PitchFx(_EventModel):
    mode: PitchMode = "cents"
    from_: LenientFloat = Field(default=None, alias="from")
    to: LenientFloat = None
    time: LenientFloat = None
    curve: CurveKind = "lin"

    @field_validator("mode", mode="before")
    @classmethod
    def _mode_or_default(cls, value: object) -> object:
        return "hz" if value == "hz" else "cents"

    @field_validator("curve", mode="before")
    @classmethod
    def _curve_or_default(cls, value: object) -> object:
        return "exp" if value == "exp" else "lin"


class VibratoFx(_EventModel):
    mode: PitchMode = "cents"
    rate: LenientFloat = None
    depth: LenientFloat = None
    delay: LenientFloat = None
    attack: LenientFloat = None
    release: LenientFloat = None

    @field_validator("mode", mode="before")
    @classmethod
    def _mode_or_default(cls, value: object) -> object:
        return "hz" if value == "hz" else "cents"


class FilterFx(_EventModel):
    type: LenientText = None
    q: LenientFloat = None
    gain: LenientFloat = None
    from_: LenientFloat = Field(default=None, alias="from")
    to: LenientFloat = None
    time: LenientFloat = None
    curve: CurveKind = "lin"

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str | None) -> str | None:
        return value if value in _FILTER_TYPES else None

    @field_validator("curve", mode="before")
    @classmethod
    def _curve_or_default(cls, value: object) -> object:
        return "exp" if value == "exp" else "lin"


class NoteFx(_EventModel):
    pitch: Annotated[PitchFx | None, BeforeValidator(_lenient_block)] = None
    vib: Annotated[VibratoFx | None, BeforeValidator(_lenient_block)] = None
    flt: Annotated[FilterFx | None, BeforeValidator(_lenient_block)] = None


LenientFx = Annotated[NoteFx | None, BeforeValidator(_lenient_block)]


class PhraseEvent(_EventModel):
    t: LenientFloat = None
    n: LenientFloat = None
    hz: LenientFloat = None
    d: LenientFloat = None
    v: LenientFloat = None
    tone_id: LenientText = Field(default=None, alias="toneId")
    bus_key: LenientText = Field(default=None, alias="busKey")
    pan: LenientFloat = None
    fx: LenientFx = None


class Phrase(_EventModel):
    tempo: LenientFloat = None
    events: list[PhraseEvent] = Field(default_factory=list)


class SongTrack(_EventModel):
    id: LenientText = None
    tone_id: LenientText = Field(default=None, alias="toneId")
    bus_key: LenientText = Field(default=None, alias="busKey")
    events: list[PhraseEvent] = Field(default_factory=list)


class LoopWindow(_EventModel):
    start: float
    end: float

    @model_validator(mode="after")
    def _check_window(self) -> "LoopWindow":
        if not (math.isfinite(self.start) and math.isfinite(self.end)):
            raise ValueError("loop start/end must be finite")
        if self.end <= self.start:
            raise ValueError("loop.end must be greater than loop.start")
        return self


class Song(_EventModel):
    tempo: LenientFloat = None
    tracks: list[SongTrack] = Field(default_factory=list)
    loop: LoopWindow | None = None


class NoteParams(_EventModel):
    """Arguments of a single note trigger."""

    tone_id: str = Field(alias="toneId")
    n: LenientFloat = None
    hz: LenientFloat = None
    v: LenientFloat = None
    t0: LenientFloat = None
    d_sec: LenientFloat = Field(default=None, alias="dSec")
    bus_key: LenientText = Field(default=None, alias="busKey")
    pan: LenientFloat = None
    fx: LenientFx = None
    mono_key: LenientText = Field(default=None, alias="monoKey")


# -----------------------------------------------------------------------------
# Engine options and return descriptors
# -----------------------------------------------------------------------------


class EngineOptions(BaseModel):
    lookahead_sec: float = Field(default=0.12, gt=0.0)
    interval_ms: float = Field(default=25.0, gt=0.0)
    master_gain: float = Field(default=1.0, ge=0.0)
    latency_hint: str = "interactive"
    bus_policy: BusPolicy = "shared"
    loop_lead_sec: float = Field(default=6.0, ge=0.0)
    background_pump: bool = True

    model_config = ConfigDict(frozen=True, extra="forbid")


class VoiceInfo(BaseModel):
    voice_id: int
    tone_id: str
    bus_key: str
    t0: float
    t_off: float
    t_release_end: float
    mono_key: str | None = None
    has_filter: bool = False

    model_config = ConfigDict(frozen=True, extra="forbid")


class PhraseInfo(BaseModel):
    start_time: float
    tempo: float
    event_count: int

    model_config = ConfigDict(frozen=True, extra="forbid")


# -----------------------------------------------------------------------------
# Validation entry points
# -----------------------------------------------------------------------------


def _format_errors(exc: ValidationError, root: str) -> list[str]:
    errors: list[str] = []
    for detail in exc.errors():
        loc = "/".join(str(part) for part in detail.get("loc", ()))
        path = f"{root}/{loc}" if loc else root
        errors.append(f"{path}: {detail.get('msg', 'invalid value')}")
    return errors


def _coerce_model(model: type[M], data: object, root: str) -> tuple[M | None, list[str]]:
    if isinstance(data, model):
        return data, []
    if not isinstance(data, Mapping):
        return None, [f"{root}: must be an object"]
    try:
        return model.model_validate(data), []
    except ValidationError as exc:
        return None, _format_errors(exc, root)


def validate_banks(
    tone_bank: object | None = None,
    wave_bank: object | None = None,
    *,
    known_waves: Mapping[str, object] | None = None,
) -> tuple[ToneBank | None, WaveBank | None]:
    """Validate both banks in one pass; raise InvalidBankError listing every problem."""
    errors: list[str] = []
    tones: ToneBank | None = None
    waves: WaveBank | None = None
    if tone_bank is not None:
        tones, tone_errors = _coerce_model(ToneBank, tone_bank, "/toneBank")
        errors.extend(tone_errors)
    if wave_bank is not None:
        waves, wave_errors = _coerce_model(WaveBank, wave_bank, "/waveBank")
        errors.extend(wave_errors)

    available: Mapping[str, object] | None = waves.waves if waves is not None else known_waves
    if tones is not None and available is not None:
        for tone_id, tone in tones.tones.items():
            wave_id = tone.osc.wave_id
            if tone.osc.type == "wave" and wave_id and wave_id not in available:
                errors.append(f"/toneBank/tones/{tone_id}/osc/waveId: unknown wave {wave_id!r}")

    if errors:
        raise InvalidBankError(errors)
    return tones, waves


def coerce_phrase(phrase: Phrase | Mapping[str, Any] | None) -> Phrase:
    if phrase is None:
        return Phrase()
    if isinstance(phrase, Phrase):
        return phrase
    try:
        return Phrase.model_validate(phrase)
    except ValidationError as exc:
        raise InvalidSongError("; ".join(_format_errors(exc, "/phrase"))) from exc


def coerce_song(song: Song | Mapping[str, Any] | None) -> Song:
    if song is None:
        return Song()
    if isinstance(song, Song):
        return song
    try:
        return Song.model_validate(song)
    except ValidationError as exc:
        raise InvalidSongError("; ".join(_format_errors(exc, "/song"))) from exc


def coerce_loop(loop: LoopWindow | Mapping[str, Any] | None) -> LoopWindow | None:
    if loop is None or isinstance(loop, LoopWindow):
        return loop
    try:
        return LoopWindow.model_validate(loop)
    except ValidationError as exc:
        raise InvalidSongError("; ".join(_format_errors(exc, "/loop"))) from exc


def coerce_note_params(params: NoteParams | Mapping[str, Any]) -> NoteParams:
    if isinstance(params, NoteParams):
        return params
    try:
        return NoteParams.model_validate(cast(Mapping[str, Any], params))
    except ValidationError as exc:
        raise InvalidNoteError("; ".join(_format_errors(exc, "/note"))) from exc


def coerce_crush(crush: CrushDef | Mapping[str, Any] | None) -> CrushDef | None:
    if crush is None or isinstance(crush, CrushDef):
        return crush
    crush_def, errors = _coerce_model(CrushDef, crush, "/crush")
    if errors:
        raise InvalidBankError(errors)
    return crush_def
