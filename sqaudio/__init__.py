from __future__ import annotations

from .audio import SAMPLE_RATE, write_wav
from .backend import AudioBackend, AudioParam
from .bus import MASTER_BUS
from .config import (
    CrushDef,
    EngineOptions,
    Envelope,
    FilterDef,
    LoopWindow,
    NoteFx,
    NoteParams,
    OscDef,
    Phrase,
    PhraseEvent,
    PhraseInfo,
    Song,
    SongTrack,
    ToneBank,
    ToneDef,
    VoiceInfo,
    WaveBank,
    validate_banks,
)
from .engine import AudioEngine, linear_from_db, note_to_hz
from .errors import (
    BankNotLoadedError,
    EngineNotArmedError,
    InvalidBankError,
    InvalidNoteError,
    InvalidSongError,
    SQAudioError,
    UnknownBusError,
    UnknownToneError,
)
from .logging_utils import configure_logging as _configure_logging
from .offline import OfflineBackend, render_engine, render_to_wav
from .player import SongHandle
from .virtual import VirtualBackend

__all__ = [
    "SAMPLE_RATE",
    "MASTER_BUS",
    "AudioBackend",
    "AudioEngine",
    "AudioParam",
    "BankNotLoadedError",
    "CrushDef",
    "EngineNotArmedError",
    "EngineOptions",
    "Envelope",
    "FilterDef",
    "InvalidBankError",
    "InvalidNoteError",
    "InvalidSongError",
    "LoopWindow",
    "NoteFx",
    "NoteParams",
    "OfflineBackend",
    "OscDef",
    "Phrase",
    "PhraseEvent",
    "PhraseInfo",
    "SQAudioError",
    "Song",
    "SongHandle",
    "SongTrack",
    "ToneBank",
    "ToneDef",
    "UnknownBusError",
    "UnknownToneError",
    "VirtualBackend",
    "VoiceInfo",
    "WaveBank",
    "linear_from_db",
    "note_to_hz",
    "render_engine",
    "render_to_wav",
    "validate_banks",
    "write_wav",
]

__version__ = "0.1.0"

_configure_logging()
del _configure_logging
