from __future__ import annotations

from collections.abc import Sequence


class SQAudioError(Exception):
    """Base error for the sqaudio engine."""


class InvalidBankError(SQAudioError):
    """Raised when a tone or wave bank fails validation."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors: list[str] = list(errors)
        summary = "; ".join(self.errors[:5])
        if len(self.errors) > 5:
            summary += f" (+{len(self.errors) - 5} more)"
        super().__init__(f"Invalid bank: {summary}")


class InvalidSongError(SQAudioError):
    """Raised when a phrase or song cannot be scheduled."""


class BankNotLoadedError(SQAudioError):
    """Raised when a note is triggered before a tone bank is installed."""


class UnknownToneError(SQAudioError):
    """Raised when a trigger references a tone id missing from the bank."""


class UnknownBusError(SQAudioError):
    """Raised when a trigger or mixer call references a missing bus."""


class EngineNotArmedError(SQAudioError):
    """Raised when audio is requested before unlock() resumed the backend."""


class InvalidNoteError(SQAudioError):
    """Raised when note trigger parameters cannot be parsed at all."""
