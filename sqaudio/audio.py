from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path
from typing import Any, Callable, cast

import numpy as np
import soundfile as sf  # type: ignore[import]
from numpy.typing import NDArray

FloatArray = NDArray[np.float32]
AudioNumbers = NDArray[np.floating[Any]] | Sequence[float] | FloatArray

SAMPLE_RATE = 44_100


def ensure_audio_contract(
    audio: AudioNumbers,
    *,
    check_peak: bool = True,
) -> FloatArray:
    """Normalize dtype/shape: float32, mono ``(frames,)`` or ``(frames, channels)``.

    Peaks above full scale are scaled back into [-1, 1] unless ``check_peak`` is off.
    """

    data: FloatArray = np.asarray(audio, dtype=np.float32)
    if data.ndim != 2:
        data = data.reshape(-1)
    if data.size == 0:
        return data
    if not check_peak:
        return data
    peak = float(np.max(np.abs(data)))
    if peak > 1.0:
        data = data / peak
    return data


def iter_chunks(chunks: Iterable[AudioNumbers]) -> Iterator[FloatArray]:
    """Yield chunks that already respect the audio contract."""

    for chunk in chunks:
        yield ensure_audio_contract(chunk)


def _looks_like_samples(sequence: Sequence[object]) -> bool:
    match sequence:
        case []:
            return True
        case [int() | float() | np.floating(), *_]:
            return True
        case _:
            return False


def _channels(data: FloatArray) -> int:
    return int(data.shape[1]) if data.ndim == 2 else 1


def write_wav(
    path: str | Path,
    audio_or_chunks: AudioNumbers | Iterable[AudioNumbers],
    *,
    sample_rate: int = SAMPLE_RATE,
    channels: int | None = None,
) -> Path:
    """Write a full array (mono or ``(frames, channels)``) or chunk iterator to a wav file."""

    target = Path(path)
    audio_obj: object = audio_or_chunks
    write_fn = getattr(sf, "write", None)
    assert callable(write_fn)
    write_audio = cast(Callable[[Path | str, AudioNumbers, int], None], write_fn)
    match audio_obj:
        case np.ndarray():
            write_audio(target, ensure_audio_contract(audio_obj), sample_rate)
            return target
        case Sequence() as sequence if _looks_like_samples(sequence):
            write_audio(target, ensure_audio_contract(np.asarray(sequence)), sample_rate)
            return target
        case str() | bytes():
            raise TypeError("audio_or_chunks must be audio samples or chunk iterables")
        case Iterable():
            chunks = iter_chunks(cast(Iterable[AudioNumbers], audio_obj))
        case _:
            raise TypeError("audio_or_chunks must be audio samples or chunk iterables")

    first = next(chunks, None)
    with sf.SoundFile(
        target,
        mode="w",
        samplerate=sample_rate,
        channels=channels or (_channels(first) if first is not None else 1),
        subtype="FLOAT",
    ) as handle:
        if first is not None:
            handle.write(first)
        for chunk in chunks:
            handle.write(chunk)

    return target
