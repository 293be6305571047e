"""Turn recordings on disk (or in memory) into the 16-bit PCM the service expects."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import soundfile as sf

from asr_relay.errors import InputError

logger = logging.getLogger(__name__)

WAV_HEADER_BYTES = 44
RAW_PCM_SUFFIXES = frozenset({".pcm", ".raw"})


def float_to_pcm16(audio: np.ndarray) -> bytes:
    mono = audio.astype(np.float32, copy=True)
    np.clip(mono, -1.0, 1.0, out=mono)
    ints = (mono * 32767.0).astype("<i2", copy=False)
    return ints.tobytes()


def resample_audio(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """Linearly interpolate mono float samples from ``from_rate`` to ``to_rate`` Hz."""
    samples = np.asarray(samples, dtype=np.float32)
    if from_rate == to_rate or samples.size == 0:
        return samples
    out_count = round(samples.size * to_rate / from_rate)
    # Sample times in seconds; both grids start at zero.
    in_times = np.arange(samples.size) / from_rate
    out_times = np.arange(out_count) / to_rate
    return np.interp(out_times, in_times, samples).astype(np.float32)


def strip_wav_header(data: bytes) -> bytes:
    """
    Drop a canonical 44-byte RIFF/WAVE header from in-memory audio.

    Data without a RIFF/WAVE signature is returned unchanged.
    """
    if len(data) >= WAV_HEADER_BYTES and data[:4] == b"RIFF" and data[8:12] == b"WAVE":
        return data[WAV_HEADER_BYTES:]
    return data


def load_pcm16(audio_file: Path | str, *, sample_rate: int = 16000) -> bytes:
    """
    Load an audio file as mono 16-bit little-endian PCM at ``sample_rate``.

    ``.pcm`` and ``.raw`` files are assumed to already be in the target format and
    are returned byte-for-byte. Everything else is decoded with soundfile, mixed
    down to mono and resampled with linear interpolation.

    Args:
        audio_file: Path to the recording
        sample_rate: Target sample rate in Hz

    Returns:
        PCM bytes ready for streaming

    Raises:
        InputError: If the file does not exist or cannot be decoded.
    """
    path = Path(audio_file)
    if not path.exists():
        raise InputError(f"Audio file not found: {path}")

    if path.suffix.lower() in RAW_PCM_SUFFIXES:
        data = path.read_bytes()
        logger.info(f"Loaded raw PCM: {path.name} ({len(data)} bytes)")
        return data

    try:
        audio, file_sample_rate = sf.read(str(path), dtype="float32", always_2d=False)
    except sf.LibsndfileError as e:
        raise InputError(f"Failed to load audio file {path}: {e}") from e

    logger.info(f"Loaded audio: {path.name} ({len(audio) / file_sample_rate:.2f}s @ {file_sample_rate}Hz)")

    if audio.ndim > 1:
        audio = audio.mean(axis=1).astype(np.float32)

    if file_sample_rate != sample_rate:
        logger.info(f"Resampling from {file_sample_rate}Hz to {sample_rate}Hz...")
        audio = resample_audio(audio, file_sample_rate, sample_rate)

    return float_to_pcm16(audio)
