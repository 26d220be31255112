from __future__ import annotations

from collections import deque

import numpy as np

from audiorelay.protocol import AudioSample

BASS_HZ: tuple[float, float] = (20.0, 250.0)
MIDS_HZ: tuple[float, float] = (250.0, 4000.0)
TREBLE_HZ: tuple[float, float] = (4000.0, 16000.0)


def pcm16le_bytes_to_float32(pcm: bytes) -> np.ndarray:
    """Convert PCM s16le bytes to float32 in [-1, 1]."""
    if not pcm:
        return np.zeros((0,), dtype=np.float32)
    s16 = np.frombuffer(pcm, dtype=np.int16)
    return (s16.astype(np.float32) / 32768.0).copy()


def rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(samples * samples)))


def energy(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sum(samples * samples))


def band_level(
    samples: np.ndarray,
    sample_rate_hz: int,
    band_hz: tuple[float, float],
    floor_db: float = -60.0,
) -> int:
    """Peak amplitude in a band, mapped from [floor_db, 0 dBFS] to 0..255."""
    if samples.size == 0:
        return 0
    window = np.hanning(samples.size).astype(np.float32)
    spec = np.fft.rfft(samples * window)
    freqs = np.fft.rfftfreq(samples.size, d=1.0 / sample_rate_hz)
    lo, hi = band_hz
    mask = (freqs >= lo) & (freqs <= hi)
    if not np.any(mask):
        return 0
    # A full-scale sine centred on a bin comes out at ~1.0.
    amp = float(np.max(np.abs(spec[mask]))) / (float(np.sum(window)) / 2.0 + 1e-12)
    db = 20.0 * np.log10(amp + 1e-12)
    scaled = (db - floor_db) / -floor_db
    return int(round(float(np.clip(scaled, 0.0, 1.0)) * 255))


class BeatDetector:
    """Energy-spike beat detector: a frame is a beat when it beats the running average."""

    def __init__(self, *, sensitivity: float = 1.5, history: int = 43, min_history: int = 8, min_gap_s: float = 0.25) -> None:
        self._sensitivity = float(sensitivity)
        self._history: deque[float] = deque(maxlen=max(1, int(history)))
        self._min_history = max(1, int(min_history))
        self._min_gap_s = float(min_gap_s)
        self._last_beat_s: float | None = None

    def update(self, frame_energy: float, now_s: float) -> bool:
        is_beat = False
        if len(self._history) >= self._min_history and frame_energy > 0.0:
            avg = sum(self._history) / len(self._history)
            gap_ok = self._last_beat_s is None or (now_s - self._last_beat_s) >= self._min_gap_s
            if gap_ok and frame_energy > self._sensitivity * avg:
                is_beat = True
                self._last_beat_s = now_s
        self._history.append(float(frame_energy))
        return is_beat


def sample_from_pcm(
    samples: np.ndarray,
    sample_rate_hz: int,
    detector: BeatDetector,
    *,
    now_s: float,
    timestamp_ms: int,
) -> AudioSample:
    e = energy(samples)
    return AudioSample(
        bass=band_level(samples, sample_rate_hz, BASS_HZ),
        mids=band_level(samples, sample_rate_hz, MIDS_HZ),
        treble=band_level(samples, sample_rate_hz, TREBLE_HZ),
        beat=detector.update(e, now_s),
        total_energy=round(e, 4),
        timestamp=int(timestamp_ms),
    )
