"""Turn audio samples into light colours and brightness.

Bass drives red, mids green, treble blue. Brightness values use the Zigbee
0..254 scale.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from audiorelay.protocol import AudioSample


@dataclass(frozen=True, slots=True)
class RGB:
    r: int
    g: int
    b: int


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def audio_to_rgb(sample: AudioSample) -> RGB:
    return RGB(r=_round_half_up(sample.bass), g=_round_half_up(sample.mids), b=_round_half_up(sample.treble))


def rgb_to_hex(rgb: RGB) -> str:
    return f"0x{_round_half_up(rgb.r):02x}{_round_half_up(rgb.g):02x}{_round_half_up(rgb.b):02x}"


def rgb_to_zigbee_color(rgb: RGB) -> int:
    """Pack to RGB565 (RRRRRGGGGGGBBBBB)."""
    r = _round_half_up(rgb.r) & 0xFF
    g = _round_half_up(rgb.g) & 0xFF
    b = _round_half_up(rgb.b) & 0xFF
    return ((r >> 3) << 11) | ((g >> 2) << 5) | (b >> 3)


def audio_brightness(sample: AudioSample, beat_multiplier: float = 1.5) -> int:
    avg = (sample.bass + sample.mids + sample.treble) / 3.0
    multiplier = beat_multiplier if sample.beat else 1.0
    return min(254, _round_half_up((avg / 255.0) * 254.0 * multiplier))


def smooth_sample(current: AudioSample, previous: AudioSample | None, alpha: float = 0.3) -> AudioSample:
    """Exponential moving average over the bands and energy; beat and timestamp come from current."""
    if previous is None:
        return current

    def ema(cur: float, prev: float) -> float:
        return cur * alpha + prev * (1.0 - alpha)

    return AudioSample(
        bass=_round_half_up(ema(current.bass, previous.bass)),
        mids=_round_half_up(ema(current.mids, previous.mids)),
        treble=_round_half_up(ema(current.treble, previous.treble)),
        beat=current.beat,
        total_energy=ema(current.total_energy, previous.total_energy),
        timestamp=current.timestamp,
    )


def frequency_to_hue(sample: AudioSample) -> int:
    """Hue of the dominant band: 0 (bass), 120 (mids) or 240 (treble)."""
    peak = max(sample.bass, sample.mids, sample.treble)
    if peak == 0:
        return 0
    if sample.bass == peak:
        return 0
    if sample.mids == peak:
        return 120
    return 240


def hsv_to_rgb(h: float, s: float, v: float) -> RGB:
    """h in degrees, s and v in percent."""
    h = h % 360.0
    s = s / 100.0
    v = v / 100.0

    c = v * s
    x = c * (1.0 - abs((h / 60.0) % 2.0 - 1.0))
    m = v - c

    if h < 60:
        r, g, b = c, x, 0.0
    elif h < 120:
        r, g, b = x, c, 0.0
    elif h < 180:
        r, g, b = 0.0, c, x
    elif h < 240:
        r, g, b = 0.0, x, c
    elif h < 300:
        r, g, b = x, 0.0, c
    else:
        r, g, b = c, 0.0, x

    return RGB(
        r=_round_half_up((r + m) * 255),
        g=_round_half_up((g + m) * 255),
        b=_round_half_up((b + m) * 255),
    )
