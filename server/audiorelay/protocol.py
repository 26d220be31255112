from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any

SAMPLE_FIELDS: tuple[str, ...] = ("bass", "mids", "treble", "beat", "total_energy", "timestamp")


class SampleDecodeError(ValueError):
    """Raised when an upstream frame cannot be turned into an AudioSample."""


@dataclass(frozen=True, slots=True)
class AudioSample:
    bass: int | float
    mids: int | float
    treble: int | float
    beat: bool
    total_energy: int | float
    timestamp: int | float

    def to_dict(self) -> dict[str, Any]:
        return {
            "bass": self.bass,
            "mids": self.mids,
            "treble": self.treble,
            "beat": self.beat,
            "total_energy": self.total_energy,
            "timestamp": self.timestamp,
        }


def dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def _reject_constant(name: str) -> Any:
    # json accepts NaN/Infinity, browsers' JSON.parse does not.
    raise SampleDecodeError(f"non-finite number {name}")


def loads(text: str) -> Any:
    return json.loads(text, parse_constant=_reject_constant)


def _number(obj: dict[str, Any], key: str) -> int | float:
    v = obj[key]
    # bool is an int subclass; true/false is not a level.
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise SampleDecodeError(f"{key} must be a number (got {type(v).__name__})")
    if isinstance(v, float) and not math.isfinite(v):
        raise SampleDecodeError(f"{key} must be finite")
    return v


def decode_sample(msg: str | bytes) -> AudioSample:
    """Parse one upstream text frame.

    Values are passed through as received (no clamping); keys outside the
    sample shape are ignored.
    """
    if not isinstance(msg, str):
        raise SampleDecodeError("binary frames are not supported")
    try:
        obj = loads(msg)
    except SampleDecodeError:
        raise
    except json.JSONDecodeError as e:
        raise SampleDecodeError(f"invalid JSON: {e.msg} at pos {e.pos}") from e
    except (ValueError, RecursionError) as e:
        # Oversized integer literals and deeply nested arrays fail outside the JSON grammar checks.
        raise SampleDecodeError(f"undecodable JSON: {type(e).__name__}") from e
    if not isinstance(obj, dict):
        raise SampleDecodeError(f"expected a JSON object (got {type(obj).__name__})")
    missing = [k for k in SAMPLE_FIELDS if k not in obj]
    if missing:
        raise SampleDecodeError(f"missing keys: {', '.join(missing)}")
    beat = obj["beat"]
    if not isinstance(beat, bool):
        raise SampleDecodeError(f"beat must be a boolean (got {type(beat).__name__})")
    return AudioSample(
        bass=_number(obj, "bass"),
        mids=_number(obj, "mids"),
        treble=_number(obj, "treble"),
        beat=beat,
        total_energy=_number(obj, "total_energy"),
        timestamp=_number(obj, "timestamp"),
    )


def encode_sample(sample: AudioSample) -> str:
    return dumps(sample.to_dict())
