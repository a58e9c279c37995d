import math
import os
from typing import Any

from .errors import InvalidArgument


def _env_num(name: str, default: float) -> float:
    raw = (os.getenv(f"VYBES_{name}") or "").strip()
    if not raw:
        return default
    try:
        return type(default)(raw)
    except ValueError:
        return default


CALIBRATION_SPL_MIN = _env_num("CALIBRATION_SPL_MIN", 40)
CALIBRATION_SPL_MAX = _env_num("CALIBRATION_SPL_MAX", 120)
EQ_SPL_MIN = _env_num("EQ_SPL_MIN", 0)
EQ_SPL_MAX = _env_num("EQ_SPL_MAX", 120)
CROSSOVER_FREQ_MIN = _env_num("CROSSOVER_FREQ_MIN", 20)
CROSSOVER_FREQ_MAX = _env_num("CROSSOVER_FREQ_MAX", 500)
SPEAKER_GAIN_MIN = _env_num("SPEAKER_GAIN_MIN", 0.0)
SPEAKER_GAIN_MAX = _env_num("SPEAKER_GAIN_MAX", 2.0)
SPEAKER_DELAY_MIN_MS = _env_num("SPEAKER_DELAY_MIN_MS", 0.0)
SPEAKER_DELAY_MAX_MS = _env_num("SPEAKER_DELAY_MAX_MS", 100.0)
MUTE_PERCENT_MIN = _env_num("MUTE_PERCENT_MIN", 1)
MUTE_PERCENT_MAX = _env_num("MUTE_PERCENT_MAX", 100)
TONE_FREQ_MIN = _env_num("TONE_FREQ_MIN", 10)
TONE_FREQ_MAX = _env_num("TONE_FREQ_MAX", 20000)
# Tone needs an audible level; noise may be parked at zero.
TONE_VOLUME_MIN = _env_num("TONE_VOLUME_MIN", 1)
TONE_VOLUME_MAX = _env_num("TONE_VOLUME_MAX", 100)
NOISE_VOLUME_MIN = _env_num("NOISE_VOLUME_MIN", 0)
NOISE_VOLUME_MAX = _env_num("NOISE_VOLUME_MAX", 100)

CROSSOVER_SLOPES = {12, 24}

SPEAKERS = {"left", "right", "sub"}
EQ_TYPES = {"room", "pref"}
ON_OFF = {"on", "off"}


def parse_int(raw: Any, label: str) -> int:
    if isinstance(raw, bool):
        raise InvalidArgument(f"Invalid {label} value", f"invalid_{label.lower()}")
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        raise InvalidArgument(f"Invalid {label} value", f"invalid_{label.lower()}")


def parse_float(raw: Any, label: str) -> float:
    if isinstance(raw, bool):
        raise InvalidArgument(f"Invalid {label} value", f"invalid_{label.lower()}")
    try:
        val = float(str(raw).strip())
    except (TypeError, ValueError):
        raise InvalidArgument(f"Invalid {label} value", f"invalid_{label.lower()}")
    if not math.isfinite(val):
        raise InvalidArgument(f"Invalid {label} value", f"invalid_{label.lower()}")
    return val


def check_range(value: float, lo: float, hi: float, message: str, detail: str) -> None:
    if value < lo or value > hi:
        raise InvalidArgument(message, detail)


def calibration_spl(raw: Any) -> int:
    spl = parse_int(raw, "SPL")
    check_range(
        spl,
        CALIBRATION_SPL_MIN,
        CALIBRATION_SPL_MAX,
        f"SPL must be between {CALIBRATION_SPL_MIN} and {CALIBRATION_SPL_MAX}",
        "spl_out_of_range",
    )
    return spl


def eq_spl(raw: Any) -> int:
    spl = parse_int(raw, "SPL")
    check_range(spl, EQ_SPL_MIN, EQ_SPL_MAX, f"SPL must be between {EQ_SPL_MIN} and {EQ_SPL_MAX}", "spl_out_of_range")
    return spl


def crossover_freq(raw: Any) -> int:
    freq = parse_int(raw, "frequency")
    check_range(
        freq,
        CROSSOVER_FREQ_MIN,
        CROSSOVER_FREQ_MAX,
        f"Frequency must be between {CROSSOVER_FREQ_MIN} and {CROSSOVER_FREQ_MAX} Hz",
        "frequency_out_of_range",
    )
    return freq


def crossover_slope(raw: Any) -> int:
    slope = parse_int(raw, "slope")
    if slope not in CROSSOVER_SLOPES:
        raise InvalidArgument("Slope must be \"12\" or \"24\"", "invalid_slope")
    return slope


def speaker_gain(raw: Any) -> float:
    gain = parse_float(raw, "gain")
    check_range(
        gain,
        SPEAKER_GAIN_MIN,
        SPEAKER_GAIN_MAX,
        f"Gain must be between {SPEAKER_GAIN_MIN} and {SPEAKER_GAIN_MAX}",
        "gain_out_of_range",
    )
    return gain


def speaker_delay(raw: Any) -> float:
    delay = parse_float(raw, "delay")
    check_range(
        delay,
        SPEAKER_DELAY_MIN_MS,
        SPEAKER_DELAY_MAX_MS,
        f"Delay must be between {SPEAKER_DELAY_MIN_MS} and {SPEAKER_DELAY_MAX_MS} ms",
        "delay_out_of_range",
    )
    return delay


def mute_percent(raw: Any) -> int:
    percent = parse_int(raw, "percent")
    check_range(
        percent,
        MUTE_PERCENT_MIN,
        MUTE_PERCENT_MAX,
        f"Percent must be between {MUTE_PERCENT_MIN} and {MUTE_PERCENT_MAX}",
        "percent_out_of_range",
    )
    return percent


def tone(raw_freq: Any, raw_volume: Any) -> tuple[int, int]:
    freq = parse_int(raw_freq, "frequency")
    volume = parse_int(raw_volume, "volume")
    check_range(
        freq,
        TONE_FREQ_MIN,
        TONE_FREQ_MAX,
        f"Frequency must be between {TONE_FREQ_MIN} and {TONE_FREQ_MAX} Hz",
        "frequency_out_of_range",
    )
    check_range(
        volume,
        TONE_VOLUME_MIN,
        TONE_VOLUME_MAX,
        f"Volume must be between {TONE_VOLUME_MIN} and {TONE_VOLUME_MAX}",
        "volume_out_of_range",
    )
    return freq, volume


def noise_volume(raw: Any) -> int:
    volume = parse_int(raw, "volume")
    check_range(
        volume,
        NOISE_VOLUME_MIN,
        NOISE_VOLUME_MAX,
        f"Volume must be between {NOISE_VOLUME_MIN} and {NOISE_VOLUME_MAX}",
        "volume_out_of_range",
    )
    return volume


def speaker(raw: str) -> str:
    val = (raw or "").strip().lower()
    if val not in SPEAKERS:
        raise InvalidArgument("Speaker must be \"left\", \"right\", or \"sub\"", "invalid_speaker")
    return val


def eq_type(raw: str) -> str:
    val = (raw or "").strip().lower()
    if val not in EQ_TYPES:
        raise InvalidArgument("Type must be either \"room\" or \"pref\"", "invalid_eq_type")
    return val


def on_off(raw: str) -> bool:
    val = (raw or "").strip().lower()
    if val not in ON_OFF:
        raise InvalidArgument("State must be \"on\" or \"off\"", "invalid_state")
    return val == "on"


def preset_name(raw: str) -> str:
    name = (raw or "").strip()
    if not name:
        raise InvalidArgument("Preset name must not be empty", "invalid_name")
    return name


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _point_number(point: dict, keys: tuple[str, ...]) -> float | None:
    for key in keys:
        if key in point and not _is_blank(point[key]):
            val = point[key]
            if isinstance(val, bool):
                return None
            try:
                num = float(val)
            except (TypeError, ValueError, OverflowError):
                return None
            if not math.isfinite(num):
                return None
            return val if isinstance(val, (int, float)) else num
    return None


def peq_points(body: Any) -> list[dict]:
    """Validate a PEQ batch and return it in canonical {type, freq, gain, q, enabled} form.

    The whole batch is rejected if any point is malformed; the message names the
    first offending index.
    """
    if isinstance(body, dict) and "peqPoints" in body:
        body = body["peqPoints"]
    if not isinstance(body, list):
        raise InvalidArgument("Body must be an array of PEQ points", "invalid_peq_points")
    points = []
    for idx, point in enumerate(body):
        if not isinstance(point, dict):
            raise InvalidArgument(f"PEQ point {idx} must be an object", "invalid_peq_point")
        freq = _point_number(point, ("freq", "frequency"))
        gain = _point_number(point, ("gain",))
        q = _point_number(point, ("q", "Q"))
        if freq is None or gain is None or q is None:
            raise InvalidArgument(
                f"PEQ point {idx} must have frequency, gain, and q properties",
                "invalid_peq_point",
            )
        enabled = point.get("enabled", True)
        points.append(
            {
                "type": str(point.get("type") or "PK"),
                "freq": freq,
                "gain": gain,
                "q": q,
                "enabled": enabled if isinstance(enabled, bool) else str(enabled).lower() in {"1", "true", "on"},
            }
        )
    return points
