"""Synth configuration — defaults, ranges and partial-merge updates."""
import copy
from numbers import Real
from typing import List, Optional

WAVEFORMS = ("sine", "square", "sawtooth", "triangle")
FILTER_TYPES = ("lowpass", "highpass", "bandpass")

# Default parameter values. A fresh engine's get_config() equals this exactly.
DEFAULT_CONFIG: dict = {
    "waveform": "sawtooth",
    "master_level": 0.3,
    "filter_type": "lowpass",
    "filter_cutoff": 2000,
    "filter_resonance": 1,
    "envelope": {
        "attack": 0.01,
        "decay": 0.1,
        "sustain": 0.7,
        "release": 0.3,
    },
    "reverb": {
        "mix": 0.2,
        "decay": 0.5,
        "damping": 0.3,
    },
}

# (min, max) per numeric field. Nested sections are keyed by their own name.
PARAM_RANGES: dict = {
    "master_level": (0.0, 1.0),
    "filter_cutoff": (20.0, 20000.0),
    "filter_resonance": (0.1, 30.0),
    "envelope": {
        "attack": (0.001, 5.0),
        "decay": (0.001, 5.0),
        "sustain": (0.0, 1.0),
        "release": (0.001, 10.0),
    },
    "reverb": {
        "mix": (0.0, 1.0),
        "decay": (0.0, 1.0),
        "damping": (0.0, 1.0),
    },
}

_CHOICES = {"waveform": WAVEFORMS, "filter_type": FILTER_TYPES}
_SECTIONS = ("envelope", "reverb")


def default_config() -> dict:
    return copy.deepcopy(DEFAULT_CONFIG)


def _is_number(value) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _clamp(value: float, bounds: tuple) -> float:
    lo, hi = bounds
    return max(lo, min(hi, value))


def _check_field(key: str, value, bounds) -> Optional[str]:
    if key in _CHOICES:
        if value not in _CHOICES[key]:
            return f"{key} must be one of {', '.join(_CHOICES[key])} (got {value!r})"
        return None
    if not _is_number(value):
        return f"{key} must be a number (got {value!r})"
    return None


def validate_partial(partial: dict) -> List[str]:
    """Return human-readable problems merge_config() would drop.

    Out-of-range numbers are not problems: they are clamped.
    """
    if not isinstance(partial, dict):
        return ["configuration update must be an object"]
    problems = []
    for key, value in partial.items():
        if key in _SECTIONS:
            if not isinstance(value, dict):
                problems.append(f"{key} must be an object")
                continue
            for sub_key, sub_value in value.items():
                bounds = PARAM_RANGES[key].get(sub_key)
                if bounds is None:
                    problems.append(f"unknown {key} parameter: {sub_key}")
                    continue
                problem = _check_field(f"{key}.{sub_key}", sub_value, bounds)
                if problem:
                    problems.append(problem)
        elif key in DEFAULT_CONFIG:
            problem = _check_field(key, value, PARAM_RANGES.get(key))
            if problem:
                problems.append(problem)
        else:
            problems.append(f"unknown parameter: {key}")
    return problems


def merge_config(current: dict, partial: dict) -> dict:
    """Return a new config with `partial` merged over `current`.

    Top-level keys are replaced; `envelope` and `reverb` merge one level deep
    so unspecified sub-fields keep their values. Numbers are clamped to
    PARAM_RANGES. Invalid entries are skipped and reported.
    """
    merged = copy.deepcopy(current)
    for problem in validate_partial(partial):
        print(f"[SynthConfig] Ignoring invalid setting: {problem}")
    if not isinstance(partial, dict):
        return merged

    for key, value in partial.items():
        if key in _SECTIONS:
            if not isinstance(value, dict):
                continue
            for sub_key, sub_value in value.items():
                bounds = PARAM_RANGES[key].get(sub_key)
                if bounds is None or not _is_number(sub_value):
                    continue
                merged[key][sub_key] = _clamp(sub_value, bounds)
        elif key in _CHOICES:
            if value in _CHOICES[key]:
                merged[key] = value
        elif key in PARAM_RANGES and _is_number(value):
            merged[key] = _clamp(value, PARAM_RANGES[key])
    return merged


def changed_fields(before: dict, after: dict) -> set:
    """Dotted names of the fields that differ, e.g. {'reverb.mix', 'waveform'}."""
    changed = set()
    for key, value in after.items():
        if key in _SECTIONS:
            for sub_key, sub_value in value.items():
                if before.get(key, {}).get(sub_key) != sub_value:
                    changed.add(f"{key}.{sub_key}")
        elif before.get(key) != value:
            changed.add(key)
    return changed
