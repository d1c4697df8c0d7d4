"""Note name, MIDI number and frequency conversions."""
import math
import re
from typing import Optional

# Sharps only. Flat spellings are resolved by the command layer before they get here.
NOTE_NAMES = ['C', 'C#', 'D', 'D#', 'E', 'F', 'F#', 'G', 'G#', 'A', 'A#', 'B']

A4_MIDI = 69
A4_FREQUENCY = 440.0

_NOTE_RE = re.compile(r'^([A-G])(#?)(-?\d+)$', re.IGNORECASE)


def midi_to_frequency(midi_note: float) -> float:
    """MIDI note 69 = A4 = 440 Hz."""
    return A4_FREQUENCY * (2.0 ** ((midi_note - A4_MIDI) / 12.0))


def frequency_to_approx_midi(frequency: float) -> float:
    """Inverse of midi_to_frequency without rounding (e.g. 445 Hz -> 69.196)."""
    return A4_MIDI + 12.0 * math.log2(frequency / A4_FREQUENCY)


def frequency_to_midi(frequency: float) -> int:
    return int(round(frequency_to_approx_midi(frequency)))


def get_note_info(midi_note: int) -> dict:
    """Return name, octave and key colour for a MIDI note number."""
    octave = midi_note // 12 - 1
    name = NOTE_NAMES[midi_note % 12]
    return {"name": name, "octave": octave, "is_black": "#" in name}


def is_black_key(midi_note: int) -> bool:
    return "#" in NOTE_NAMES[midi_note % 12]


def midi_to_note_name(midi_note: int) -> str:
    info = get_note_info(midi_note)
    return f"{info['name']}{info['octave']}"


def note_name_to_midi(note_name: str) -> Optional[int]:
    """Convert a note name such as "C4" or "F#3" to a MIDI note number.

    MIDI note = (octave + 1) * 12 + semitone. Returns None when the name
    cannot be parsed.
    """
    match = _NOTE_RE.match(note_name.strip())
    if not match:
        return None
    letter, sharp, octave_str = match.groups()
    full_name = letter.upper() + sharp
    if full_name not in NOTE_NAMES:
        return None
    return (int(octave_str) + 1) * 12 + NOTE_NAMES.index(full_name)


def note_to_frequency(note_name: str) -> Optional[float]:
    midi = note_name_to_midi(note_name)
    if midi is None:
        return None
    return midi_to_frequency(midi)
