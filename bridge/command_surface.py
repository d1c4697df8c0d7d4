"""Command surface — validates and dispatches bridge/UI commands to a SynthEngine.

Transport-agnostic: a WebSocket or chat-tool layer hands over a decoded
message {'type': ..., 'payload': {...}} and sends back whatever handle()
returns, either {'result': ...} or {'error': '...'}.
"""
import re
import threading
from typing import Any, Callable, Dict, List, Optional

from synth.drum_engine import DRUM_TYPES
from synth.notes import midi_to_frequency, note_name_to_midi
from synth.synth_config import validate_partial

# Flat spellings accepted from people and tools, rewritten to the canonical sharp.
FLAT_ALIASES = {"DB": "C#", "EB": "D#", "GB": "F#", "AB": "G#", "BB": "A#"}

_NOTE_RE = re.compile(r'^([A-Ga-g])([#b]?)(-?\d+)$')

# Wire names (camelCase and the older flat keys) → engine config keys.
_TOP_LEVEL_ALIASES = {
    "masterLevel": "master_level",
    "gain": "master_level",
    "filterType": "filter_type",
    "filterCutoff": "filter_cutoff",
    "filterResonance": "filter_resonance",
}
_LEGACY_REVERB_KEYS = {"reverbMix": "mix", "reverbDecay": "decay", "reverbDamping": "damping"}


def parse_note_name(note_name: str) -> int:
    """Parse "C4", "F#3" or "Bb2" to a MIDI note number.

    Raises ValueError with a message suitable for showing to the caller.
    """
    match = _NOTE_RE.match(str(note_name).strip())
    if not match:
        raise ValueError(f"Invalid note name: {note_name}. Use format like C4, F#3, Bb2")
    letter, accidental, octave = match.groups()
    name = letter.upper()
    if accidental == "b":
        name = FLAT_ALIASES.get(name + "B")
        if name is None:
            raise ValueError(f"Unknown note: {letter}{accidental}")
        accidental = ""
    midi = note_name_to_midi(f"{name}{accidental}{octave}")
    if midi is None:
        raise ValueError(f"Unknown note: {letter}{accidental}")
    return midi


def normalize_config_keys(payload: dict) -> dict:
    """Translate wire-format config keys to engine keys, leaving unknown keys for validation."""
    partial: Dict[str, Any] = {}
    for key, value in payload.items():
        if key in _LEGACY_REVERB_KEYS:
            partial.setdefault("reverb", {})[_LEGACY_REVERB_KEYS[key]] = value
        elif key in ("envelope", "reverb") and isinstance(value, dict):
            partial.setdefault(key, {}).update(value)
        else:
            partial[_TOP_LEVEL_ALIASES.get(key, key)] = value
    return partial


class CommandSurface:
    """Dispatches named commands to one engine instance handed in by the host."""

    def __init__(self, engine, timer_factory: Callable[..., threading.Timer] = threading.Timer):
        self.engine = engine
        self._timer_factory = timer_factory
        self._timers: List[threading.Timer] = []
        self._timers_lock = threading.Lock()
        self._handlers = {
            "get_config": self._get_config,
            "set_config": self._set_config,
            "play_note": self._play_note,
            "stop_note": self._stop_note,
            "play_sequence": self._play_sequence,
            "play_chord_sequence": self._play_chord_sequence,
            "panic": self._panic,
            "trigger_drum": self._trigger_drum,
            "set_drum_volume": self._set_drum_volume,
        }

    def handle(self, message: dict) -> dict:
        if not isinstance(message, dict):
            return {"error": f"Message must be an object (got {type(message).__name__})"}
        command = message.get("type")
        payload = message.get("payload")
        if payload is None:
            payload = {}
        handler = self._handlers.get(command)
        if handler is None:
            return {"error": f"Unknown command: {command}"}
        if not isinstance(payload, dict):
            return {"error": f"{command} payload must be an object (got {type(payload).__name__})"}

        # Audio may only start after user intent; the first real command counts as that.
        if command != "get_config" and not self.engine.is_initialized():
            if not self.engine.initialize():
                return {"error": "Audio output is not available"}

        try:
            return {"result": handler(payload)}
        except (ValueError, TypeError, KeyError) as e:
            return {"error": str(e)}

    def close(self):
        """Cancel pending timed notes and sequence steps."""
        with self._timers_lock:
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()

    # ── Timers ──────────────────────────────────────────────────

    def _schedule(self, delay: float, function: Callable, *args):
        timer = self._timer_factory(delay, self._run_timer, args=(function,) + args)
        timer.daemon = True
        with self._timers_lock:
            self._timers.append(timer)
        timer.start()

    def _run_timer(self, function: Callable, *args):
        function(*args)
        with self._timers_lock:
            self._timers = [t for t in self._timers if t.is_alive() and t is not threading.current_thread()]

    # ── Validation ──────────────────────────────────────────────

    @staticmethod
    def _check_midi_note(midi_note, field: str = "midi_note") -> int:
        if not isinstance(midi_note, int) or isinstance(midi_note, bool) or not 0 <= midi_note <= 127:
            raise ValueError(f"{field} must be an integer 0-127 (got {midi_note!r})")
        return midi_note

    def _resolve_midi_note(self, payload: dict, command: str) -> int:
        if not isinstance(payload, dict):
            raise ValueError(f"{command} note must be an object (got {payload!r})")
        for key in ("midi_note", "midiNote"):
            if key in payload:
                return self._check_midi_note(payload[key], key)
        if "note" in payload:
            return parse_note_name(payload["note"])
        raise ValueError(f"{command} needs 'midi_note' or 'note'")

    @staticmethod
    def _check_seconds(value, field: str, allow_zero: bool = False) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)) \
                or value < 0 or (value == 0 and not allow_zero):
            kind = "a non-negative" if allow_zero else "a positive"
            raise ValueError(f"{field} must be {kind} number of seconds (got {value!r})")
        return float(value)

    def _sequence_steps(self, payload: dict, key: str, command: str) -> list:
        steps = payload.get(key)
        if not isinstance(steps, list) or not steps:
            raise ValueError(f"{command} needs a non-empty '{key}' list")
        return steps

    # ── Handlers ────────────────────────────────────────────────

    def _get_config(self, payload: dict) -> dict:
        return self.engine.get_config()

    def _set_config(self, payload: dict) -> dict:
        partial = normalize_config_keys(payload)
        problems = validate_partial(partial)
        if problems:
            raise ValueError("; ".join(problems))
        self.engine.set_config(partial)
        return self.engine.get_config()

    def _play_note(self, payload: dict) -> dict:
        midi_note = self._resolve_midi_note(payload, "play_note")
        frequency = midi_to_frequency(midi_note)
        duration: Optional[float] = payload.get("duration")
        if duration is not None:
            duration = self._check_seconds(duration, "duration")

        self.engine.note_on(frequency, midi_note)
        if duration is not None:
            self._schedule(duration, self._release_notes, [midi_note])
        return {"playing": True, "midi_note": midi_note, "frequency": frequency}

    def _stop_note(self, payload: dict) -> dict:
        midi_note = self._resolve_midi_note(payload, "stop_note")
        self.engine.note_off(midi_note)
        return {"stopped": True, "midi_note": midi_note}

    def _play_sequence(self, payload: dict) -> dict:
        """Play notes one after another: each sounds for `duration`, then waits `gap`."""
        steps = []
        for step in self._sequence_steps(payload, "notes", "play_sequence"):
            midi_note = self._resolve_midi_note(step, "play_sequence")
            duration = self._check_seconds(step.get("duration"), "duration")
            gap = self._check_seconds(step.get("gap", 0), "gap", allow_zero=True)
            steps.append(([midi_note], duration, gap))
        self._schedule_steps(steps)
        return {"playing": True, "note_count": len(steps)}

    def _play_chord_sequence(self, payload: dict) -> dict:
        """Like play_sequence, but every step sounds a list of notes together."""
        steps = []
        for step in self._sequence_steps(payload, "chords", "play_chord_sequence"):
            if not isinstance(step, dict):
                raise ValueError(f"play_chord_sequence chord must be an object (got {step!r})")
            midi_notes = step.get("midi_notes", step.get("midiNotes"))
            if midi_notes is None and "notes" in step:
                midi_notes = [parse_note_name(name) for name in step["notes"]]
            if not isinstance(midi_notes, list) or not midi_notes:
                raise ValueError("play_chord_sequence chord needs a non-empty 'midi_notes' or 'notes' list")
            midi_notes = [self._check_midi_note(n) for n in midi_notes]
            duration = self._check_seconds(step.get("duration"), "duration")
            gap = self._check_seconds(step.get("gap", 0), "gap", allow_zero=True)
            steps.append((midi_notes, duration, gap))
        self._schedule_steps(steps)
        return {"playing": True, "chord_count": len(steps)}

    def _schedule_steps(self, steps: list):
        delay = 0.0
        for midi_notes, duration, gap in steps:
            self._schedule(delay, self._start_notes, midi_notes, duration)
            delay += duration + gap

    def _start_notes(self, midi_notes: List[int], duration: float):
        for midi_note in midi_notes:
            self.engine.note_on(midi_to_frequency(midi_note), midi_note)
        self._schedule(duration, self._release_notes, midi_notes)

    def _release_notes(self, midi_notes: List[int]):
        for midi_note in midi_notes:
            self.engine.note_off(midi_note)

    def _panic(self, payload: dict) -> dict:
        self.engine.panic()
        return {"stopped": True}

    def _trigger_drum(self, payload: dict) -> dict:
        drum = payload.get("drum")
        if drum not in DRUM_TYPES:
            raise ValueError(f"Unknown drum type: {drum}. Use one of {', '.join(DRUM_TYPES)}")
        self.engine.trigger_drum(drum)
        return {"triggered": drum}

    def _set_drum_volume(self, payload: dict) -> dict:
        volume = payload.get("volume")
        if isinstance(volume, bool) or not isinstance(volume, (int, float)):
            raise ValueError(f"volume must be a number 0-1 (got {volume!r})")
        self.engine.set_drum_volume(volume)
        return {"volume": max(0.0, min(1.0, float(volume)))}
