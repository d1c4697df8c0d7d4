#!/usr/bin/env python3
"""ABOUTME: Tests for the bridge command surface.
ABOUTME: Covers auto-initialisation, note parsing, timed notes, config key aliases and error replies."""

import math
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from bridge.command_surface import CommandSurface, normalize_config_keys, parse_note_name
from synth.audio_context import AudioContext
from synth.synth_config import DEFAULT_CONFIG
from synth.synth_engine import SynthEngine


class FakeTimer:
    """Stands in for threading.Timer; fire() runs the callback on the test's thread."""

    created = []

    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def is_alive(self):
        return self.started and not self.fired and not self.cancelled

    def fire(self):
        self.fired = True
        self.function(*self.args)


def make_surface():
    ctx = AudioContext(sample_rate=8000, buffer_size=128, open_stream=False)
    engine = SynthEngine(ctx)
    FakeTimer.created = []
    return CommandSurface(engine, timer_factory=FakeTimer), engine


def test_parse_note_name():
    assert parse_note_name("C4") == 60
    assert parse_note_name("F#3") == 54
    assert parse_note_name("Bb3") == 58
    assert parse_note_name("Db4") == 61
    assert parse_note_name("eb2") == 39
    for bad in ("H2", "Cb4", "C", "4C", ""):
        try:
            parse_note_name(bad)
        except ValueError:
            continue
        assert False, f"{bad!r} should not parse"


def test_get_config_does_not_start_audio():
    surface, engine = make_surface()
    reply = surface.handle({"type": "get_config"})
    assert reply == {"result": DEFAULT_CONFIG}
    assert not engine.is_initialized()


def test_first_command_initializes():
    surface, engine = make_surface()
    reply = surface.handle({"type": "play_note", "payload": {"midi_note": 60}})
    assert engine.is_initialized()
    assert reply["result"]["midi_note"] == 60
    assert math.isclose(reply["result"]["frequency"], 261.6255653, rel_tol=1e-9)
    assert engine.active_voice_ids() == [60]


def test_play_and_stop_by_name():
    surface, engine = make_surface()
    reply = surface.handle({"type": "play_note", "payload": {"note": "Bb3"}})
    assert reply["result"]["midi_note"] == 58
    assert engine.active_voice_ids() == [58]
    reply = surface.handle({"type": "stop_note", "payload": {"note": "A#3"}})
    assert reply == {"result": {"stopped": True, "midi_note": 58}}
    assert engine.active_voice_ids() == []


def test_bad_notes_are_reported():
    surface, engine = make_surface()
    assert "error" in surface.handle({"type": "play_note", "payload": {"note": "H9"}})
    assert "error" in surface.handle({"type": "play_note", "payload": {"midi_note": 200}})
    assert "error" in surface.handle({"type": "play_note", "payload": {"midi_note": "60"}})
    assert "error" in surface.handle({"type": "play_note", "payload": {}})
    assert "error" in surface.handle({"type": "play_note", "payload": {"midi_note": 60, "duration": -1}})
    assert engine.active_voice_ids() == []


def test_timed_note_releases_itself():
    surface, engine = make_surface()
    surface.handle({"type": "play_note", "payload": {"midi_note": 64, "duration": 0.5}})
    assert len(FakeTimer.created) == 1
    timer = FakeTimer.created[0]
    assert timer.interval == 0.5
    assert timer.daemon and timer.started
    assert engine.active_voice_ids() == [64]
    timer.fire()
    assert engine.active_voice_ids() == []
    assert surface._timers == []


def test_wire_midi_note_key():
    surface, engine = make_surface()
    reply = surface.handle({"type": "play_note", "payload": {"midiNote": 60, "duration": 0.5}})
    assert reply["result"]["midi_note"] == 60
    assert engine.active_voice_ids() == [60]
    assert FakeTimer.created[0].interval == 0.5

    reply = surface.handle({"type": "stop_note", "payload": {"midiNote": 60}})
    assert reply == {"result": {"stopped": True, "midi_note": 60}}
    assert engine.active_voice_ids() == []
    assert "midiNote" in surface.handle({"type": "stop_note", "payload": {"midiNote": 300}})["error"]


def test_missing_note_error_names_the_command():
    surface, engine = make_surface()
    assert "stop_note" in surface.handle({"type": "stop_note", "payload": {}})["error"]
    assert "play_note" in surface.handle({"type": "play_note", "payload": {}})["error"]


def test_malformed_messages_are_errors():
    surface, engine = make_surface()
    assert "error" in surface.handle([1, 2])
    assert "error" in surface.handle("play_note")
    assert "error" in surface.handle(None)
    reply = surface.handle({"type": "set_config", "payload": [1, 2]})
    assert "payload must be an object" in reply["error"]
    assert "error" in surface.handle({"type": "play_note", "payload": "C4"})
    assert not engine.is_initialized()
    assert engine.get_config() == DEFAULT_CONFIG
    assert "error" in surface.handle({"type": "play_sequence", "payload": {"notes": ["C4"]}})


def test_play_sequence_steps_through_notes():
    surface, engine = make_surface()
    reply = surface.handle({"type": "play_sequence", "payload": {"notes": [
        {"midiNote": 60, "duration": 0.2, "gap": 0.1},
        {"note": "E4", "duration": 0.3},
    ]}})
    assert reply == {"result": {"playing": True, "note_count": 2}}
    first, second = FakeTimer.created
    assert first.interval == 0.0
    assert math.isclose(second.interval, 0.3)
    assert engine.active_voice_ids() == []

    first.fire()
    assert engine.active_voice_ids() == [60]
    release = FakeTimer.created[2]
    assert release.interval == 0.2
    release.fire()
    assert engine.active_voice_ids() == []

    second.fire()
    assert engine.active_voice_ids() == [64]
    assert FakeTimer.created[3].interval == 0.3


def test_play_chord_sequence():
    surface, engine = make_surface()
    reply = surface.handle({"type": "play_chord_sequence", "payload": {"chords": [
        {"midiNotes": [60, 64, 67], "duration": 0.5},
        {"notes": ["F4", "A4", "C5"], "duration": 0.5, "gap": 0},
    ]}})
    assert reply == {"result": {"playing": True, "chord_count": 2}}
    assert FakeTimer.created[1].interval == 0.5

    FakeTimer.created[0].fire()
    assert sorted(engine.active_voice_ids()) == [60, 64, 67]
    FakeTimer.created[2].fire()
    assert engine.active_voice_ids() == []
    FakeTimer.created[1].fire()
    assert sorted(engine.active_voice_ids()) == [65, 69, 72]


def test_bad_sequences_schedule_nothing():
    surface, engine = make_surface()
    assert "error" in surface.handle({"type": "play_sequence", "payload": {"notes": []}})
    assert "error" in surface.handle({"type": "play_sequence", "payload": {"notes": [{"midiNote": 60}]}})
    assert "error" in surface.handle({"type": "play_sequence", "payload": {
        "notes": [{"midiNote": 60, "duration": 0.2}, {"midiNote": 62, "duration": 0.2, "gap": -1}]}})
    assert "error" in surface.handle({"type": "play_chord_sequence", "payload": {
        "chords": [{"midiNotes": [60, 200], "duration": 0.2}]}})
    assert "error" in surface.handle({"type": "play_chord_sequence", "payload": {"chords": [[60, 64]]}})
    assert FakeTimer.created == []


def test_close_cancels_pending_releases():
    surface, engine = make_surface()
    surface.handle({"type": "play_note", "payload": {"midi_note": 64, "duration": 2}})
    surface.close()
    assert FakeTimer.created[0].cancelled


def test_set_config_accepts_wire_names():
    surface, engine = make_surface()
    reply = surface.handle({"type": "set_config", "payload": {
        "masterLevel": 0.5, "filterType": "highpass", "reverbMix": 0.4, "envelope": {"attack": 0.2},
    }})
    cfg = reply["result"]
    assert cfg["master_level"] == 0.5
    assert cfg["filter_type"] == "highpass"
    assert cfg["reverb"] == {"mix": 0.4, "decay": 0.5, "damping": 0.3}
    assert cfg["envelope"]["attack"] == 0.2
    assert cfg["envelope"]["release"] == 0.3


def test_legacy_gain_key():
    assert normalize_config_keys({"gain": 0.9, "reverbDecay": 0.1}) == {
        "master_level": 0.9, "reverb": {"decay": 0.1}}
    surface, engine = make_surface()
    reply = surface.handle({"type": "set_config", "payload": {"gain": 0.9}})
    assert reply["result"]["master_level"] == 0.9


def test_set_config_clamps_and_rejects():
    surface, engine = make_surface()
    reply = surface.handle({"type": "set_config", "payload": {"filterCutoff": 50000}})
    assert reply["result"]["filter_cutoff"] == 20000.0

    reply = surface.handle({"type": "set_config", "payload": {"waveform": "noise"}})
    assert "waveform" in reply["error"]
    reply = surface.handle({"type": "set_config", "payload": {"volume": 1}})
    assert "volume" in reply["error"]
    assert engine.get_config()["waveform"] == "sawtooth"


def test_drum_commands():
    surface, engine = make_surface()
    assert surface.handle({"type": "trigger_drum", "payload": {"drum": "snare"}}) == {
        "result": {"triggered": "snare"}}
    assert "error" in surface.handle({"type": "trigger_drum", "payload": {"drum": "gong"}})
    assert surface.handle({"type": "set_drum_volume", "payload": {"volume": 2}}) == {
        "result": {"volume": 1.0}}
    assert engine.drums.volume == 1.0
    assert "error" in surface.handle({"type": "set_drum_volume", "payload": {"volume": "max"}})


def test_panic_and_unknown_commands():
    surface, engine = make_surface()
    surface.handle({"type": "play_note", "payload": {"midi_note": 60}})
    surface.handle({"type": "play_note", "payload": {"midi_note": 67}})
    assert surface.handle({"type": "panic"}) == {"result": {"stopped": True}}
    assert engine.active_voice_ids() == []
    assert "error" in surface.handle({"type": "self_destruct"})


def main():
    tests = [test_parse_note_name, test_get_config_does_not_start_audio, test_first_command_initializes,
             test_play_and_stop_by_name, test_bad_notes_are_reported, test_timed_note_releases_itself,
             test_wire_midi_note_key, test_missing_note_error_names_the_command,
             test_malformed_messages_are_errors, test_play_sequence_steps_through_notes,
             test_play_chord_sequence, test_bad_sequences_schedule_nothing,
             test_close_cancels_pending_releases, test_set_config_accepts_wire_names,
             test_legacy_gain_key, test_set_config_clamps_and_rejects, test_drum_commands,
             test_panic_and_unknown_commands]
    failed = 0
    for test in tests:
        try:
            test()
            print(f"✓ {test.__name__}")
        except AssertionError as e:
            failed += 1
            print(f"✗ {test.__name__}: {e}")
    print(f"\n{len(tests) - failed}/{len(tests)} passed")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
