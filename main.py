#!/usr/bin/env python3
"""Polysynth - play a MIDI keyboard through the synth engine."""
import argparse
import sys
import time

from config_manager import ConfigManager
from midi.input_handler import MIDIInputHandler, list_input_devices
from synth.audio_context import AudioContext, list_output_devices
from synth.synth_engine import SynthEngine

POLL_INTERVAL = 0.002


def print_devices():
    print("MIDI inputs:")
    for name in list_input_devices() or ["(none)"]:
        print(f"  {name}")
    print("Audio outputs:")
    outputs = list_output_devices()
    if not outputs:
        print("  (none)")
    for device in outputs:
        print(f"  [{device['index']}] {device['name']} ({device['channels']} ch)")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Polyphonic subtractive synthesizer")
    parser.add_argument("--list-devices", action="store_true", help="list MIDI inputs and audio outputs")
    parser.add_argument("--device", help="MIDI input device name (saved for next time)")
    parser.add_argument("--output", type=int, help="audio output device index (saved for next time)")
    parser.add_argument("--config", help="path to the settings file")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.list_devices:
        print_devices()
        return 0

    config = ConfigManager(args.config)
    if args.device:
        config.set_selected_device(args.device)
    if args.output is not None:
        config.set_output_device_index(args.output)

    context = AudioContext(config.get_sample_rate(), config.get_buffer_size(),
                           output_device_index=config.get_output_device_index())
    engine = SynthEngine(context)
    if not engine.initialize():
        return 1

    midi = MIDIInputHandler(engine)
    device = config.get_selected_device()
    if not device:
        devices = list_input_devices()
        device = devices[0] if devices else None
    if not device or not midi.open_device(device):
        print("No MIDI input available. Use --list-devices to see what is connected.")
        engine.close()
        return 1

    print(f"Listening on '{device}'. Press Ctrl+C to quit.")
    try:
        while True:
            if not midi.poll_messages():
                time.sleep(POLL_INTERVAL)
    except KeyboardInterrupt:
        print()
    finally:
        midi.close_device()
        engine.panic()
        engine.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
