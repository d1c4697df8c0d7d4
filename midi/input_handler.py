"""Real-time MIDI input processing: keyboard notes drive the synth engine."""
import os
import sys
from threading import Lock
from typing import List, Optional, Set

import mido

from synth.notes import midi_to_frequency


def list_input_devices() -> List[str]:
    """Get list of available MIDI input devices (empty when no backend works)."""
    try:
        # Suppress ALSA error messages to stderr
        stderr_backup = sys.stderr
        with open(os.devnull, 'w') as devnull:
            sys.stderr = devnull
            try:
                return mido.get_input_names()
            finally:
                sys.stderr = stderr_backup
    except Exception as e:
        error_msg = str(e).lower()
        if "no such file" in error_msg and "snd/seq" in error_msg:
            print("[MIDI] ALSA sequencer not available. Load the snd-seq kernel module")
        else:
            print(f"[MIDI] Error listing input devices: {e}")
        return []


class MIDIInputHandler:
    """Reads a MIDI input port and plays its notes on an engine.

    MIDI note numbers double as voice ids, so a key's note_off always finds
    the voice its note_on started.
    """

    def __init__(self, engine):
        self.engine = engine
        self.port: Optional[mido.ports.BaseInput] = None
        self.active_notes: Set[int] = set()
        self.notes_lock = Lock()

    def open_device(self, device_name: str) -> bool:
        """Open a MIDI input device.

        Args:
            device_name: Name of the MIDI device to open.

        Returns:
            True if device opened successfully, False otherwise.
        """
        try:
            self.close_device()
            self.port = mido.open_input(device_name)
            return True
        except Exception as e:
            print(f"Error opening MIDI device: {e}")
            return False

    def attach_port(self, port):
        """Use an already-open port (virtual ports, tests)."""
        self.close_device()
        self.port = port

    def close_device(self):
        """Close the current MIDI input device and release any notes still held."""
        if self.port:
            try:
                self.port.close()
            except Exception as e:
                print(f"Error closing MIDI device: {e}")
            finally:
                self.port = None

        with self.notes_lock:
            held = sorted(self.active_notes)
            self.active_notes.clear()
        for note in held:
            self.engine.note_off(note)

    def poll_messages(self) -> int:
        """Handle pending MIDI messages without blocking. Returns how many were read."""
        if not self.port:
            return 0

        count = 0
        try:
            for msg in self.port.iter_pending():
                count += 1
                self.handle_message(msg)
        except Exception as e:
            print(f"Error polling MIDI messages: {e}")
        return count

    def handle_message(self, msg: mido.Message):
        if msg.type == 'note_on' and msg.velocity > 0:
            self._handle_note_on(msg.note)
        elif msg.type == 'note_off' or (msg.type == 'note_on' and msg.velocity == 0):
            self._handle_note_off(msg.note)
        elif msg.type == 'control_change' and msg.control == 123:
            # All Notes Off
            self.engine.panic()
            with self.notes_lock:
                self.active_notes.clear()

    def _handle_note_on(self, note: int):
        with self.notes_lock:
            self.active_notes.add(note)
        self.engine.note_on(midi_to_frequency(note), note)

    def _handle_note_off(self, note: int):
        with self.notes_lock:
            self.active_notes.discard(note)
        self.engine.note_off(note)

    def get_active_notes(self) -> Set[int]:
        """Get set of currently pressed notes."""
        with self.notes_lock:
            return self.active_notes.copy()

    def is_device_open(self) -> bool:
        return self.port is not None
