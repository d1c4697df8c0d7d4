"""Render clock and audio device stream for the synth graph."""
import queue
import threading
import numpy as np
from typing import Callable, List, Optional

from synth.audio_graph import AudioNode

# Check for PyAudio availability
try:
    import pyaudio
    AUDIO_AVAILABLE = True
except ImportError:
    AUDIO_AVAILABLE = False
    pyaudio = None


class ScheduledAction:
    """A callback due at a time on the audio clock. Cancel before it fires to drop it."""

    def __init__(self, when: float, callback: Callable[[], None], tag=None):
        self.when = when
        self.callback = callback
        self.tag = tag
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True

    @property
    def pending(self) -> bool:
        return not self.cancelled and not self.fired

    def __repr__(self):
        return f"ScheduledAction(when={self.when:.4f}, tag={self.tag!r}, pending={self.pending})"


class AudioContext:
    """Owns the sample clock, the destination node and the output stream.

    The control thread never touches the graph directly: it passes callables
    to submit(), and the audio thread drains them at the start of the next
    block, in order. Everything one callable does lands between two blocks,
    which is what makes a cancel-then-reschedule atomic.

    With open_stream=False no device is opened and the clock only moves when
    generate() is called (used by the tests and by hosts that drive the
    callback themselves).
    """

    def __init__(self, sample_rate: int = 48000, buffer_size: int = 256,
                 open_stream: bool = True, output_device_index: Optional[int] = None):
        self.sample_rate = sample_rate
        self.buffer_size = buffer_size
        self.open_stream = open_stream
        self.output_device_index = output_device_index
        self.audio = None
        self.stream = None
        self.running = False
        self.closed = False
        self.last_error: Optional[str] = None

        self.frame = 0
        self.destination = AudioNode(self)
        self.command_queue: queue.Queue = queue.Queue()
        self._actions: List[ScheduledAction] = []
        self._actions_lock = threading.Lock()

    @property
    def current_time(self) -> float:
        """Seconds on the audio clock (start of the next block to render)."""
        return self.frame / self.sample_rate

    # ── Control-thread entry points ──────────────────────────────

    def submit(self, command: Callable[[], None]):
        """Queue a graph edit for the audio thread."""
        if self.closed:
            return
        self.command_queue.put(command)

    def schedule_at(self, when: float, callback: Callable[[], None], tag=None) -> ScheduledAction:
        action = ScheduledAction(when, callback, tag)
        with self._actions_lock:
            self._actions.append(action)
        return action

    def cancel_scheduled(self, tag=None) -> int:
        """Cancel pending actions carrying `tag` (all of them when tag is None)."""
        count = 0
        with self._actions_lock:
            for action in self._actions:
                if action.pending and (tag is None or action.tag == tag):
                    action.cancel()
                    count += 1
            self._actions = [a for a in self._actions if a.pending]
        return count

    def pending_actions(self, tag=None) -> List[ScheduledAction]:
        with self._actions_lock:
            return [a for a in self._actions if a.pending and (tag is None or a.tag == tag)]

    def resume(self) -> bool:
        """Open and start the output stream. Safe to call repeatedly."""
        if self.closed:
            print("[AudioContext] Context is closed")
            return False
        if self.running:
            return True
        if not self.open_stream:
            self.running = True
            return True
        if not AUDIO_AVAILABLE:
            print("[AudioContext] PyAudio is not installed; no output device available")
            return False
        try:
            self.audio = pyaudio.PyAudio()
            device_index = self.output_device_index
            if device_index is None:
                device_index = self.audio.get_default_output_device_info()['index']
            self.stream = self.audio.open(
                format=pyaudio.paInt16, channels=2, rate=self.sample_rate,
                output=True, output_device_index=device_index,
                frames_per_buffer=self.buffer_size, stream_callback=self._audio_callback, start=False
            )
            self.stream.start_stream()
            self.running = True
        except Exception as e:
            print(f"[AudioContext] Audio initialization failed: {e}")
            self.last_error = str(e)
            self._release_device()
            return False
        return True

    def close(self):
        """Cancel every scheduled action, drop queued commands and release the device."""
        self.closed = True
        self.running = False
        self.cancel_scheduled()
        while True:
            try:
                self.command_queue.get_nowait()
            except queue.Empty:
                break
        self._release_device()

    def _release_device(self):
        if self.stream:
            try:
                self.stream.stop_stream()
                self.stream.close()
            except Exception as e:
                print(f"[AudioContext] Error closing stream: {e}")
            self.stream = None
        if self.audio:
            self.audio.terminate()
            self.audio = None

    # ── Audio thread ─────────────────────────────────────────────

    def _drain_commands(self):
        while True:
            try:
                command = self.command_queue.get_nowait()
            except queue.Empty:
                break
            command()

    def _fire_due_actions(self):
        now = self.current_time
        with self._actions_lock:
            due = [a for a in self._actions if a.pending and a.when <= now]
            self._actions = [a for a in self._actions if a.pending and a.when > now]
        for action in sorted(due, key=lambda a: a.when):
            action.fired = True
            action.callback()

    def generate(self, num_frames: int) -> np.ndarray:
        """Render one mono block: apply queued commands, fire due actions, pull the graph."""
        self._drain_commands()
        self._fire_due_actions()
        block = self.destination.pull(self.frame, num_frames)
        self.frame += num_frames
        return _sanitize_signal(block)

    def _audio_callback(self, in_data, frame_count, time_info, status):
        try:
            mono = self.generate(frame_count)
            out = np.empty(frame_count * 2, dtype=np.int16)
            pcm = np.clip(mono * 32767, -32767, 32767)
            out[0::2] = pcm
            out[1::2] = pcm
            return (out.tobytes(), pyaudio.paContinue)
        except Exception as e:
            self.last_error = str(e)
            return (np.zeros(frame_count * 2, dtype=np.int16).tobytes(), pyaudio.paContinue)


def _sanitize_signal(samples: np.ndarray) -> np.ndarray:
    """Replace NaN/Inf with zeros and hard-clip to ±1.0."""
    samples = np.where(np.isfinite(samples), samples, 0.0)
    return np.clip(samples, -1.0, 1.0)


def list_output_devices() -> List[dict]:
    """Return [{'index', 'name', 'channels'}] for every output-capable device."""
    if not AUDIO_AVAILABLE:
        return []
    audio = pyaudio.PyAudio()
    try:
        devices = []
        for i in range(audio.get_device_count()):
            info = audio.get_device_info_by_index(i)
            if info.get('maxOutputChannels', 0) > 0:
                devices.append({'index': i, 'name': info['name'],
                                'channels': info['maxOutputChannels']})
        return devices
    finally:
        audio.terminate()
