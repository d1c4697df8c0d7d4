"""Processing nodes and time-stamped parameter automation for the render graph.

Nodes are pulled once per audio block by the context's destination. Each node
caches its output for the block it last rendered, so a node feeding several
consumers (e.g. the dry and wet halves of the reverb) is only computed once.

Graph edits (connect/disconnect, scheduling) belong to the audio thread: the
control thread wraps them in a callable and hands it to AudioContext.submit().
"""
import bisect
import math
import numpy as np
from typing import Callable, List, Optional

_TWO_PI = 2.0 * np.pi

# Automation event kinds
_SET = "set"
_LINEAR = "linear"
_EXPONENTIAL = "exponential"


class AudioParam:
    """A parameter whose value follows a timeline of events on the audio clock.

    Mirrors the familiar set/ramp/cancel scheduling model: instructions are
    issued once and evaluated per block, never re-issued per sample.
    """

    def __init__(self, context, value: float, min_value: float = -math.inf,
                 max_value: float = math.inf):
        self.context = context
        self.default_value = float(value)
        self.min_value = min_value
        self.max_value = max_value
        self._base_value = float(value)
        # (time, kind, value, scheduled_at) sorted by time, insertion order on ties
        self._events: list = []

    # ── Scheduling ──────────────────────────────────────────────

    @property
    def value(self) -> float:
        return self.value_at(self.context.current_time)

    def set_value(self, value: float):
        """Jump to `value` now, discarding the whole timeline."""
        self._events.clear()
        self._base_value = float(value)

    def _insert(self, time: float, kind: str, value: float):
        times = [e[0] for e in self._events]
        index = bisect.bisect_right(times, time)
        self._events.insert(index, (float(time), kind, float(value), self.context.current_time))

    def set_value_at_time(self, value: float, time: float):
        self._insert(time, _SET, value)

    def linear_ramp_to_value_at_time(self, value: float, end_time: float):
        self._insert(end_time, _LINEAR, value)

    def exponential_ramp_to_value_at_time(self, value: float, end_time: float):
        self._insert(end_time, _EXPONENTIAL, value)

    def cancel_scheduled_values(self, start_time: float):
        self._events = [e for e in self._events if e[0] < start_time]

    def cancel_and_hold_at_time(self, time: float) -> float:
        """Freeze the parameter at whatever value it has at `time`.

        Pending ramps are dropped and replaced by a single set event, so a ramp
        scheduled afterwards starts from the held value. Returns that value.
        """
        held = self.value_at(time)
        self.cancel_scheduled_values(time)
        self.set_value_at_time(held, time)
        return held

    def has_pending_events(self, time: float) -> bool:
        return any(e[0] > time for e in self._events)

    # ── Evaluation ──────────────────────────────────────────────

    @staticmethod
    def _ramp(kind, v0, v1, t0, t1, t):
        if t1 <= t0:
            return np.full_like(t, v1) if isinstance(t, np.ndarray) else v1
        frac = np.clip((t - t0) / (t1 - t0), 0.0, 1.0)
        if kind == _LINEAR:
            return v0 + (v1 - v0) * frac
        # Exponential ramps need both ends on the same side of zero; otherwise hold.
        if v0 * v1 <= 0.0:
            return np.full_like(t, v0) if isinstance(t, np.ndarray) else v0
        return v0 * (v1 / v0) ** frac

    def value_at(self, time: float) -> float:
        prev_time, prev_value = None, self._base_value
        for ev_time, kind, ev_value, scheduled_at in self._events:
            if ev_time <= time:
                prev_time, prev_value = ev_time, ev_value
                continue
            if kind == _SET:
                break
            start = prev_time if prev_time is not None else scheduled_at
            prev_value = float(self._ramp(kind, prev_value, ev_value, start, ev_time, time))
            break
        return float(min(self.max_value, max(self.min_value, prev_value)))

    def values(self, start_frame: int, num_frames: int) -> np.ndarray:
        """Per-sample values for one block starting at `start_frame`."""
        sr = self.context.sample_rate
        times = (start_frame + np.arange(num_frames)) / sr
        out = np.empty(num_frames, dtype=np.float64)
        filled = 0
        prev_time, prev_value = None, self._base_value
        for ev_time, kind, ev_value, scheduled_at in self._events:
            end = int(np.searchsorted(times, ev_time, side="left"))
            if end > filled:
                if kind == _SET:
                    out[filled:end] = prev_value
                else:
                    start = prev_time if prev_time is not None else scheduled_at
                    out[filled:end] = self._ramp(kind, prev_value, ev_value,
                                                 start, ev_time, times[filled:end])
                filled = end
            prev_time, prev_value = ev_time, ev_value
            if filled >= num_frames:
                break
        if filled < num_frames:
            out[filled:] = prev_value
        self._prune(times[0])
        return np.clip(out, self.min_value, self.max_value)

    def _prune(self, before: float):
        # Keep the newest past event as the anchor for ramps that are still running.
        past = 0
        while past < len(self._events) and self._events[past][0] < before:
            past += 1
        if past > 1:
            del self._events[:past - 1]


class AudioNode:
    """Base node: sums its inputs and passes them through `process`."""

    def __init__(self, context):
        self.context = context
        self.inputs: List["AudioNode"] = []
        self.outputs: List["AudioNode"] = []
        self._cache_frame: Optional[int] = None
        self._cache: Optional[np.ndarray] = None

    def connect(self, destination: "AudioNode") -> "AudioNode":
        destination.inputs.append(self)
        self.outputs.append(destination)
        return destination

    def disconnect(self):
        for destination in self.outputs:
            while self in destination.inputs:
                destination.inputs.remove(self)
        self.outputs.clear()

    def pull(self, start_frame: int, num_frames: int) -> np.ndarray:
        if self._cache_frame == start_frame and self._cache is not None \
                and len(self._cache) == num_frames:
            return self._cache
        mixed = np.zeros(num_frames, dtype=np.float64)
        for node in list(self.inputs):
            mixed += node.pull(start_frame, num_frames)
        out = self.process(mixed, start_frame, num_frames)
        self._cache_frame = start_frame
        self._cache = out
        return out

    def process(self, samples: np.ndarray, start_frame: int, num_frames: int) -> np.ndarray:
        return samples


class GainNode(AudioNode):
    def __init__(self, context, gain: float = 1.0):
        super().__init__(context)
        self.gain = AudioParam(context, gain)

    def process(self, samples, start_frame, num_frames):
        return samples * self.gain.values(start_frame, num_frames)


class SourceNode(AudioNode):
    """A generator with start/stop times on the audio clock.

    Output is masked sample-accurately outside [start, stop). When the stop
    time is reached a scheduled action marks the source ended, disconnects it
    and runs the `on_ended` callbacks (used to dispose downstream nodes).
    """

    def __init__(self, context):
        super().__init__(context)
        self.start_time: Optional[float] = None
        self.stop_time: Optional[float] = None
        self.ended = False
        self.on_ended: List[Callable[[], None]] = []
        self.stop_action = None
        self.tag = None

    def start(self, when: Optional[float] = None):
        self.start_time = self.context.current_time if when is None else when

    def stop(self, when: Optional[float] = None):
        if self.ended:
            return
        when = self.context.current_time if when is None else when
        if self.stop_time is not None and self.stop_time <= when:
            return
        self.stop_time = when
        if self.stop_action is not None:
            self.stop_action.cancel()
        self.stop_action = self.context.schedule_at(when, self._finish, tag=self.tag)

    def _finish(self):
        self.ended = True
        self.disconnect()
        for callback in self.on_ended:
            callback()
        self.on_ended.clear()

    def render(self, start_frame: int, num_frames: int) -> np.ndarray:
        raise NotImplementedError

    def process(self, samples, start_frame, num_frames):
        if self.ended or self.start_time is None:
            return np.zeros(num_frames, dtype=np.float64)
        sr = self.context.sample_rate
        frames = start_frame + np.arange(num_frames)
        active = frames >= int(round(self.start_time * sr))
        if self.stop_time is not None:
            active &= frames < int(round(self.stop_time * sr))
        if not active.any():
            return np.zeros(num_frames, dtype=np.float64)
        return self.render(start_frame, num_frames) * active


def generate_waveform(waveform: str, phases: np.ndarray) -> np.ndarray:
    """Band-unlimited classic shapes from an array of phases (radians)."""
    t_norm = (phases / _TWO_PI) % 1.0
    if waveform == "sine":
        return np.sin(phases)
    if waveform == "triangle":
        return 4.0 * np.abs(t_norm - 0.5) - 1.0
    if waveform == "square":
        return np.where(np.sin(phases) >= 0, 1.0, -1.0)
    return 2.0 * t_norm - 1.0


class OscillatorNode(SourceNode):
    def __init__(self, context, waveform: str = "sine", frequency: float = 440.0):
        super().__init__(context)
        self.waveform = waveform
        self.frequency = AudioParam(context, frequency, 0.0, context.sample_rate / 2.0)
        self.phase = 0.0

    def render(self, start_frame, num_frames):
        inc = _TWO_PI * self.frequency.values(start_frame, num_frames) / self.context.sample_rate
        phases = self.phase + np.cumsum(inc) - inc
        self.phase = float((self.phase + inc.sum()) % _TWO_PI)
        return generate_waveform(self.waveform, phases)


class NoiseBufferSource(SourceNode):
    """One-shot white noise burst of fixed length; ends by itself."""

    def __init__(self, context, duration: float, rng: Optional[np.random.Generator] = None):
        super().__init__(context)
        rng = rng if rng is not None else np.random.default_rng()
        self.duration = duration
        self.buffer = rng.uniform(-1.0, 1.0, int(context.sample_rate * duration))

    def start(self, when: Optional[float] = None):
        super().start(when)
        self.stop(self.start_time + self.duration)

    def render(self, start_frame, num_frames):
        offset = start_frame - int(round(self.start_time * self.context.sample_rate))
        idx = offset + np.arange(num_frames)
        valid = (idx >= 0) & (idx < len(self.buffer))
        out = np.zeros(num_frames, dtype=np.float64)
        out[valid] = self.buffer[idx[valid]]
        return out


class BiquadFilterNode(AudioNode):
    """RBJ-cookbook biquad: lowpass, highpass or bandpass (constant 0 dB peak).

    Coefficients are computed once per block from the frequency and Q values at
    the block start. Frequency is limited to just under Nyquist.

    `q` is the linear cookbook Q for every filter type, not a resonance in dB:
    0.7071 is the flat Butterworth response, larger values peak at the cutoff
    and values below 0.5 roll off gently well before it.
    """

    def __init__(self, context, filter_type: str = "lowpass",
                 frequency: float = 350.0, q: float = 1.0):
        super().__init__(context)
        self.filter_type = filter_type
        self.frequency = AudioParam(context, frequency, 10.0, context.sample_rate * 0.49)
        self.q = AudioParam(context, q, 0.0001)
        self._z1 = 0.0
        self._z2 = 0.0

    def coefficients(self, frequency: float, q: float) -> tuple:
        w0 = _TWO_PI * frequency / self.context.sample_rate
        cos_w0 = math.cos(w0)
        alpha = math.sin(w0) / (2.0 * q)
        if self.filter_type == "highpass":
            b0, b1, b2 = (1.0 + cos_w0) / 2.0, -(1.0 + cos_w0), (1.0 + cos_w0) / 2.0
        elif self.filter_type == "bandpass":
            b0, b1, b2 = alpha, 0.0, -alpha
        else:
            b0, b1, b2 = (1.0 - cos_w0) / 2.0, 1.0 - cos_w0, (1.0 - cos_w0) / 2.0
        a0 = 1.0 + alpha
        return b0 / a0, b1 / a0, b2 / a0, (-2.0 * cos_w0) / a0, (1.0 - alpha) / a0

    def process(self, samples, start_frame, num_frames):
        t0 = start_frame / self.context.sample_rate
        b0, b1, b2, a1, a2 = self.coefficients(self.frequency.value_at(t0), self.q.value_at(t0))
        if self._z1 == 0.0 and self._z2 == 0.0 and not samples.any():
            return samples
        out = np.empty(num_frames, dtype=np.float64)
        z1, z2 = self._z1, self._z2
        for i in range(num_frames):
            x = samples[i]
            y = b0 * x + z1
            z1 = b1 * x - a1 * y + z2
            z2 = b2 * x - a2 * y
            out[i] = y
        # Flush denormal-sized state so the silent fast path can kick in.
        self._z1 = z1 if abs(z1) > 1e-12 else 0.0
        self._z2 = z2 if abs(z2) > 1e-12 else 0.0
        return out


class FeedbackDelayLine(AudioNode):
    """Delay → one-pole damping low-pass → feedback gain → back into the delay.

    The node's output is the delay tap (the signal read `delay_time` ago).
    """

    def __init__(self, context, delay_time: float, feedback: float = 0.5,
                 damping_cutoff: float = 20000.0):
        super().__init__(context)
        self.delay_time = delay_time
        self.delay_samples = max(1, int(round(delay_time * context.sample_rate)))
        self.feedback = AudioParam(context, feedback, 0.0, 0.99)
        self.damping_cutoff = AudioParam(context, damping_cutoff, 10.0, context.sample_rate / 2.0)
        self._buffer = np.zeros(self.delay_samples, dtype=np.float64)
        self._write = 0
        self._lp_state = 0.0

    def damping_coefficient(self, cutoff: float) -> float:
        return 1.0 - math.exp(-_TWO_PI * cutoff / self.context.sample_rate)

    def process(self, samples, start_frame, num_frames):
        if not samples.any() and self._lp_state == 0.0 and not self._buffer.any():
            return samples
        t0 = start_frame / self.context.sample_rate
        fb = self.feedback.value_at(t0)
        a = self.damping_coefficient(self.damping_cutoff.value_at(t0))
        buf = self._buffer
        length = len(buf)
        wp = self._write
        lp = self._lp_state
        out = np.empty(num_frames, dtype=np.float64)
        for i in range(num_frames):
            delayed = buf[wp]
            lp += a * (delayed - lp)
            buf[wp] = samples[i] + fb * lp
            out[i] = delayed
            wp += 1
            if wp == length:
                wp = 0
        self._write = wp
        self._lp_state = lp if abs(lp) > 1e-12 else 0.0
        if not np.abs(buf).max() > 1e-10:
            buf[:] = 0.0
        return out
