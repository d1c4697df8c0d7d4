"""Polyphonic synthesizer engine.

Audio graph:
    [Oscillator] → [Gain (envelope)] ─┐
    [Oscillator] → [Gain (envelope)] ─┼→ [Filter] → [Master Gain] → [Reverb] ─┐
                                      …                                       ├→ [Output bus] → [Analyser] → [Output]
                                             [Drum bus (DrumEngine)] ─────────┘
"""
import copy
import threading
from collections.abc import Hashable
from typing import Dict, List, Optional

from synth.audio_context import AudioContext
from synth.audio_graph import BiquadFilterNode, GainNode, OscillatorNode
from synth.drum_engine import DrumEngine
from synth.metering import AnalyserNode
from synth.reverb import ReverbNetwork
from synth.synth_config import changed_fields, default_config, merge_config

# Opaque, caller-generated voice key. MIDI note numbers are the usual choice,
# but any hashable token works (e.g. to layer two instances of one pitch).
VoiceId = Hashable

# Extra time after the release ramp before the oscillator stops, so the ramp
# finishes at true silence instead of being cut.
STOP_PADDING = 0.01


class Voice:
    """One note instance: an oscillator and its envelope gain."""

    def __init__(self, voice_id: VoiceId, frequency: float, oscillator: OscillatorNode,
                 gain: GainNode, envelope: dict):
        self.voice_id = voice_id
        self.frequency = frequency
        self.oscillator = oscillator
        self.gain = gain
        self.envelope = envelope
        self.started_at: Optional[float] = None
        self.released_at: Optional[float] = None

    @property
    def finished(self) -> bool:
        return self.oscillator.ended

    def phase_at(self, time: float) -> str:
        """Envelope phase at `time`: idle, attack, decay, sustain, release or stopped."""
        if self.oscillator.ended:
            return "stopped"
        if self.started_at is None or time < self.started_at:
            return "idle"
        if self.released_at is not None and time >= self.released_at:
            return "release"
        elapsed = time - self.started_at
        if elapsed < self.envelope["attack"]:
            return "attack"
        if elapsed < self.envelope["attack"] + self.envelope["decay"]:
            return "decay"
        return "sustain"

    def __repr__(self):
        return f"Voice({self.voice_id!r}, {self.frequency:.2f} Hz)"


class SynthEngine:
    """Voice manager plus the shared filter, output level and reverb stages.

    All public methods run on the caller's (control) thread and return
    immediately; they only queue time-stamped work for the audio thread.
    """

    def __init__(self, context: Optional[AudioContext] = None, sample_rate: int = 48000,
                 buffer_size: int = 256, output_device_index: Optional[int] = None):
        self.context = context
        self.sample_rate = context.sample_rate if context else sample_rate
        self.buffer_size = context.buffer_size if context else buffer_size
        self.output_device_index = output_device_index

        self.config: dict = default_config()
        self.voices: Dict[VoiceId, Voice] = {}
        # Released voices whose tails are still sounding, tracked apart from the registry.
        self._releasing: Dict[VoiceId, Voice] = {}
        self._lock = threading.RLock()
        self._initialized = False

        self.filter: Optional[BiquadFilterNode] = None
        self.master_gain: Optional[GainNode] = None
        self.reverb: Optional[ReverbNetwork] = None
        self.output_bus: Optional[GainNode] = None
        self.analyser: Optional[AnalyserNode] = None
        self.drums: Optional[DrumEngine] = None

    # ── Lifecycle ───────────────────────────────────────────────

    def initialize(self) -> bool:
        """Start audio output and build the graph.

        Call after a user gesture on hosts that gate audio behind one. Returns
        True once running; later calls return True without doing anything.
        """
        with self._lock:
            if self._initialized:
                return True
            if self.context is None or self.context.closed:
                self.context = AudioContext(self.sample_rate, self.buffer_size,
                                            output_device_index=self.output_device_index)
            if not self.context.resume():
                print("[SynthEngine] Audio output unavailable; engine not initialized")
                return False
            self._build_graph()
            self._initialized = True
        print("[SynthEngine] Synth engine initialized")
        return True

    def _build_graph(self):
        ctx = self.context
        cfg = self.config
        self.filter = BiquadFilterNode(ctx, cfg["filter_type"], cfg["filter_cutoff"],
                                       cfg["filter_resonance"])
        self.master_gain = GainNode(ctx, cfg["master_level"])
        self.reverb = ReverbNetwork(ctx, **cfg["reverb"])
        self.output_bus = GainNode(ctx, 1.0)
        self.analyser = AnalyserNode(ctx, fft_size=2048)

        def _wire():
            self.filter.connect(self.master_gain)
            self.master_gain.connect(self.reverb.input)
            self.reverb.wire()
            self.reverb.output.connect(self.output_bus)
            self.output_bus.connect(self.analyser)
            self.analyser.connect(ctx.destination)
        ctx.submit(_wire)
        self.drums = DrumEngine(ctx, self.output_bus)

    def close(self):
        """Silence everything, cancel scheduled stops and release the device."""
        with self._lock:
            self.voices.clear()
            self._releasing.clear()
            if self.context is not None:
                self.context.close()
            self.context = None
            self._initialized = False
            self.filter = self.master_gain = self.reverb = None
            self.output_bus = self.analyser = self.drums = None

    def is_initialized(self) -> bool:
        return self._initialized

    def _check_ready(self, action: str) -> bool:
        if not self._initialized:
            print(f"[SynthEngine] {action} ignored: synth not initialized. Call initialize() first.")
            return False
        return True

    # ── Voices ──────────────────────────────────────────────────

    def note_on(self, frequency: float, voice_id: VoiceId):
        """Start a note. Retriggering an id cuts its previous generator first."""
        if not self._check_ready("note_on"):
            return
        ctx = self.context
        with self._lock:
            retired = [v for v in (self.voices.pop(voice_id, None),
                                   self._releasing.pop(voice_id, None)) if v is not None]
            envelope = dict(self.config["envelope"])
            oscillator = OscillatorNode(ctx, self.config["waveform"], frequency)
            oscillator.tag = ("voice", voice_id)
            gain = GainNode(ctx, 0.0)
            voice = Voice(voice_id, frequency, oscillator, gain, envelope)
            self.voices[voice_id] = voice
            shared_filter = self.filter

        def _start():
            now = ctx.current_time
            for old in retired:
                # New attack starts from silence, so the old generator stops outright.
                old.oscillator.stop(now)
            oscillator.connect(gain)
            gain.connect(shared_filter)
            oscillator.on_ended.append(gain.disconnect)

            attack, decay, sustain = envelope["attack"], envelope["decay"], envelope["sustain"]
            g = gain.gain
            g.set_value_at_time(0.0, now)
            g.linear_ramp_to_value_at_time(1.0, now + attack)
            g.linear_ramp_to_value_at_time(sustain, now + attack + decay)
            oscillator.start(now)
            voice.started_at = now
        ctx.submit(_start)

    def note_off(self, voice_id: VoiceId):
        """Release a note. Unknown ids are ignored."""
        if not self._check_ready("note_off"):
            return
        ctx = self.context
        with self._lock:
            voice = self.voices.pop(voice_id, None)
            if voice is None:
                return
            self._prune_tails()
            self._releasing[voice_id] = voice
            release = self.config["envelope"]["release"]

        def _release():
            now = ctx.current_time
            g = voice.gain.gain
            g.cancel_and_hold_at_time(now)
            g.linear_ramp_to_value_at_time(0.0, now + release)
            voice.released_at = now
            voice.oscillator.stop(now + release + STOP_PADDING)
        ctx.submit(_release)

    def panic(self):
        """Release every active voice."""
        if not self._check_ready("panic"):
            return
        with self._lock:
            voice_ids = list(self.voices)
        for voice_id in voice_ids:
            self.note_off(voice_id)

    def active_voice_ids(self) -> List[VoiceId]:
        with self._lock:
            return list(self.voices)

    def releasing_voice_ids(self) -> List[VoiceId]:
        """Ids whose release tails have not finished yet."""
        with self._lock:
            self._prune_tails()
            return list(self._releasing)

    def _prune_tails(self):
        for voice_id in [k for k, v in self._releasing.items() if v.finished]:
            del self._releasing[voice_id]

    # ── Configuration ───────────────────────────────────────────

    def get_config(self) -> dict:
        with self._lock:
            return copy.deepcopy(self.config)

    def set_config(self, partial: dict):
        """Merge a partial configuration and push the changes to the live stages."""
        with self._lock:
            before = self.config
            self.config = merge_config(before, partial)
            changed = changed_fields(before, self.config)
            if not self._initialized or not changed:
                return
            cfg = copy.deepcopy(self.config)
        self.context.submit(lambda: self._apply_config(cfg, changed))

    def _apply_config(self, cfg: dict, changed: set):
        # Audio thread. Waveform and envelope only affect voices started later.
        if "master_level" in changed:
            self.master_gain.gain.set_value(cfg["master_level"])
        if "filter_type" in changed:
            self.filter.filter_type = cfg["filter_type"]
        if "filter_cutoff" in changed:
            self.filter.frequency.set_value(cfg["filter_cutoff"])
        if "filter_resonance" in changed:
            self.filter.q.set_value(cfg["filter_resonance"])
        if any(field.startswith("reverb.") for field in changed):
            self.reverb.set_params(**cfg["reverb"])

    # ── Percussion ──────────────────────────────────────────────

    def trigger_drum(self, drum_type: str) -> bool:
        if not self._check_ready("trigger_drum"):
            return False
        return self.drums.trigger(drum_type)

    def set_drum_volume(self, value: float):
        if not self._check_ready("set_drum_volume"):
            return
        self.drums.set_volume(value)

    # ── Taps ────────────────────────────────────────────────────

    def get_analyser(self) -> Optional[AnalyserNode]:
        """The metering tap on the output bus (None before initialize)."""
        return self.analyser

    def get_filter(self) -> Optional[BiquadFilterNode]:
        return self.filter

    def get_context(self) -> Optional[AudioContext]:
        return self.context
