"""Synthesized percussion: kick, snare and hi-hats from tones and noise bursts.

Sounds:
- Kick: sine with a fast 150 → 50 Hz pitch drop, short amplitude decay, square click on top
- Snare: band-passed noise burst plus a low sine for body
- Closed hi-hat: high-passed then band-passed noise, very short envelope
- Open hi-hat: same filtering, longer envelope

Every hit is fire-and-forget. Its nodes disconnect themselves from the drum
bus once their sources stop, so nothing outlives the hit.
"""
from typing import List, Optional

import numpy as np

from synth.audio_graph import (AudioNode, BiquadFilterNode, GainNode, NoiseBufferSource,
                               OscillatorNode, SourceNode)

DRUM_TYPES = ("kick", "snare", "hihat-closed", "hihat-open")

# Envelope floor for exponential decays (a ramp cannot reach zero).
_SILENCE = 0.01

CLOSED_HIHAT_DECAY = 0.05
OPEN_HIHAT_DECAY = 0.3

# Nominal length of each hit, i.e. when its last source stops.
DRUM_DURATIONS = {
    "kick": 0.4,
    "snare": 0.2,
    "hihat-closed": CLOSED_HIHAT_DECAY,
    "hihat-open": OPEN_HIHAT_DECAY,
}


class DrumEngine:
    """Percussion voices sharing one volume-controlled output bus."""

    def __init__(self, context, destination: AudioNode, volume: float = 0.8,
                 rng: Optional[np.random.Generator] = None):
        self.context = context
        self.volume = volume
        self.output = GainNode(context, volume)
        self._rng = rng if rng is not None else np.random.default_rng()
        context.submit(lambda: self.output.connect(destination))

    def trigger(self, drum: str) -> bool:
        """Trigger a drum sound. Returns False for an unknown drum type."""
        builders = {
            "kick": self._play_kick,
            "snare": self._play_snare,
            "hihat-closed": lambda now: self._play_hihat(now, CLOSED_HIHAT_DECAY),
            "hihat-open": lambda now: self._play_hihat(now, OPEN_HIHAT_DECAY),
        }
        builder = builders.get(drum)
        if builder is None:
            print(f"[DrumEngine] Unknown drum type: {drum!r}")
            return False
        self.context.submit(lambda: builder(self.context.current_time))
        return True

    def set_volume(self, value: float):
        """Set the overall drum volume (clamped to 0–1)."""
        self.volume = max(0.0, min(1.0, value))
        volume = self.volume
        self.context.submit(lambda: self.output.gain.set_value(volume))

    def active_sources(self) -> int:
        """Number of nodes currently feeding the drum bus."""
        return len(self.output.inputs)

    # ── Recipes (audio thread) ───────────────────────────────────

    def _chain(self, source: SourceNode, nodes: List[AudioNode]):
        """Connect source → nodes… → bus; dispose the chain when the source ends."""
        source.tag = "drum"
        upstream = source
        for node in nodes:
            upstream.connect(node)
            upstream = node
        upstream.connect(self.output)

        def _dispose():
            for node in nodes:
                node.disconnect()
        source.on_ended.append(_dispose)

    def _play_kick(self, now: float):
        # Body: pitch envelope starts high and drops fast
        osc = OscillatorNode(self.context, "sine")
        osc.frequency.set_value_at_time(150.0, now)
        osc.frequency.exponential_ramp_to_value_at_time(50.0, now + 0.05)
        gain = GainNode(self.context, 0.0)
        gain.gain.set_value_at_time(1.0, now)
        gain.gain.exponential_ramp_to_value_at_time(_SILENCE, now + 0.4)

        # Click transient for attack definition
        click = OscillatorNode(self.context, "square", 200.0)
        click_gain = GainNode(self.context, 0.0)
        click_gain.gain.set_value_at_time(0.3, now)
        click_gain.gain.exponential_ramp_to_value_at_time(_SILENCE, now + 0.01)

        self._chain(osc, [gain])
        self._chain(click, [click_gain])
        osc.start(now)
        osc.stop(now + 0.4)
        click.start(now)
        click.stop(now + 0.02)

    def _play_snare(self, now: float):
        noise = NoiseBufferSource(self.context, 0.2, self._rng)
        noise_filter = BiquadFilterNode(self.context, "bandpass", 3000.0, 1.0)
        noise_gain = GainNode(self.context, 0.0)
        noise_gain.gain.set_value_at_time(0.6, now)
        noise_gain.gain.exponential_ramp_to_value_at_time(_SILENCE, now + 0.15)

        # Tonal component (low sine for body)
        osc = OscillatorNode(self.context, "sine", 180.0)
        osc_gain = GainNode(self.context, 0.0)
        osc_gain.gain.set_value_at_time(0.5, now)
        osc_gain.gain.exponential_ramp_to_value_at_time(_SILENCE, now + 0.08)

        self._chain(noise, [noise_filter, noise_gain])
        self._chain(osc, [osc_gain])
        noise.start(now)
        osc.start(now)
        osc.stop(now + 0.1)

    def _play_hihat(self, now: float, duration: float):
        noise = NoiseBufferSource(self.context, duration, self._rng)
        # Highpass for metallic character, bandpass for extra shaping
        hp_filter = BiquadFilterNode(self.context, "highpass", 7000.0, 0.7071)
        bp_filter = BiquadFilterNode(self.context, "bandpass", 10000.0, 1.0)
        gain = GainNode(self.context, 0.0)
        gain.gain.set_value_at_time(0.3, now)
        gain.gain.exponential_ramp_to_value_at_time(_SILENCE, now + duration)

        self._chain(noise, [hp_filter, bp_filter, gain])
        noise.start(now)
