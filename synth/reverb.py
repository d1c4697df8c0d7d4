"""Schroeder-style diffuse reverb: parallel damped feedback delay lines plus a dry/wet mix.

    input ──┬──────────────────────────────► dry gain (1 - mix) ──┬──► output
            ├─► delay 1 ─┐                                        │
            ├─► delay 2 ─┼─► wet bus (1/N) ─► wet gain (mix) ─────┘
            ├─► delay 3 ─┤
            └─► delay 4 ─┘

Each delay line loops its own output back through a damping low-pass and a
feedback gain. Parameter setters are meant to run on the audio thread inside a
single submitted command, so every line changes between the same two blocks.
"""
from typing import Sequence

from synth.audio_graph import AudioNode, FeedbackDelayLine, GainNode

# Delay times (seconds). Pairwise ratios are non-integer so the combs do not
# reinforce each other's resonances.
DELAY_TIMES = (0.0297, 0.0371, 0.0411, 0.0437)


def decay_to_feedback(decay: float) -> float:
    return 0.3 + decay * 0.65


def damping_to_cutoff(damping: float) -> float:
    return 20000.0 - damping * 18000.0


class ReverbNetwork:
    """The shared reverb stage. Connect a source to `input`, take `output` onward."""

    def __init__(self, context, mix: float = 0.2, decay: float = 0.5, damping: float = 0.3,
                 delay_times: Sequence[float] = DELAY_TIMES):
        if len(delay_times) < 3:
            raise ValueError("reverb needs at least three delay lines")
        self.context = context
        self.input = AudioNode(context)
        self.output = AudioNode(context)
        self.dry = GainNode(context, 1.0 - mix)
        self.wet = GainNode(context, mix)
        # N unity-gain taps would sum well above unity.
        self.wet_bus = GainNode(context, 1.0 / len(delay_times))
        self.lines = [
            FeedbackDelayLine(context, t, decay_to_feedback(decay), damping_to_cutoff(damping))
            for t in delay_times
        ]
        self.mix = mix
        self.decay = decay
        self.damping = damping

    def wire(self):
        """Build the connections. Audio thread only."""
        self.input.connect(self.dry)
        self.dry.connect(self.output)
        for line in self.lines:
            self.input.connect(line)
            line.connect(self.wet_bus)
        self.wet_bus.connect(self.wet)
        self.wet.connect(self.output)

    def set_mix(self, mix: float):
        self.mix = mix
        self.dry.gain.set_value(1.0 - mix)
        self.wet.gain.set_value(mix)

    def set_decay(self, decay: float):
        self.decay = decay
        feedback = decay_to_feedback(decay)
        for line in self.lines:
            line.feedback.set_value(feedback)

    def set_damping(self, damping: float):
        self.damping = damping
        cutoff = damping_to_cutoff(damping)
        for line in self.lines:
            line.damping_cutoff.set_value(cutoff)

    def set_params(self, mix: float, decay: float, damping: float):
        """Apply all three settings at once. Call inside one submitted command."""
        self.set_mix(mix)
        self.set_decay(decay)
        self.set_damping(damping)
