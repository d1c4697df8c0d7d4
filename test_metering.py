#!/usr/bin/env python3
"""ABOUTME: Tests for the analyser tap used by waveform displays and level meters.
ABOUTME: Checks ring-buffer ordering, byte conversion and that reading never alters the signal."""

import sys
from pathlib import Path

import numpy as np

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from synth.audio_context import AudioContext
from synth.metering import AnalyserNode
from synth.synth_engine import SynthEngine


def make_context():
    ctx = AudioContext(sample_rate=8000, buffer_size=128, open_stream=False)
    ctx.resume()
    return ctx


def test_ring_buffer_keeps_latest_samples_in_order():
    analyser = AnalyserNode(make_context(), fft_size=8)
    analyser.process(np.arange(5.0), 0, 5)
    analyser.process(np.arange(5.0, 10.0), 5, 5)
    assert analyser.get_float_time_domain_data().tolist() == [2, 3, 4, 5, 6, 7, 8, 9]


def test_block_larger_than_window():
    analyser = AnalyserNode(make_context(), fft_size=4)
    analyser.process(np.arange(10.0), 0, 10)
    assert analyser.get_float_time_domain_data().tolist() == [6, 7, 8, 9]


def test_silence_and_bins():
    analyser = AnalyserNode(make_context())
    assert analyser.frequency_bin_count == 1024
    assert analyser.rms() == 0.0
    assert analyser.peak() == 0.0
    assert (analyser.get_byte_time_domain_data() == 128).all()


def test_byte_data_scaling():
    analyser = AnalyserNode(make_context(), fft_size=4)
    analyser.process(np.array([-1.0, -0.5, 0.5, 1.0]), 0, 4)
    assert analyser.get_byte_time_domain_data().tolist() == [0, 64, 192, 255]
    assert analyser.peak() == 1.0


def test_pass_through_and_copies():
    analyser = AnalyserNode(make_context(), fft_size=4)
    block = np.array([0.1, 0.2, 0.3, 0.4])
    assert analyser.process(block, 0, 4) is block
    snapshot = analyser.get_float_time_domain_data()
    snapshot[:] = 0.0
    assert analyser.peak() > 0.39


def test_engine_output_is_metered():
    ctx = make_context()
    engine = SynthEngine(ctx)
    assert engine.initialize()
    engine.note_on(220.0, 57)
    out = np.concatenate([ctx.generate(128) for _ in range(20)])
    analyser = engine.get_analyser()
    assert analyser.peak() > 0.05
    recent = analyser.get_float_time_domain_data()[-128:]
    assert np.allclose(recent, out[-128:], atol=1e-6)


def main():
    tests = [test_ring_buffer_keeps_latest_samples_in_order, test_block_larger_than_window,
             test_silence_and_bins, test_byte_data_scaling, test_pass_through_and_copies,
             test_engine_output_is_metered]
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
