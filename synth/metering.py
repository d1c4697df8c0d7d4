"""Metering tap — read-only view of the post-processing signal for displays."""
import numpy as np

from synth.audio_graph import AudioNode


class AnalyserNode(AudioNode):
    """Pass-through node that remembers the most recent `fft_size` samples.

    Readers (a waveform display loop, a level meter) get copies; nothing they
    do reaches the signal path. No guarantee is made about how fresh the data
    is beyond "as of the last rendered block".
    """

    def __init__(self, context, fft_size: int = 2048):
        super().__init__(context)
        self.fft_size = fft_size
        self._ring = np.zeros(fft_size, dtype=np.float32)
        self._write = 0

    def process(self, samples, start_frame, num_frames):
        n = min(num_frames, self.fft_size)
        tail = samples[-n:].astype(np.float32)
        end = self._write + n
        if end <= self.fft_size:
            self._ring[self._write:end] = tail
        else:
            split = self.fft_size - self._write
            self._ring[self._write:] = tail[:split]
            self._ring[:n - split] = tail[split:]
        self._write = end % self.fft_size
        return samples

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def get_float_time_domain_data(self) -> np.ndarray:
        """Oldest-to-newest copy of the last `fft_size` samples."""
        return np.roll(self._ring, -self._write).copy()

    def get_byte_time_domain_data(self) -> np.ndarray:
        """Same data as unsigned bytes centred on 128 (silence == 128)."""
        data = self.get_float_time_domain_data()
        return np.clip(np.round(128.0 + data * 128.0), 0, 255).astype(np.uint8)

    def rms(self) -> float:
        return float(np.sqrt(np.mean(self._ring.astype(np.float64) ** 2)))

    def peak(self) -> float:
        return float(np.max(np.abs(self._ring)))
