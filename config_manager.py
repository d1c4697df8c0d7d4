"""Configuration file management for runtime (device) settings."""
import json
from pathlib import Path
from typing import Optional, Union

SAMPLE_RATES = (22050, 44100, 48000, 96000)


class ConfigManager:
    """Manages application configuration: MIDI input, audio output and block size."""

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        self.config_file = Path(config_file) if config_file else Path(__file__).parent / "config.json"
        self.config = self._load_config()

    def _load_config(self) -> dict:
        """Load configuration from file."""
        config = self._default_config()
        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    config.update(loaded)
            except (OSError, ValueError) as e:
                print(f"Error loading config, using defaults: {e}")
        return config

    def _default_config(self) -> dict:
        """Return default configuration."""
        return {
            "selected_midi_device": None,
            "output_device_index": None,
            "sample_rate": 48000,
            "buffer_size": 256,
        }

    def save_config(self):
        """Save configuration to file."""
        try:
            with open(self.config_file, 'w') as f:
                json.dump(self.config, f, indent=2)
        except OSError as e:
            print(f"Error saving config: {e}")

    # ── MIDI device ──────────────────────────────────────────────

    def get_selected_device(self) -> Optional[str]:
        """Get the saved MIDI device."""
        return self.config.get("selected_midi_device")

    def set_selected_device(self, device_name: Optional[str]):
        """Save the selected MIDI device."""
        self.config["selected_midi_device"] = device_name
        self.save_config()

    # ── Audio output ─────────────────────────────────────────────

    def get_output_device_index(self) -> Optional[int]:
        """Return the saved output device index, or None for the system default."""
        index = self.config.get("output_device_index")
        return int(index) if index is not None else None

    def set_output_device_index(self, index: Optional[int]):
        self.config["output_device_index"] = None if index is None else max(0, int(index))
        self.save_config()

    def get_sample_rate(self) -> int:
        rate = int(self.config.get("sample_rate", 48000))
        return rate if rate in SAMPLE_RATES else 48000

    def set_sample_rate(self, rate: int):
        """Persist the sample rate. Unsupported rates fall back to 48000."""
        rate = int(rate)
        self.config["sample_rate"] = rate if rate in SAMPLE_RATES else 48000
        self.save_config()

    def get_buffer_size(self) -> int:
        return int(max(64, min(4096, int(self.config.get("buffer_size", 256)))))

    def set_buffer_size(self, frames: int):
        """Persist the block size in frames. Clamped to [64, 4096]."""
        self.config["buffer_size"] = int(max(64, min(4096, frames)))
        self.save_config()
