# tonepower Configuration
# All default values and constants

from dataclasses import dataclass, field, is_dataclass

from logging_utils import log_event
from tone_power import DEFAULT_EPSILON, DEFAULT_WINDOW_LENGTH


CURRENT_CONFIG_VERSION = 1

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass
class DetectorConfig:
    """Tone power estimator parameters"""
    target_frequency: float = 440.0            # Frequency to monitor (Hz)
    window_length: int = DEFAULT_WINDOW_LENGTH  # Samples per window (resolution ~ sample_rate / window_length)
    epsilon: float = DEFAULT_EPSILON           # Guards the energy normalization against division by zero


@dataclass
class AudioConfig:
    """Audio capture settings"""
    # None means use the device's default sample rate
    sample_rate: float | None = None
    buffer_size: int = 1024           # Frames per callback block
    # Device index - None means use system default input
    device_index: int | None = None
    latency_ms: float = 150.0         # Requested input latency (ms)
    duration_s: float = 10.0          # How long run.py captures before stopping (0 = until Ctrl+C)


@dataclass
class Config:
    """Master configuration"""
    version: int = CURRENT_CONFIG_VERSION   # Schema version for persisted configs
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    log_level: str = "INFO"           # Logging level (DEBUG/INFO/WARNING/ERROR)


def apply_dict_to_dataclass(target, data) -> None:
    """Recursively apply values from a dict onto a dataclass instance.
    Unknown keys are ignored; nested sections that are not dicts keep their defaults."""
    if not isinstance(data, dict):
        return

    for key, value in data.items():
        if not hasattr(target, key):
            continue

        current = getattr(target, key)

        if is_dataclass(current):
            if isinstance(value, dict):
                apply_dict_to_dataclass(current, value)
            else:
                log_event("WARNING", "Config", "Ignoring malformed section", section=key)
            continue

        setattr(target, key, value)


def migrate_config(config: Config, loaded_version) -> None:
    """Upgrade older config structures to the current schema.
    Fills defaults for fields that were stored as null and bumps version."""
    try:
        version = int(loaded_version) if loaded_version is not None else 0
    except Exception:
        version = 0

    if version < 1:
        defaults = DetectorConfig()
        for name in ("target_frequency", "window_length", "epsilon"):
            if getattr(config.detector, name, None) is None:
                setattr(config.detector, name, getattr(defaults, name))
        if getattr(config.audio, 'buffer_size', None) in (None, 0):
            config.audio.buffer_size = AudioConfig().buffer_size
        if getattr(config.audio, 'latency_ms', None) is None:
            config.audio.latency_ms = AudioConfig().latency_ms

    level = str(getattr(config, 'log_level', 'INFO') or 'INFO').upper()
    config.log_level = level if level in LOG_LEVELS else 'INFO'

    try:
        buffer_size = int(config.audio.buffer_size)
    except Exception:
        buffer_size = AudioConfig().buffer_size
    config.audio.buffer_size = max(16, min(16384, buffer_size))

    config.version = CURRENT_CONFIG_VERSION
