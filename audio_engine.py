"""
tonepower - Audio Engine
Captures a mono input stream and runs every sample through the tone power
estimator. Uses sounddevice (PortAudio) for capture.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np

from config import Config
from logging_utils import is_enabled, log_event
from tone_power import SignalError, TonePowerEstimator


def _sounddevice():
    """Import sounddevice on first use; PortAudio is only needed once capture starts"""
    import sounddevice as sd
    return sd


@dataclass
class PowerReading:
    """Power estimates for one captured block"""
    timestamp: float           # When the block was processed (time.time())
    powers: np.ndarray = field(repr=False)  # One estimate per sample, in arrival order
    power: float               # Estimate after the last sample of the block
    peak: float                # Largest estimate in the block
    total_samples: int         # Samples processed by the estimator so far


class AudioEngine:
    def __init__(self, config: Config, power_callback: Callable[[PowerReading], None]):
        self.config = config
        self.power_callback = power_callback

        self.stream = None
        self.estimator: Optional[TonePowerEstimator] = None
        self.sample_rate: float = 0.0
        self.running = False

        self._reset_session_stats()

    def _reset_session_stats(self) -> None:
        self._session_started_at = time.time()
        self._session_block_count = 0
        self._session_sample_count = 0
        self._session_rejected_blocks = 0
        self._session_status_count = 0
        self._session_power_min: float | None = None
        self._session_power_max: float | None = None
        self._session_power_sum: float = 0.0

    def _update_session_stats(self, powers: np.ndarray) -> None:
        if powers.size == 0:
            return
        block_min = float(np.min(powers))
        block_max = float(np.max(powers))
        self._session_block_count += 1
        self._session_sample_count += int(powers.size)
        self._session_power_sum += float(np.sum(powers))
        if self._session_power_min is None or block_min < self._session_power_min:
            self._session_power_min = block_min
        if self._session_power_max is None or block_max > self._session_power_max:
            self._session_power_max = block_max

    def _log_shutdown_summary(self) -> None:
        if self._session_block_count <= 0 and self._session_rejected_blocks <= 0:
            return

        elapsed_s = max(0.0, time.time() - self._session_started_at)
        power_min = float(self._session_power_min or 0.0)
        power_max = float(self._session_power_max or 0.0)
        power_mean = self._session_power_sum / max(1, self._session_sample_count)

        log_event(
            "INFO",
            "Audio",
            "Shutdown power summary",
            blocks=self._session_block_count,
            samples=self._session_sample_count,
            rejected_blocks=self._session_rejected_blocks,
            status_flags=self._session_status_count,
            seconds=f"{elapsed_s:.1f}",
            power_min=f"{power_min:.6f}",
            power_max=f"{power_max:.6f}",
            power_mean=f"{power_mean:.6f}",
            power_span=f"{(power_max - power_min):.6f}",
        )

    def _resolve_input_device(self, sd) -> dict:
        """Device info for the configured input, or the system default input"""
        device_index = self.config.audio.device_index
        if device_index is None:
            return sd.query_devices(kind='input')
        device_info = sd.query_devices(device_index)
        if device_info['max_input_channels'] < 1:
            raise ValueError(f"device {device_index} ({device_info['name']}) has no input channels")
        return device_info

    def _create_estimator(self, sample_rate: float) -> TonePowerEstimator:
        detector = self.config.detector
        return TonePowerEstimator(
            detector.target_frequency,
            sample_rate,
            window_length=detector.window_length,
            epsilon=detector.epsilon,
        )

    def start(self) -> bool:
        """Start audio capture and power estimation. Returns True when running."""
        if self.running:
            return True

        self._reset_session_stats()

        try:
            sd = _sounddevice()
            device_info = self._resolve_input_device(sd)
            sample_rate = self.config.audio.sample_rate or device_info['default_samplerate']
            self.estimator = self._create_estimator(sample_rate)
            self.sample_rate = self.estimator.sample_rate

            log_event("INFO", "AudioEngine", "Using input device", device=device_info['name'])
            log_event("INFO", "AudioEngine", "Input format", channels=1, sample_rate=int(self.sample_rate),
                      blocksize=self.config.audio.buffer_size, latency_ms=self.config.audio.latency_ms)
            log_event("INFO", "AudioEngine", "Tone detector", target_hz=self.estimator.target_frequency,
                      window=self.estimator.window_length, bin_width_hz=f"{self.estimator.bin_width:.1f}")

            self.stream = sd.InputStream(
                device=device_info.get('index', self.config.audio.device_index),
                channels=1,
                samplerate=self.sample_rate,
                blocksize=self.config.audio.buffer_size,
                dtype='float32',
                latency=self.config.audio.latency_ms / 1000.0,
                callback=self._audio_callback,
            )
            self.running = True
            self.stream.start()
            log_event("INFO", "AudioEngine", "Input capture started")
            return True
        except Exception as e:
            log_event("ERROR", "AudioEngine", "Failed to start", error=e)
            self.running = False
            if self.stream is not None:
                self.stream.close()
                self.stream = None
            return False

    def stop(self) -> None:
        """Stop audio capture"""
        if not self.running and self.stream is None:
            return
        self.running = False
        self._log_shutdown_summary()
        if self.stream is not None:
            self.stream.stop()
            self.stream.close()
            self.stream = None
        log_event("INFO", "AudioEngine", "Stopped")

    def _audio_callback(self, indata, frames, time_info, status):
        """sounddevice callback - runs on the audio thread"""
        if status:
            self._session_status_count += 1
            log_event("WARNING", "AudioEngine", "Stream status", status=status)
        if not self.running or self.estimator is None:
            return

        mono = indata[:, 0] if indata.ndim > 1 else indata
        try:
            powers = self.estimator.process_block(mono)
        except SignalError as e:
            self._session_rejected_blocks += 1
            log_event("ERROR", "AudioEngine", "Rejected block", frames=frames, error=e)
            return

        if powers.size == 0:
            return

        self._update_session_stats(powers)
        reading = PowerReading(
            timestamp=time.time(),
            powers=powers,
            power=float(powers[-1]),
            peak=float(np.max(powers)),
            total_samples=self.estimator.total_samples_seen,
        )
        if is_enabled("DEBUG"):
            log_event("DEBUG", "AudioEngine", "Block", frames=frames, power=reading.power, peak=reading.peak)
        self.power_callback(reading)

    def get_session_stats(self) -> dict:
        """Snapshot of the running session counters"""
        return {
            'blocks': self._session_block_count,
            'samples': self._session_sample_count,
            'rejected_blocks': self._session_rejected_blocks,
            'status_flags': self._session_status_count,
            'power_min': self._session_power_min,
            'power_max': self._session_power_max,
        }


if __name__ == "__main__":
    def on_power(reading: PowerReading):
        log_event("INFO", "Power", "Block", power=f"{reading.power:.6f}", peak=f"{reading.peak:.6f}")

    engine = AudioEngine(Config(), on_power)

    log_event("INFO", "AudioEngine", "Starting audio capture (Ctrl+C to stop)...")
    if engine.start():
        try:
            while True:
                time.sleep(0.1)
        except KeyboardInterrupt:
            engine.stop()
