"""
tonepower - Tone Power Estimator
Streaming single-bin Goertzel resonator with a dual-window scheme, so the
reported power never collapses to zero at a window boundary.
"""

import math

import numpy as np


DEFAULT_WINDOW_LENGTH = 1000
DEFAULT_EPSILON = 1e-7


class TonePowerError(ValueError):
    """Base class for estimator errors."""


class ConfigurationError(TonePowerError):
    """Raised when the estimator is constructed with unusable parameters."""


class SignalError(TonePowerError):
    """Raised when a non-finite sample reaches the estimator."""


class WindowSlot:
    """Resonator state and energy bookkeeping for one window."""
    __slots__ = ('prev', 'prev2', 'accumulated_energy', 'sample_count')

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.prev = 0.0
        self.prev2 = 0.0
        self.accumulated_energy = 0.0
        self.sample_count = 0

    def advance(self, sample: float, coeff: float) -> None:
        s = sample + coeff * self.prev - self.prev2
        self.prev2 = self.prev
        self.prev = s
        self.sample_count += 1

    def power(self, coeff: float) -> float:
        """Un-normalized resonator power (squared bin magnitude)."""
        return self.prev2 * self.prev2 + self.prev * self.prev - coeff * self.prev * self.prev2

    def __repr__(self):
        return (f"WindowSlot(prev={self.prev!r}, prev2={self.prev2!r}, "
                f"accumulated_energy={self.accumulated_energy!r}, sample_count={self.sample_count})")


class TonePowerEstimator:
    """
    Real-time power estimate of one target frequency (Goertzel, 2 slots).

    Call process() once per sample in arrival order. Both slots advance on
    every sample; they alternate being reported in blocks of `window_length`
    samples, and the stale slot is flushed on the first sample at which its
    count reaches `window_length`. The reported slot therefore always holds
    between one and two windows of history once the first window has passed.

    The estimate is normalized by the slot's signal energy and sample count,
    so a pure on-target tone settles near 0.5 whatever its amplitude, and
    off-target tones settle near zero.

    Not thread-safe: owned by whichever thread delivers the samples.
    """
    __slots__ = ('_target_frequency', '_sample_rate', '_window_length', '_epsilon',
                 '_coeff', '_slots', '_total_samples_seen')

    def __init__(self, target_frequency: float, sample_rate: float,
                 window_length: int = DEFAULT_WINDOW_LENGTH, epsilon: float = DEFAULT_EPSILON):
        target_frequency, sample_rate = _validate_tuning(target_frequency, sample_rate)
        if isinstance(window_length, bool) or not isinstance(window_length, (int, np.integer)):
            raise ConfigurationError(f"window_length must be an integer, got {window_length!r}")
        if window_length < 2:
            raise ConfigurationError(f"window_length must be at least 2, got {window_length}")
        try:
            epsilon = float(epsilon)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"epsilon must be a number, got {epsilon!r}") from e
        if not math.isfinite(epsilon) or epsilon <= 0:
            raise ConfigurationError(f"epsilon must be a positive finite number, got {epsilon}")

        self._target_frequency = target_frequency
        self._sample_rate = sample_rate
        self._window_length = int(window_length)
        self._epsilon = epsilon
        self._coeff = 2.0 * math.cos(2.0 * math.pi * target_frequency / sample_rate)
        self._slots = (WindowSlot(), WindowSlot())
        self._total_samples_seen = 0

    @property
    def target_frequency(self) -> float:
        return self._target_frequency

    @property
    def sample_rate(self) -> float:
        return self._sample_rate

    @property
    def window_length(self) -> int:
        return self._window_length

    @property
    def coefficient(self) -> float:
        return self._coeff

    @property
    def bin_width(self) -> float:
        """Approximate frequency resolution in Hz."""
        return self._sample_rate / self._window_length

    @property
    def total_samples_seen(self) -> int:
        return self._total_samples_seen

    @property
    def active_slot(self) -> int:
        """Index (0 or 1) of the slot whose estimate is currently reported."""
        return (self._total_samples_seen // self._window_length) % 2

    @property
    def slots(self) -> tuple:
        return self._slots

    def reset(self) -> None:
        """Return to the freshly constructed state."""
        for slot in self._slots:
            slot.reset()
        self._total_samples_seen = 0

    def process(self, sample: float) -> float:
        """Feed one sample, return the current normalized power."""
        sample = float(sample)
        if not math.isfinite(sample):
            raise SignalError(f"non-finite sample {sample!r} after {self._total_samples_seen} samples")

        coeff = self._coeff
        slot_a, slot_b = self._slots
        slot_a.advance(sample, coeff)
        slot_b.advance(sample, coeff)

        self._total_samples_seen += 1
        active_idx = (self._total_samples_seen // self._window_length) % 2
        active = self._slots[active_idx]
        stale = self._slots[1 - active_idx]

        if stale.sample_count >= self._window_length:
            stale.reset()

        energy = sample * sample
        slot_a.accumulated_energy += energy
        slot_b.accumulated_energy += energy

        return active.power(coeff) / (active.accumulated_energy + self._epsilon) / active.sample_count

    def process_block(self, samples) -> np.ndarray:
        """
        Feed a block of samples in order, returning one power per sample.

        The whole block is checked first; a non-finite value raises
        SignalError before any sample is consumed.
        """
        block = np.asarray(samples, dtype=np.float64).reshape(-1)
        bad = np.flatnonzero(~np.isfinite(block))
        if bad.size:
            idx = int(bad[0])
            raise SignalError(f"non-finite sample {block[idx]!r} at block index {idx}")

        powers = np.empty(block.shape[0], dtype=np.float64)
        process = self.process
        for i, sample in enumerate(block.tolist()):
            powers[i] = process(sample)
        return powers

    def __repr__(self):
        return (f"TonePowerEstimator(target_frequency={self._target_frequency!r}, "
                f"sample_rate={self._sample_rate!r}, window_length={self._window_length})")


def _validate_tuning(target_frequency, sample_rate) -> tuple[float, float]:
    try:
        target_frequency = float(target_frequency)
        sample_rate = float(sample_rate)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"target_frequency and sample_rate must be numbers, got {target_frequency!r}, {sample_rate!r}"
        ) from e

    if not math.isfinite(sample_rate) or sample_rate <= 0:
        raise ConfigurationError(f"sample_rate must be positive, got {sample_rate}")
    nyquist = sample_rate / 2
    if not math.isfinite(target_frequency) or not 0 < target_frequency < nyquist:
        raise ConfigurationError(
            f"target_frequency must be inside (0, {nyquist:g}) Hz for sample_rate {sample_rate:g}, "
            f"got {target_frequency}"
        )
    return target_frequency, sample_rate
