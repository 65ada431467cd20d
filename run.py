#!/usr/bin/env python3
"""
tonepower - Real-time tone power meter

Captures audio from the default (or a chosen) input device and prints the
power of one target frequency as it is estimated.
"""

import argparse
import queue
import sys
import time

from audio_engine import AudioEngine, PowerReading
from config import Config
from config_persistence import load_config, save_config
from logging_utils import log_event, set_log_level
from tone_power import ConfigurationError, TonePowerEstimator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Estimate the power of a single tone in live audio")
    parser.add_argument("--frequency", type=float, help="Target frequency in Hz")
    parser.add_argument("--sample-rate", type=float, help="Capture sample rate in Hz (default: device default)")
    parser.add_argument("--window", type=int, help="Window length in samples")
    parser.add_argument("--device", type=int, help="Input device index (default: system default)")
    parser.add_argument("--duration", type=float, help="Seconds to run, 0 = until Ctrl+C")
    parser.add_argument("--latency-ms", type=float, help="Requested input latency in milliseconds")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    parser.add_argument(
        "--save-config",
        action="store_true",
        help="Persist the effective settings as the new defaults",
    )
    return parser


def apply_args(config: Config, args: argparse.Namespace) -> Config:
    """Overlay command-line options onto a loaded config."""
    if args.frequency is not None:
        config.detector.target_frequency = args.frequency
    if args.window is not None:
        config.detector.window_length = args.window
    if args.sample_rate is not None:
        config.audio.sample_rate = args.sample_rate
    if args.device is not None:
        config.audio.device_index = args.device
    if args.duration is not None:
        config.audio.duration_s = args.duration
    if args.latency_ms is not None:
        config.audio.latency_ms = args.latency_ms
    if args.log_level is not None:
        config.log_level = args.log_level
    return config


def validate_detector(config: Config) -> None:
    """Raise ConfigurationError early when the detector settings cannot work."""
    if config.audio.sample_rate is not None:
        TonePowerEstimator(
            config.detector.target_frequency,
            config.audio.sample_rate,
            window_length=config.detector.window_length,
            epsilon=config.detector.epsilon,
        )


def drain_readings(readings: queue.Queue, duration_s: float, out=None) -> int:
    """Print readings until the duration elapses. Returns the number printed."""
    out = out or sys.stdout
    deadline = time.monotonic() + duration_s if duration_s > 0 else None
    printed = 0
    while deadline is None or time.monotonic() < deadline:
        try:
            reading = readings.get(timeout=0.1)
        except queue.Empty:
            continue
        print(f"{reading.power:.6f}", file=out, flush=True)
        printed += 1
    return printed


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    config = apply_args(load_config(), args)
    set_log_level(config.log_level)

    try:
        validate_detector(config)
    except ConfigurationError as e:
        log_event("ERROR", "Run", "Invalid detector settings", error=e)
        return 1

    if args.save_config:
        save_config(config)

    readings: "queue.Queue[PowerReading]" = queue.Queue()
    engine = AudioEngine(config, readings.put_nowait)
    if not engine.start():
        return 1

    log_event("INFO", "Run", "Running", seconds=config.audio.duration_s or "until Ctrl+C")
    try:
        drain_readings(readings, config.audio.duration_s)
    except KeyboardInterrupt:
        log_event("INFO", "Run", "Interrupted")
    finally:
        engine.stop()
    log_event("INFO", "Run", "Done")
    return 0


if __name__ == "__main__":
    sys.exit(main())
