import unittest
from contextlib import contextmanager
from unittest import mock

import numpy as np

from audio_engine import AudioEngine, PowerReading
from config import Config
from tone_power import TonePowerEstimator


FAKE_DEVICE = {
    'name': 'Fake Mic',
    'index': 3,
    'default_samplerate': 48000.0,
    'max_input_channels': 1,
}


@contextmanager
def patch_sounddevice():
    sd_mock = mock.MagicMock()
    with mock.patch("audio_engine._sounddevice", return_value=sd_mock):
        yield sd_mock


def tone_block(freq, frames, sample_rate=48000.0):
    n = np.arange(frames)
    return np.sin(2 * np.pi * freq * n / sample_rate).astype(np.float32).reshape(-1, 1)


class TestAudioEngineStart(unittest.TestCase):
    def test_start_opens_mono_stream_at_device_rate(self):
        with patch_sounddevice() as sd_mock:
            sd_mock.query_devices.return_value = FAKE_DEVICE
            engine = AudioEngine(Config(), lambda reading: None)

            self.assertTrue(engine.start())

            sd_mock.query_devices.assert_called_once_with(kind='input')
            _, kwargs = sd_mock.InputStream.call_args
            self.assertEqual(kwargs["device"], 3)
            self.assertEqual(kwargs["channels"], 1)
            self.assertEqual(kwargs["samplerate"], 48000.0)
            self.assertEqual(kwargs["blocksize"], 1024)
            self.assertEqual(kwargs["dtype"], 'float32')
            self.assertAlmostEqual(kwargs["latency"], 0.15)
            self.assertEqual(kwargs["callback"], engine._audio_callback)
            sd_mock.InputStream.return_value.start.assert_called_once()

            self.assertTrue(engine.running)
            self.assertEqual(engine.sample_rate, 48000.0)
            self.assertEqual(engine.estimator.target_frequency, 440.0)
            self.assertEqual(engine.estimator.sample_rate, 48000.0)

            # second start is a no-op
            self.assertTrue(engine.start())
            self.assertEqual(sd_mock.InputStream.call_count, 1)

    def test_configured_device_and_rate_win(self):
        cfg = Config()
        cfg.audio.device_index = 5
        cfg.audio.sample_rate = 16000.0
        cfg.detector.target_frequency = 1000.0
        cfg.detector.window_length = 400
        with patch_sounddevice() as sd_mock:
            sd_mock.query_devices.return_value = dict(FAKE_DEVICE, index=5)
            engine = AudioEngine(cfg, lambda reading: None)
            self.assertTrue(engine.start())

            sd_mock.query_devices.assert_called_once_with(5)
            _, kwargs = sd_mock.InputStream.call_args
            self.assertEqual(kwargs["device"], 5)
            self.assertEqual(kwargs["samplerate"], 16000.0)
            self.assertEqual(engine.estimator.window_length, 400)

    def test_output_only_device_rejected(self):
        cfg = Config()
        cfg.audio.device_index = 1
        with patch_sounddevice() as sd_mock, mock.patch("audio_engine.log_event") as log_mock:
            sd_mock.query_devices.return_value = dict(FAKE_DEVICE, max_input_channels=0)
            engine = AudioEngine(cfg, lambda reading: None)
            self.assertFalse(engine.start())
            sd_mock.InputStream.assert_not_called()
            self.assertEqual(log_mock.call_args[0][0], "ERROR")

    def test_invalid_target_frequency_fails_start(self):
        cfg = Config()
        cfg.detector.target_frequency = 30000.0
        with patch_sounddevice() as sd_mock, mock.patch("audio_engine.log_event") as log_mock:
            sd_mock.query_devices.return_value = FAKE_DEVICE
            engine = AudioEngine(cfg, lambda reading: None)

            self.assertFalse(engine.start())
            self.assertFalse(engine.running)
            sd_mock.InputStream.assert_not_called()
            args, kwargs = log_mock.call_args
            self.assertEqual(args[:3], ("ERROR", "AudioEngine", "Failed to start"))
            self.assertIn("target_frequency", str(kwargs["error"]))

    def test_stream_start_failure_closes_stream(self):
        with patch_sounddevice() as sd_mock, mock.patch("audio_engine.log_event"):
            sd_mock.query_devices.return_value = FAKE_DEVICE
            stream = sd_mock.InputStream.return_value
            stream.start.side_effect = RuntimeError("device busy")
            engine = AudioEngine(Config(), lambda reading: None)

            self.assertFalse(engine.start())
            self.assertFalse(engine.running)
            stream.close.assert_called_once()
            self.assertIsNone(engine.stream)

    def test_stop_closes_stream_once(self):
        with patch_sounddevice() as sd_mock:
            sd_mock.query_devices.return_value = FAKE_DEVICE
            engine = AudioEngine(Config(), lambda reading: None)
            engine.start()
            stream = sd_mock.InputStream.return_value

            engine.stop()
            engine.stop()

            stream.stop.assert_called_once()
            stream.close.assert_called_once()
            self.assertFalse(engine.running)
            self.assertIsNone(engine.stream)


class TestAudioEngineCallback(unittest.TestCase):
    def setUp(self):
        self.readings = []
        self.engine = AudioEngine(Config(), self.readings.append)
        self.engine.estimator = TonePowerEstimator(440.0, 48000.0)
        self.engine.running = True

    def test_one_power_per_sample(self):
        block = tone_block(440.0, 256)
        self.engine._audio_callback(block, 256, None, None)

        self.assertEqual(len(self.readings), 1)
        reading = self.readings[0]
        self.assertIsInstance(reading, PowerReading)
        self.assertEqual(reading.powers.shape, (256,))
        self.assertEqual(reading.power, float(reading.powers[-1]))
        self.assertEqual(reading.peak, float(np.max(reading.powers)))
        self.assertEqual(reading.total_samples, 256)

    def test_blocks_continue_the_same_stream(self):
        signal = tone_block(440.0, 3000)
        expected = TonePowerEstimator(440.0, 48000.0).process_block(signal)
        for start in range(0, 3000, 500):
            self.engine._audio_callback(signal[start:start + 500], 500, None, None)

        out = np.concatenate([r.powers for r in self.readings])
        self.assertTrue(np.array_equal(out, expected))
        self.assertGreater(self.readings[-1].power, 0.4)
        stats = self.engine.get_session_stats()
        self.assertEqual(stats['blocks'], 6)
        self.assertEqual(stats['samples'], 3000)

    def test_non_finite_block_logged_and_skipped(self):
        block = tone_block(440.0, 128)
        block[5, 0] = np.inf
        with mock.patch("audio_engine.log_event") as log_mock:
            self.engine._audio_callback(block, 128, None, None)

        self.assertEqual(self.readings, [])
        self.assertEqual(self.engine.estimator.total_samples_seen, 0)
        self.assertEqual(self.engine.get_session_stats()['rejected_blocks'], 1)
        args, _ = log_mock.call_args
        self.assertEqual(args[:3], ("ERROR", "AudioEngine", "Rejected block"))

    def test_status_flags_counted(self):
        with mock.patch("audio_engine.log_event") as log_mock:
            self.engine._audio_callback(tone_block(440.0, 64), 64, None, "input overflow")

        self.assertEqual(self.engine.get_session_stats()['status_flags'], 1)
        self.assertEqual(log_mock.call_args_list[0][0][0], "WARNING")
        self.assertEqual(len(self.readings), 1)

    def test_ignored_when_not_running(self):
        self.engine.running = False
        self.engine._audio_callback(tone_block(440.0, 64), 64, None, None)
        self.assertEqual(self.readings, [])
        self.assertEqual(self.engine.estimator.total_samples_seen, 0)


class TestAudioEngineShutdownSummary(unittest.TestCase):
    def test_shutdown_summary_logs_ranges(self):
        engine = AudioEngine(Config(), lambda reading: None)
        engine._reset_session_stats()
        engine._update_session_stats(np.array([0.10, 0.20]))
        engine._update_session_stats(np.array([0.40, 0.30]))

        with mock.patch("audio_engine.log_event") as log_event_mock:
            engine._log_shutdown_summary()

        self.assertTrue(log_event_mock.called)
        _, kwargs = log_event_mock.call_args
        self.assertEqual(kwargs["blocks"], 2)
        self.assertEqual(kwargs["samples"], 4)
        self.assertEqual(kwargs["rejected_blocks"], 0)
        self.assertEqual(kwargs["power_min"], "0.100000")
        self.assertEqual(kwargs["power_max"], "0.400000")
        self.assertEqual(kwargs["power_mean"], "0.250000")
        self.assertEqual(kwargs["power_span"], "0.300000")

    def test_shutdown_summary_no_blocks_no_log(self):
        engine = AudioEngine(Config(), lambda reading: None)
        engine._reset_session_stats()

        with mock.patch("audio_engine.log_event") as log_event_mock:
            engine._log_shutdown_summary()

        log_event_mock.assert_not_called()


if __name__ == "__main__":
    unittest.main()
