import asyncio
import tempfile
import unittest
from pathlib import Path

from loguru import logger

from omnitrix_agent.app_config import parse_app_config
from omnitrix_agent.bootstrap import bootstrap_runtime
from omnitrix_agent.logging_config import LOG_FILENAME, LogSink, parse_log_consumers, setup_logging
from omnitrix_agent.providers.ollama_provider import OllamaProvider


class BootstrapRuntimeTests(unittest.TestCase):
    def test_wires_default_runtime(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            app = parse_app_config({"data_dir": str(Path(tmp) / "data")}, tmp, environ={})
            runtime = bootstrap_runtime(app, setup_logs=False)
            try:
                self.assertIsInstance(runtime.provider, OllamaProvider)
                self.assertEqual("deepseek-coder:6.7b", runtime.provider.model_id)
                self.assertEqual(["read_file", "write_file", "list_dir"], runtime.registry.names())
                self.assertEqual(Path(tmp) / "data" / "omnitrix.db", runtime.memory_store.path)
                self.assertEqual([], runtime.agent.list_sessions())
            finally:
                asyncio.run(runtime.aclose())

    def test_disabled_provider_is_refused(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            config = {"data_dir": tmp, "providers": {"ollama": {"enabled": False}}}
            app = parse_app_config(config, tmp, environ={})
            with self.assertRaises(ValueError):
                bootstrap_runtime(app, setup_logs=False)


class ParseLogConsumersTests(unittest.TestCase):
    def test_defaults_to_console_and_data_dir_file(self) -> None:
        sinks, problems = parse_log_consumers(None, level="info", data_dir="/var/lib/omnitrix")
        self.assertEqual(
            [
                LogSink(kind="console", level="INFO"),
                LogSink(kind="file", level="INFO", path=Path("/var/lib/omnitrix") / LOG_FILENAME),
            ],
            sinks,
        )
        self.assertEqual([], problems)

    def test_relative_file_paths_land_under_data_dir(self) -> None:
        sinks, _ = parse_log_consumers([{"type": "file", "path": "logs/agent.log"}], data_dir="/data")
        self.assertEqual(Path("/data") / "logs" / "agent.log", sinks[0].path)

    def test_debug_forces_every_sink_to_debug(self) -> None:
        sinks, _ = parse_log_consumers(
            [{"type": "console", "level": "ERROR"}, {"type": "file", "level": "WARNING"}],
            level="INFO",
            data_dir="/data",
            debug=True,
        )
        self.assertEqual(["DEBUG", "DEBUG"], [s.level for s in sinks])

    def test_bad_entries_are_reported_not_raised(self) -> None:
        sinks, problems = parse_log_consumers(
            [
                {"type": "carrier-pigeon"},
                {"type": "console", "level": "LOUD", "colour": "red"},
            ],
            level="WARNING",
        )
        self.assertEqual([LogSink(kind="console", level="WARNING")], sinks)
        self.assertEqual(3, len(problems))
        self.assertIn("carrier-pigeon", problems[0])
        self.assertIn("colour", problems[1])
        self.assertIn("LOUD", problems[2])


class SetupLoggingTests(unittest.TestCase):
    def tearDown(self) -> None:
        logger.remove()

    def test_registers_configured_consumers(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = str(Path(tmp) / "logs" / "agent.log")
            descriptions = setup_logging(
                "DEBUG",
                [{"type": "file", "path": log_path, "level": "WARNING"}, {"type": "carrier-pigeon"}],
            )
            logger.info("routine detail")
            logger.warning("disk almost full")
            logger.remove()
            self.assertEqual([f"file ({log_path}, WARNING)"], descriptions)
            text = Path(log_path).read_text()
            self.assertIn("disk almost full", text)
            self.assertNotIn("routine detail", text)
            self.assertIn("Unknown log consumer type: 'carrier-pigeon'", text)
