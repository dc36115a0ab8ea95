import logging
import sys
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from linkwatch.core.logging import LogSettings, RecordContextFilter, parse_level, read_log_settings


def _record(message: str, *args, **extra) -> logging.LogRecord:
    record = logging.LogRecord("linkwatch.test", logging.INFO, __file__, 1, message, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class RecordContextFilterTests(unittest.TestCase):
    def test_missing_device_is_filled(self) -> None:
        record = _record("poll ok")

        RecordContextFilter().filter(record)

        self.assertEqual("-", record.device)

    def test_device_is_kept(self) -> None:
        record = _record("poll ok", device="Tower North")

        RecordContextFilter().filter(record)

        self.assertEqual("Tower North", record.device)

    def test_credentials_are_redacted(self) -> None:
        record = _record("login password=%s cookie sid=%s", "hunter2", "abc123")

        RecordContextFilter().filter(record)

        self.assertEqual("login password=*** cookie sid=***", record.getMessage())

    def test_tokens_and_secrets_are_redacted(self) -> None:
        record = _record("form x.X_HW_Token token=%s key secret=%s; done", "tok123", "s3cret")

        RecordContextFilter().filter(record)

        self.assertEqual("form x.X_HW_Token token=*** key secret=***; done", record.getMessage())
        self.assertEqual("-", record.device)


class LogSettingsTests(unittest.TestCase):
    def test_reads_logging_section(self) -> None:
        with TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "local.yml"
            path.write_text("logging:\n  directory: /tmp/lw\n  level: debug\n  backup_count: 2\n", encoding="utf-8")

            settings = read_log_settings(path)

        self.assertEqual(Path("/tmp/lw"), settings.directory)
        self.assertEqual(logging.DEBUG, settings.level)
        self.assertEqual(2, settings.backup_count)
        self.assertEqual("linkwatch.log", settings.filename)

    def test_missing_file_uses_defaults(self) -> None:
        with TemporaryDirectory() as tmpdir:
            self.assertEqual(LogSettings(), read_log_settings(Path(tmpdir) / "local.yml"))

    def test_parse_level(self) -> None:
        self.assertEqual(logging.WARNING, parse_level("warning"))
        self.assertEqual(15, parse_level(15))
        self.assertEqual(logging.INFO, parse_level("chatty"))
        self.assertEqual(logging.INFO, parse_level(None))


if __name__ == "__main__":
    unittest.main()
