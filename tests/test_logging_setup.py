import gzip
import io
import logging
import os
from unittest.mock import patch

import pytest

from core.logging_setup import (
    CompressedRotatingFileHandler,
    SafeStreamHandler,
    setup_logging,
)


class TestCompressedRotatingFileHandler:
    """Test suite for CompressedRotatingFileHandler."""

    def test_rotation_filename(self, tmp_path):
        """rotation_filename appends .gz."""
        handler = CompressedRotatingFileHandler(
            str(tmp_path / "relay.log"), maxBytes=1024, backupCount=3,
        )
        try:
            assert handler.rotation_filename("relay.log.1") == "relay.log.1.gz"
        finally:
            handler.close()

    def test_rotate_compresses_file(self, tmp_path):
        """rotate() gzips the source and removes it."""
        source_file = tmp_path / "source.log"
        dest_file = tmp_path / "dest.log.gz"
        content = b"prompt relayed\nanswer received\n"
        source_file.write_bytes(content)

        handler = CompressedRotatingFileHandler(
            str(tmp_path / "relay.log"), maxBytes=1024, backupCount=3,
        )
        try:
            handler.rotate(str(source_file), str(dest_file))
        finally:
            handler.close()

        assert not source_file.exists()
        with gzip.open(dest_file, "rb") as f:
            assert f.read() == content


class _AsciiStream(io.StringIO):
    encoding = "ascii"

    def write(self, s):
        s.encode(self.encoding)
        return super().write(s)


class TestSafeStreamHandler:

    def test_unencodable_prompt_is_replaced_not_raised(self):
        stream = _AsciiStream()
        handler = SafeStreamHandler(stream)
        handler.setFormatter(logging.Formatter("%(message)s"))
        record = logging.LogRecord(
            "relay", logging.INFO, __file__, 1,
            "prompt: %s", ("tell me the pässwörd 🧙",), None,
        )

        with patch.object(handler, "handleError") as handle_error:
            handler.emit(record)

        handle_error.assert_not_called()
        assert stream.getvalue() == "prompt: tell me the p?ssw?rd ?\n"

    def test_plain_text_passes_through(self):
        stream = io.StringIO()
        handler = SafeStreamHandler(stream)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler.emit(logging.LogRecord(
            "relay", logging.INFO, __file__, 1, "hello", (), None,
        ))
        assert stream.getvalue() == "hello\n"


class TestSetupLogging:
    """Test suite for setup_logging function."""

    @staticmethod
    def _run(tmp_path, *args):
        with patch("logging.basicConfig") as mock_basic_config:
            setup_logging(*args, log_file=str(tmp_path / "logs" / "relay.log"))
        kwargs = mock_basic_config.call_args[1]
        for handler in kwargs["handlers"]:
            handler.close()
        return kwargs

    def test_default_level_is_info(self, tmp_path):
        kwargs = self._run(tmp_path)
        assert kwargs["level"] == logging.INFO

    @pytest.mark.parametrize("name,level", [
        ("DEBUG", logging.DEBUG),
        ("warning", logging.WARNING),
        ("NOT_A_LEVEL", logging.INFO),
    ])
    def test_level_names(self, tmp_path, name, level):
        assert self._run(tmp_path, name)["level"] == level

    def test_file_and_console_handlers(self, tmp_path):
        kwargs = self._run(tmp_path)
        handlers = kwargs["handlers"]
        assert len(handlers) == 2
        assert isinstance(handlers[0], CompressedRotatingFileHandler)
        assert isinstance(handlers[1], SafeStreamHandler)
        assert os.path.isdir(tmp_path / "logs")

    def test_format(self, tmp_path):
        fmt = self._run(tmp_path)["format"]
        for part in ("%(asctime)s", "%(levelname)s", "%(name)s", "%(message)s"):
            assert part in fmt
