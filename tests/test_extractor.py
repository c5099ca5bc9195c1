"""Tests for the piped frame extractor.

A small Python script stands in for ffmpeg so the pipe handling (stdin
producer, stdout/stderr consumers, early close, exit codes, timeout) runs
against a real subprocess.
"""

import io
import subprocess
import sys
import threading
import time
from unittest.mock import patch

import pytest

from vidcore.errors import ExtractorFailed, ExtractorTimeout, TransientJobError
from vidcore.extractor import FrameExtractor, format_offset
from vidcore.models import ExtractorConfig

READS_ALL = """
import sys
data = sys.stdin.buffer.read()
sys.stdout.buffer.write(b"\\xff\\xd8" + len(data).to_bytes(8, "big") + b"\\xff\\xd9")
"""

READS_PREFIX = """
import sys
sys.stdin.buffer.read(1024)
sys.stdout.buffer.write(b"\\xff\\xd8frame\\xff\\xd9")
sys.stdout.flush()
"""

FAILS = """
import sys
sys.stderr.write("pipe:0: moov atom not found\\n")
sys.exit(1)
"""

NO_OUTPUT = """
import sys
sys.stdin.buffer.read()
"""

HANGS = """
import time
time.sleep(30)
"""

SLOW_OR_HANGS = """
import sys
import time
data = sys.stdin.buffer.read()
if data.startswith(b"hang"):
    time.sleep(30)
time.sleep(2)
sys.stdout.buffer.write(b"\\xff\\xd8slow\\xff\\xd9")
"""


def stand_in(script, **kwargs):
    extractor = FrameExtractor(**kwargs)
    extractor.build_command = lambda: [sys.executable, "-c", script]
    return extractor


class FlakyStream:
    """Read stream that fails after the first chunk."""

    def __init__(self):
        self.reads = 0

    def read(self, size=-1):
        self.reads += 1
        if self.reads > 1:
            raise ConnectionResetError("connection reset by peer")
        return b"\x00" * 1024


class TestCommand:
    def test_build_command(self):
        extractor = FrameExtractor(ffmpeg_path="/opt/ffmpeg/bin/ffmpeg", seek_offset_s=5)

        assert extractor.build_command() == [
            "/opt/ffmpeg/bin/ffmpeg",
            "-hide_banner",
            "-loglevel", "error",
            "-i", "pipe:0",
            "-ss", "00:00:05",
            "-vframes", "1",
            "-c:v", "mjpeg",
            "-f", "image2pipe",
            "pipe:1",
        ]

    def test_default_executable_from_imageio_ffmpeg(self):
        with patch("imageio_ffmpeg.get_ffmpeg_exe", return_value="/bundled/ffmpeg"):
            assert FrameExtractor().build_command()[0] == "/bundled/ffmpeg"

    @pytest.mark.parametrize(
        "seconds,expected", [(0, "00:00:00"), (5, "00:00:05"), (75, "00:01:15"), (3725, "01:02:05")]
    )
    def test_format_offset(self, seconds, expected):
        assert format_offset(seconds) == expected

    def test_from_config(self):
        config = ExtractorConfig(ffmpeg_path="ffmpeg", seek_offset_s=7, timeout_s=12, chunk_size=4096)
        extractor = FrameExtractor.from_config(config)
        assert extractor.seek_offset_s == 7
        assert extractor.timeout_s == 12
        assert extractor.chunk_size == 4096

    def test_check_ffmpeg_missing(self):
        assert FrameExtractor(ffmpeg_path="/nonexistent/ffmpeg").check_ffmpeg() is False

    def test_check_ffmpeg_ok(self):
        with patch("vidcore.extractor.subprocess.run") as run:
            run.return_value = subprocess.CompletedProcess([], 0)
            assert FrameExtractor(ffmpeg_path="ffmpeg").check_ffmpeg() is True


class TestExtract:
    def test_streams_whole_input(self):
        data = b"\x00\x01" * 200_000
        extractor = stand_in(READS_ALL, chunk_size=8192)

        result = extractor.run(io.BytesIO(data))

        assert result.success
        assert result.bytes_written == len(data)
        assert result.image == b"\xff\xd8" + len(data).to_bytes(8, "big") + b"\xff\xd9"
        assert result.early_close is False

    def test_early_close_is_not_an_error(self):
        data = b"\x00" * (8 * 1024 * 1024)
        extractor = stand_in(READS_PREFIX)

        result = extractor.run(io.BytesIO(data))

        assert result.returncode == 0
        assert result.early_close is True
        assert result.bytes_written < len(data)
        assert extractor.extract(io.BytesIO(data)) == b"\xff\xd8frame\xff\xd9"

    def test_nonzero_exit_is_transient_failure(self):
        extractor = stand_in(FAILS)

        with pytest.raises(ExtractorFailed) as exc_info:
            extractor.extract(io.BytesIO(b"\x00" * 4096))

        assert exc_info.value.returncode == 1
        assert "moov atom not found" in exc_info.value.stderr
        assert exc_info.value.retryable is True

    def test_empty_output_fails(self):
        with pytest.raises(ExtractorFailed, match="no image"):
            stand_in(NO_OUTPUT).extract(io.BytesIO(b"\x00" * 4096))

    def test_timeout_kills_process(self):
        extractor = stand_in(HANGS, timeout_s=0.5, kill_grace_period_s=1.0)

        with pytest.raises(ExtractorTimeout):
            extractor.extract(io.BytesIO(b"\x00" * 1024))

    def test_timeout_kills_only_its_own_process(self):
        extractor = stand_in(SLOW_OR_HANGS, timeout_s=3.0, kill_grace_period_s=1.0)
        outcome = {}

        def hanging_run():
            try:
                extractor.extract(io.BytesIO(b"hang"))
            except ExtractorTimeout as e:
                outcome["hanging"] = e

        hanging = threading.Thread(target=hanging_run)
        hanging.start()
        time.sleep(1.5)

        # Still running when the first run times out and kills its process
        image = extractor.extract(io.BytesIO(b"work"))
        hanging.join(10)

        assert image == b"\xff\xd8slow\xff\xd9"
        assert isinstance(outcome["hanging"], ExtractorTimeout)

    def test_source_read_error_is_transient(self):
        extractor = stand_in(READS_ALL, chunk_size=1024)

        with pytest.raises(TransientJobError) as exc_info:
            extractor.extract(FlakyStream())

        assert not isinstance(exc_info.value, ExtractorFailed)
        assert isinstance(exc_info.value.__cause__, ConnectionResetError)

    def test_missing_executable(self):
        extractor = FrameExtractor(ffmpeg_path="/nonexistent/ffmpeg")

        with pytest.raises(ExtractorFailed, match="Cannot start"):
            extractor.extract(io.BytesIO(b"\x00"))
