"""Single-frame extraction with ffmpeg over pipes.

The source video never touches disk: bytes read from the object store are
written into ffmpeg's stdin while its stdout (one JPEG) is collected in
memory.

Key Features:
- Producer thread: source stream -> ffmpeg stdin, in fixed-size chunks
- Consumer threads: ffmpeg stdout -> image buffer, stderr -> diagnostics
- Early stdin close by ffmpeg (it stops reading once it has the frame) is
  recognised and ignored
- Global timeout with process tree cleanup (psutil)
"""

import errno
import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import BinaryIO, List, Optional

import psutil

from .errors import ExpectedEarlyClose, ExtractorFailed, ExtractorTimeout, TransientJobError

logger = logging.getLogger(__name__)

# errno values a write into a pipe whose reader exited can produce
EARLY_CLOSE_ERRNOS = {errno.EPIPE, errno.EINVAL, errno.ESHUTDOWN}

STDERR_TAIL_CHARS = 2000


@dataclass
class ExtractionResult:
    """Result of one extractor run."""
    success: bool
    returncode: int
    image: bytes
    stderr: str
    duration_s: float
    bytes_written: int = 0
    early_close: bool = False
    timed_out: bool = False
    input_error: Optional[BaseException] = None


class FrameExtractor:
    """Runs ffmpeg to grab one frame at a fixed offset from a byte stream.

    Example:
        >>> extractor = FrameExtractor(seek_offset_s=5)
        >>> with open("clip.mp4", "rb") as f:
        ...     jpeg = extractor.extract(f)
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        seek_offset_s: int = 5,
        timeout_s: float = 300.0,
        kill_grace_period_s: float = 5.0,
        chunk_size: int = 64 * 1024,
        loglevel: str = "error",
    ):
        """Initialize the extractor.

        Args:
            ffmpeg_path: ffmpeg executable (None = imageio-ffmpeg's binary)
            seek_offset_s: Offset of the extracted frame in seconds
            timeout_s: Maximum wall time for one extraction
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            chunk_size: Bytes per read from the source / write to stdin
            loglevel: ffmpeg -loglevel value
        """
        self.ffmpeg_path = ffmpeg_path
        self.seek_offset_s = seek_offset_s
        self.timeout_s = timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.chunk_size = chunk_size
        self.loglevel = loglevel

    @classmethod
    def from_config(cls, extractor_config) -> "FrameExtractor":
        return cls(
            ffmpeg_path=extractor_config.ffmpeg_path,
            seek_offset_s=extractor_config.seek_offset_s,
            timeout_s=extractor_config.timeout_s,
            kill_grace_period_s=extractor_config.kill_grace_period_s,
            chunk_size=extractor_config.chunk_size,
            loglevel=extractor_config.loglevel,
        )

    def build_command(self) -> List[str]:
        """ffmpeg arguments: read stdin, seek, emit one JPEG on stdout."""
        return [
            self.get_ffmpeg_exe(),
            "-hide_banner",
            "-loglevel", self.loglevel,
            "-i", "pipe:0",
            "-ss", format_offset(self.seek_offset_s),
            "-vframes", "1",
            "-c:v", "mjpeg",
            "-f", "image2pipe",
            "pipe:1",
        ]

    def extract(self, stream: BinaryIO) -> bytes:
        """Return the JPEG bytes of the frame at the configured offset.

        Raises:
            ExtractorTimeout: ffmpeg ran past `timeout_s`
            ExtractorFailed: nonzero exit, empty output, or ffmpeg missing
            TransientJobError: reading the source stream failed
        """
        result = self.run(stream)

        if result.timed_out:
            raise ExtractorTimeout(
                f"Frame extractor timed out after {self.timeout_s}s",
                returncode=result.returncode,
                stderr=result.stderr,
            )

        if result.input_error is not None:
            raise TransientJobError(
                f"Reading the source stream failed: {result.input_error}"
            ) from result.input_error

        if result.returncode != 0:
            raise ExtractorFailed(
                f"Frame extractor exited with code {result.returncode}: "
                f"{result.stderr.strip()[-500:] or 'no output'}",
                returncode=result.returncode,
                stderr=result.stderr,
            )

        if not result.image:
            raise ExtractorFailed(
                "Frame extractor exited cleanly but produced no image "
                f"(video shorter than {self.seek_offset_s}s?)",
                returncode=result.returncode,
                stderr=result.stderr,
            )

        return result.image

    def run(self, stream: BinaryIO) -> ExtractionResult:
        """Execute the extractor with the producer/consumer threads.

        The producer and consumers are joined after the process exits (or is
        killed), so a result always reflects a finished process.
        """
        start_time = time.time()
        cmd = self.build_command()

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as e:
            raise ExtractorFailed(f"Cannot start frame extractor {cmd[0]}: {e}") from e

        image_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        producer_state = {"bytes_written": 0, "early_close": False, "error": None}

        producer = threading.Thread(
            target=self._pump_input,
            args=(stream, process.stdin, producer_state),
            name="extractor-stdin",
            daemon=True,
        )
        stdout_reader = threading.Thread(
            target=self._drain, args=(process.stdout, image_chunks), name="extractor-stdout", daemon=True
        )
        stderr_reader = threading.Thread(
            target=self._drain, args=(process.stderr, stderr_chunks), name="extractor-stderr", daemon=True
        )

        try:
            producer.start()
            stdout_reader.start()
            stderr_reader.start()

            timed_out = False
            try:
                returncode = process.wait(timeout=self.timeout_s)
            except subprocess.TimeoutExpired:
                timed_out = True
                self._kill_process_tree(process)
                returncode = process.wait()

            stdout_reader.join(timeout=self.kill_grace_period_s)
            stderr_reader.join(timeout=self.kill_grace_period_s)
            producer.join(timeout=self.kill_grace_period_s)
            if producer.is_alive():
                # Blocked on a slow source read; the pipe is gone so it will fail on its next write
                logger.warning("Extractor input thread still running after process exit")

        except BaseException:
            self._kill_process_tree(process)
            raise

        stderr_text = b"".join(stderr_chunks).decode("utf-8", errors="replace")
        if len(stderr_text) > STDERR_TAIL_CHARS:
            stderr_text = stderr_text[-STDERR_TAIL_CHARS:]

        result = ExtractionResult(
            success=(returncode == 0 and not timed_out and producer_state["error"] is None),
            returncode=returncode,
            image=b"".join(image_chunks),
            stderr=stderr_text,
            duration_s=time.time() - start_time,
            bytes_written=producer_state["bytes_written"],
            early_close=producer_state["early_close"],
            timed_out=timed_out,
            input_error=producer_state["error"],
        )
        logger.debug(
            "Extractor exited %d after %.2fs (%d bytes in, %d bytes out, early_close=%s)",
            result.returncode, result.duration_s, result.bytes_written,
            len(result.image), result.early_close,
        )
        return result

    def _pump_input(self, stream: BinaryIO, stdin, state: dict) -> None:
        """Producer: copy the source stream into ffmpeg's stdin."""
        try:
            while True:
                chunk = stream.read(self.chunk_size)
                if not chunk:
                    break
                try:
                    self._write_chunk(stdin, chunk)
                except ExpectedEarlyClose:
                    state["early_close"] = True
                    return
                state["bytes_written"] += len(chunk)
        except Exception as e:
            state["error"] = e
            logger.warning("Source stream read failed after %d bytes: %s", state["bytes_written"], e)
        finally:
            try:
                stdin.close()
            except OSError as e:
                if not _is_early_close(e):
                    logger.warning("Closing extractor stdin failed: %s", e)

    @staticmethod
    def _write_chunk(stdin, chunk: bytes) -> None:
        # Unbuffered pipe: write() may accept only part of the chunk
        view = memoryview(chunk)
        try:
            while view:
                written = stdin.write(view)
                view = view[written:]
        except OSError as e:
            if _is_early_close(e):
                raise ExpectedEarlyClose(str(e)) from e
            raise

    def _drain(self, pipe, sink: List[bytes]) -> None:
        """Consumer: read a pipe to EOF into `sink`."""
        for chunk in iter(lambda: pipe.read(self.chunk_size), b""):
            sink.append(chunk)
        pipe.close()

    def _kill_process_tree(self, process: subprocess.Popen) -> None:
        """Kill ffmpeg and any children: SIGTERM, grace period, then SIGKILL."""
        try:
            parent = psutil.Process(process.pid)
        except psutil.NoSuchProcess:
            return

        procs = [parent] + parent.children(recursive=True)
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

    def get_ffmpeg_exe(self) -> str:
        """Get FFmpeg executable path."""
        if self.ffmpeg_path:
            return self.ffmpeg_path
        import imageio_ffmpeg
        return imageio_ffmpeg.get_ffmpeg_exe()

    def check_ffmpeg(self) -> bool:
        """Verify the ffmpeg executable resolves and runs."""
        try:
            subprocess.run(
                [self.get_ffmpeg_exe(), "-version"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=True,
            )
            return True
        except (RuntimeError, subprocess.CalledProcessError, OSError):
            return False


def format_offset(seconds: int) -> str:
    """5 -> '00:00:05'"""
    seconds = int(seconds)
    return f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"


def _is_early_close(error: OSError) -> bool:
    return isinstance(error, BrokenPipeError) or error.errno in EARLY_CLOSE_ERRNOS
