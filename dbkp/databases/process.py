"""
Subprocess management for client utilities.

Utilities run in their own process group so that cancelling a transfer can
take down the whole tree (psql and pg_dump may fork helpers). Output that is
only needed for diagnostics goes to anonymous temporary files rather than
pipes, so a chatty child can never fill a pipe nobody is reading.
"""

import os
import signal
import logging
import tempfile
import threading
import subprocess
from typing import Callable, List, Optional

from dbkp.config import Config
from dbkp.errors import StreamIOError, SubprocessError


logger = logging.getLogger(__name__)

CHUNK_SIZE = Config.TRANSFER_CHUNK_SIZE


def relay(read: Callable[[int], bytes], write: Callable[[bytes], object],
          chunk_size: int = CHUNK_SIZE, cancellation_check: Optional[Callable] = None,
          source: str = 'source', destination: str = 'destination') -> int:
    """
    Copy bytes from read() to write() one chunk at a time.

    Never holds more than one chunk, so a slow destination throttles the
    source. Stops when read() returns an empty chunk.

    Args:
        read: Callable returning up to n bytes, b'' at end of stream
        write: Callable accepting a chunk
        chunk_size: Buffer size in bytes
        cancellation_check: Called before each chunk; raise to abort
        source: Name used in error messages
        destination: Name used in error messages

    Returns:
        Number of bytes transferred

    Raises:
        StreamIOError: If reading or writing fails
    """
    total = 0

    while True:
        if cancellation_check:
            cancellation_check()

        try:
            chunk = read(chunk_size)
        except Exception as e:
            raise StreamIOError(f"Failed to read from {source}: {e}") from e

        if not chunk:
            break

        try:
            write(chunk)
        except BrokenPipeError:
            # child exited early; callers report its exit status instead
            raise
        except Exception as e:
            raise StreamIOError(f"Failed to write to {destination}: {e}") from e

        total += len(chunk)

    return total


class ManagedProcess:
    """
    A spawned utility with captured diagnostics and a kill switch.

    Use as a context manager: leaving the block with an exception kills the
    process group, and the temporary capture files are always released.
    """

    def __init__(self, args: List[str], env: dict, name: str,
                 pipe_stdin: bool = False, pipe_stdout: bool = False,
                 timeout: Optional[float] = None):
        self.args = args
        self.name = name
        self.timed_out = False
        self._stderr_file = tempfile.TemporaryFile()
        self._stdout_file = None if pipe_stdout else tempfile.TemporaryFile()
        self._watchdog = None

        logger.debug(f"Starting {name}: {' '.join(args)}")

        try:
            self.process = subprocess.Popen(
                args,
                env=env,
                stdin=subprocess.PIPE if pipe_stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE if pipe_stdout else self._stdout_file,
                stderr=self._stderr_file,
                start_new_session=True
            )
        except OSError as e:
            self._close_files()
            raise SubprocessError(f"Failed to start {name}: {e}", command=name)

        if timeout:
            self._watchdog = threading.Timer(timeout, self._on_timeout)
            self._watchdog.daemon = True
            self._watchdog.start()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdin(self):
        return self.process.stdin

    @property
    def stdout(self):
        return self.process.stdout

    def _on_timeout(self):
        self.timed_out = True
        logger.warning(f"{self.name} exceeded its time limit, killing process group {self.pid}")
        self.kill()

    def kill(self):
        """Kill the whole process group. Safe to call more than once."""
        # helpers may outlive the group leader, so signal the group regardless
        try:
            os.killpg(self.process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    def close_stdin(self):
        if self.process.stdin and not self.process.stdin.closed:
            try:
                self.process.stdin.close()
            except BrokenPipeError:
                pass

    def wait(self) -> int:
        if self.process.stdout and not self.process.stdout.closed:
            self.process.stdout.close()
        self.close_stdin()
        returncode = self.process.wait()
        if self._watchdog:
            self._watchdog.cancel()
        return returncode

    def _read_capture(self, capture) -> str:
        if capture is None:
            return ''
        capture.seek(0)
        return capture.read().decode('utf-8', errors='replace')

    def read_stderr(self) -> str:
        return self._read_capture(self._stderr_file)

    def read_stdout(self) -> str:
        return self._read_capture(self._stdout_file)

    def check(self, returncode: int, include_stdout: bool = False):
        """
        Raise SubprocessError for a failed run.

        Args:
            returncode: Exit status from wait()
            include_stdout: Attach captured stdout to the error
        """
        if self.timed_out:
            raise SubprocessError(
                f"{self.name} timed out and was killed",
                command=self.name, exit_code=returncode, stderr=self.read_stderr()
            )

        if returncode == 0:
            return

        stderr = self.read_stderr().strip()
        if include_stdout:
            stdout = self.read_stdout().strip()
            raise SubprocessError(
                f"{self.name} failed with exit code {returncode}.\nStderr: {stderr}\nStdout: {stdout}",
                command=self.name, exit_code=returncode, stderr=stderr, stdout=stdout
            )

        raise SubprocessError(
            f"{self.name} failed with exit code {returncode}: {stderr}",
            command=self.name, exit_code=returncode, stderr=stderr
        )

    def _close_files(self):
        for capture in (self._stderr_file, self._stdout_file):
            if capture is not None:
                capture.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.kill()
            self.close_stdin()
            self.process.wait()
        if self.process.stdout and not self.process.stdout.closed:
            self.process.stdout.close()
        if self._watchdog:
            self._watchdog.cancel()
        self._close_files()
        return False


def run_command(args: List[str], env: dict, name: str, timeout: Optional[float] = None) -> str:
    """
    Run a short administrative command to completion.

    Returns:
        Captured stdout

    Raises:
        SubprocessError: If the command cannot start, times out or fails
    """
    logger.debug(f"Running {name}: {' '.join(args)}")

    try:
        result = subprocess.run(
            args,
            env=env,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout
        )
    except subprocess.TimeoutExpired:
        raise SubprocessError(f"{name} timed out after {timeout} seconds", command=name)
    except OSError as e:
        raise SubprocessError(f"Failed to execute {name}: {e}", command=name)

    if result.returncode != 0:
        stderr = result.stderr.decode('utf-8', errors='replace').strip()
        raise SubprocessError(
            f"{name} failed with exit code {result.returncode}.\nError: {stderr}",
            command=name, exit_code=result.returncode, stderr=stderr
        )

    return result.stdout.decode('utf-8', errors='replace')
