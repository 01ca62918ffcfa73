"""Blocking external command execution for devtrees."""

import codecs
import logging
import os
import selectors
import shlex
import signal
import subprocess
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# Receives (stream, chunk) where stream is "out" or "err".
OutputSink = Callable[[str, str], None]

Command = str | Sequence[str]

TIMEOUT_RETURNCODE = -1
NOT_FOUND_RETURNCODE = 127
NOT_EXECUTABLE_RETURNCODE = 126


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished external command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0


class ShellExecutor:
    """Runs external commands synchronously with timeouts.

    Argument vectors are executed directly. Plain strings go through the
    shell and must only contain values already escaped by ``quote``;
    ``run_pipeline`` is the one place that composes shell text.
    """

    def __init__(self, shell: str = "bash"):
        self.shell = shell

    @staticmethod
    def quote(value: str) -> str:
        """Escape a single value for the shell."""
        return shlex.quote(value)

    @staticmethod
    def join(argv: Sequence[str]) -> str:
        """Escape and join an argument vector into shell text."""
        return shlex.join([str(part) for part in argv])

    def run(self, command: Command, cwd: str | Path | None = None,
            timeout: float | None = None, env: Mapping[str, str] | None = None,
            output: OutputSink | None = None) -> CommandResult:
        """Run a command and capture its output.

        Args:
            command: Argument vector, or shell text with escaped values
            cwd: Working directory
            timeout: Seconds before the command's process group is killed
            env: Variables added to the inherited environment
            output: Sink receiving output chunks as they arrive

        Returns:
            CommandResult; a timeout yields return code -1, a missing executable
            127 and one that cannot be executed 126
        """
        shell = isinstance(command, str)
        args: str | list[str] = command if shell else [str(part) for part in command]
        display = command if shell else self.join(args)
        logger.debug(f"Running: {display} (cwd={cwd}, timeout={timeout})")

        full_env = None
        if env:
            full_env = {**os.environ, **env}

        try:
            process = subprocess.Popen(
                args,
                shell=shell,
                cwd=cwd,
                env=full_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (FileNotFoundError, NotADirectoryError) as e:
            return CommandResult(NOT_FOUND_RETURNCODE, "", str(e))
        except OSError as e:
            return CommandResult(NOT_EXECUTABLE_RETURNCODE, "", str(e))

        if output is None:
            result = self._communicate(process, timeout)
        else:
            result = self._stream(process, timeout, output)

        if not result.success:
            logger.debug(f"Command exited with {result.returncode}: {display}")
        return result

    def run_pipeline(self, commands: Sequence[Sequence[str]], cwd: str | Path | None = None,
                     timeout: float | None = None, env: Mapping[str, str] | None = None,
                     output: OutputSink | None = None) -> CommandResult:
        """Pipe argument vectors into each other, failing if any stage fails."""
        script = " | ".join(self.join(argv) for argv in commands)
        return self.run([self.shell, "-o", "pipefail", "-c", script],
                        cwd=cwd, timeout=timeout, env=env, output=output)

    def _communicate(self, process: subprocess.Popen, timeout: float | None) -> CommandResult:
        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill(process)
            stdout, stderr = process.communicate()
            return CommandResult(TIMEOUT_RETURNCODE, _decode(stdout),
                                 self._timeout_message(_decode(stderr), timeout))
        return CommandResult(process.returncode, _decode(stdout), _decode(stderr))

    def _stream(self, process: subprocess.Popen, timeout: float | None,
                output: OutputSink) -> CommandResult:
        deadline = None if timeout is None else time.monotonic() + timeout
        decoders = {
            "out": codecs.getincrementaldecoder("utf-8")(errors="replace"),
            "err": codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }
        chunks: dict[str, list[str]] = {"out": [], "err": []}

        with selectors.DefaultSelector() as selector:
            selector.register(process.stdout, selectors.EVENT_READ, "out")
            selector.register(process.stderr, selectors.EVENT_READ, "err")

            while selector.get_map():
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        self._kill(process)
                        process.stdout.close()
                        process.stderr.close()
                        process.wait()
                        return CommandResult(TIMEOUT_RETURNCODE, "".join(chunks["out"]),
                                             self._timeout_message("".join(chunks["err"]), timeout))

                for key, _ in selector.select(remaining):
                    data = os.read(key.fd, 65536)
                    final = not data
                    if final:
                        selector.unregister(key.fileobj)
                    chunk = decoders[key.data].decode(data, final=final)
                    if chunk:
                        chunks[key.data].append(chunk)
                        output(key.data, chunk)

        process.stdout.close()
        process.stderr.close()
        process.wait()
        return CommandResult(process.returncode, "".join(chunks["out"]), "".join(chunks["err"]))

    @staticmethod
    def _kill(process: subprocess.Popen) -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    @staticmethod
    def _timeout_message(stderr: str | None, timeout: float | None) -> str:
        message = f"Command timed out after {timeout} seconds"
        if stderr:
            message = f"{stderr.rstrip()}\n{message}"
        return message


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", errors="replace") if data else ""
