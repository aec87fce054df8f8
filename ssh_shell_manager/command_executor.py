"""Command execution over a persistent shell channel.

The remote shell sends no end-of-command marker. Completion is inferred from
the shell re-printing its prompt, with idle, empty-read and wall clock limits
as fallbacks so a missed prompt never hangs the caller.
"""
import codecs
import logging
import re
import socket
import time
from typing import Callable, Iterable, List, Optional

import paramiko

from .datastructures import CommandOptions, CommandResult, PromptConfig, TerminationReason
from .errors import CommandSendError, ShellClosedError


# Reads that fail this way mean the stream is still draining; retry them.
TRANSIENT_READ_ERRORS = (socket.timeout, BlockingIOError, InterruptedError)

_ANSI_CSI = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_ANSI_OSC = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_ANSI_OTHER = re.compile(r"\x1b[PX^_][^\x1b]*\x1b\\|\x1b[@-Z\\-_]")


def strip_ansi(text: str) -> str:
    """Strip CSI, OSC and other escape sequences."""
    text = _ANSI_OSC.sub("", text)
    text = _ANSI_CSI.sub("", text)
    return _ANSI_OTHER.sub("", text)


def normalize_command(command: str) -> str:
    """Return ``command`` terminated by exactly one newline."""
    return command.rstrip("\r\n") + "\n"


def detect_prompt(chunk: str, patterns: Iterable[str], smart_detection: bool = True) -> bool:
    """Return True if ``chunk`` looks like it ends with a shell prompt.

    Without smart detection any pattern occurring anywhere in the chunk counts,
    which also fires on command echoes. With smart detection only the last
    line of the chunk is considered: the pattern must occur in the chunk as
    given, and the last line must end with it once trailing whitespace is
    trimmed from both.
    """
    if not smart_detection:
        return any(pattern and pattern in chunk for pattern in patterns)

    plain = strip_ansi(chunk)
    last_line = plain.split("\n")[-1].rstrip()
    if not last_line:
        return False
    for pattern in patterns:
        suffix = pattern.rstrip()
        if suffix and pattern in plain and last_line.endswith(suffix):
            return True
    return False


class _ReadState:
    """Mutable bookkeeping for one pass of the read loop."""

    def __init__(self, now: float):
        self.started = now
        self.last_data = now
        self.empty_reads = 0
        self.transient_retries = 0
        self.reads = 0
        self.bytes_read = 0
        self.parts: List[str] = []


class CommandExecutor:
    """Writes commands to a ShellChannel and collects output until completion.

    Args:
        idle_timeout: Seconds without data after which the command is
            considered finished
        max_transient_retries: Transient read errors retried within one
            command before giving up
        clock: Monotonic time source, injectable for tests
        sleep: Sleep function, injectable for tests
    """

    BUFFER_SIZE = 4096
    DATA_READ_DELAY = 0.01
    EMPTY_READ_DELAY = 0.05
    TRANSIENT_RETRY_DELAY = 0.1

    def __init__(self, idle_timeout: float = 1.0, max_transient_retries: int = 50,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.idle_timeout = idle_timeout
        self.max_transient_retries = max_transient_retries
        self._clock = clock
        self._sleep = sleep
        self.logger = logging.getLogger('ssh_shell_manager.command_executor')

    def execute(self, shell, command: str, prompt_config: PromptConfig,
                options: Optional[CommandOptions] = None) -> CommandResult:
        """Send ``command`` to ``shell`` and read its output.

        The caller must hold ``shell.lock``. Raises CommandSendError if the
        write fails; read failures end the loop with partial output instead.
        """
        logger = self.logger.getChild('execute')
        options = options or CommandOptions()
        line = normalize_command(command)
        logger.info(f"[EXEC_SEND] cmd={command[:100]!r}")

        try:
            shell.send(line)
        except (OSError, EOFError, paramiko.SSHException) as exc:
            logger.error(f"[EXEC_SEND_FAILED] {type(exc).__name__}: {exc}")
            raise CommandSendError(f"Failed to send command: {exc}") from exc

        return self.read_output(shell, prompt_config, options)

    def read_output(self, shell, prompt_config: PromptConfig,
                    options: Optional[CommandOptions] = None) -> CommandResult:
        """Run the read loop against ``shell`` and return what was collected."""
        logger = self.logger.getChild('read')
        options = options or CommandOptions()
        patterns = options.custom_prompts if options.custom_prompts is not None else prompt_config.patterns
        max_wait = (options.timeout if options.timeout is not None else prompt_config.max_wait_time) / 1000.0
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        state = _ReadState(self._clock())

        def finish(reason: TerminationReason) -> CommandResult:
            tail = decoder.decode(b"", final=True)
            if tail:
                state.parts.append(tail)
            elapsed = self._clock() - state.started
            log = logger.info if options.debug_output else logger.debug
            log(f"[READ_DONE] reason={reason.value} bytes={state.bytes_read} "
                f"reads={state.reads} elapsed={elapsed:.3f}s")
            return CommandResult(
                output="".join(state.parts),
                reason=reason,
                elapsed=elapsed,
                bytes_read=state.bytes_read,
                reads=state.reads,
            )

        while True:
            if options.cancel_event is not None and options.cancel_event.is_set():
                return finish(TerminationReason.CANCELLED)

            now = self._clock()
            if now - state.started > max_wait:
                return finish(TerminationReason.WALL_CLOCK)

            try:
                state.reads += 1
                if options.wait_for_prompt:
                    data = shell.read(self.BUFFER_SIZE)
                else:
                    remaining = max_wait - (now - state.started)
                    data = shell.read_blocking(self.BUFFER_SIZE, remaining)
            except TRANSIENT_READ_ERRORS as exc:
                state.transient_retries += 1
                logger.debug(f"[READ_TRANSIENT] {type(exc).__name__} retry={state.transient_retries}")
                if state.transient_retries > self.max_transient_retries:
                    logger.warning(f"Giving up after {self.max_transient_retries} transient read errors")
                    return finish(TerminationReason.TRANSIENT_RETRIES)
                self._sleep(self.TRANSIENT_RETRY_DELAY)
                continue
            except ShellClosedError:
                logger.warning("[READ_EOF] Shell channel closed by remote")
                return finish(TerminationReason.CHANNEL_CLOSED)
            except (OSError, paramiko.SSHException) as exc:
                logger.warning(f"[READ_ERROR] {type(exc).__name__}: {exc}; returning partial output")
                return finish(TerminationReason.READ_ERROR)

            if data:
                chunk = decoder.decode(data)
                state.bytes_read += len(data)
                state.parts.append(chunk)
                if options.debug_output:
                    logger.info(f"[READ_CHUNK] {len(data)} bytes: {chunk!r}")

            if not options.wait_for_prompt:
                return finish(TerminationReason.SINGLE_SHOT)

            if data:
                state.empty_reads = 0
                state.last_data = self._clock()
                if detect_prompt(chunk, patterns, prompt_config.smart_detection):
                    return finish(TerminationReason.PROMPT)
                self._sleep(self.DATA_READ_DELAY)
                continue

            state.empty_reads += 1
            if state.empty_reads >= prompt_config.max_empty_reads:
                return finish(TerminationReason.EMPTY_READS)
            if self._clock() - state.last_data > self.idle_timeout:
                return finish(TerminationReason.IDLE)
            self._sleep(self.EMPTY_READ_DELAY)
