"""Privileged command channel over a superuser shell session.

Every call spawns its own `su` process, pipes the command text into it
followed by `exit`, and collects the output. Nothing here raises for
spawn failures or timeouts: callers always get a CommandResult whose text
describes what happened.
"""

import asyncio
from dataclasses import dataclass

import structlog

from droid_reaper.config import ShellConfig

log = structlog.get_logger()

ERROR_PREFIX = "ERROR: "


@dataclass(frozen=True)
class CommandResult:
    """Output of one privileged session."""

    stdout: str
    stderr: str = ""
    returncode: int | None = None
    error: str | None = None  # Set when the session failed to spawn or timed out

    @property
    def ok(self) -> bool:
        """True if the session ran and exited with status zero."""
        return self.error is None and self.returncode == 0

    @property
    def combined_text(self) -> str:
        """Stdout lines verbatim, then stderr lines with an ERROR: marker.

        A failed session yields its failure message instead.
        """
        if self.error is not None:
            return self.error + "\n"
        parts = [f"{line}\n" for line in self.stdout.splitlines()]
        parts.extend(f"{ERROR_PREFIX}{line}\n" for line in self.stderr.splitlines())
        return "".join(parts)

    @classmethod
    def failure(cls, message: str) -> "CommandResult":
        """Result for a session that never produced output."""
        return cls(stdout="", error=message)


class PrivilegedShell:
    """Runs shell commands through a superuser session.

    One `su` process per call; the process is killed and reaped on every
    exit path, including timeouts and task cancellation.
    """

    def __init__(self, config: ShellConfig | None = None):
        self.config = config or ShellConfig()

    async def check_access(self) -> bool:
        """Return True if `su -c id` starts and exits cleanly.

        Any spawn failure, non-zero exit or timeout yields False.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.config.su_path,
                "-c",
                "id",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            log.info("root_check_spawn_failed", su=self.config.su_path, error=str(e))
            return False

        try:
            returncode = await asyncio.wait_for(
                process.wait(), timeout=self.config.access_timeout
            )
        except asyncio.TimeoutError:
            log.warning("root_check_timeout", timeout=self.config.access_timeout)
            return False
        finally:
            await _reap(process)

        log.info("root_check", granted=returncode == 0, returncode=returncode)
        return returncode == 0

    async def run(self, command: str) -> CommandResult:
        """Run one command in a fresh privileged session.

        Writes the command and an `exit` instruction to the session's stdin,
        closes it, then collects stdout and stderr until the session exits.

        Returns:
            CommandResult. Spawn failures and timeouts are reported through
            CommandResult.error rather than raised.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.config.su_path,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.warning("shell_spawn_failed", su=self.config.su_path, error=str(e))
            return CommandResult.failure(
                f"Failed to start privileged session ({self.config.su_path}): {e}"
            )

        script = f"{command}\nexit\n".encode()
        timeout = self.config.command_timeout or None
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(script), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("shell_timeout", command=command, timeout=timeout)
            return CommandResult.failure(
                f"Privileged session timed out after {timeout}s: {command}"
            )
        except (BrokenPipeError, ConnectionResetError) as e:
            # su exited before reading its input (e.g. access denied)
            log.warning("shell_input_rejected", command=command, error=str(e))
            return CommandResult.failure(f"Privileged session closed its input: {e}")
        finally:
            await _reap(process)

        result = CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            returncode=process.returncode,
        )
        log.debug("shell_run", command=command, returncode=result.returncode)
        return result


async def _reap(process: asyncio.subprocess.Process) -> None:
    """Kill the process if it is still running and wait for it."""
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass  # Already exited
    await process.wait()
