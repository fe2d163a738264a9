import logging
import os
import signal
import subprocess

from .models import CommandResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0
KILL_GRACE_SECONDS = 5.0


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def _reap(proc: subprocess.Popen) -> None:
    """Wait for a killed shell without hanging on pipes a detached descendant still holds."""
    try:
        proc.communicate(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning("Output pipes of pid %s still open after SIGKILL; closing them", proc.pid)
        for pipe in (proc.stdout, proc.stderr):
            if pipe is not None:
                pipe.close()
        proc.wait()


def execute(command: str, timeout: float = DEFAULT_TIMEOUT) -> CommandResult:
    """
    Run `command` through /bin/sh and capture its output.

    Never raises: spawn errors and timeouts come back as a failed
    CommandResult with exit_code -1.
    """
    try:
        proc = subprocess.Popen(
            command,
            shell=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            start_new_session=True,
        )
    except (OSError, ValueError) as e:
        logger.warning("Could not start command %r: %s", command, e)
        return CommandResult(success=False, error=f"Failed to execute command: {e}", exit_code=-1)

    try:
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Command timed out after %ss, terminating: %s", timeout, command)
            _signal_group(proc, signal.SIGTERM)
            try:
                proc.communicate(timeout=KILL_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                _signal_group(proc, signal.SIGKILL)
                _reap(proc)
            return CommandResult(
                success=False,
                error=f"Command timed out after {timeout}s",
                exit_code=-1,
            )
    except Exception as e:
        logger.exception("Error while running command %r", command)
        _signal_group(proc, signal.SIGKILL)
        proc.wait()
        return CommandResult(success=False, error=f"Failed to execute command: {e}", exit_code=-1)

    code = proc.returncode
    success = code == 0
    err = (stderr or "").strip()
    return CommandResult(
        success=success,
        output=(stdout or "").strip(),
        error=err or (None if success else f"Command exited with code {code}"),
        exit_code=code,
    )
