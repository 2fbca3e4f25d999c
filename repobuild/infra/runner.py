"""
Command runner infrastructure for repobuild.

Runs stage commands (load, test, sign) as subprocesses with a timeout and
cooperative cancellation: the process is terminated when the run is
cancelled or the deadline passes.
"""

import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one command."""
    command: str
    returncode: int
    output: str = ""
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled


class CommandRunner:
    """
    Run shell commands for stage actions.

    Example:
        runner = CommandRunner()
        result = runner.run("make test", cwd="/work", timeout=600)
        if not result.ok:
            print(result.output)
    """

    def __init__(self, poll_interval: float = 0.2, kill_grace: float = 5.0):
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace

    def run(
        self,
        command: str,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        env: Optional[Dict[str, str]] = None,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> CommandResult:
        """
        Run ``command`` through the shell and wait for it.

        Args:
            command: Shell command line
            cwd: Working directory
            timeout: Seconds before the process is terminated
            cancel_event: Terminates the process when set
            env: Extra environment variables
            on_output: Called with each output line as it arrives

        Returns:
            CommandResult (never raises for non-zero exits)
        """
        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        logger.debug(f"Running command in '{cwd}': {command}")
        process = subprocess.Popen(
            command,
            shell=True,
            cwd=cwd,
            env=full_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding='utf-8',
            errors='replace',
        )

        lines = []

        def _drain():
            for line in process.stdout:
                line = line.rstrip('\n')
                lines.append(line)
                if on_output:
                    on_output(line)

        reader = threading.Thread(target=_drain, daemon=True)
        reader.start()

        deadline = time.monotonic() + timeout if timeout else None
        timed_out = cancelled = False
        while process.poll() is None:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = True
                break
            time.sleep(self.poll_interval)

        if timed_out or cancelled:
            self._terminate(process)

        reader.join(timeout=self.kill_grace)
        returncode = process.wait()

        if timed_out:
            logger.warning(f"Command timed out after {timeout}s: {command}")
        elif cancelled:
            logger.info(f"Command cancelled: {command}")

        return CommandResult(
            command=command,
            returncode=returncode,
            output='\n'.join(lines),
            timed_out=timed_out,
            cancelled=cancelled,
        )

    def _terminate(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            process.kill()
