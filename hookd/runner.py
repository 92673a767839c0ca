"""Spawning discovered lint/test commands and classifying the outcome.

The child inherits the caller's environment unchanged (PATH, virtualenvs,
shell customizations), so a hook runs exactly what the user would run by
hand. Output is captured for the debug log and never forwarded; callers
only ever see the short status message built here.

On timeout the whole process tree is terminated, not just the direct child:
``make lint`` typically forks the real linter, and a surviving grandchild
keeps running long after the hook gave up.
"""

import logging
import os
import shlex
import signal
import subprocess
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

# Seconds a terminated process tree gets before SIGKILL
TERMINATE_GRACE = 1.0

# Exit code reported when the command could not be started at all
EXIT_NOT_FOUND = 127


class HookStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class CommandSpec:
    """How to spawn one validation command."""

    check_type: str
    args: tuple[str, ...]
    working_dir: str

    def command_line(self) -> str:
        """The command as a user would type it."""
        return shlex.join(self.args)


@dataclass
class CommandResult:
    """Raw result of running a command; ``returncode`` is None on timeout."""

    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False


@dataclass(frozen=True)
class Outcome:
    status: HookStatus
    message: str
    repro_command: str = field(default="")


def _signal_group(pgid: int, sig: int) -> None:
    try:
        os.killpg(pgid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def terminate_process_tree(pid: int, grace: float = TERMINATE_GRACE) -> None:
    """Terminate ``pid`` and every descendant, escalating to SIGKILL.

    Descendants are collected before the parent is signalled so children
    reparented to init on the parent's death are still reached. On Unix the
    child leads its own session, so its process group is signalled too, to
    catch anything that escaped the tree. The group is only signalled while
    the leader is unreaped, so the pid cannot have been reused.
    """
    try:
        leader = psutil.Process(pid)
        procs = leader.children(recursive=True)
        procs.append(leader)
    except psutil.NoSuchProcess:
        return

    use_group = sys.platform != "win32"
    if use_group:
        _signal_group(pid, signal.SIGTERM)
    for proc in procs:
        try:
            proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    # wait_procs reaps the leader once it exits
    _, alive = psutil.wait_procs(procs, timeout=grace)
    if use_group and leader in alive:
        _signal_group(pid, signal.SIGKILL)
    for proc in alive:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass


class SubprocessCommandRunner:
    """Runs a CommandSpec as a child process with a hard deadline."""

    def run(self, spec: CommandSpec, timeout: float) -> CommandResult:
        popen_kwargs: dict = {}
        if sys.platform == "win32":
            popen_kwargs["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        else:
            popen_kwargs["start_new_session"] = True

        try:
            proc = subprocess.Popen(
                list(spec.args),
                cwd=spec.working_dir,
                env=os.environ.copy(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                **popen_kwargs,
            )
        except OSError as e:
            logger.debug(f"Failed to start {spec.command_line()}: {e}")
            return CommandResult(returncode=EXIT_NOT_FOUND, stderr=str(e))

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.debug(f"{spec.command_line()} exceeded {timeout}s, terminating process tree")
            terminate_process_tree(proc.pid)
            try:
                stdout, stderr = proc.communicate(timeout=TERMINATE_GRACE)
            except subprocess.TimeoutExpired:
                proc.kill()
                stdout, stderr = "", ""
            return CommandResult(returncode=None, stdout=stdout or "", stderr=stderr or "", timed_out=True)

        return CommandResult(returncode=proc.returncode, stdout=stdout, stderr=stderr)


def format_timeout(timeout: float) -> str:
    if float(timeout).is_integer():
        return f"{int(timeout)}s"
    return f"{timeout}s"


class HookRunner:
    """Runs one validation command and turns its result into an Outcome.

    Args:
        runner: Process spawner (SubprocessCommandRunner in production)
    """

    def __init__(self, runner: Optional[SubprocessCommandRunner] = None):
        self.runner = runner if runner is not None else SubprocessCommandRunner()

    def run(self, spec: CommandSpec, timeout: float) -> Outcome:
        command = spec.command_line()
        repro = f"cd {spec.working_dir} && {command}"
        result = self.runner.run(spec, timeout)

        if result.stdout:
            logger.debug(f"[{spec.check_type}] stdout:\n{result.stdout}")
        if result.stderr:
            logger.debug(f"[{spec.check_type}] stderr:\n{result.stderr}")

        if result.timed_out:
            logger.info(f"{command} in {spec.working_dir} timed out after {format_timeout(timeout)}")
            return Outcome(
                status=HookStatus.TIMEOUT,
                message=f"BLOCKING: Command timed out after {format_timeout(timeout)}",
                repro_command=repro,
            )

        if result.returncode == 0:
            return Outcome(status=HookStatus.PASS, message=pass_message(spec.check_type), repro_command=repro)

        logger.info(f"{command} in {spec.working_dir} failed with exit code {result.returncode}")
        return Outcome(status=HookStatus.FAIL, message=fail_message(spec), repro_command=repro)


def pass_message(check_type: str) -> str:
    if check_type == "lint":
        return "Lints pass. Continue with your task."
    if check_type == "test":
        return "Tests pass. Continue with your task."
    return "Command succeeded"


def fail_message(spec: CommandSpec) -> str:
    command = spec.command_line()
    if spec.check_type in ("lint", "test"):
        return f"BLOCKING: Run 'cd {spec.working_dir} && {command}' to fix {spec.check_type} failures"
    return f"BLOCKING: Command failed: {command}"
