"""
Request handlers shared by the daemon and the in-process fallback.

Both paths construct a HookHandlers and call ``handle(request)``; the daemon
is only a latency optimization, so everything that decides what the user
sees lives here and nowhere else.

A lint/test request runs:

    parse payload -> skip-registry gate -> discover command
        -> LockCoordinator.acquire -> HookRunner.run -> LockCoordinator.release

Lock contention, opted-out directories, non-edit events and projects
without a command all produce an empty response with exit code 0.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

from hookd.config import Settings
from hookd.discovery import discover, find_project_root
from hookd.errors import RegistryCorruptedError
from hookd.hook_input import HookInput
from hookd.locks import AcquireStatus, LockCoordinator, LockKey
from hookd.protocol import EXIT_SHOW_MESSAGE, Request, Response
from hookd.runner import CommandSpec, HookRunner, HookStatus, Outcome
from hookd.skip_registry import SkipRegistry, SkipType
from hookd.stats import ServerStats

logger = logging.getLogger(__name__)

Discoverer = Callable[[str | Path, str, Optional[str | Path]], Optional[CommandSpec]]
RootFinder = Callable[[str | Path], Optional[Path]]

VALIDATE_PASS_MESSAGE = "Validations pass. Continue with your task."


class HookHandlers:
    """Dispatches requests by method to the lint/test/validate/stats handlers.

    Args:
        coordinator: Lock coordinator guarding each (check type, project)
        runner: Runs the discovered command
        registry: Skip registry consulted before each run
        settings: Timeouts and cooldowns per check type
        stats: Counters reported by the ``stats`` method
        holder_pid: PID recorded as lock holder (defaults to this process)
        discoverer: Maps (directory, check type, root) to a command
        root_finder: Maps a directory to its project root
    """

    def __init__(
        self,
        coordinator: LockCoordinator,
        runner: HookRunner,
        registry: SkipRegistry,
        settings: Settings,
        stats: Optional[ServerStats] = None,
        holder_pid: Optional[int] = None,
        discoverer: Discoverer = discover,
        root_finder: RootFinder = find_project_root,
    ):
        self.coordinator = coordinator
        self.runner = runner
        self.registry = registry
        self.settings = settings
        self.stats = stats if stats is not None else ServerStats()
        self.holder_pid = holder_pid if holder_pid is not None else os.getpid()
        self.discoverer = discoverer
        self.root_finder = root_finder

        self._handlers: dict[str, Callable[[str], Response]] = {
            "ping": self._handle_ping,
            "lint": self._handle_lint,
            "test": self._handle_test,
            "validate": self._handle_validate,
            "stats": self._handle_stats,
        }

    @property
    def methods(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    def handle(self, request: Request) -> Response:
        """Route one request to its handler."""
        handler = self._handlers.get(request.method)
        if handler is None:
            return Response.failure(f"Unknown method: {request.method}")
        try:
            return handler(request.params)
        except RegistryCorruptedError as e:
            logger.error(f"Skip registry is corrupted: {e}")
            return Response.failure(f"Skip registry is corrupted: {e}")

    def _handle_ping(self, params: str) -> Response:
        return Response(result="pong")

    def _handle_stats(self, params: str) -> Response:
        return Response(result=self.stats.render())

    def _handle_lint(self, params: str) -> Response:
        return self._run_check("lint", params)

    def _handle_test(self, params: str) -> Response:
        return self._run_check("test", params)

    def _edited_directory(self, params: str) -> Optional[str]:
        """Directory of the edited file, or None if the event is not a file edit."""
        try:
            hook_input = HookInput.from_json(params)
        except ValueError as e:
            logger.debug(f"Ignoring unreadable hook input: {e}")
            return None
        if not hook_input.should_process():
            logger.debug(
                f"Ignoring event: {hook_input.hook_event_name or '-'}, tool: {hook_input.tool_name or '-'}"
            )
            return None
        return os.path.dirname(hook_input.file_path)

    def _run_locked(self, check_type: str, project_root: Path, work: Callable[[], Response]) -> Optional[Response]:
        """Run ``work`` under the lock for (check_type, project_root).

        Returns None when the lock is busy or cooling.
        """
        key = LockKey.for_project(check_type, project_root)
        hook_settings = self.settings.for_check(check_type)
        status = self.coordinator.acquire(key, self.holder_pid, hook_settings.cooldown_seconds)
        if status is not AcquireStatus.OK:
            logger.debug(f"Skipping {check_type} for {project_root}: lock {status.value}")
            return None
        try:
            return work()
        finally:
            self.coordinator.release(key)

    def _run_check(self, check_type: str, params: str) -> Response:
        file_dir = self._edited_directory(params)
        if file_dir is None:
            return Response()

        if check_type in {t.value for t in self.registry.get_skip_types(file_dir)}:
            logger.debug(f"Skipping {check_type} for directory: {file_dir}")
            self.stats.record_hook(check_type, "skipped")
            return Response()

        project_root = self.root_finder(file_dir)
        if project_root is None:
            logger.debug(f"No project root above {file_dir}")
            return Response()

        spec = self.discoverer(file_dir, check_type, project_root)
        if spec is None:
            logger.debug(f"No {check_type} command found for {file_dir}")
            return Response()

        timeout = self.settings.for_check(check_type).timeout_seconds
        outcome_holder: list[Outcome] = []

        def work() -> Response:
            outcome = self.runner.run(spec, timeout)
            outcome_holder.append(outcome)
            return Response(result=outcome.message, exit_code=EXIT_SHOW_MESSAGE)

        response = self._run_locked(check_type, project_root, work)
        if response is None:
            self.stats.record_hook(check_type, "skipped")
            return Response()

        self.stats.record_hook(check_type, outcome_holder[0].status.value)
        return response

    def _handle_validate(self, params: str) -> Response:
        """Run lint and test for one edit in parallel under a single lock."""
        file_dir = self._edited_directory(params)
        if file_dir is None:
            return Response()

        skipped = self.registry.get_skip_types(file_dir)
        wanted = [t for t in ("lint", "test") if SkipType(t) not in skipped]
        if not wanted:
            logger.debug(f"Both lint and test skipped for directory: {file_dir}")
            self.stats.record_hook("validate", "skipped")
            return Response()

        project_root = self.root_finder(file_dir)
        if project_root is None:
            return Response()

        specs = {t: self.discoverer(file_dir, t, project_root) for t in wanted}
        specs = {t: spec for t, spec in specs.items() if spec is not None}
        if not specs:
            return Response()

        outcomes: dict[str, Outcome] = {}

        def work() -> Response:
            with ThreadPoolExecutor(max_workers=len(specs), thread_name_prefix="hookd-validate") as pool:
                futures = {
                    t: pool.submit(self.runner.run, spec, self.settings.for_check(t).timeout_seconds)
                    for t, spec in specs.items()
                }
                for t, future in futures.items():
                    outcomes[t] = future.result()
            return Response(result=combine_messages(outcomes, specs), exit_code=EXIT_SHOW_MESSAGE)

        response = self._run_locked("validate", project_root, work)
        if response is None:
            self.stats.record_hook("validate", "skipped")
            return Response()

        statuses = {o.status for o in outcomes.values()}
        if HookStatus.TIMEOUT in statuses:
            self.stats.record_hook("validate", "timeout")
        elif HookStatus.FAIL in statuses:
            self.stats.record_hook("validate", "fail")
        else:
            self.stats.record_hook("validate", "pass")
        return response


def combine_messages(outcomes: dict[str, Outcome], specs: dict[str, CommandSpec]) -> str:
    """Single message for a validate run covering lint and test."""
    failed = [t for t in ("lint", "test") if t in outcomes and outcomes[t].status is not HookStatus.PASS]
    if not failed:
        return VALIDATE_PASS_MESSAGE

    # A timeout says more than a re-run hint
    for t in failed:
        if outcomes[t].status is HookStatus.TIMEOUT:
            return outcomes[t].message

    if len(failed) == 2:
        lint, test = specs["lint"], specs["test"]
        return (
            f"BLOCKING: Lint and test failures. Run 'cd {lint.working_dir} && {lint.command_line()}' "
            f"and 'cd {test.working_dir} && {test.command_line()}'"
        )
    return outcomes[failed[0]].message


def create_handlers(
    settings: Settings,
    stats: Optional[ServerStats] = None,
    holder_pid: Optional[int] = None,
) -> HookHandlers:
    """Wire production collaborators: file lock store, subprocess runner, JSON registry."""
    return HookHandlers(
        coordinator=LockCoordinator(),
        runner=HookRunner(),
        registry=SkipRegistry(),
        settings=settings,
        stats=stats,
        holder_pid=holder_pid,
    )
