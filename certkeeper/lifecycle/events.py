"""
Running hooks at lifecycle events.

The :class:`LifecycleEventDispatcher` walks a resolved hook list and hands
every hook to a :class:`HookExecutor`. How a hook is actually executed is up
to the executor; :class:`SubprocessHookExecutor` runs it as an external
command.
"""

import logging
import os
import subprocess
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from typing import Dict, List, Tuple

from ..errors import ExecutionFailed, HookFailed
from ..registry.hooks import (
    FailurePolicy,
    HookAction,
    LifecycleEvent,
    ResolvedHookList,
)

__all__ = [
    'LifecycleEvent',
    'HookContext',
    'HookFailure',
    'DispatchReport',
    'HookExecutor',
    'SubprocessHookExecutor',
    'LifecycleEventDispatcher',
]

logger = logging.getLogger(__name__)

ENV_PREFIX = 'CERTKEEPER_'


@dataclass(frozen=True)
class HookContext:
    """Information about the file operation that a hook is run for."""

    name: str
    """Label of the managed certificate."""

    event: LifecycleEvent
    identifiers: Tuple[str, ...]
    key_type: str
    cert_path: str
    key_path: str

    is_new: bool
    """The files are created for the first time."""

    key_changed: bool
    """The key file is replaced along with the certificate."""

    env: Dict[str, str] = field(default_factory=dict)

    @property
    def crt_directory(self) -> str:
        return os.path.dirname(self.cert_path)

    def for_event(self, event: LifecycleEvent) -> 'HookContext':
        return self if event is self.event else replace(self, event=event)

    def placeholders(self) -> Dict[str, str]:
        """Values available to ``{...}`` placeholders in hook actions."""
        return {
            'name': self.name,
            'event': self.event.value,
            'identifiers': ','.join(self.identifiers),
            'key_type': self.key_type,
            'cert_path': self.cert_path,
            'key_path': self.key_path,
            'crt_directory': self.crt_directory,
        }

    def environment(self) -> Dict[str, str]:
        env = dict(self.env)
        env.update({
            ENV_PREFIX + key.upper(): value
            for key, value in self.placeholders().items()
            if key != 'crt_directory'
        })
        env[ENV_PREFIX + 'IS_NEW'] = '1' if self.is_new else '0'
        env[ENV_PREFIX + 'KEY_CHANGED'] = '1' if self.key_changed else '0'
        return env


@dataclass(frozen=True)
class HookFailure:
    """Record of a failed hook."""

    hook_name: str
    event: LifecycleEvent
    detail: str
    failure_policy: FailurePolicy

    def __str__(self):
        return f"{self.event} hook '{self.hook_name}' failed: {self.detail}"


@dataclass
class DispatchReport:
    """What happened while firing one event."""

    event: LifecycleEvent
    executed: List[str] = field(default_factory=list)
    failures: List[HookFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class HookExecutor:
    """Runs the action of a single hook."""

    def run(self, action: HookAction, context: HookContext):
        """
        Execute ``action``.

        :raises ExecutionFailed:
            if the action could not be run or did not succeed.
        """
        raise NotImplementedError


class SubprocessHookExecutor(HookExecutor):
    """
    Runs hook actions as external commands.

    Placeholders in the arguments, ``stdin-str``, ``stdout`` and ``stderr``
    are filled in from the hook context, and the context is also exported
    through ``CERTKEEPER_*`` environment variables.
    """

    def __init__(self, base_env=None):
        self.base_env = base_env

    @staticmethod
    def _fill(template: str, values) -> str:
        try:
            return template.format_map(values)
        except (KeyError, IndexError, ValueError) as e:
            raise ExecutionFailed(
                f"Cannot fill in placeholders in {template!r}: {e!r}"
            ) from e

    def run(self, action: HookAction, context: HookContext):
        values = context.placeholders()
        command = [action.cmd] + [
            self._fill(arg, values) for arg in action.args
        ]
        env = dict(os.environ if self.base_env is None else self.base_env)
        env.update(context.environment())
        env.update({k: self._fill(v, values) for k, v in action.env.items()})
        timeout = (
            action.timeout.total_seconds()
            if action.timeout is not None else None
        )
        logger.debug(f"Running {command}")
        with ExitStack() as stack:
            kwargs = {}
            if action.stdin is not None:
                kwargs['stdin'] = stack.enter_context(
                    open(self._fill(action.stdin, values), 'rb')
                )
            elif action.stdin_str is not None:
                kwargs['input'] = \
                    self._fill(action.stdin_str, values).encode('utf8')
            else:
                kwargs['stdin'] = subprocess.DEVNULL
            for stream in ('stdout', 'stderr'):
                path = getattr(action, stream)
                kwargs[stream] = (
                    stack.enter_context(open(self._fill(path, values), 'wb'))
                    if path is not None else subprocess.PIPE
                )
            try:
                proc = subprocess.run(
                    command, env=env, timeout=timeout, **kwargs
                )
            except subprocess.TimeoutExpired as e:
                raise ExecutionFailed(
                    f"{action.cmd} timed out after {e.timeout}s"
                ) from e
            except OSError as e:
                raise ExecutionFailed(
                    f"Failed to run {action.cmd}: {e}"
                ) from e
        if proc.stdout:
            logger.debug(
                f"{action.cmd} stdout: "
                f"{proc.stdout.decode('utf8', errors='replace').rstrip()}"
            )
        stderr = (
            proc.stderr.decode('utf8', errors='replace').rstrip()
            if proc.stderr else ''
        )
        if proc.returncode != 0:
            raise ExecutionFailed(
                f"{action.cmd} exited with status {proc.returncode}"
                + (f": {stderr}" if stderr else '')
            )
        if stderr:
            logger.debug(f"{action.cmd} stderr: {stderr}")


class LifecycleEventDispatcher:
    """
    Fires lifecycle events by running the hooks of a resolved hook list,
    in order.

    Hooks with the ``ignore`` failure policy may fail without consequence
    other than a record in the report. The first failing ``fatal`` hook
    stops the list and raises :class:`~certkeeper.errors.HookFailed`.
    The dispatcher never retries.
    """

    def __init__(self, executor: HookExecutor = None):
        self.executor = executor or SubprocessHookExecutor()

    def fire(
        self,
        event: LifecycleEvent,
        resolved_list: ResolvedHookList,
        context: HookContext,
    ) -> DispatchReport:
        context = context.for_event(event)
        report = DispatchReport(event=event)
        for hook in resolved_list:
            logger.debug(
                f"Running {event} hook '{hook.name}' for {context.name}"
            )
            try:
                self.executor.run(hook.action, context)
            except ExecutionFailed as e:
                failure = HookFailure(
                    hook_name=str(hook.name),
                    event=event,
                    detail=e.detail,
                    failure_policy=hook.failure_policy,
                )
                report.failures.append(failure)
                if hook.failure_policy is FailurePolicy.FATAL:
                    logger.error(f"{context.name}: {failure}")
                    raise HookFailed(hook.name, e, report=report) from e
                logger.warning(f"{context.name}: {failure} (ignored)")
                continue
            report.executed.append(str(hook.name))
        return report
