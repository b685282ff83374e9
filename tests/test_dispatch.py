import os

import pytest

from certkeeper.errors import ExecutionFailed, HookFailed
from certkeeper.lifecycle import (
    HookContext,
    LifecycleEventDispatcher,
    SubprocessHookExecutor,
)
from certkeeper.registry import (
    FailurePolicy,
    HookAction,
    HookCatalog,
    HookGroupResolver,
    LifecycleEvent,
)

from .conftest import RecordingExecutor


def _context(tmp_path, event=LifecycleEvent.POST_EDIT, **kwargs):
    kwargs.setdefault('env', {})
    return HookContext(
        name='www',
        event=event,
        identifiers=('www.example.com', 'example.com'),
        key_type='ecdsa_p256',
        cert_path=str(tmp_path / 'www_ecdsa_p256.crt.pem'),
        key_path=str(tmp_path / 'www_ecdsa_p256.pk.pem'),
        is_new=False,
        key_changed=True,
        **kwargs,
    )


def _resolved(*specs):
    catalog = HookCatalog()
    for name, policy in specs:
        catalog.define(name, HookAction(cmd=name), policy)
    return HookGroupResolver(catalog).resolve([name for name, _ in specs])


def test_fire_runs_in_order(tmp_path):
    executor = RecordingExecutor()
    hooks = _resolved(('a', 'fatal'), ('b', 'fatal'), ('c', 'ignore'))
    report = LifecycleEventDispatcher(executor).fire(
        LifecycleEvent.PRE_EDIT, hooks, _context(tmp_path)
    )
    assert executor.commands == ['a', 'b', 'c']
    assert report.ok
    assert report.executed == ['a', 'b', 'c']
    # the context is bound to the fired event
    assert all(
        ctx.event is LifecycleEvent.PRE_EDIT for _, ctx in executor.calls
    )


def test_ignore_failure_continues(tmp_path):
    executor = RecordingExecutor(failing=['b'])
    hooks = _resolved(('a', 'fatal'), ('b', 'ignore'), ('c', 'fatal'))
    report = LifecycleEventDispatcher(executor).fire(
        LifecycleEvent.POST_CREATE, hooks, _context(tmp_path)
    )
    assert executor.commands == ['a', 'b', 'c']
    assert not report.ok
    assert report.executed == ['a', 'c']
    (failure,) = report.failures
    assert failure.hook_name == 'b'
    assert failure.event is LifecycleEvent.POST_CREATE
    assert failure.failure_policy is FailurePolicy.IGNORE
    assert failure.detail == 'b failed'


def test_fatal_failure_stops(tmp_path):
    executor = RecordingExecutor(failing=['b'])
    hooks = _resolved(('a', 'fatal'), ('b', 'fatal'), ('c', 'fatal'))
    with pytest.raises(HookFailed) as exc_info:
        LifecycleEventDispatcher(executor).fire(
            LifecycleEvent.PRE_CREATE, hooks, _context(tmp_path)
        )
    # no retries, and nothing after the failing hook
    assert executor.commands == ['a', 'b']
    err = exc_info.value
    assert err.hook_name == 'b'
    assert isinstance(err.cause, ExecutionFailed)
    assert err.report.executed == ['a']
    assert [f.hook_name for f in err.report.failures] == ['b']
    assert "Hook 'b' failed" in str(err)


def test_fire_empty_list(tmp_path):
    executor = RecordingExecutor()
    report = LifecycleEventDispatcher(executor).fire(
        LifecycleEvent.PRE_CREATE, _resolved(), _context(tmp_path)
    )
    assert report.ok and not report.executed
    assert not executor.calls


def test_context_environment(tmp_path):
    ctx = _context(tmp_path, env={'EXTRA': '1'})
    env = ctx.environment()
    assert env['CERTKEEPER_NAME'] == 'www'
    assert env['CERTKEEPER_EVENT'] == 'post-edit'
    assert env['CERTKEEPER_IDENTIFIERS'] == 'www.example.com,example.com'
    assert env['CERTKEEPER_KEY_TYPE'] == 'ecdsa_p256'
    assert env['CERTKEEPER_CERT_PATH'] == ctx.cert_path
    assert env['CERTKEEPER_KEY_PATH'] == ctx.key_path
    assert env['CERTKEEPER_IS_NEW'] == '0'
    assert env['CERTKEEPER_KEY_CHANGED'] == '1'
    assert env['EXTRA'] == '1'
    assert ctx.placeholders()['crt_directory'] == str(tmp_path)


def test_subprocess_placeholders_and_env(tmp_path):
    out = tmp_path / 'out.txt'
    action = HookAction.from_config({
        'cmd': 'sh',
        'args': [
            '-c', 'printf "%s|%s|%s|%s" "$CERTKEEPER_EVENT" "$1" "$2" '
                  '"$HOOK_VAR" > "$3"',
            'hook', '{cert_path}', '{identifiers}', str(out),
        ],
        'env': {'HOOK_VAR': '{name}-hook'},
    })
    SubprocessHookExecutor().run(action, _context(tmp_path))
    event, cert_path, identifiers, hook_var = out.read_text().split('|')
    assert event == 'post-edit'
    assert cert_path == str(tmp_path / 'www_ecdsa_p256.crt.pem')
    assert identifiers == 'www.example.com,example.com'
    assert hook_var == 'www-hook'


def test_subprocess_stdin_str_and_stdout(tmp_path):
    out = tmp_path / 'stdout.txt'
    action = HookAction.from_config({
        'cmd': 'cat',
        'stdin-str': 'renewed {name} ({key_type})',
        'stdout': str(out),
    })
    SubprocessHookExecutor().run(action, _context(tmp_path))
    assert out.read_text() == 'renewed www (ecdsa_p256)'


def test_subprocess_stdin_file(tmp_path):
    src = tmp_path / 'in.txt'
    src.write_text('hello')
    out = tmp_path / 'out.txt'
    action = HookAction.from_config({
        'cmd': 'cat', 'stdin': str(src), 'stdout': str(out),
    })
    SubprocessHookExecutor().run(action, _context(tmp_path))
    assert out.read_text() == 'hello'


def test_subprocess_base_env(tmp_path):
    out = tmp_path / 'out.txt'
    action = HookAction.from_config({
        'cmd': '/bin/sh',
        'args': ['-c', 'printf "%s" "$FROM_BASE" > "$1"', 'hook',
                 str(out)],
    })
    executor = SubprocessHookExecutor(
        base_env={'FROM_BASE': 'yes', 'PATH': os.environ.get('PATH', '')}
    )
    executor.run(action, _context(tmp_path))
    assert out.read_text() == 'yes'


@pytest.mark.parametrize(
    'action_cfg, err_msg',
    [
        ({'cmd': 'sh', 'args': ['-c', 'echo oops >&2; exit 3']},
         'exited with status 3: oops'),
        ({'cmd': 'certkeeper-test-no-such-program'}, 'Failed to run'),
        ({'cmd': 'sleep', 'args': ['5'], 'timeout': 'PT1S'}, 'timed out'),
        ({'cmd': 'echo', 'args': ['{no_such_placeholder}']},
         'Cannot fill in placeholders'),
    ],
)
def test_subprocess_failures(tmp_path, action_cfg, err_msg):
    action = HookAction.from_config(action_cfg)
    with pytest.raises(ExecutionFailed, match=err_msg):
        SubprocessHookExecutor().run(action, _context(tmp_path))


def test_subprocess_failure_through_dispatcher(tmp_path):
    catalog = HookCatalog()
    catalog.define('ok', HookAction(cmd='true'))
    catalog.define('broken', HookAction(cmd='false'), FailurePolicy.IGNORE)
    catalog.define_group('all', ['broken', 'ok'])
    hooks = HookGroupResolver(catalog).resolve(['all'])
    report = LifecycleEventDispatcher().fire(
        LifecycleEvent.POST_EDIT, hooks, _context(tmp_path)
    )
    assert report.executed == ['ok']
    assert [f.hook_name for f in report.failures] == ['broken']
