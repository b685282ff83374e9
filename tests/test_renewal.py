import os
import threading
from datetime import datetime

import pytest
import pytz
import yaml
from asn1crypto import x509
from freezegun import freeze_time

from certkeeper.crypto_utils import (
    CryptoBackend,
    KeyType,
    cert_matches_key,
    generate_key_pair,
)
from certkeeper.default_plugins import CommandAuthorityPlugin
from certkeeper.errors import CertkeeperObjectNotFoundError, IssuanceFailed
from certkeeper.lifecycle import (
    AbortReason,
    RenewalAction,
    RenewalManager,
    RenewalState,
    storage,
)
from certkeeper.lifecycle.storage import CertificateStorage
from certkeeper.registry import (
    AuthorityPlugin,
    CertificateAuthority,
    KeyPairManager,
)
from certkeeper.registry.common import AuthorityLabel

HOOK_NAMES = (
    'pre-create-check', 'post-create-notify', 'pre-edit-check',
    'post-edit-reload',
)


class SimulatedCrash(Exception):
    pass


def _config(make_config, reuse_key=False, policies=None, certs=('www',),
            **cert_opts):
    policies = policies or {}
    certificates = {}
    for label in certs:
        cert_cfg = {
            'authority': 'internal',
            'identifiers': [f'{label}.example.com'],
            'reuse-key': reuse_key,
            'pre-create-hooks': ['pre-create-check'],
            'post-create-hooks': ['post-create-notify'],
            'pre-edit-hooks': ['pre-edit-check'],
            'post-edit-hooks': ['post-edit-reload'],
        }
        cert_cfg.update(cert_opts.get(label, {}))
        certificates[label] = cert_cfg
    return make_config(yaml.safe_dump({
        'hooks': {
            name: {'cmd': name, 'failure-policy': policies.get(name, 'fatal')}
            for name in HOOK_NAMES
        },
        'certificates': certificates,
    }))


def _read(path):
    with open(path, 'rb') as f:
        return f.read()


def test_first_issuance(make_config, executor):
    config = _config(make_config)
    manager = RenewalManager.from_config(config, executor=executor)
    cert = manager['www']
    assert cert.certificate is None and cert.is_due()

    outcome = manager.renew('www')
    assert outcome.committed, outcome.summary()
    assert outcome.state.is_terminal
    assert outcome.action is RenewalAction.CREATE_NEW
    assert outcome.key_changed
    assert executor.events() == [
        ('pre-create-check', 'pre-create'),
        ('post-create-notify', 'post-create'),
    ]
    assert all(ctx.is_new and ctx.key_changed for _, ctx in executor.calls)

    spec = cert.spec
    assert os.path.isfile(spec.cert_path) and os.path.isfile(spec.key_path)
    assert cert.certificate.serial_number == outcome.serial
    assert cert.key.fingerprint == outcome.key_fingerprint
    assert not cert.key.staged
    assert cert.state is RenewalState.IDLE
    assert cert.last_outcome is outcome

    issued = cert.certificate
    assert cert_matches_key(issued, cert.key.public)
    assert issued.subject.native['common_name'] == 'www.example.com'
    assert issued.issuer.native['common_name'] == 'Certkeeper Test CA'
    assert issued.valid_domains == ['www.example.com']


def test_hook_context(make_config, executor):
    config = _config(
        make_config, www={'env': {'SERVICE': 'nginx'}, 'crt-name': 'web'}
    )
    manager = RenewalManager.from_config(config, executor=executor)
    manager.renew('www')
    _, ctx = executor.calls[0]
    assert ctx.name == 'www'
    assert ctx.identifiers == ('www.example.com',)
    assert ctx.key_type == 'ecdsa_p256'
    assert ctx.cert_path.endswith('web_ecdsa_p256.crt.pem')
    assert ctx.key_path.endswith('web_ecdsa_p256.pk.pem')
    assert ctx.env == {'SERVICE': 'nginx'}


def test_renewal_without_reuse_changes_key(make_config, executor):
    manager = RenewalManager.from_config(
        _config(make_config, reuse_key=False), executor=executor
    )
    first = manager.renew('www')
    executor.calls.clear()
    second = manager.renew('www')
    assert second.committed
    assert second.action is RenewalAction.RENEW_NEW_KEY
    assert second.key_changed
    assert first.key_fingerprint != second.key_fingerprint
    assert executor.events() == [
        ('pre-edit-check', 'pre-edit'),
        ('post-edit-reload', 'post-edit'),
    ]
    assert all(
        not ctx.is_new and ctx.key_changed for _, ctx in executor.calls
    )


def test_renewal_with_reuse_keeps_key(make_config, executor):
    manager = RenewalManager.from_config(
        _config(make_config, reuse_key=True), executor=executor
    )
    cert = manager['www']
    first = manager.renew('www')
    key_bytes = _read(cert.spec.key_path)
    cert_bytes = _read(cert.spec.cert_path)

    second = manager.renew('www')
    third = manager.renew('www')
    for outcome in (second, third):
        assert outcome.committed
        assert outcome.action is RenewalAction.RENEW_REUSE_KEY
        assert not outcome.key_changed
        assert outcome.key_fingerprint == first.key_fingerprint
    assert len({first.serial, second.serial, third.serial}) == 3
    assert _read(cert.spec.key_path) == key_bytes
    assert _read(cert.spec.cert_path) != cert_bytes
    assert cert_matches_key(cert.certificate, cert.key.public)
    _, ctx = executor.calls[-1]
    assert not ctx.key_changed


def test_pre_create_fatal_leaves_nothing(make_config, executor):
    executor.failing.add('pre-create-check')
    manager = RenewalManager.from_config(
        _config(make_config), executor=executor
    )
    cert = manager['www']
    outcome = manager.renew('www')
    assert outcome.state is RenewalState.ABORTED
    assert outcome.reason is AbortReason.HOOK_REJECTED
    assert "pre-create-check" in outcome.detail
    assert not outcome.committed
    assert executor.commands == ['pre-create-check']
    assert not os.path.exists(cert.spec.cert_path)
    assert not os.path.exists(cert.spec.key_path)
    assert cert.certificate is None and cert.key is None
    assert cert.state is RenewalState.IDLE

    # the certificate can be retried
    executor.failing.clear()
    assert manager.renew('www').committed


def test_pre_hook_ignore_failure(make_config, executor):
    executor.failing.add('pre-create-check')
    manager = RenewalManager.from_config(
        _config(make_config, policies={'pre-create-check': 'ignore'}),
        executor=executor,
    )
    outcome = manager.renew('www')
    assert outcome.committed
    assert [f.hook_name for f in outcome.hook_failures] == [
        'pre-create-check'
    ]
    assert not outcome.post_hook_failed
    assert executor.commands == ['pre-create-check', 'post-create-notify']


def test_post_edit_failure_still_commits(make_config, executor):
    config = _config(make_config)
    manager = RenewalManager.from_config(config, executor=executor)
    first = manager.renew('www')
    executor.failing.add('post-edit-reload')
    outcome = manager.renew('www')

    assert outcome.committed
    assert outcome.post_hook_failed
    assert [f.hook_name for f in outcome.post_hook_failures] == [
        'post-edit-reload'
    ]
    summary = outcome.summary()
    assert 'renewal committed' in summary
    assert 'post-hook failed' in summary

    # the new pair is in place
    assert outcome.serial != first.serial
    restarted = RenewalManager.from_config(config)
    reloaded = restarted['www']
    assert reloaded.certificate.serial_number == outcome.serial
    assert reloaded.key.fingerprint == outcome.key_fingerprint


class FailingAuthority(AuthorityPlugin):
    plugin_label = 'failing'

    def request_issuance(self, plugin_config, public_key, identity_proofs):
        raise IssuanceFailed("authority unavailable")


class WrongKeyAuthority(AuthorityPlugin):
    plugin_label = 'wrong-key'

    def __init__(self, inner: CertificateAuthority):
        self.inner = inner

    def request_issuance(self, plugin_config, public_key, identity_proofs):
        _, other_key = generate_key_pair(KeyType.ECDSA_P256)
        return self.inner.request_issuance(other_key, identity_proofs)


class CancellingAuthority(AuthorityPlugin):
    plugin_label = 'cancelling'

    def __init__(self, inner: CertificateAuthority, cert):
        self.inner = inner
        self.cert = cert

    def request_issuance(self, plugin_config, public_key, identity_proofs):
        self.cert.attempt.cancel()
        return self.inner.request_issuance(public_key, identity_proofs)


def test_issuance_failure(make_config, executor):
    manager = RenewalManager.from_config(
        _config(make_config), executor=executor
    )
    cert = manager['www']
    first = manager.renew('www')
    cert_bytes = _read(cert.spec.cert_path)
    executor.calls.clear()

    cert.authority = CertificateAuthority(
        AuthorityLabel('broken'), FailingAuthority(), None
    )
    outcome = manager.renew('www')
    assert outcome.reason is AbortReason.ISSUANCE_FAILED
    assert outcome.detail == 'authority unavailable'
    assert not executor.calls
    assert _read(cert.spec.cert_path) == cert_bytes
    assert cert.certificate.serial_number == first.serial


def test_mismatched_certificate_rejected(make_config, executor):
    manager = RenewalManager.from_config(
        _config(make_config), executor=executor
    )
    cert = manager['www']
    cert.authority = CertificateAuthority(
        AuthorityLabel('wrong'), WrongKeyAuthority(cert.authority), None
    )
    outcome = manager.renew('www')
    assert outcome.reason is AbortReason.ISSUANCE_FAILED
    assert 'does not match' in outcome.detail
    assert not executor.calls
    assert not os.path.exists(cert.spec.cert_path)


class MalformedAuthority(AuthorityPlugin):
    plugin_label = 'malformed'

    def request_issuance(self, plugin_config, public_key, identity_proofs):
        # a valid outer SEQUENCE around garbage
        return x509.Certificate.load(bytes([0x30, 0x03, 0x02, 0x01, 0x05]))


def test_malformed_certificate_rejected(make_config, executor):
    manager = RenewalManager.from_config(
        _config(make_config), executor=executor
    )
    cert = manager['www']
    cert.authority = CertificateAuthority(
        AuthorityLabel('malformed'), MalformedAuthority(), None
    )
    outcome = manager.renew('www')
    assert outcome.reason is AbortReason.ISSUANCE_FAILED
    assert 'malformed' in outcome.detail
    assert not executor.calls
    assert not os.path.exists(cert.spec.cert_path)
    assert cert.state is RenewalState.IDLE


def test_malformed_command_output_rejected(make_config, executor):
    manager = RenewalManager.from_config(
        _config(make_config), executor=executor
    )
    cert = manager['www']
    plugin = CommandAuthorityPlugin()
    plugin_config = plugin.process_plugin_config(
        {'cmd': 'sh', 'args': ['-c', r"printf '\060\003\002\001\005'"]},
        None,
    )
    cert.authority = CertificateAuthority(
        AuthorityLabel('cmd'), plugin, plugin_config
    )
    outcome = manager.renew('www')
    assert outcome.reason is AbortReason.ISSUANCE_FAILED
    assert 'malformed certificate' in outcome.detail
    assert not executor.calls
    assert not os.path.exists(cert.spec.cert_path)
    assert not os.path.exists(cert.spec.key_path)


def test_write_failure(make_config, executor, monkeypatch):
    manager = RenewalManager.from_config(
        _config(make_config), executor=executor
    )
    cert = manager['www']
    first = manager.renew('www')
    executor.calls.clear()
    cert_bytes = _read(cert.spec.cert_path)
    key_bytes = _read(cert.spec.key_path)

    def _fail(self, cert_data, key_data=None):
        raise OSError("read-only file system")

    monkeypatch.setattr(CertificateStorage, 'write_pair', _fail)
    outcome = manager.renew('www')
    assert outcome.reason is AbortReason.WRITE_FAILED
    assert 'read-only' in outcome.detail
    assert executor.commands == ['pre-edit-check']
    assert cert.certificate.serial_number == first.serial
    assert cert.key.fingerprint == first.key_fingerprint
    assert _read(cert.spec.cert_path) == cert_bytes
    assert _read(cert.spec.key_path) == key_bytes


class BrokenBackend(CryptoBackend):
    def generate_key_pair(self, key_type):
        raise ValueError("no entropy today")


def test_key_generation_failure(make_config, executor):
    manager = RenewalManager.from_config(
        _config(make_config), executor=executor,
        key_manager=KeyPairManager(backend=BrokenBackend()),
    )
    outcome = manager.renew('www')
    assert outcome.reason is AbortReason.KEY_GENERATION_FAILED
    assert not executor.calls


@pytest.mark.parametrize('window', ['before-commit', 'after-commit'])
def test_crash_during_write(make_config, executor, monkeypatch, window):
    config = _config(make_config)
    manager = RenewalManager.from_config(config, executor=executor)
    first = manager.renew('www')

    if window == 'before-commit':
        orig_replace = storage.atomic_replace

        def _crash_on_journal(path, data, mode=None):
            if path.endswith('.commit'):
                raise SimulatedCrash()
            orig_replace(path, data, mode=mode)

        monkeypatch.setattr(storage, 'atomic_replace', _crash_on_journal)
    else:
        orig_rename = CertificateStorage._rename
        renamed = []

        def _crash_after_key(self, staged, final_path):
            if renamed:
                raise SimulatedCrash()
            renamed.append(final_path)
            orig_rename(self, staged, final_path)

        monkeypatch.setattr(CertificateStorage, '_rename', _crash_after_key)

    with pytest.raises(SimulatedCrash):
        manager.renew('www')
    monkeypatch.undo()

    restarted = RenewalManager.from_config(config, executor=executor)
    cert = restarted['www']
    assert cert_matches_key(cert.certificate, cert.key.public)
    if window == 'before-commit':
        assert cert.certificate.serial_number == first.serial
        assert cert.key.fingerprint == first.key_fingerprint
    else:
        assert cert.certificate.serial_number != first.serial
        assert cert.key.fingerprint != first.key_fingerprint
    leftovers = [
        name for name in os.listdir(cert.spec.crt_directory)
        if name.endswith(('.staged', '.commit', '.tmp'))
    ]
    assert leftovers == []


def _assert_memory_matches_disk(cert):
    disk_cert, disk_key = CertificateStorage(cert.spec).load()
    assert cert.certificate.serial_number == disk_cert.serial_number
    assert cert.key.fingerprint == disk_key.fingerprint


def test_transient_rename_failure_after_commit(
        make_config, executor, monkeypatch):
    manager = RenewalManager.from_config(
        _config(make_config), executor=executor
    )
    cert = manager['www']
    first = manager.renew('www')
    executor.calls.clear()

    orig_rename = CertificateStorage._rename
    failures = []

    def _fail_once(self, staged, final_path):
        if final_path == self.cert_path and not failures:
            failures.append(final_path)
            raise OSError("device busy")
        orig_rename(self, staged, final_path)

    monkeypatch.setattr(CertificateStorage, '_rename', _fail_once)
    outcome = manager.renew('www')
    assert failures
    assert outcome.committed, outcome.summary()
    assert outcome.action is RenewalAction.RENEW_NEW_KEY
    assert executor.commands == ['pre-edit-check', 'post-edit-reload']

    disk_cert, disk_key = CertificateStorage(cert.spec).load()
    assert cert_matches_key(disk_cert, disk_key.public)
    assert disk_cert.serial_number == outcome.serial != first.serial
    _assert_memory_matches_disk(cert)
    assert not os.path.exists(CertificateStorage(cert.spec).journal_path)


def test_persistent_rename_failure_after_commit(
        make_config, executor, monkeypatch):
    config = _config(make_config)
    manager = RenewalManager.from_config(config, executor=executor)
    cert = manager['www']
    first = manager.renew('www')
    executor.calls.clear()

    orig_rename = CertificateStorage._rename

    def _fail_cert(self, staged, final_path):
        if final_path == self.cert_path:
            raise OSError("device busy")
        orig_rename(self, staged, final_path)

    monkeypatch.setattr(CertificateStorage, '_rename', _fail_cert)
    outcome = manager.renew('www')
    assert outcome.reason is AbortReason.WRITE_FAILED
    assert 'committed' in outcome.detail
    assert executor.commands == ['pre-edit-check']
    # the key was replaced, the certificate was not
    assert cert.key.fingerprint != first.key_fingerprint
    assert cert.certificate.serial_number == first.serial
    _assert_memory_matches_disk(cert)
    assert cert.state is RenewalState.IDLE
    monkeypatch.undo()

    # the journal lets a restart complete the write
    restarted = RenewalManager.from_config(config, executor=executor)
    reloaded = restarted['www']
    assert cert_matches_key(reloaded.certificate, reloaded.key.public)
    assert reloaded.certificate.serial_number != first.serial
    assert reloaded.key.fingerprint == cert.key.fingerprint


def test_final_sync_failure_still_commits(
        make_config, executor, monkeypatch):
    manager = RenewalManager.from_config(
        _config(make_config, reuse_key=True), executor=executor
    )
    cert = manager['www']
    first = manager.renew('www')
    executor.calls.clear()

    orig_fsync = storage._fsync_directory
    calls = []

    def _fail_last_sync(directory):
        calls.append(directory)
        # staging, journal, renames, then the sync after removing the journal
        if len(calls) == 4:
            raise OSError("I/O error")
        orig_fsync(directory)

    monkeypatch.setattr(storage, '_fsync_directory', _fail_last_sync)
    outcome = manager.renew('www')
    assert len(calls) >= 4
    assert outcome.committed, outcome.summary()
    assert outcome.action is RenewalAction.RENEW_REUSE_KEY
    assert executor.commands == ['pre-edit-check', 'post-edit-reload']
    assert outcome.serial != first.serial
    _assert_memory_matches_disk(cert)
    assert cert.certificate.serial_number == outcome.serial


def test_second_trigger_rejected(make_config, executor):
    manager = RenewalManager.from_config(
        _config(make_config), executor=executor
    )
    executor.block_on = 'pre-create-check'
    results = []
    worker = threading.Thread(
        target=lambda: results.append(manager.renew('www'))
    )
    worker.start()
    try:
        assert executor.entered.wait(timeout=10)
        assert manager['www'].state is RenewalState.PRE_WRITE_HOOKS
        concurrent = manager.renew('www')
        assert concurrent.state is RenewalState.ABORTED
        assert concurrent.reason is AbortReason.ALREADY_IN_PROGRESS
    finally:
        executor.release.set()
        worker.join(timeout=10)
    (outcome,) = results
    assert outcome.committed
    assert executor.commands.count('pre-create-check') == 1
    assert manager['www'].state is RenewalState.IDLE


class CancellingKeyManager(KeyPairManager):
    def obtain(self, certificate, reuse_flag):
        certificate.attempt.cancel()
        return super().obtain(certificate, reuse_flag)


def test_cancel_before_issuance(make_config, executor):
    manager = RenewalManager.from_config(
        _config(make_config), executor=executor,
        key_manager=CancellingKeyManager(),
    )
    cert = manager['www']
    outcome = manager.renew('www')
    assert outcome.reason is AbortReason.INTERRUPTED
    assert not executor.calls
    assert not os.path.exists(cert.spec.cert_path)
    assert cert.state is RenewalState.IDLE


def test_cancel_after_issuance_runs_to_completion(make_config, executor):
    manager = RenewalManager.from_config(
        _config(make_config), executor=executor
    )
    cert = manager['www']
    cert.authority = CertificateAuthority(
        AuthorityLabel('cancelling'),
        CancellingAuthority(cert.authority, cert), None
    )
    outcome = manager.renew('www')
    assert outcome.committed
    assert os.path.isfile(cert.spec.cert_path)


def test_shutdown(make_config, executor):
    manager = RenewalManager.from_config(
        _config(make_config, certs=('www', 'api')), executor=executor
    )
    executor.block_on = 'pre-create-check'
    results = []
    worker = threading.Thread(
        target=lambda: results.append(manager.renew('www'))
    )
    worker.start()
    assert executor.entered.wait(timeout=10)
    # past the last cancellation point, so this attempt finishes normally
    manager.shutdown(wait=False)
    executor.release.set()
    worker.join(timeout=10)
    assert results[0].committed
    manager.shutdown(wait=True, timeout=5)

    outcome = manager.renew('api')
    assert outcome.reason is AbortReason.INTERRUPTED
    assert not os.path.exists(manager['api'].spec.cert_path)


def test_restart_loads_committed_state(make_config, executor):
    config = _config(make_config)
    first = RenewalManager.from_config(config, executor=executor).renew('www')
    executor.calls.clear()

    manager = RenewalManager.from_config(config, executor=executor)
    cert = manager['www']
    assert cert.certificate.serial_number == first.serial
    assert cert.key.fingerprint == first.key_fingerprint
    outcome = manager.renew('www')
    assert outcome.action is RenewalAction.RENEW_NEW_KEY
    assert executor.commands == ['pre-edit-check', 'post-edit-reload']


def test_renew_due(make_config, executor):
    config = _config(
        make_config, certs=('www', 'api'), api={'renew-before': 'P60D'}
    )
    with freeze_time('2030-01-01 12:00:00'):
        manager = RenewalManager.from_config(config, executor=executor)
        assert sorted(str(x) for x in manager.due()) == ['api', 'www']
        outcomes = manager.renew_due()
        assert [str(o.label) for o in outcomes] == ['www', 'api']
        assert all(o.committed for o in outcomes)
        assert manager.due() == []
        assert manager.renew_due() == []

    # certificates are valid for 90 days
    assert manager.due(datetime(2030, 1, 20, tzinfo=pytz.utc)) == []
    assert [str(x) for x in manager.due(
        datetime(2030, 2, 15, tzinfo=pytz.utc)
    )] == ['api']
    assert sorted(str(x) for x in manager.due(
        datetime(2030, 3, 15, tzinfo=pytz.utc)
    )) == ['api', 'www']


def test_renew_many_concurrently(make_config, executor):
    labels = ['a', 'b', 'c', 'd']
    manager = RenewalManager.from_config(
        _config(make_config, certs=labels), executor=executor
    )
    outcomes = manager.renew_many(['c', 'a', 'd', 'b'], max_workers=4)
    assert [str(o.label) for o in outcomes] == ['c', 'a', 'd', 'b']
    assert all(o.committed for o in outcomes)
    assert len({o.serial for o in outcomes}) == 4
    assert executor.commands.count('pre-create-check') == 4


def test_unknown_certificate(make_config, executor):
    manager = RenewalManager.from_config(
        _config(make_config), executor=executor
    )
    with pytest.raises(CertkeeperObjectNotFoundError):
        manager.renew('nope')
