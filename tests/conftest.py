import threading

import pytest
import yaml

from certkeeper.crypto_utils import (
    KeyType,
    dump_private_key_pem,
    generate_key_pair,
)
from certkeeper.errors import ExecutionFailed
from certkeeper.lifecycle import HookExecutor
from certkeeper.registry import CertkeeperConfig

BASE_CONFIG = """
authorities:
  internal:
    type: local-ca
    params:
      issuer-key: ca.key.pem
      issuer-name:
        common-name: Certkeeper Test CA
      validity: P90D
"""


class RecordingExecutor(HookExecutor):
    """
    Hook executor that records the commands it is asked to run instead of
    running them. Commands listed in ``failing`` fail.
    """

    def __init__(self, failing=()):
        self.calls = []
        self.failing = set(failing)
        self.block_on = None
        self.entered = threading.Event()
        self.release = threading.Event()

    def run(self, action, context):
        self.calls.append((action.cmd, context))
        if action.cmd == self.block_on:
            self.entered.set()
            self.release.wait(timeout=10)
        if action.cmd in self.failing:
            raise ExecutionFailed(f"{action.cmd} failed")

    @property
    def commands(self):
        return [cmd for cmd, _ in self.calls]

    def events(self):
        return [(cmd, ctx.event.value) for cmd, ctx in self.calls]


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture(scope='session')
def issuer_key_pem():
    private, _ = generate_key_pair(KeyType.ECDSA_P256)
    return dump_private_key_pem(private)


@pytest.fixture
def config_dir(tmp_path, issuer_key_pem):
    (tmp_path / 'ca.key.pem').write_bytes(issuer_key_pem)
    return tmp_path


@pytest.fixture
def make_config(config_dir):
    def _make(extra_yaml='', **kwargs):
        config = yaml.safe_load(BASE_CONFIG)
        config.update(yaml.safe_load(extra_yaml) or {})
        kwargs.setdefault('config_search_dir', str(config_dir))
        kwargs.setdefault('storage_root', str(config_dir / 'certs'))
        return CertkeeperConfig(config, **kwargs)

    return _make
