from .lifecycle import LifecycleEventDispatcher, RenewalManager
from .registry import (
    AuthorityPlugin,
    CertkeeperConfig,
    HookCatalog,
    HookGroupResolver,
    KeyPairManager,
    authority_plugin_registry,
)

__all__ = [
    'CertkeeperConfig',
    'RenewalManager',
    'HookCatalog',
    'HookGroupResolver',
    'LifecycleEventDispatcher',
    'KeyPairManager',
    'AuthorityPlugin',
    'authority_plugin_registry',
]
