from .authority import (
    AuthorityPlugin,
    AuthorityRegistry,
    CertificateAuthority,
    IdentityProofs,
    authority_plugin_registry,
)
from .certs import HookSlots, ManagedCertificateSpec
from .common import (
    AuthorityLabel,
    CertLabel,
    CyclicHookGroup,
    DuplicateName,
    HookLabel,
    PluginLabel,
    UnknownReference,
)
from .config import CertkeeperConfig
from .hooks import (
    EventHooks,
    FailurePolicy,
    Hook,
    HookAction,
    HookCatalog,
    HookGroup,
    HookGroupResolver,
    LifecycleEvent,
    ResolvedHookList,
)
from .keys import KeyGenerationFailed, KeyMaterial, KeyPairManager

__all__ = [
    'CertkeeperConfig',
    'HookCatalog',
    'HookGroupResolver',
    'Hook',
    'HookAction',
    'HookGroup',
    'FailurePolicy',
    'ResolvedHookList',
    'LifecycleEvent',
    'EventHooks',
    'HookSlots',
    'ManagedCertificateSpec',
    'KeyMaterial',
    'KeyPairManager',
    'KeyGenerationFailed',
    'AuthorityPlugin',
    'AuthorityRegistry',
    'CertificateAuthority',
    'IdentityProofs',
    'authority_plugin_registry',
    'HookLabel',
    'CertLabel',
    'AuthorityLabel',
    'PluginLabel',
    'DuplicateName',
    'UnknownReference',
    'CyclicHookGroup',
]
