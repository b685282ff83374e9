from .events import (
    DispatchReport,
    HookContext,
    HookExecutor,
    HookFailure,
    LifecycleEvent,
    LifecycleEventDispatcher,
    SubprocessHookExecutor,
)
from .renewal import (
    AbortReason,
    ManagedCertificate,
    RenewalAction,
    RenewalAttempt,
    RenewalManager,
    RenewalOutcome,
    RenewalState,
    RenewalStateMachine,
)
from .storage import CertificateStorage, IncompleteCommit, atomic_replace

__all__ = [
    'LifecycleEvent',
    'LifecycleEventDispatcher',
    'HookExecutor',
    'SubprocessHookExecutor',
    'HookContext',
    'HookFailure',
    'DispatchReport',
    'RenewalManager',
    'RenewalStateMachine',
    'ManagedCertificate',
    'RenewalAttempt',
    'RenewalOutcome',
    'RenewalState',
    'RenewalAction',
    'AbortReason',
    'CertificateStorage',
    'IncompleteCommit',
    'atomic_replace',
]
