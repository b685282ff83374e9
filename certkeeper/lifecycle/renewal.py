"""
The renewal cycle of managed certificates.

:class:`RenewalStateMachine` carries one :class:`RenewalAttempt` through
the phases of a renewal. :class:`RenewalManager` holds the table of managed
certificates, makes sure there is never more than one attempt in flight per
certificate, and is the entry point for schedulers and the CLI.
"""

import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import tzlocal
from asn1crypto import x509

from ..crypto_utils import cert_matches_key, check_certificate, dump_cert_pem
from ..errors import CertkeeperObjectNotFoundError, HookFailed, IssuanceFailed
from ..registry.authority import CertificateAuthority, IdentityProofs
from ..registry.certs import ManagedCertificateSpec
from ..registry.common import CertLabel
from ..registry.hooks import EventHooks, LifecycleEvent
from ..registry.keys import KeyGenerationFailed, KeyMaterial, KeyPairManager
from .events import (
    HookContext,
    HookExecutor,
    HookFailure,
    LifecycleEventDispatcher,
)
from .storage import CertificateStorage, IncompleteCommit

__all__ = [
    'RenewalState',
    'RenewalAction',
    'AbortReason',
    'ManagedCertificate',
    'RenewalAttempt',
    'RenewalOutcome',
    'RenewalStateMachine',
    'RenewalManager',
]

logger = logging.getLogger(__name__)


class RenewalState(enum.Enum):
    IDLE = 'idle'
    DECIDING = 'deciding'
    AWAITING_KEY_MATERIAL = 'awaiting-key-material'
    REQUESTING_ISSUANCE = 'requesting-issuance'
    PRE_WRITE_HOOKS = 'pre-write-hooks'
    WRITING = 'writing'
    POST_WRITE_HOOKS = 'post-write-hooks'
    COMMITTED = 'committed'
    ABORTED = 'aborted'

    @property
    def is_terminal(self) -> bool:
        return self in (RenewalState.COMMITTED, RenewalState.ABORTED)


class RenewalAction(enum.Enum):
    CREATE_NEW = 'create-new'
    RENEW_REUSE_KEY = 'renew-reuse-key'
    RENEW_NEW_KEY = 'renew-new-key'


class AbortReason(enum.Enum):
    ISSUANCE_FAILED = 'issuance-failed'
    HOOK_REJECTED = 'hook-rejected'
    WRITE_FAILED = 'write-failed'
    KEY_GENERATION_FAILED = 'key-generation-failed'
    INTERRUPTED = 'interrupted'
    ALREADY_IN_PROGRESS = 'already-in-progress'


class ManagedCertificate:
    """
    A configured certificate together with its committed state.

    :param spec:
        The certificate's configuration.
    :param event_hooks:
        Resolved hook lists per lifecycle event.
    :param authority:
        The authority that issues the certificate.
    :param storage:
        Storage for the certificate's files. Defaults to the files named in
        ``spec``.
    """

    def __init__(
        self,
        spec: ManagedCertificateSpec,
        event_hooks: EventHooks,
        authority: CertificateAuthority,
        storage: Optional[CertificateStorage] = None,
    ):
        self.spec = spec
        self.event_hooks = event_hooks
        self.authority = authority
        self.storage = storage or CertificateStorage(spec)
        self.certificate: Optional[x509.Certificate] = None
        self.key: Optional[KeyMaterial] = None
        self.last_outcome: Optional['RenewalOutcome'] = None
        self.attempt: Optional['RenewalAttempt'] = None
        self._attempt_lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()

    @property
    def label(self) -> CertLabel:
        return self.spec.label

    @property
    def state(self) -> RenewalState:
        attempt = self.attempt
        return RenewalState.IDLE if attempt is None else attempt.state

    def reload(self):
        """Load the committed certificate and key from storage."""
        self.certificate, self.key = self.storage.load()

    @property
    def expires_at(self) -> Optional[datetime]:
        if self.certificate is None:
            return None
        return self.certificate.not_valid_after

    def is_due(self, at_time: Optional[datetime] = None) -> bool:
        """
        Check whether the certificate needs to be (re)issued: it is missing,
        or it expires within the configured ``renew-before`` period.
        """
        if self.certificate is None or self.key is None:
            return True
        if at_time is None:
            at_time = datetime.now(tz=tzlocal.get_localzone())
        return self.expires_at - self.spec.renew_before <= at_time

    def begin_attempt(self) -> Optional['RenewalAttempt']:
        """
        Start a new attempt, unless one is already in flight.

        :return:
            The new attempt, or ``None`` if another one is still running.
        """
        if not self._attempt_lock.acquire(blocking=False):
            return None
        self._idle.clear()
        self.attempt = RenewalAttempt(self)
        return self.attempt

    def end_attempt(self, attempt: 'RenewalAttempt'):
        if self.attempt is not attempt:
            raise ValueError(
                f"Attempt does not belong to {self.label}, or has already "
                f"ended."
            )
        self.attempt = None
        self._idle.set()
        self._attempt_lock.release()

    def wait_idle(self, timeout=None) -> bool:
        return self._idle.wait(timeout)

    def _commit(self, cert: x509.Certificate, key: KeyMaterial):
        self.certificate = cert
        self.key = key.as_committed()

    def __repr__(self):
        return f"ManagedCertificate('{self.label}')"


class RenewalAttempt:
    """
    One run of the renewal cycle for a single certificate.

    Attempts are created by :meth:`ManagedCertificate.begin_attempt` and
    only live as long as the run.
    """

    def __init__(self, certificate: ManagedCertificate):
        self.certificate = certificate
        self.state = RenewalState.IDLE
        self.action: Optional[RenewalAction] = None
        self.is_new: Optional[bool] = None
        self.staged_key: Optional[KeyMaterial] = None
        self.staged_cert: Optional[x509.Certificate] = None
        self.hook_failures: List[HookFailure] = []
        self._cancelled = threading.Event()

    def cancel(self):
        """
        Ask the attempt to stop. This only takes effect up to the point
        where the certificate is requested from the authority.
        """
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def key_changed(self) -> bool:
        return self.staged_key is not None and self.staged_key.staged


@dataclass(frozen=True)
class RenewalOutcome:
    """Result of a renewal attempt, as reported to the trigger."""

    label: CertLabel
    state: RenewalState
    action: Optional[RenewalAction] = None
    reason: Optional[AbortReason] = None
    detail: Optional[str] = None
    hook_failures: Tuple[HookFailure, ...] = ()
    key_changed: bool = False
    serial: Optional[int] = None
    key_fingerprint: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.state is RenewalState.COMMITTED

    @property
    def post_hook_failures(self) -> List[HookFailure]:
        return [f for f in self.hook_failures if not f.event.is_pre]

    @property
    def post_hook_failed(self) -> bool:
        return self.committed and bool(self.post_hook_failures)

    def summary(self) -> str:
        if self.committed:
            msg = (
                f"{self.label}: renewal committed ({self.action.value}, "
                f"serial {self.serial:x})"
            )
            if self.post_hook_failed:
                msg += '; post-hook failed: ' + '; '.join(
                    str(f) for f in self.post_hook_failures
                )
            return msg
        msg = f"{self.label}: aborted ({self.reason.value})"
        if self.detail:
            msg += f": {self.detail}"
        return msg


class _Abort(Exception):
    def __init__(self, reason: AbortReason, detail: str):
        self.reason = reason
        self.detail = detail
        super().__init__(detail)


class RenewalStateMachine:
    """
    Drives renewal attempts through their phases, strictly in order:

    1. decide between first issuance and renewal, and whether to keep the
       current key;
    2. obtain key material;
    3. request the certificate;
    4. run the pre-create or pre-edit hooks;
    5. write the certificate (and a new key) to storage;
    6. run the post-create or post-edit hooks.

    Failing hooks in step 4 can prevent the write. Failures in step 6 are
    reported, but the new files stay in place.
    """

    def __init__(
        self,
        dispatcher: LifecycleEventDispatcher,
        key_manager: Optional[KeyPairManager] = None,
    ):
        self.dispatcher = dispatcher
        self.key_manager = key_manager or KeyPairManager()

    @staticmethod
    def _transition(attempt: RenewalAttempt, state: RenewalState):
        logger.debug(
            f"{attempt.certificate.label}: {attempt.state.value} -> "
            f"{state.value}"
        )
        attempt.state = state

    @staticmethod
    def _checkpoint(attempt: RenewalAttempt):
        if attempt.cancelled:
            raise _Abort(
                AbortReason.INTERRUPTED,
                f"cancelled while {attempt.state.value}",
            )

    def run(self, attempt: RenewalAttempt) -> RenewalOutcome:
        """
        Run an attempt to completion.

        :return:
            The outcome. Failures of the authority, of hooks and of storage
            are reported through the outcome, never raised.
        """
        try:
            self._decide(attempt)
            self._obtain_key(attempt)
            self._request_issuance(attempt)
            self._run_pre_write_hooks(attempt)
            self._write(attempt)
        except _Abort as e:
            self._transition(attempt, RenewalState.ABORTED)
            logger.error(
                f"Renewal of {attempt.certificate.label} aborted "
                f"({e.reason.value}): {e.detail}"
            )
            return self._outcome(attempt, reason=e.reason, detail=e.detail)
        try:
            self._run_post_write_hooks(attempt)
        finally:
            attempt.certificate._commit(
                attempt.staged_cert, attempt.staged_key
            )
            self._transition(attempt, RenewalState.COMMITTED)
        return self._outcome(attempt)

    def _decide(self, attempt: RenewalAttempt):
        self._transition(attempt, RenewalState.DECIDING)
        self._checkpoint(attempt)
        cert = attempt.certificate
        attempt.is_new = not cert.storage.cert_exists()
        if attempt.is_new:
            attempt.action = RenewalAction.CREATE_NEW
        elif self.key_manager.can_reuse(cert, cert.spec.reuse_key):
            attempt.action = RenewalAction.RENEW_REUSE_KEY
        else:
            attempt.action = RenewalAction.RENEW_NEW_KEY
        logger.info(f"{cert.label}: {attempt.action.value}")

    def _obtain_key(self, attempt: RenewalAttempt):
        self._transition(attempt, RenewalState.AWAITING_KEY_MATERIAL)
        self._checkpoint(attempt)
        cert = attempt.certificate
        try:
            attempt.staged_key = self.key_manager.obtain(
                cert, cert.spec.reuse_key
            )
        except KeyGenerationFailed as e:
            raise _Abort(AbortReason.KEY_GENERATION_FAILED, str(e)) from e
        # last point at which the attempt can be called off
        self._checkpoint(attempt)

    def _request_issuance(self, attempt: RenewalAttempt):
        self._transition(attempt, RenewalState.REQUESTING_ISSUANCE)
        cert = attempt.certificate
        proofs = IdentityProofs(
            identifiers=cert.spec.identifiers,
            subject=cert.spec.subject_attributes,
        )
        try:
            issued = cert.authority.request_issuance(
                attempt.staged_key.public, proofs
            )
        except IssuanceFailed as e:
            raise _Abort(AbortReason.ISSUANCE_FAILED, e.detail) from e
        try:
            matches = cert_matches_key(
                check_certificate(issued), attempt.staged_key.public
            )
        except (ValueError, TypeError) as e:
            raise _Abort(
                AbortReason.ISSUANCE_FAILED,
                f"the authority returned a malformed certificate: {e}",
            ) from e
        if not matches:
            raise _Abort(
                AbortReason.ISSUANCE_FAILED,
                "the issued certificate does not match the requested key",
            )
        attempt.staged_cert = issued

    def _context(self, attempt: RenewalAttempt, event) -> HookContext:
        spec = attempt.certificate.spec
        return HookContext(
            name=str(spec.label),
            event=event,
            identifiers=spec.identifiers,
            key_type=spec.key_type.value,
            cert_path=spec.cert_path,
            key_path=spec.key_path,
            is_new=attempt.is_new,
            key_changed=attempt.key_changed,
            env=spec.env,
        )

    def _fire(self, attempt: RenewalAttempt, event: LifecycleEvent):
        hooks = attempt.certificate.event_hooks[event]
        try:
            report = self.dispatcher.fire(
                event, hooks, self._context(attempt, event)
            )
        except HookFailed as e:
            if e.report is not None:
                attempt.hook_failures.extend(e.report.failures)
            raise
        attempt.hook_failures.extend(report.failures)

    def _run_pre_write_hooks(self, attempt: RenewalAttempt):
        self._transition(attempt, RenewalState.PRE_WRITE_HOOKS)
        event = LifecycleEvent.for_write(attempt.is_new, pre=True)
        try:
            self._fire(attempt, event)
        except HookFailed as e:
            raise _Abort(AbortReason.HOOK_REJECTED, str(e)) from e

    def _write(self, attempt: RenewalAttempt):
        self._transition(attempt, RenewalState.WRITING)
        key_data = (
            attempt.staged_key.to_pem() if attempt.key_changed else None
        )
        try:
            attempt.certificate.storage.write_pair(
                dump_cert_pem(attempt.staged_cert), key_data
            )
        except OSError as e:
            if isinstance(e, IncompleteCommit):
                logger.error(
                    f"{attempt.certificate.label}: files on disk are "
                    f"inconsistent until the write is completed: {e}"
                )
            self._resync(attempt.certificate)
            raise _Abort(AbortReason.WRITE_FAILED, str(e)) from e

    @staticmethod
    def _resync(cert: ManagedCertificate):
        # the in-memory record follows whatever ended up on disk
        try:
            cert.reload()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to reload files of {cert.label}: {e}")

    def _run_post_write_hooks(self, attempt: RenewalAttempt):
        self._transition(attempt, RenewalState.POST_WRITE_HOOKS)
        event = LifecycleEvent.for_write(attempt.is_new, pre=False)
        try:
            self._fire(attempt, event)
        except HookFailed as e:
            logger.warning(
                f"{attempt.certificate.label}: the new certificate is in "
                f"place, but {event} hooks failed: {e}"
            )

    def _outcome(
        self, attempt: RenewalAttempt, reason: Optional[AbortReason] = None,
        detail: Optional[str] = None
    ) -> RenewalOutcome:
        committed = attempt.state is RenewalState.COMMITTED
        return RenewalOutcome(
            label=attempt.certificate.label,
            state=attempt.state,
            action=attempt.action,
            reason=reason,
            detail=detail,
            hook_failures=tuple(attempt.hook_failures),
            key_changed=committed and attempt.key_changed,
            serial=attempt.staged_cert.serial_number if committed else None,
            key_fingerprint=(
                attempt.staged_key.fingerprint if committed else None
            ),
        )


class RenewalManager:
    """
    The table of managed certificates, and the entry point for renewals.

    On construction, interrupted writes are recovered and the committed
    certificates and keys are loaded from storage.

    :param certificates:
        The managed certificates.
    :param state_machine:
        The state machine that runs the attempts.
    """

    def __init__(
        self,
        certificates: Iterable[ManagedCertificate],
        state_machine: RenewalStateMachine,
    ):
        self.state_machine = state_machine
        self._certificates: Dict[CertLabel, ManagedCertificate] = {}
        self._shutting_down = False
        for cert in certificates:
            cert.storage.recover()
            cert.reload()
            self._certificates[cert.label] = cert

    @classmethod
    def from_config(
        cls,
        config,
        executor: Optional[HookExecutor] = None,
        key_manager: Optional[KeyPairManager] = None,
    ) -> 'RenewalManager':
        """
        Set up a manager for all certificates in a
        :class:`~certkeeper.registry.config.CertkeeperConfig`.
        """
        certificates = [
            ManagedCertificate(
                spec=spec,
                event_hooks=config.get_event_hooks(label),
                authority=config.authorities[spec.authority],
            )
            for label, spec in config.certificates.items()
        ]
        machine = RenewalStateMachine(
            LifecycleEventDispatcher(executor), key_manager=key_manager
        )
        return RenewalManager(certificates, machine)

    def __getitem__(self, label) -> ManagedCertificate:
        try:
            return self._certificates[CertLabel(str(label))]
        except KeyError as e:
            raise CertkeeperObjectNotFoundError(
                f"There is no managed certificate labelled '{label}'."
            ) from e

    def __iter__(self):
        return iter(self._certificates.values())

    def __len__(self):
        return len(self._certificates)

    @property
    def labels(self) -> List[CertLabel]:
        return list(self._certificates.keys())

    def renew(self, certificate_id) -> RenewalOutcome:
        """
        Run one renewal attempt for a certificate, regardless of its
        expiry date.

        :param certificate_id:
            Label of the certificate.
        :return:
            The outcome of the attempt. If an attempt for the same
            certificate is already running, nothing is done and the outcome
            is an abort with reason ``already-in-progress``.
        :raises CertkeeperObjectNotFoundError:
            if there is no such certificate.
        """
        cert = self[certificate_id]
        attempt = cert.begin_attempt()
        if attempt is None:
            logger.warning(
                f"Not renewing {cert.label}: an attempt is already running"
            )
            return RenewalOutcome(
                label=cert.label,
                state=RenewalState.ABORTED,
                reason=AbortReason.ALREADY_IN_PROGRESS,
                detail="another renewal attempt is in progress",
            )
        try:
            if self._shutting_down:
                attempt.cancel()
            outcome = self.state_machine.run(attempt)
        except Exception:
            logger.exception(f"Unexpected error while renewing {cert.label}")
            raise
        finally:
            cert.end_attempt(attempt)
        cert.last_outcome = outcome
        if outcome.committed:
            logger.info(outcome.summary())
        return outcome

    def due(self, at_time: Optional[datetime] = None) -> List[CertLabel]:
        """Labels of the certificates that are due for renewal."""
        return [
            cert.label for cert in self._certificates.values()
            if cert.is_due(at_time)
        ]

    def renew_many(
        self, labels: Iterable, max_workers: int = 1
    ) -> List[RenewalOutcome]:
        """
        Renew several certificates, concurrently if ``max_workers`` is
        greater than one. Outcomes are returned in the order of ``labels``.
        """
        certs = [self[label] for label in labels]
        if max_workers <= 1 or len(certs) <= 1:
            return [self.renew(cert.label) for cert in certs]
        with ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix='certkeeper-renew'
        ) as pool:
            futures = [pool.submit(self.renew, cert.label) for cert in certs]
            try:
                return [f.result() for f in futures]
            except KeyboardInterrupt:
                self.shutdown(wait=False)
                raise

    def renew_due(
        self, at_time: Optional[datetime] = None, max_workers: int = 1
    ) -> List[RenewalOutcome]:
        """Renew all certificates that are due at ``at_time``."""
        due = self.due(at_time)
        if not due:
            logger.info("No certificates are due for renewal")
        return self.renew_many(due, max_workers=max_workers)

    def in_flight(self) -> List[RenewalAttempt]:
        return [
            cert.attempt for cert in self._certificates.values()
            if cert.attempt is not None
        ]

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None):
        """
        Stop accepting work. Attempts that have not requested their
        certificate yet are interrupted; the others run to completion.

        :param wait:
            Block until no attempt is in flight anymore.
        :param timeout:
            Maximal time to wait for each certificate, in seconds.
        """
        self._shutting_down = True
        for attempt in self.in_flight():
            logger.info(
                f"Interrupting renewal of {attempt.certificate.label}"
            )
            attempt.cancel()
        if wait:
            for cert in self._certificates.values():
                if not cert.wait_idle(timeout):
                    logger.warning(
                        f"Renewal of {cert.label} still running at shutdown"
                    )
