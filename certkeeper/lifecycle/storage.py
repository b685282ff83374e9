"""
Crash-safe storage of certificate and key files.

Single files are replaced atomically by writing a temporary file in the
same directory and renaming it over the target.

A certificate and its key are two files, and no portable rename can swap
both at once. They are committed with a small roll-forward journal:

1. both new files are written next to their targets with a ``.staged``
   suffix;
2. a journal listing the pending renames is written (atomically). This is
   the commit point;
3. the staged files are renamed over their targets, key first;
4. the journal is removed.

:meth:`CertificateStorage.recover` completes the renames of a journal left
behind by a crash, or throws away staged files that were never committed.
After recovery the files on disk are therefore either the complete old pair
or the complete new pair.
"""

import fcntl
import json
import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from typing import List, Optional, Tuple

from asn1crypto import x509

from ..crypto_utils import load_cert_from_pemder
from ..registry.certs import ManagedCertificateSpec
from ..registry.keys import KeyMaterial, load_key_file

__all__ = ['atomic_replace', 'CertificateStorage', 'IncompleteCommit']

logger = logging.getLogger(__name__)

STAGED_SUFFIX = '.staged'


class IncompleteCommit(OSError):
    """
    A write got past its commit point, but the new files could not be put
    in place. The journal stays behind, so the write is completed by the
    next write or by :meth:`CertificateStorage.recover`.
    """


def _fsync_directory(directory):
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_replace(path, data: bytes, mode: Optional[int] = None):
    """
    Replace the contents of ``path`` with ``data``, such that readers (and
    a crash) see either the old or the new contents in full.

    :param path:
        File to write.
    :param data:
        New contents.
    :param mode:
        Permission bits to set on the new file.
    """
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(
        dir=directory, prefix=f".{os.path.basename(path)}.", suffix='.tmp'
    )
    try:
        with os.fdopen(fd, 'wb') as outf:
            outf.write(data)
            outf.flush()
            os.fsync(outf.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
    _fsync_directory(directory)


class CertificateStorage:
    """
    The files of one managed certificate.

    :param spec:
        Configuration of the managed certificate; determines paths, file
        modes and ownership.
    """

    def __init__(self, spec: ManagedCertificateSpec):
        self.spec = spec
        self.directory = spec.crt_directory
        self.cert_path = spec.cert_path
        self.key_path = spec.key_path
        self.journal_path = os.path.join(
            self.directory, f".{spec.file_stem}.commit"
        )
        self.lock_path = os.path.join(
            self.directory, f".{spec.file_stem}.lock"
        )

    def cert_exists(self) -> bool:
        return os.path.isfile(self.cert_path)

    def key_exists(self) -> bool:
        return os.path.isfile(self.key_path)

    def exists(self) -> bool:
        return self.cert_exists() and self.key_exists()

    def load(self) -> Tuple[Optional[x509.Certificate], Optional[KeyMaterial]]:
        """
        Read the committed certificate and key. Missing files are reported
        as ``None``.
        """
        cert = key = None
        if self.cert_exists():
            logger.debug(f"Reading file {self.cert_path}")
            cert = load_cert_from_pemder(self.cert_path)
        if self.key_exists():
            logger.debug(f"Reading file {self.key_path}")
            key = load_key_file(self.key_path)
        return cert, key

    @contextmanager
    def lock(self):
        """
        Hold an exclusive lock on this certificate's files, so that two
        processes never write them concurrently.
        """
        os.makedirs(self.directory, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _set_owner(self, path, owner, group):
        if owner is None and group is None:
            return
        logger.debug(f"{path}: setting owner {owner} and group {group}")
        shutil.chown(path, user=owner, group=group)

    def _stage(self, final_path, data, mode, owner, group) -> str:
        staged = final_path + STAGED_SUFFIX
        logger.debug(f"Staging file {final_path}")
        atomic_replace(staged, data, mode=mode)
        self._set_owner(staged, owner, group)
        return staged

    def _rename(self, staged, final_path):
        os.replace(staged, final_path)

    def _apply(self, renames: List[Tuple[str, str]]):
        for staged, final_path in renames:
            if os.path.exists(staged):
                logger.debug(f"Writing file {final_path}")
                self._rename(staged, final_path)
        _fsync_directory(self.directory)

    def _finish(self, renames: List[Tuple[str, str]]):
        self._apply(renames)
        os.unlink(self.journal_path)
        _fsync_directory(self.directory)

    def write_pair(self, cert_data: bytes, key_data: Optional[bytes] = None):
        """
        Commit a new certificate and, optionally, a new key.

        :param cert_data:
            PEM-encoded certificate.
        :param key_data:
            PEM-encoded private key, or ``None`` to keep the current key.
        :raises IncompleteCommit:
            if the write was committed, but could not be completed.
        :raises OSError:
            if writing fails before the commit point. The old files are
            left untouched in that case.
        """
        spec = self.spec
        with self.lock():
            self._recover_locked()
            renames = []
            if key_data is not None:
                staged = self._stage(
                    self.key_path, key_data, spec.pk_file_mode,
                    spec.pk_file_owner, spec.pk_file_group,
                )
                renames.append((staged, self.key_path))
            staged = self._stage(
                self.cert_path, cert_data, spec.cert_file_mode,
                spec.cert_file_owner, spec.cert_file_group,
            )
            renames.append((staged, self.cert_path))

            atomic_replace(
                self.journal_path, json.dumps(renames).encode('utf8'),
                mode=0o600,
            )
            # committed; from here on the write is only ever rolled forward
            try:
                self._finish(renames)
            except OSError as e:
                logger.warning(
                    f"Failed to complete write of {self.cert_path} ({e}); "
                    f"retrying"
                )
                try:
                    self._recover_locked()
                except OSError as e2:
                    if not any(os.path.exists(s) for s, _ in renames):
                        # only the journal cleanup failed
                        logger.warning(
                            f"New files for {self.cert_path} are in place, "
                            f"but the journal could not be removed: {e2}"
                        )
                        return
                    raise IncompleteCommit(
                        f"New files for {self.cert_path} were committed, "
                        f"but could not be put in place: {e2}"
                    ) from e2

    def _staged_paths(self):
        return [
            self.key_path + STAGED_SUFFIX, self.cert_path + STAGED_SUFFIX
        ]

    def _recover_locked(self) -> bool:
        if os.path.exists(self.journal_path):
            with open(self.journal_path, 'r') as inf:
                renames = [tuple(x) for x in json.load(inf)]
            logger.warning(
                f"Completing interrupted write of {self.cert_path}"
            )
            self._finish(renames)
            return True
        discarded = False
        for staged in self._staged_paths():
            if os.path.exists(staged):
                logger.warning(f"Discarding uncommitted file {staged}")
                os.unlink(staged)
                discarded = True
        return discarded

    def recover(self) -> bool:
        """
        Bring the files back to a consistent state after a crash.

        :return:
            ``True`` if anything had to be repaired.
        """
        if not os.path.isdir(self.directory):
            return False
        with self.lock():
            return self._recover_locked()
