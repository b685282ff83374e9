import logging
from dataclasses import dataclass, replace
from typing import Optional

from asn1crypto.keys import PrivateKeyInfo, PublicKeyInfo

from .. import crypto_utils
from ..crypto_utils import (
    CryptoBackend,
    KeyType,
    dump_private_key_pem,
    key_matches_type,
    public_key_fingerprint,
)
from ..errors import CertkeeperServiceError

__all__ = [
    'KeyMaterial',
    'KeyPairManager',
    'KeyGenerationFailed',
    'load_key_file',
]

logger = logging.getLogger(__name__)


class KeyGenerationFailed(CertkeeperServiceError):
    pass


@dataclass(frozen=True)
class KeyMaterial:
    """
    Class representing an asymmetric key pair belonging to a managed
    certificate.

    A *staged* key pair has been generated for a renewal attempt, but has
    not been written to stable storage yet.
    """

    public: PublicKeyInfo
    private: PrivateKeyInfo
    staged: bool = False

    @property
    def algorithm(self) -> str:
        """Key algorithm, as a string."""
        return self.public.algorithm

    @property
    def fingerprint(self) -> str:
        """SHA-256 fingerprint of the public key (hex)."""
        return public_key_fingerprint(self.public)

    def matches(self, key_type: KeyType) -> bool:
        return key_matches_type(self.public, key_type)

    def to_pem(self) -> bytes:
        return dump_private_key_pem(self.private)

    def as_committed(self) -> 'KeyMaterial':
        return replace(self, staged=False)

    @classmethod
    def from_pem(cls, key_bytes: bytes, password=None) -> 'KeyMaterial':
        private, public = crypto_utils.load_private_key(key_bytes, password)
        return KeyMaterial(public=public, private=private)


def load_key_file(path, password: Optional[bytes] = None) -> KeyMaterial:
    try:
        with open(path, 'rb') as keyf:
            key_bytes = keyf.read()
        return KeyMaterial.from_pem(key_bytes, password)
    except Exception as e:
        raise IOError(
            f"Failed to load key in {path}.\nGenerate one with "
            f"`openssl genpkey -algorithm ed25519 -out {repr(path)}` "
            f"or another appropriate tool."
        ) from e


class KeyPairManager:
    """
    Decides whether a renewal reuses the current key pair or gets a new one,
    and produces the key material accordingly.

    The manager never writes anything: freshly generated keys are handed
    out as staged key material, and it is up to the caller to commit them.
    """

    def __init__(self, backend: Optional[CryptoBackend] = None):
        self.backend = backend or crypto_utils.CRYPTO_BACKEND

    @staticmethod
    def can_reuse(certificate, reuse_flag: bool) -> bool:
        """
        Check whether :meth:`obtain` would hand back the current key.

        :param certificate:
            A :class:`~certkeeper.lifecycle.renewal.ManagedCertificate`.
        :param reuse_flag:
            The certificate's reuse setting.
        """
        current: Optional[KeyMaterial] = certificate.key
        if not reuse_flag or current is None:
            return False
        return current.matches(certificate.spec.key_type)

    def obtain(self, certificate, reuse_flag: bool) -> KeyMaterial:
        """
        Return the key material to use for the next certificate.

        :param certificate:
            A :class:`~certkeeper.lifecycle.renewal.ManagedCertificate`.
        :param reuse_flag:
            Keep the existing key pair if there is one that matches the
            configured key type.
        :return:
            The committed key pair, unchanged, or a new staged one.
        :raises KeyGenerationFailed:
            if the crypto backend could not produce a key pair.
        """
        key_type: KeyType = certificate.spec.key_type
        if self.can_reuse(certificate, reuse_flag):
            logger.debug(
                f"Reusing key {certificate.key.fingerprint} "
                f"for {certificate.label}"
            )
            return certificate.key
        if reuse_flag and certificate.key is not None:
            logger.info(
                f"Current key of {certificate.label} is not a valid "
                f"{key_type} key; generating a new one."
            )
        try:
            private, public = self.backend.generate_key_pair(key_type)
        except (ValueError, TypeError, NotImplementedError) as e:
            raise KeyGenerationFailed(
                f"Failed to generate {key_type} key for "
                f"{certificate.label}: {e}"
            ) from e
        return KeyMaterial(public=public, private=private, staged=True)
