import enum
import logging
from typing import Optional, Tuple

from asn1crypto import algos, keys, pem, x509
from asn1crypto.keys import PublicKeyInfo
from cryptography.hazmat.primitives import serialization

logger = logging.getLogger(__name__)


class KeyType(enum.Enum):
    """Key algorithms (and sizes) that certkeeper knows how to generate."""

    RSA2048 = 'rsa2048'
    RSA4096 = 'rsa4096'
    ECDSA_P256 = 'ecdsa_p256'
    ECDSA_P384 = 'ecdsa_p384'
    ED25519 = 'ed25519'

    @property
    def algorithm(self) -> str:
        """Key algorithm name, as reported by asn1crypto."""
        if self in (KeyType.RSA2048, KeyType.RSA4096):
            return 'rsa'
        elif self in (KeyType.ECDSA_P256, KeyType.ECDSA_P384):
            return 'ec'
        else:
            return 'ed25519'

    @property
    def bit_size(self) -> Optional[int]:
        return {KeyType.RSA2048: 2048, KeyType.RSA4096: 4096}.get(self)

    @property
    def curve(self) -> Optional[str]:
        return {
            KeyType.ECDSA_P256: 'secp256r1',
            KeyType.ECDSA_P384: 'secp384r1',
        }.get(self)

    def __str__(self):
        return self.value


class CryptoBackend:
    def generate_key_pair(
        self, key_type: KeyType
    ) -> Tuple[keys.PrivateKeyInfo, keys.PublicKeyInfo]:
        raise NotImplementedError

    def load_private_key(
        self, key_bytes: bytes, password: Optional[bytes]
    ) -> Tuple[keys.PrivateKeyInfo, keys.PublicKeyInfo]:
        raise NotImplementedError

    def generic_sign(
        self,
        private_key: keys.PrivateKeyInfo,
        tbs_bytes: bytes,
        sd_algo: algos.SignedDigestAlgorithm,
    ) -> bytes:
        raise NotImplementedError

    def optimal_pss_params(
        self, key: PublicKeyInfo, digest_algo: str
    ) -> algos.RSASSAPSSParams:
        raise NotImplementedError


def _load_private_key_from_pemder_data(
    key_bytes: bytes, passphrase: Optional[bytes]
) -> keys.PrivateKeyInfo:
    load_fun = (
        serialization.load_pem_private_key
        if pem.detect(key_bytes)
        else serialization.load_der_private_key
    )

    private_key = load_fun(key_bytes, password=passphrase)
    return keys.PrivateKeyInfo.load(
        private_key.private_bytes(
            serialization.Encoding.DER,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )


def _key_info_pair(private_key) -> Tuple[
    keys.PrivateKeyInfo, keys.PublicKeyInfo
]:
    priv_key_bytes = private_key.private_bytes(
        serialization.Encoding.DER,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    pub_key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return (
        keys.PrivateKeyInfo.load(priv_key_bytes),
        keys.PublicKeyInfo.load(pub_key_bytes),
    )


class PycaCryptographyBackend(CryptoBackend):
    def generate_key_pair(
        self, key_type: KeyType
    ) -> Tuple[keys.PrivateKeyInfo, keys.PublicKeyInfo]:
        from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

        if key_type.algorithm == 'rsa':
            private_key = rsa.generate_private_key(
                public_exponent=65537, key_size=key_type.bit_size
            )
        elif key_type == KeyType.ECDSA_P256:
            private_key = ec.generate_private_key(ec.SECP256R1())
        elif key_type == KeyType.ECDSA_P384:
            private_key = ec.generate_private_key(ec.SECP384R1())
        elif key_type == KeyType.ED25519:
            private_key = ed25519.Ed25519PrivateKey.generate()
        else:  # pragma: nocover
            raise NotImplementedError(f"Unsupported key type {key_type}")
        logger.debug(f"Generated fresh {key_type} key pair")
        return _key_info_pair(private_key)

    def load_private_key(
        self, key_bytes: bytes, password: Optional[bytes]
    ) -> Tuple[keys.PrivateKeyInfo, keys.PublicKeyInfo]:
        priv_key_info = _load_private_key_from_pemder_data(key_bytes, password)
        priv_key = serialization.load_der_private_key(
            priv_key_info.dump(), password=None
        )
        return _key_info_pair(priv_key)

    def generic_sign(
        self,
        private_key: keys.PrivateKeyInfo,
        tbs_bytes: bytes,
        sd_algo: algos.SignedDigestAlgorithm,
    ) -> bytes:
        from cryptography.hazmat.primitives import hashes
        from cryptography.hazmat.primitives.asymmetric import (
            ec,
            ed448,
            ed25519,
            padding,
            rsa,
        )

        priv_key = serialization.load_der_private_key(
            private_key.dump(), password=None
        )
        digest_algorithm = sd_algo.hash_algo
        sig_algo = sd_algo.signature_algo
        if sig_algo == 'rsassa_pkcs1v15':
            hash_algo = getattr(hashes, digest_algorithm.upper())()
            assert isinstance(priv_key, rsa.RSAPrivateKey)
            return priv_key.sign(tbs_bytes, padding.PKCS1v15(), hash_algo)
        elif sig_algo == 'rsassa_pss':
            parameters = sd_algo['parameters']
            mga: algos.MaskGenAlgorithm = parameters['mask_gen_algorithm']
            if not mga['algorithm'].native == 'mgf1':
                raise NotImplementedError("Only MFG1 is supported")

            mgf_md_name = mga['parameters']['algorithm'].native
            salt_len: int = parameters['salt_length'].native

            mgf_md = getattr(hashes, mgf_md_name.upper())()
            pss_padding = padding.PSS(
                mgf=padding.MGF1(algorithm=mgf_md), salt_length=salt_len
            )
            hash_algo = getattr(hashes, digest_algorithm.upper())()
            assert isinstance(priv_key, rsa.RSAPrivateKey)
            return priv_key.sign(tbs_bytes, pss_padding, hash_algo)
        elif sig_algo == 'ecdsa':
            hash_algo = getattr(hashes, digest_algorithm.upper())()
            assert isinstance(priv_key, ec.EllipticCurvePrivateKey)
            return priv_key.sign(
                tbs_bytes, signature_algorithm=ec.ECDSA(hash_algo)
            )
        elif sig_algo == 'ed25519':
            assert isinstance(priv_key, ed25519.Ed25519PrivateKey)
            return priv_key.sign(tbs_bytes)
        elif sig_algo == 'ed448':
            assert isinstance(priv_key, ed448.Ed448PrivateKey)
            return priv_key.sign(tbs_bytes)
        else:  # pragma: nocover
            raise NotImplementedError(
                f"The signature algorithm {sig_algo} is unsupported"
            )

    def optimal_pss_params(
        self, key: keys.PublicKeyInfo, digest_algo: str
    ) -> algos.RSASSAPSSParams:
        from cryptography.hazmat.primitives import hashes
        from cryptography.hazmat.primitives.asymmetric import padding, rsa

        digest_algo = digest_algo.lower()

        loaded_key = serialization.load_der_public_key(key.dump())
        assert isinstance(loaded_key, rsa.RSAPublicKey)
        md = getattr(hashes, digest_algo.upper())
        # noinspection PyUnresolvedReferences
        optimal_salt_len = padding.calculate_max_pss_salt_length(
            loaded_key, md()
        )
        return algos.RSASSAPSSParams(
            {
                'hash_algorithm': algos.DigestAlgorithm(
                    {'algorithm': digest_algo}
                ),
                'mask_gen_algorithm': algos.MaskGenAlgorithm(
                    {
                        'algorithm': 'mgf1',
                        'parameters': algos.DigestAlgorithm(
                            {'algorithm': digest_algo}
                        ),
                    }
                ),
                'salt_length': optimal_salt_len,
            }
        )


CRYPTO_BACKEND: CryptoBackend = PycaCryptographyBackend()


def generate_key_pair(
    key_type: KeyType,
) -> Tuple[keys.PrivateKeyInfo, keys.PublicKeyInfo]:
    return CRYPTO_BACKEND.generate_key_pair(key_type)


def generic_sign(
    private_key: keys.PrivateKeyInfo,
    tbs_bytes: bytes,
    signature_algo: algos.SignedDigestAlgorithm,
) -> bytes:
    return CRYPTO_BACKEND.generic_sign(private_key, tbs_bytes, signature_algo)


def load_private_key(
    key_bytes: bytes, password: Optional[bytes]
) -> Tuple[keys.PrivateKeyInfo, keys.PublicKeyInfo]:
    return CRYPTO_BACKEND.load_private_key(key_bytes, password)


def optimal_pss_params(
    key_algo: keys.PublicKeyInfo, digest_algo: str
) -> algos.RSASSAPSSParams:
    return CRYPTO_BACKEND.optimal_pss_params(key_algo, digest_algo)


def choose_signed_digest(
    digest_algo: str,
    pub_key: keys.PublicKeyInfo,
    signature_algo: Optional[str] = None,
) -> algos.SignedDigestAlgorithm:
    key_algo = pub_key.algorithm
    if signature_algo is None:
        # special OID for keys that should only be used with PSS
        if key_algo == 'rsassa_pss':
            signature_algo = 'rsassa_pss'
        elif key_algo == 'rsa':
            signature_algo = digest_algo + '_rsa'
        elif key_algo == 'ec':
            signature_algo = digest_algo + '_ecdsa'
        elif key_algo in ('ed25519', 'ed448'):
            signature_algo = key_algo
        else:
            raise NotImplementedError(
                f"Cannot sign with keys of type {key_algo}"
            )

    signature_algo_obj = algos.SignedDigestAlgorithm(
        {'algorithm': signature_algo}
    )
    if signature_algo == 'rsassa_pss':
        parameters = None
        if pub_key.algorithm == 'rsassa_pss':
            key_params = pub_key['algorithm']['parameters']
            if key_params.native is not None:
                parameters = key_params
        if parameters is None:
            parameters = optimal_pss_params(pub_key, digest_algo)
        signature_algo_obj['parameters'] = parameters

    return signature_algo_obj


def public_key_fingerprint(public_key: keys.PublicKeyInfo) -> str:
    """SHA-256 fingerprint of a public key, as a hex string."""
    return public_key.sha256.hex()


def key_matches_type(public_key: keys.PublicKeyInfo, key_type: KeyType):
    """
    Check whether an existing key satisfies the algorithm and size
    constraints implied by ``key_type``.
    """
    if public_key.algorithm != key_type.algorithm:
        return False
    if key_type.bit_size is not None:
        return public_key.bit_size == key_type.bit_size
    if key_type.curve is not None:
        return public_key.curve[1] == key_type.curve
    return True


def cert_matches_key(
    cert: x509.Certificate, public_key: keys.PublicKeyInfo
) -> bool:
    return public_key_fingerprint(cert.public_key) == \
        public_key_fingerprint(public_key)


def dump_private_key_pem(private_key: keys.PrivateKeyInfo) -> bytes:
    return pem.armor('PRIVATE KEY', private_key.dump())


def dump_public_key_pem(public_key: keys.PublicKeyInfo) -> bytes:
    return pem.armor('PUBLIC KEY', public_key.dump())


def dump_cert_pem(cert: x509.Certificate) -> bytes:
    return pem.armor('CERTIFICATE', cert.dump())


def check_certificate(cert: x509.Certificate) -> x509.Certificate:
    """
    Fully parse a certificate. asn1crypto only parses structures when
    their contents are accessed, so a certificate with a valid outer
    header can still turn out to be malformed much later.

    :raises ValueError:
        if the certificate is malformed.
    """
    try:
        cert.native
    except (TypeError, KeyError) as e:
        raise ValueError(f"Malformed certificate: {e}") from e
    return cert


def load_certs_from_bytes(cert_bytes: bytes):
    """
    Load one or more certificates from PEM or DER data.

    :param cert_bytes:
        PEM or DER data.
    :return:
        A generator producing :class:`.asn1crypto.x509.Certificate` objects.
    """
    # use the pattern from the asn1crypto docs
    # to distinguish PEM/DER and read multiple certs
    # from one PEM file (if necessary)
    if pem.detect(cert_bytes):
        pems = pem.unarmor(cert_bytes, multiple=True)
        for type_name, _, der in pems:
            if type_name is None or type_name.lower() == 'certificate':
                yield x509.Certificate.load(der)
            else:  # pragma: nocover
                logger.debug(
                    f'Skipping PEM block of type {type_name} in '
                    f'certificate data.'
                )
    else:
        # no need to unarmor, just try to load it immediately
        yield x509.Certificate.load(cert_bytes)


def load_cert_from_pemder(cert_file):
    """
    A convenience function to load a single PEM/DER-encoded certificate
    from a file. If the file contains a chain, the first certificate is
    taken to be the leaf.

    :param cert_file:
        A file name.
    :return:
        An :class:`.asn1crypto.x509.Certificate` object.
    """
    with open(cert_file, 'rb') as f:
        cert_bytes = f.read()
    certs = list(load_certs_from_bytes(cert_bytes))
    if not certs:
        raise ValueError(f"No certificates found in {cert_file}")
    return certs[0]
