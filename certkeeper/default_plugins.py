import ipaddress
import logging
import os
import subprocess
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

import tzlocal
from asn1crypto import core, x509
from asn1crypto.keys import PublicKeyInfo

from .config_utils import (
    ConfigurationError,
    SearchDir,
    check_config_keys,
    key_dashes_to_underscores,
    parse_duration,
)
from .crypto_utils import (
    check_certificate,
    choose_signed_digest,
    dump_public_key_pem,
    generic_sign,
    load_cert_from_pemder,
    load_certs_from_bytes,
)
from .errors import IssuanceFailed
from .registry.authority import (
    AuthorityPlugin,
    IdentityProofs,
    authority_plugin_registry,
)
from .registry.keys import KeyMaterial, load_key_file

__all__ = [
    'LocalCAConfig',
    'LocalCAPlugin',
    'CommandAuthorityConfig',
    'CommandAuthorityPlugin',
]

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY = timedelta(days=90)


def _x509_dt_asn1(dt: datetime) -> x509.Time:
    return x509.Time({'utc_time' if dt.year < 2050 else 'general_time': dt})


def _resolve_path(config_dir: Optional[SearchDir], path, what):
    if config_dir is None:
        raise ConfigurationError(
            f"Cannot load {what} from {path}; external files are disabled."
        )
    return config_dir.resolve(path)


def _general_name(identifier: str) -> x509.GeneralName:
    try:
        ipaddress.ip_address(identifier)
        return x509.GeneralName(name='ip_address', value=identifier)
    except ValueError:
        return x509.GeneralName(name='dns_name', value=identifier)


def _serial_number() -> int:
    # positive and at most 20 octets, as RFC 5280 requires
    return int.from_bytes(os.urandom(16), 'big') >> 1


@dataclass(frozen=True)
class LocalCAConfig:
    """Parameters of a ``local-ca`` authority."""

    issuer_key: KeyMaterial
    issuer_name: x509.Name
    issuer_cert: Optional[x509.Certificate] = None
    validity: timedelta = DEFAULT_VALIDITY
    digest_algo: str = 'sha256'


@authority_plugin_registry.register
class LocalCAPlugin(AuthorityPlugin):
    """
    Issues certificates directly, signing them with a locally available
    issuer key. Useful for internal PKIs and for testing.
    """

    plugin_label = 'local-ca'

    def process_plugin_config(self, params, config_dir):
        check_config_keys(
            'local-ca',
            ('issuer-key', 'issuer-key-password', 'issuer-name',
             'issuer-cert', 'validity', 'digest-algo'),
            params,
        )
        params = key_dashes_to_underscores(params)
        try:
            key_path = params['issuer_key']
        except KeyError as e:
            raise ConfigurationError(
                "local-ca authorities require an 'issuer-key'."
            ) from e
        password = params.get('issuer_key_password')
        try:
            issuer_key = load_key_file(
                _resolve_path(config_dir, key_path, 'issuer key'),
                password.encode('utf8') if password is not None else None,
            )
        except IOError as e:
            raise ConfigurationError(str(e)) from e

        issuer_cert = None
        if 'issuer_cert' in params:
            cert_path = _resolve_path(
                config_dir, params['issuer_cert'], 'issuer certificate'
            )
            try:
                issuer_cert = load_cert_from_pemder(cert_path)
            except (IOError, ValueError) as e:
                raise ConfigurationError(
                    f"Failed to load issuer certificate from {cert_path}."
                ) from e
            issuer_name = issuer_cert.subject
        elif 'issuer_name' in params:
            name_cfg = params['issuer_name']
            if not isinstance(name_cfg, dict):
                raise ConfigurationError(
                    "'issuer-name' must be a dictionary of name attributes."
                )
            try:
                issuer_name = x509.Name.build(
                    key_dashes_to_underscores(name_cfg)
                )
            except (KeyError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid issuer name: {name_cfg}"
                ) from e
        else:
            raise ConfigurationError(
                "local-ca authorities require either 'issuer-cert' or "
                "'issuer-name'."
            )
        try:
            validity = parse_duration(params.get('validity', 'P90D'))
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        return LocalCAConfig(
            issuer_key=issuer_key,
            issuer_name=issuer_name,
            issuer_cert=issuer_cert,
            validity=validity,
            digest_algo=params.get('digest_algo', 'sha256'),
        )

    def request_issuance(
        self, plugin_config: LocalCAConfig, public_key: PublicKeyInfo,
        identity_proofs: IdentityProofs
    ) -> x509.Certificate:
        cfg = plugin_config
        try:
            subject = x509.Name.build(
                identity_proofs.subject
                or {'common_name': identity_proofs.identifiers[0]}
            )
        except (KeyError, ValueError) as e:
            raise IssuanceFailed(
                f"Cannot build subject name from {identity_proofs.subject}"
            ) from e

        now = datetime.now(tz=tzlocal.get_localzone())
        signature_algo_obj = choose_signed_digest(
            cfg.digest_algo, cfg.issuer_key.public
        )
        if cfg.issuer_cert is not None \
                and cfg.issuer_cert.key_identifier_value is not None:
            aki = cfg.issuer_cert.key_identifier_value
        else:
            aki = cfg.issuer_key.public.sha1

        key_usage = {'digital_signature'}
        if public_key.algorithm == 'rsa':
            key_usage.add('key_encipherment')
        extensions = [
            x509.Extension({
                'extn_id': 'basic_constraints',
                'critical': True,
                'extn_value': x509.BasicConstraints({'ca': False}),
            }),
            x509.Extension({
                'extn_id': 'key_usage',
                'critical': True,
                'extn_value': x509.KeyUsage(key_usage),
            }),
            x509.Extension({
                'extn_id': 'extended_key_usage',
                'critical': False,
                'extn_value': x509.ExtKeyUsageSyntax(
                    ['server_auth', 'client_auth']
                ),
            }),
            x509.Extension({
                'extn_id': 'subject_alt_name',
                'critical': False,
                'extn_value': x509.GeneralNames([
                    _general_name(ident)
                    for ident in identity_proofs.identifiers
                ]),
            }),
            x509.Extension({
                'extn_id': 'key_identifier',
                'critical': False,
                'extn_value': core.OctetString(public_key.sha1),
            }),
            x509.Extension({
                'extn_id': 'authority_key_identifier',
                'critical': False,
                'extn_value': x509.AuthorityKeyIdentifier(
                    {'key_identifier': aki}
                ),
            }),
        ]
        tbs = x509.TbsCertificate({
            'version': 'v3',
            'serial_number': _serial_number(),
            'signature': signature_algo_obj,
            'issuer': cfg.issuer_name,
            'validity': x509.Validity({
                'not_before': _x509_dt_asn1(now),
                'not_after': _x509_dt_asn1(now + cfg.validity),
            }),
            'subject': subject,
            'subject_public_key_info': public_key,
            'extensions': extensions,
        })
        signature = generic_sign(
            private_key=cfg.issuer_key.private,
            tbs_bytes=tbs.dump(),
            signature_algo=signature_algo_obj,
        )
        return x509.Certificate({
            'tbs_certificate': tbs,
            'signature_algorithm': signature_algo_obj,
            'signature_value': signature,
        })


@dataclass(frozen=True)
class CommandAuthorityConfig:
    """Parameters of a ``command`` authority."""

    cmd: str
    args: Tuple[str, ...] = ()
    timeout: Optional[timedelta] = None


@authority_plugin_registry.register
class CommandAuthorityPlugin(AuthorityPlugin):
    """
    Delegates issuance to an external program.

    The program receives the PEM-encoded public key on standard input and
    the identifiers as trailing arguments, and must print the certificate
    (optionally followed by its chain) in PEM format on standard output.
    """

    plugin_label = 'command'

    def process_plugin_config(self, params, config_dir):
        check_config_keys('command', ('cmd', 'args', 'timeout'), params)
        cmd = params.get('cmd')
        if not isinstance(cmd, str) or not cmd:
            raise ConfigurationError(
                "command authorities require a 'cmd' string."
            )
        args = params.get('args', [])
        if not isinstance(args, list):
            raise ConfigurationError("'args' must be a list of strings.")
        timeout = None
        if 'timeout' in params:
            try:
                timeout = parse_duration(params['timeout'])
            except ValueError as e:
                raise ConfigurationError(str(e)) from e
        return CommandAuthorityConfig(
            cmd=cmd, args=tuple(str(x) for x in args), timeout=timeout
        )

    def request_issuance(
        self, plugin_config: CommandAuthorityConfig,
        public_key: PublicKeyInfo, identity_proofs: IdentityProofs
    ) -> x509.Certificate:
        cfg = plugin_config
        command = [cfg.cmd, *cfg.args, *identity_proofs.identifiers]
        logger.debug(f"Running authority command {command}")
        try:
            proc = subprocess.run(
                command,
                input=dump_public_key_pem(public_key),
                capture_output=True,
                timeout=(
                    cfg.timeout.total_seconds()
                    if cfg.timeout is not None else None
                ),
            )
        except subprocess.TimeoutExpired as e:
            raise IssuanceFailed(
                f"Authority command {cfg.cmd} timed out after {e.timeout}s"
            ) from e
        except OSError as e:
            raise IssuanceFailed(
                f"Failed to run authority command {cfg.cmd}: {e}"
            ) from e
        if proc.returncode != 0:
            stderr = proc.stderr.decode('utf8', errors='replace').strip()
            raise IssuanceFailed(
                f"Authority command {cfg.cmd} exited with status "
                f"{proc.returncode}: {stderr}"
            )
        try:
            certs = list(load_certs_from_bytes(proc.stdout))
        except (ValueError, TypeError) as e:
            raise IssuanceFailed(
                f"Authority command {cfg.cmd} produced invalid output"
            ) from e
        if not certs:
            raise IssuanceFailed(
                f"Authority command {cfg.cmd} did not output a certificate"
            )
        try:
            return check_certificate(certs[0])
        except ValueError as e:
            raise IssuanceFailed(
                f"Authority command {cfg.cmd} produced a malformed "
                f"certificate: {e}"
            ) from e
