import copy
import logging
import os.path
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Optional, Tuple

from ..config_utils import (
    ConfigurableMixin,
    ConfigurationError,
    SearchDir,
    config_duration,
    key_dashes_to_underscores,
    parse_file_mode,
)
from ..crypto_utils import KeyType
from .common import AuthorityLabel, CertLabel, HookLabel
from .hooks import LifecycleEvent, _as_references

__all__ = [
    'HookSlots',
    'ManagedCertificateSpec',
    'migrate_legacy_hooks',
    'process_certificate_configs',
    'LEGACY_HOOK_KEY',
]

logger = logging.getLogger(__name__)


LEGACY_HOOK_KEY = 'post_operation_hooks'

SLOT_KEYS = {
    event: f"{event.slot_name}_hooks" for event in LifecycleEvent
}


@dataclass(frozen=True)
class HookSlots:
    """Hook references configured for each lifecycle event."""

    pre_create: Tuple[HookLabel, ...] = ()
    post_create: Tuple[HookLabel, ...] = ()
    pre_edit: Tuple[HookLabel, ...] = ()
    post_edit: Tuple[HookLabel, ...] = ()

    def __getitem__(self, event: LifecycleEvent) -> Tuple[HookLabel, ...]:
        return getattr(self, event.slot_name)

    @classmethod
    def extract(cls, label, config_dict) -> 'HookSlots':
        """
        Remove the ``*-hooks`` entries from a (underscored) configuration
        dictionary and collect them.
        """
        return HookSlots(
            **{
                event.slot_name: _as_references(
                    config_dict.pop(key, ()),
                    owner=f"'{key.replace('_', '-')}' of {label}",
                )
                for event, key in SLOT_KEYS.items()
            }
        )


@dataclass(frozen=True)
class ManagedCertificateSpec(ConfigurableMixin):
    """Configuration of a single managed certificate."""

    label: CertLabel

    authority: AuthorityLabel
    """Label of the certificate authority that issues this certificate."""

    identifiers: Tuple[str, ...]
    """Names to certify (typically DNS names)."""

    crt_directory: str
    """
    Directory holding the certificate and key files. Relative paths are
    resolved against the storage root.
    """

    subject: Optional[Dict[str, str]] = None
    """
    Subject name attributes (in asn1crypto's naming scheme, e.g.
    ``common-name``). Defaults to a common name equal to the first
    identifier.
    """

    key_type: KeyType = KeyType.ECDSA_P256

    reuse_key: bool = False
    """Keep the existing key pair when renewing."""

    renew_before: timedelta = timedelta(days=21)
    """Renew when the certificate expires within this period."""

    crt_name: Optional[str] = None
    """Base name of the files on disk. Defaults to the label."""

    cert_file_mode: int = 0o644
    pk_file_mode: int = 0o600
    cert_file_owner: Optional[str] = None
    cert_file_group: Optional[str] = None
    pk_file_owner: Optional[str] = None
    pk_file_group: Optional[str] = None

    hooks: HookSlots = HookSlots()

    env: Dict[str, str] = field(default_factory=dict)
    """Extra environment variables for all hooks of this certificate."""

    @property
    def file_stem(self) -> str:
        return f"{self.crt_name or self.label}_{self.key_type.value}"

    @property
    def cert_path(self) -> str:
        return os.path.join(self.crt_directory, f"{self.file_stem}.crt.pem")

    @property
    def key_path(self) -> str:
        return os.path.join(self.crt_directory, f"{self.file_stem}.pk.pem")

    @property
    def subject_attributes(self) -> Dict[str, str]:
        if self.subject:
            return dict(self.subject)
        return {'common_name': self.identifiers[0]}

    @classmethod
    def process_entries(cls, config_dict):
        super().process_entries(config_dict)
        identifiers = config_dict.get('identifiers')
        if isinstance(identifiers, str):
            identifiers = [identifiers]
        if not identifiers or not isinstance(identifiers, (list, tuple)):
            raise ConfigurationError(
                "Managed certificates need at least one identifier."
            )
        config_dict['identifiers'] = tuple(str(x) for x in identifiers)

        subject = config_dict.get('subject')
        if subject is not None:
            if not isinstance(subject, dict) or not subject:
                raise ConfigurationError(
                    "'subject' must be a non-empty dictionary of name "
                    "attributes."
                )
            config_dict['subject'] = {
                k: str(v) for k, v in key_dashes_to_underscores(subject).items()
            }

        try:
            key_type = config_dict['key_type']
            if not isinstance(key_type, KeyType):
                config_dict['key_type'] = KeyType(str(key_type).lower())
        except KeyError:
            pass
        except ValueError as e:
            raise ConfigurationError(
                f"Unsupported key type '{config_dict['key_type']}'; choose "
                f"from {', '.join(k.value for k in KeyType)}."
            ) from e

        reuse_key = config_dict.get('reuse_key', False)
        if not isinstance(reuse_key, bool):
            raise ConfigurationError("'reuse-key' must be a boolean.")

        config_duration(config_dict, 'renew_before')
        for key in ('cert_file_mode', 'pk_file_mode'):
            if key in config_dict:
                config_dict[key] = parse_file_mode(config_dict[key])
        for key in ('cert_file_owner', 'cert_file_group',
                    'pk_file_owner', 'pk_file_group'):
            if config_dict.get(key) is not None:
                config_dict[key] = str(config_dict[key])

        if not isinstance(config_dict.get('hooks', HookSlots()), HookSlots):
            raise ConfigurationError(
                "Specify hooks using the 'pre-create-hooks', "
                "'post-create-hooks', 'pre-edit-hooks' and 'post-edit-hooks' "
                "options."
            )
        env = config_dict.get('env', {})
        if not isinstance(env, dict):
            raise ConfigurationError("'env' must be a dictionary.")
        config_dict['env'] = {str(k): str(v) for k, v in env.items()}


def migrate_legacy_hooks(label, cert_config: dict) -> dict:
    """
    Rewrite the superseded ``post-operation-hooks`` option into the
    explicit ``post-create-hooks`` and ``post-edit-hooks`` slots.

    Combining the legacy option with any of the explicit slots is an error,
    since there is no unambiguous way to merge them.

    :param label:
        Label of the certificate (for error messages).
    :param cert_config:
        Certificate configuration, with underscored keys.
    :return:
        The migrated configuration (a new dictionary if anything changed).
    """
    if LEGACY_HOOK_KEY not in cert_config:
        return cert_config
    explicit = [
        key.replace('_', '-') for key in SLOT_KEYS.values()
        if key in cert_config
    ]
    if explicit:
        raise ConfigurationError(
            f"Certificate '{label}' combines the legacy "
            f"'post-operation-hooks' option with {', '.join(explicit)}. "
            f"Move the legacy hooks into the explicit options."
        )
    cert_config = dict(cert_config)
    refs = cert_config.pop(LEGACY_HOOK_KEY)
    logger.warning(
        f"Certificate '{label}': 'post-operation-hooks' is deprecated; "
        f"treating it as 'post-create-hooks' and 'post-edit-hooks'."
    )
    cert_config[SLOT_KEYS[LifecycleEvent.POST_CREATE]] = refs
    cert_config[SLOT_KEYS[LifecycleEvent.POST_EDIT]] = copy.deepcopy(refs)
    return cert_config


def _process_template_config(configs_seen, name, cert_config):
    template = cert_config.pop('template', None)
    if template is None:
        return cert_config
    try:
        template_cfg = copy.deepcopy(configs_seen[CertLabel(str(template))])
    except KeyError as e:
        raise ConfigurationError(
            f"Certificate '{name}' refers to '{template}' as a "
            f"template, but '{template}' hasn't been declared yet."
        ) from e
    # hook slots and env of the template are inherited unless overridden
    template_cfg.update(cert_config)
    return template_cfg


def process_certificate_configs(
    certs_config, storage_dir: SearchDir
) -> Dict[CertLabel, ManagedCertificateSpec]:
    """
    Turn the ``certificates`` configuration section into specs.

    :param certs_config:
        Dictionary mapping labels to certificate configuration.
    :param storage_dir:
        Directory against which ``crt-directory`` entries are resolved.
    """
    if not isinstance(certs_config, dict):
        raise ConfigurationError("'certificates' must be a dictionary.")
    configs_seen: Dict[CertLabel, dict] = {}
    results = {}
    for name, cert_config in certs_config.items():
        label = CertLabel(str(name))
        if not isinstance(cert_config, dict):
            raise ConfigurationError(
                f"Certificate '{label}' must be specified as a dictionary."
            )
        cert_config = key_dashes_to_underscores(cert_config)
        cert_config = migrate_legacy_hooks(label, cert_config)
        effective = _process_template_config(configs_seen, label, cert_config)
        configs_seen[label] = copy.deepcopy(effective)

        effective['label'] = label
        effective['hooks'] = HookSlots.extract(label, effective)
        crt_directory = str(effective.get('crt_directory', '.'))
        if not os.path.isabs(crt_directory):
            crt_directory = storage_dir.resolve(crt_directory)
        effective['crt_directory'] = crt_directory
        try:
            results[label] = ManagedCertificateSpec.from_config(effective)
        except ConfigurationError as e:
            raise ConfigurationError(
                f"Error in configuration of certificate '{label}': {e}"
            ) from e
    return results
