import importlib
import logging
import os
import os.path
from dataclasses import dataclass
from typing import Dict, Optional

import yaml

from ..config_utils import (
    ConfigurableMixin,
    ConfigurationError,
    SearchDir,
    check_config_keys,
)
from .authority import AuthorityRegistry
from .certs import ManagedCertificateSpec, process_certificate_configs
from .common import CertLabel, UnknownReference
from .hooks import EventHooks, HookCatalog, HookGroupResolver

__all__ = ['CertkeeperConfig', 'LoggingSettings', 'LOG_LEVELS']

logger = logging.getLogger(__name__)


DEFAULT_PLUGIN_MODULE = "certkeeper.default_plugins"

LOG_LEVELS = {
    'error': logging.ERROR,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'info': logging.INFO,
    'debug': logging.DEBUG,
    'trace': logging.DEBUG,
}

TOP_LEVEL_KEYS = (
    'plugin-modules', 'storage-root', 'logging', 'authorities', 'hooks',
    'hook-groups', 'certificates',
)


def _import_plugin_modules(plugins):
    if not isinstance(plugins, (list, tuple)):
        raise ConfigurationError("Plugin modules must be specified as a list")

    def _do_import(module):
        try:
            importlib.import_module(module)
        except ImportError as e:
            raise ConfigurationError(
                f"Failed to import plugin module {module}."
            ) from e

    _do_import(DEFAULT_PLUGIN_MODULE)
    for plug in plugins:
        logger.debug(f"Importing plugins in module {plug}...")
        _do_import(plug)


@dataclass(frozen=True)
class LoggingSettings(ConfigurableMixin):
    """Logging options from the ``logging`` section."""

    level: str = 'info'
    syslog: bool = False

    @property
    def numeric_level(self) -> int:
        return LOG_LEVELS[self.level]

    @classmethod
    def process_entries(cls, config_dict):
        super().process_entries(config_dict)
        level = str(config_dict.get('level', 'info')).lower()
        if level not in LOG_LEVELS:
            raise ConfigurationError(
                f"Unknown log level '{level}'; choose from "
                f"{', '.join(LOG_LEVELS)}."
            )
        config_dict['level'] = level
        if not isinstance(config_dict.get('syslog', False), bool):
            raise ConfigurationError("'syslog' must be a boolean.")


class CertkeeperConfig:
    """
    Helper class to interpret & manage certkeeper configuration information.

    Loading the configuration validates all of it: hook names, group
    references, certificate settings and authorities. Hook lists are
    resolved for every certificate right away, so broken references and
    cyclic groups prevent the configuration from loading.
    """

    @classmethod
    def from_yaml(
        cls, yaml_str, config_search_dir=None, storage_root=None
    ) -> 'CertkeeperConfig':
        config_dict = yaml.safe_load(yaml_str)
        return CertkeeperConfig(
            config_dict,
            config_search_dir=config_search_dir,
            storage_root=storage_root,
        )

    @classmethod
    def from_file(
        cls, cfg_path, allow_external_config=True, storage_root=None
    ) -> 'CertkeeperConfig':
        main_config_dir = os.path.dirname(os.path.abspath(cfg_path))
        with open(cfg_path, 'r') as inf:
            config_dict = yaml.safe_load(inf)
        if storage_root is None:
            storage_root = os.path.join(
                main_config_dir, str(config_dict.get('storage-root', '.'))
            ) if isinstance(config_dict, dict) else main_config_dir
        return CertkeeperConfig(
            config_dict,
            config_search_dir=(
                main_config_dir if allow_external_config else None
            ),
            storage_root=storage_root,
        )

    def __init__(
        self,
        config,
        config_search_dir: Optional[str] = None,
        storage_root: Optional[str] = None,
    ):
        if not isinstance(config, dict):
            raise ConfigurationError(
                "The configuration must be a dictionary."
            )
        check_config_keys('certkeeper', TOP_LEVEL_KEYS, config)

        _import_plugin_modules(config.get('plugin-modules', ()))

        logging_cfg = config.get('logging', {})
        if not isinstance(logging_cfg, dict):
            raise ConfigurationError("'logging' must be a dictionary.")
        self.logging = LoggingSettings.from_config(logging_cfg)

        search_dir = (
            SearchDir(config_search_dir)
            if config_search_dir is not None
            else None
        )
        if storage_root is None:
            storage_root = str(config.get('storage-root', '.'))
            if search_dir is not None:
                storage_root = search_dir.resolve(storage_root)
        self.storage_root = os.path.abspath(storage_root)

        self.hook_catalog = HookCatalog.from_config(
            config.get('hooks'), config.get('hook-groups')
        )
        self.resolver = HookGroupResolver(self.hook_catalog)
        self.authorities = AuthorityRegistry(
            config.get('authorities', {}), config_dir=search_dir
        )
        self.certificates: Dict[CertLabel, ManagedCertificateSpec] = \
            process_certificate_configs(
                config.get('certificates', {}), SearchDir(self.storage_root)
            )

        self._event_hooks: Dict[CertLabel, EventHooks] = {}
        for label, spec in self.certificates.items():
            if spec.authority not in self.authorities:
                raise ConfigurationError(
                    f"Certificate '{label}' refers to authority "
                    f"'{spec.authority}', which is not declared."
                )
            try:
                self._event_hooks[label] = EventHooks.resolve(
                    self.resolver, spec.hooks
                )
            except UnknownReference as e:
                if e.referrer is not None:
                    raise
                raise UnknownReference(
                    e.name, referrer=f"certificate {label}"
                ) from e
        logger.debug(
            f"Loaded configuration for {len(self.certificates)} "
            f"certificate(s)"
        )

    def get_certificate_spec(self, label) -> ManagedCertificateSpec:
        try:
            return self.certificates[CertLabel(str(label))]
        except KeyError as e:
            raise ConfigurationError(
                f"There is no certificate with label {label}."
            ) from e

    def get_event_hooks(self, label) -> EventHooks:
        self.get_certificate_spec(label)
        return self._event_hooks[CertLabel(str(label))]
