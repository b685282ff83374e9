import abc
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Type, Union

from asn1crypto import x509
from asn1crypto.keys import PublicKeyInfo

from ..config_utils import (
    ConfigurationError,
    SearchDir,
    check_config_keys,
    plugin_instantiate_util,
)
from ..errors import CertkeeperObjectNotFoundError
from .common import AuthorityLabel, PluginLabel

__all__ = [
    'IdentityProofs',
    'AuthorityPlugin',
    'AuthorityPluginRegistry',
    'CertificateAuthority',
    'AuthorityRegistry',
    'authority_plugin_registry',
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityProofs:
    """
    What a certificate authority needs to know about the requester, besides
    the public key.
    """

    identifiers: Tuple[str, ...]
    """Names to certify."""

    subject: Dict[str, str] = field(default_factory=dict)
    """Requested subject name attributes."""


class AuthorityPlugin(abc.ABC):
    """
    Interface to a certificate authority.

    Certkeeper does not speak any issuance protocol itself; plugins take care
    of that. A plugin receives a public key and the identity proofs of the
    requester, and returns a certificate or raises
    :class:`~certkeeper.errors.IssuanceFailed`.

    Plugins must be stateless; all per-authority state lives in the
    configuration object returned by :meth:`process_plugin_config`.
    """

    plugin_label: str

    def process_plugin_config(self, params, config_dir: Optional[SearchDir]):
        """
        Invoked during config initialisation to parse the plugin's
        parameters.

        :param params:
            Original plugin parameters from the authority definition
            in the configuration file.
        :param config_dir:
            Directory against which to resolve relative paths, or ``None``
            if external files are not allowed.
        :return:
            A configuration object that will be passed back to
            :meth:`request_issuance`.
        """
        return params  # pragma: nocover

    def request_issuance(
        self, plugin_config, public_key: PublicKeyInfo,
        identity_proofs: IdentityProofs
    ) -> x509.Certificate:
        """
        Request a certificate.

        :param plugin_config:
            The object returned by :meth:`process_plugin_config`.
        :param public_key:
            Public key to certify.
        :param identity_proofs:
            Identity information for the certificate.
        :return:
            The issued certificate.
        :raises IssuanceFailed:
            if no certificate could be obtained.
        """
        raise NotImplementedError


class AuthorityPluginRegistry:
    """
    Registry of authority plugin implementations.
    """

    def __init__(self):
        self._dict: Dict[PluginLabel, AuthorityPlugin] = {}

    def register(
        self, plugin: Union[AuthorityPlugin, Type[AuthorityPlugin]]
    ):
        """
        Register an authority plugin object.

        As a convenience, you can also use this method as a class decorator
        on plugin classes. In this latter case, the plugin class should
        have a no-arguments ``__init__`` method.

        :param plugin:
            A subclass of :class:`AuthorityPlugin`, or an instance of
            such a subclass.
        """
        orig_input = plugin
        plugin, cls = plugin_instantiate_util(plugin)
        plugin_label = getattr(plugin, 'plugin_label', None)
        if not isinstance(plugin_label, str):
            raise ConfigurationError(
                f"Plugin {cls.__name__} does not declare a string-type "
                f"'plugin_label' attribute."
            )
        self._dict[PluginLabel(plugin_label)] = plugin
        return orig_input

    def __getitem__(self, item: PluginLabel) -> AuthorityPlugin:
        try:
            return self._dict[item]
        except KeyError as e:
            raise CertkeeperObjectNotFoundError(
                f"There is no authority plugin labelled '{item}'."
            ) from e

    def __contains__(self, item: PluginLabel):
        return item in self._dict

    def assert_registered(self, item: PluginLabel):
        if item not in self:
            raise ConfigurationError(
                f"Authority plugin '{item}' is not registered."
            )


authority_plugin_registry = AuthorityPluginRegistry()
"""
The default authority plugin registry.
"""


class CertificateAuthority:
    """
    A configured certificate authority: a plugin bound to its parameters.
    """

    def __init__(
        self, label: AuthorityLabel, plugin: AuthorityPlugin, plugin_config
    ):
        self.label = label
        self.plugin = plugin
        self.plugin_config = plugin_config

    def request_issuance(
        self, public_key: PublicKeyInfo, identity_proofs: IdentityProofs
    ) -> x509.Certificate:
        logger.info(
            f"Requesting certificate for "
            f"{', '.join(identity_proofs.identifiers)} from authority "
            f"'{self.label}'"
        )
        return self.plugin.request_issuance(
            self.plugin_config, public_key, identity_proofs
        )

    def __repr__(self):
        return (
            f"CertificateAuthority('{self.label}', "
            f"plugin='{self.plugin.plugin_label}')"
        )


class AuthorityRegistry:
    """
    The certificate authorities declared in the ``authorities`` section of
    the configuration.
    """

    def __init__(
        self,
        config,
        config_dir: Optional[SearchDir] = None,
        plugins: Optional[AuthorityPluginRegistry] = None,
    ):
        plugins = plugins or authority_plugin_registry
        if not isinstance(config, dict):
            raise ConfigurationError("'authorities' must be a dictionary.")
        self._dict: Dict[AuthorityLabel, CertificateAuthority] = {}
        for name, auth_cfg in config.items():
            label = AuthorityLabel(str(name))
            check_config_keys(f"authority '{label}'", ('type', 'params'),
                              auth_cfg)
            try:
                plugin_label = PluginLabel(auth_cfg['type'])
            except (KeyError, TypeError) as e:
                raise ConfigurationError(
                    f"Authority '{label}' does not specify a 'type'."
                ) from e
            plugins.assert_registered(plugin_label)
            plugin = plugins[plugin_label]
            params = auth_cfg.get('params', {})
            self._dict[label] = CertificateAuthority(
                label, plugin, plugin.process_plugin_config(params, config_dir)
            )

    def add(self, authority: CertificateAuthority):
        self._dict[authority.label] = authority

    def __getitem__(self, label: AuthorityLabel) -> CertificateAuthority:
        try:
            return self._dict[label]
        except KeyError as e:
            raise CertkeeperObjectNotFoundError(
                f"There is no certificate authority labelled '{label}'."
            ) from e

    def __contains__(self, label):
        return label in self._dict

    def __iter__(self):
        return iter(self._dict.values())
