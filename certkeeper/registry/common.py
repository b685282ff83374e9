from typing import Iterable

from certkeeper.config_utils import ConfigurationError, LabelString

__all__ = [
    'HookLabel',
    'CertLabel',
    'AuthorityLabel',
    'PluginLabel',
    'DuplicateName',
    'UnknownReference',
    'CyclicHookGroup',
]


class HookLabel(LabelString):
    """
    Label referring to a hook or a hook group.
    Hooks and groups share a single namespace.
    """

    pass


class CertLabel(LabelString):
    """Label referring to a managed certificate"""

    pass


class AuthorityLabel(LabelString):
    """Label referring to a configured certificate authority"""

    pass


class PluginLabel(LabelString):
    """
    Label referring to an authority plugin implementation.
    """

    pass


class DuplicateName(ConfigurationError):
    def __init__(self, name, existing_kind: str):
        self.name = name
        super().__init__(
            f"The name '{name}' is already in use by a {existing_kind}."
        )


class UnknownReference(ConfigurationError):
    def __init__(self, name, referrer=None):
        self.name = name
        self.referrer = referrer
        if referrer is None:
            msg = f"There is no hook or hook group named '{name}'."
        else:
            msg = (
                f"'{referrer}' refers to '{name}', but there is no hook "
                f"or hook group with that name."
            )
        super().__init__(msg)


class CyclicHookGroup(ConfigurationError):
    """
    Raised when a hook group (indirectly) refers to itself.

    The ``cycle_path`` attribute lists the group names along the cycle,
    starting and ending with the same group.
    """

    def __init__(self, cycle_path: Iterable):
        self.cycle_path = [str(x) for x in cycle_path]
        super().__init__(
            "Cyclic hook group reference: " + ' -> '.join(self.cycle_path)
        )
