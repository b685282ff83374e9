"""
Hook definitions, hook groups and the logic to flatten group references
into ordered lists of concrete hooks.

Hooks and hook groups are stored in a flat registry keyed by name.
Groups only refer to their members by name, so the reference graph never
turns into a structure of nested objects; resolution walks it with an
explicit stack.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import (
    ClassVar,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
    Union,
)

from ..config_utils import (
    ConfigurableMixin,
    ConfigurationError,
    check_config_keys,
    config_duration,
)
from .common import CyclicHookGroup, DuplicateName, HookLabel, UnknownReference

__all__ = [
    'FailurePolicy',
    'HookKind',
    'HookAction',
    'Hook',
    'HookGroup',
    'ResolvedHookList',
    'HookCatalog',
    'HookGroupResolver',
    'LifecycleEvent',
    'EventHooks',
]

logger = logging.getLogger(__name__)


class FailurePolicy(enum.Enum):
    """What to do when a hook fails."""

    IGNORE = 'ignore'
    """Record the failure and carry on with the next hook."""

    FATAL = 'fatal'
    """Abort the remaining hooks and report the failure to the caller."""

    @classmethod
    def parse(cls, value) -> 'FailurePolicy':
        if isinstance(value, FailurePolicy):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid failure policy '{value}'; "
                f"expected 'ignore' or 'fatal'."
            ) from e


class HookKind(enum.Enum):
    HOOK = 'hook'
    GROUP = 'hook group'


@dataclass(frozen=True)
class HookAction(ConfigurableMixin):
    """
    Description of the command that a hook runs.
    Certkeeper does not interpret this beyond handing it to a hook executor.
    """

    cmd: str
    """Program to execute."""

    args: Tuple[str, ...] = ()
    """
    Arguments. Placeholders such as ``{cert_path}`` are filled in from the
    hook context when the hook runs.
    """

    stdin: Optional[str] = None
    """Path to a file to feed to the command's standard input."""

    stdin_str: Optional[str] = None
    """Literal data to feed to standard input. Placeholders are allowed."""

    stdout: Optional[str] = None
    """Path to a file that receives standard output."""

    stderr: Optional[str] = None
    """Path to a file that receives standard error."""

    timeout: Optional[timedelta] = None

    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def process_entries(cls, config_dict):
        super().process_entries(config_dict)
        cmd = config_dict.get('cmd')
        if not isinstance(cmd, str) or not cmd:
            raise ConfigurationError("Hook actions require a 'cmd' string.")
        args = config_dict.get('args', ())
        if isinstance(args, str) or not isinstance(args, (list, tuple)):
            raise ConfigurationError("Hook 'args' must be a list of strings.")
        config_dict['args'] = tuple(str(arg) for arg in args)
        if config_dict.get('stdin') is not None \
                and config_dict.get('stdin_str') is not None:
            raise ConfigurationError(
                "'stdin' and 'stdin-str' are mutually exclusive."
            )
        config_duration(config_dict, 'timeout')
        env = config_dict.get('env', {})
        if not isinstance(env, dict):
            raise ConfigurationError("Hook 'env' must be a dictionary.")
        config_dict['env'] = {str(k): str(v) for k, v in env.items()}


@dataclass(frozen=True)
class Hook:
    """A single named action."""

    kind: ClassVar[HookKind] = HookKind.HOOK

    name: HookLabel
    action: HookAction
    failure_policy: FailurePolicy = FailurePolicy.FATAL

    @classmethod
    def from_config(cls, name, config) -> 'Hook':
        if not isinstance(config, dict):
            raise ConfigurationError(
                f"Hook '{name}' must be specified as a dictionary."
            )
        config = dict(config)
        policy = FailurePolicy.parse(config.pop('failure-policy', 'fatal'))
        try:
            action = HookAction.from_config(config)
        except ConfigurationError as e:
            raise ConfigurationError(f"Error in hook '{name}': {e}") from e
        return Hook(
            name=HookLabel(name), action=action, failure_policy=policy
        )


@dataclass(frozen=True)
class HookGroup:
    """A named, ordered list of references to hooks or other groups."""

    kind: ClassVar[HookKind] = HookKind.GROUP

    name: HookLabel
    references: Tuple[HookLabel, ...]


CatalogEntry = Union[Hook, HookGroup]


@dataclass(frozen=True)
class ResolvedHookList:
    """
    Flattened, ordered list of hooks without duplicates.
    Always produced by :class:`HookGroupResolver`.
    """

    hooks: Tuple[Hook, ...] = ()

    @property
    def names(self) -> List[str]:
        return [str(hook.name) for hook in self.hooks]

    def __iter__(self) -> Iterator[Hook]:
        return iter(self.hooks)

    def __len__(self):
        return len(self.hooks)

    def __getitem__(self, item):
        return self.hooks[item]

    def __bool__(self):
        return bool(self.hooks)


def _as_references(references, owner=None) -> Tuple[HookLabel, ...]:
    if references is None:
        return ()
    if isinstance(references, (str, HookLabel)):
        references = [references]
    if not isinstance(references, (list, tuple)):
        raise ConfigurationError(
            f"Hook references{f' in {owner}' if owner else ''} must be "
            f"given as a list of names."
        )
    result = []
    for ref in references:
        if not isinstance(ref, (str, HookLabel)):
            raise ConfigurationError(
                f"Invalid hook reference {ref!r}"
                f"{f' in {owner}' if owner else ''}."
            )
        result.append(HookLabel(str(ref)))
    return tuple(result)


class HookCatalog:
    """
    Registry of all hooks and hook groups known to certkeeper.
    """

    def __init__(self):
        self._entries: Dict[HookLabel, CatalogEntry] = {}

    def _check_available(self, name: HookLabel):
        try:
            existing = self._entries[name]
        except KeyError:
            return
        raise DuplicateName(name, existing.kind.value)

    def define(
        self,
        name,
        action: HookAction,
        failure_policy: FailurePolicy = FailurePolicy.FATAL,
    ) -> Hook:
        """
        Register a hook.

        :raises DuplicateName:
            if the name is already used by a hook or a hook group.
        """
        return self.add(
            Hook(
                name=HookLabel(str(name)),
                action=action,
                failure_policy=FailurePolicy.parse(failure_policy),
            )
        )

    def add(self, hook: Hook) -> Hook:
        self._check_available(hook.name)
        self._entries[hook.name] = hook
        return hook

    def define_group(self, name, references, *, validate=True) -> HookGroup:
        """
        Register a hook group.

        :param name:
            Name of the group.
        :param references:
            Ordered list of hook or group names.
        :param validate:
            Check right away that all references are known.
            Pass ``False`` when loading groups that refer to entries
            declared later on, and call :meth:`validate` afterwards.
        :raises DuplicateName:
            if the name is already used by a hook or a hook group.
        :raises UnknownReference:
            if ``validate`` is set and a reference is unknown.
        """
        name = HookLabel(str(name))
        group = HookGroup(
            name=name,
            references=_as_references(references, owner=f"group '{name}'"),
        )
        self._check_available(name)
        if validate:
            # everything else is already registered, so a cycle can only
            # run through the new group directly
            if name in group.references:
                raise CyclicHookGroup([name, name])
            self._check_references(group)
        self._entries[name] = group
        return group

    def _check_references(self, group: HookGroup):
        for ref in group.references:
            if ref not in self._entries:
                raise UnknownReference(ref, referrer=group.name)

    def lookup(self, name, referrer=None) -> CatalogEntry:
        """
        Look up a hook or a hook group. Check the ``kind`` attribute of the
        result to tell them apart.

        :raises UnknownReference:
            if there is no such entry.
        """
        try:
            return self._entries[HookLabel(str(name))]
        except KeyError as e:
            raise UnknownReference(name, referrer=referrer) from e

    def validate(self):
        """
        Check that all group references exist and that no group refers
        back to itself.
        """
        resolver = HookGroupResolver(self)
        for group in self.groups:
            self._check_references(group)
        for group in self.groups:
            resolver.resolve([group.name])

    def __contains__(self, name):
        return HookLabel(str(name)) in self._entries

    @property
    def hooks(self) -> List[Hook]:
        return [e for e in self._entries.values() if isinstance(e, Hook)]

    @property
    def groups(self) -> List[HookGroup]:
        return [e for e in self._entries.values() if isinstance(e, HookGroup)]

    @classmethod
    def from_config(cls, hooks_config, groups_config) -> 'HookCatalog':
        """
        Build a catalog from the ``hooks`` and ``hook-groups`` configuration
        sections. Groups may be declared in any order; cycles and dangling
        references are reported after everything has been registered.
        """
        catalog = HookCatalog()
        hooks_config = hooks_config or {}
        groups_config = groups_config or {}
        for section, cfg in (('hooks', hooks_config),
                             ('hook-groups', groups_config)):
            if not isinstance(cfg, dict):
                raise ConfigurationError(
                    f"'{section}' must be a dictionary."
                )
        for name, hook_cfg in hooks_config.items():
            catalog.add(Hook.from_config(name, hook_cfg))
        for name, refs in groups_config.items():
            catalog.define_group(name, refs, validate=False)
        catalog.validate()
        logger.debug(
            f"Loaded {len(catalog.hooks)} hook(s) and "
            f"{len(catalog.groups)} hook group(s)"
        )
        return catalog


class HookGroupResolver:
    """
    Expands lists of hook and group references into
    :class:`ResolvedHookList` objects.

    Expansion is depth-first, in declaration order. A hook that can be
    reached along several paths is kept only at the position where it is
    first encountered.
    """

    def __init__(self, catalog: HookCatalog):
        self.catalog = catalog
        self._cache: Dict[Tuple[HookLabel, ...], ResolvedHookList] = {}

    def resolve(self, references: Iterable) -> ResolvedHookList:
        """
        Resolve a list of references.

        :raises UnknownReference:
            if a reference does not exist in the catalog.
        :raises CyclicHookGroup:
            if a group is reached again while it is being expanded.
        """
        refs = _as_references(list(references))
        try:
            return self._cache[refs]
        except KeyError:
            pass
        result = self._expand(refs)
        self._cache[refs] = result
        return result

    def _expand(self, refs: Tuple[HookLabel, ...]) -> ResolvedHookList:
        resolved: List[Hook] = []
        seen = set()
        # groups currently being expanded, outermost first
        in_progress: List[HookLabel] = []
        work: List[Tuple[Optional[HookLabel], Iterator[HookLabel]]] = [
            (None, iter(refs))
        ]
        while work:
            owner, remaining = work[-1]
            ref = next(remaining, None)
            if ref is None:
                work.pop()
                if owner is not None:
                    in_progress.pop()
                continue
            entry = self.catalog.lookup(ref, referrer=owner)
            if entry.kind is HookKind.HOOK:
                if entry.name not in seen:
                    seen.add(entry.name)
                    resolved.append(entry)
                continue
            if entry.name in in_progress:
                start = in_progress.index(entry.name)
                raise CyclicHookGroup(in_progress[start:] + [entry.name])
            in_progress.append(entry.name)
            work.append((entry.name, iter(entry.references)))
        return ResolvedHookList(tuple(resolved))


class LifecycleEvent(enum.Enum):
    """Points around a certificate/key file write at which hooks run."""

    PRE_CREATE = 'pre-create'
    POST_CREATE = 'post-create'
    PRE_EDIT = 'pre-edit'
    POST_EDIT = 'post-edit'

    @property
    def is_pre(self) -> bool:
        return self in (LifecycleEvent.PRE_CREATE, LifecycleEvent.PRE_EDIT)

    @property
    def slot_name(self) -> str:
        return self.name.lower()

    @classmethod
    def for_write(cls, is_new: bool, pre: bool) -> 'LifecycleEvent':
        """
        Select the event for a write, depending on whether the files are
        created for the first time or replaced.
        """
        if is_new:
            return cls.PRE_CREATE if pre else cls.POST_CREATE
        return cls.PRE_EDIT if pre else cls.POST_EDIT

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class EventHooks:
    """The resolved hook lists of one managed certificate, per event."""

    pre_create: ResolvedHookList = ResolvedHookList()
    post_create: ResolvedHookList = ResolvedHookList()
    pre_edit: ResolvedHookList = ResolvedHookList()
    post_edit: ResolvedHookList = ResolvedHookList()

    def __getitem__(self, event: LifecycleEvent) -> ResolvedHookList:
        return getattr(self, event.slot_name)

    @classmethod
    def resolve(cls, resolver: HookGroupResolver, slots) -> 'EventHooks':
        """
        Resolve all four reference lists in ``slots`` (anything that can be
        indexed by :class:`LifecycleEvent`) once.
        """
        return EventHooks(
            **{
                event.slot_name: resolver.resolve(slots[event])
                for event in LifecycleEvent
            }
        )
