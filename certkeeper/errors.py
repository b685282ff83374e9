"""
Runtime errors raised while renewing certificates.

Configuration problems are signalled with
:class:`~certkeeper.config_utils.ConfigurationError` and its subclasses
instead; those are raised at load time and never during a renewal attempt.
"""

__all__ = [
    'CertkeeperServiceError',
    'CertkeeperObjectNotFoundError',
    'IssuanceFailed',
    'ExecutionFailed',
    'HookFailed',
]


class CertkeeperServiceError(Exception):
    pass


class CertkeeperObjectNotFoundError(CertkeeperServiceError):
    pass


class IssuanceFailed(CertkeeperServiceError):
    """The certificate authority did not produce a usable certificate."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class ExecutionFailed(CertkeeperServiceError):
    """A hook action could not be executed, or exited unsuccessfully."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class HookFailed(CertkeeperServiceError):
    """
    A hook with the ``fatal`` failure policy failed, aborting the rest of
    the hook list it was part of.

    :param hook_name:
        Name of the failing hook.
    :param cause:
        The underlying :class:`ExecutionFailed` error.
    :param report:
        The dispatch report up to and including the failure, if available.
    """

    def __init__(self, hook_name, cause: ExecutionFailed, report=None):
        self.hook_name = hook_name
        self.cause = cause
        self.report = report
        super().__init__(f"Hook '{hook_name}' failed: {cause}")
