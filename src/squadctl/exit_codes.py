"""CLI exit codes and the mapping from squadctl errors onto them."""
from __future__ import annotations

from enum import IntEnum

from .config import ConfigurationError
from .ports import PortConflictError
from .providers.patchelf import PatchError
from .providers.steamcmd import FetchError
from .providers.systemd import SystemdError


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4

    @classmethod
    def for_error(cls, exc: BaseException) -> ExitCode:
        """Return the exit code reported for *exc*.

        Wrapped provisioning failures are classified by their cause. Secret,
        template and filesystem problems fall through to ``ENVIRONMENT``.
        """
        cause = getattr(exc, "cause", None)
        if isinstance(cause, BaseException):
            exc = cause
        if isinstance(exc, (ConfigurationError, PortConflictError)):
            return cls.VALIDATION
        if isinstance(exc, (FetchError, PatchError, SystemdError)):
            return cls.PROVIDER
        return cls.ENVIRONMENT
