"""Exception types shared across hookd.

Lock contention, stale locks and hook pass/fail/timeout are outcomes, not
errors; they are modelled as enums in locks.py and runner.py. The classes
here cover conditions that callers must react to.
"""


class HookdError(Exception):
    """Base class for all hookd errors."""


class TransportError(HookdError):
    """The daemon could not be reached or answered unusably.

    Never shown to the end user: the client catches it and runs the
    request in-process instead.
    """


class ProtocolError(TransportError):
    """A wire message was malformed, truncated or too large."""


class LockStoreError(HookdError):
    """A lock record could not be read or written."""


class CorruptLockRecordError(LockStoreError):
    """A lock record exists but cannot be parsed."""


class RegistryCorruptedError(HookdError):
    """The persisted skip registry is malformed.

    Surfaced to the operator rather than treated as an empty registry so a
    configured skip list is never silently dropped.
    """


class InvalidPathError(HookdError, ValueError):
    """A directory path given to the skip registry is empty or relative."""


class ConfigError(HookdError):
    """The configuration file exists but cannot be used."""
