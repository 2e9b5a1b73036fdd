class PendwriteError(Exception):
    """Base exception for pendwrite errors."""


class StoreError(PendwriteError):
    """The durable queue store could not read or persist a mutation."""


class MutationValidationError(PendwriteError, ValueError):
    """A mutation is malformed and cannot be enqueued."""


class RemoteError(PendwriteError):
    """Any failure while applying a mutation against the remote service."""


class TransientRemoteError(RemoteError):
    """Timeout, network or server-side failure. Worth retrying."""


class PermanentRemoteError(RemoteError):
    """The remote service rejected the write. Retrying will not help."""


class DirectWriteError(PendwriteError):
    """The queue was unavailable and the direct remote call failed too."""
