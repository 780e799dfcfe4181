"""Exceptions raised by the mirror's stores, fetchers and orchestrator."""


class MirrorError(Exception):
    """Base class for all community mirror errors."""
    pass


class NotFound(MirrorError):
    """Raised when an entity looked up by identity is absent."""
    pass


class DuplicateIdentity(MirrorError):
    """Raised when creating an entity whose identity key already exists."""
    pass


class StorageError(MirrorError):
    """Raised when a store operation fails. Retryable."""
    pass


class StoreConnectionError(StorageError):
    """Raised when the database cannot be reached."""
    pass


class UpstreamError(MirrorError):
    """Raised when the upstream data source fails."""

    retryable = False


class RetryableUpstreamError(UpstreamError):
    """Rate limit or transient network failure."""

    retryable = True


class PermanentUpstreamError(UpstreamError):
    """Repository deleted, renamed away or not accessible with the token."""
    pass


class ConfigurationError(MirrorError):
    """Raised when configuration is malformed or the store is unreachable at boot."""
    pass


class CycleCancelled(MirrorError):
    """Raised inside a worker when its cycle is stopped or past its deadline."""
    pass
