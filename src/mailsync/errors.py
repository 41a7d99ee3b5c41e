# =============================================================================
# Error Taxonomy
# =============================================================================
# Every failure the sync engine surfaces is one of these classes. Callers can
# branch on the class, or just check `retryable` to decide whether trying the
# same operation again could help.
#
#   MailSyncError
#     ├── NetworkError            connect refused / dropped / timed out
#     ├── AuthError               server rejected the credentials
#     ├── ProtocolError           server answered with something unusable
#     │     └── IdleRefusedError  server said no to IDLE
#     ├── OperationTimeoutError   a fetch/search exceeded its bound
#     ├── NotFoundError           unknown message id, uid or attachment index
#     ├── CacheError              the local store failed
#     └── AttachmentTooLargeError attachment exceeds the download cap
# =============================================================================


class MailSyncError(Exception):
    """Base exception for the sync engine."""

    # Whether retrying the same call without changing anything may succeed
    retryable: bool = False


class NetworkError(MailSyncError):
    """Raised when the server cannot be reached or the connection drops."""

    retryable = True


class AuthError(MailSyncError):
    """Raised when login fails or no password is available."""

    retryable = False


class ProtocolError(MailSyncError):
    """Raised when the server returns a malformed or non-OK response."""

    retryable = True


class IdleRefusedError(ProtocolError):
    """Raised when the server rejects the IDLE command itself."""

    retryable = False


class OperationTimeoutError(MailSyncError):
    """
    Raised when a network operation exceeds its time bound.

    Any partial results gathered before the deadline are discarded.
    """

    retryable = True


class NotFoundError(MailSyncError):
    """Raised for an unknown message id, uid, or attachment index."""

    retryable = False


class CacheError(MailSyncError):
    """Raised when the cache store fails to read or write."""

    retryable = True


class AttachmentTooLargeError(MailSyncError):
    """Raised when an attachment is bigger than the configured cap."""

    retryable = False
