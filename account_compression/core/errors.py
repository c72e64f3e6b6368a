"""
Error taxonomy for the concurrent Merkle tree.

Every failure raised by the tree leaves its state untouched, so callers can
decide from the exception type alone whether to retry, refetch or abort.
"""


class CompressionError(Exception):
    """Base class for all account compression errors."""

    pass


class OutOfBoundsError(CompressionError, ValueError):
    """Raised when a leaf index or proof shape does not fit the tree."""

    pass


class TreeFullError(OutOfBoundsError):
    """Raised when appending to a tree whose every leaf slot is taken."""

    pass


class CapacityExceededError(CompressionError, ValueError):
    """Raised when a tree is configured with an unsupported depth or buffer size."""

    pass


class InvalidProofError(CompressionError):
    """Raised when a proof does not reconstruct any root the tree knows about."""

    pass


class LeafContentsModifiedError(InvalidProofError):
    """Raised when the leaf being replaced was changed after the proof was captured."""

    pass


class StaleProofError(CompressionError):
    """Raised when a proof predates every root still held in the changelog.

    The proof may well have been valid; fetching a fresh one and retrying is
    expected to succeed.
    """

    pass


class AccountDecodeError(CompressionError, ValueError):
    """Raised when account or event bytes cannot be decoded."""

    pass


class SequenceNumberError(CompressionError, ValueError):
    """Raised when a changelog entry does not follow the latest sequence number."""

    pass


class AuthorityMismatchError(CompressionError):
    """Raised when an authority-only operation is signed by another key."""

    pass


class TreeNotEmptyError(CompressionError):
    """Raised when closing a tree that still holds appended leaves."""

    pass


class AccountClosedError(CompressionError):
    """Raised when operating on a tree account that has been closed."""

    pass
