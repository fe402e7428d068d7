# nttattest_errors.py
"""Fatal error taxonomy for the NTT event attestation guest.

Every error is terminal: the guest either commits a journal or commits nothing.
"""


class AttestationError(Exception):
    """Base class for all attestation failures."""


class InputDecodingError(AttestationError):
    """The input stream is malformed, truncated or has size-mismatched fields."""


class ViewReconstructionError(AttestationError):
    """The state-proof bundle cannot be verified against the chain specification."""


class EventNotFoundError(AttestationError):
    """The requested log index is out of range for the matching events."""


class EncodingError(AttestationError):
    """The journal cannot be serialized to (or parsed from) its published schema."""
