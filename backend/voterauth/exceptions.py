"""
Exception classes for the biometric verification core.

Most outcomes of a verification attempt are returned as result values.
Exceptions are reserved for the cases where the caller cannot carry on
normally: a broken observation source, a malformed embedding, or a
registration that would violate population uniqueness.
"""
from typing import Any, Dict, Optional


class VoterAuthError(Exception):
    """
    Base class for all errors raised by the verification core.

    Args:
        message: Human-readable error message
        context: Extra details for structured logging
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} [{details}]"

    def to_dict(self) -> Dict[str, Any]:
        """Dictionary form for logs and API error bodies"""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class SourceError(VoterAuthError):
    """The camera or a face model failed while producing observations."""


class ObservationStreamEnded(SourceError):
    """A finite observation stream ran out before the check terminated."""


class ModelsNotLoadedError(SourceError):
    """Face models were used before the caller's load barrier completed."""


class DimensionMismatchError(VoterAuthError, ValueError):
    """
    Two embeddings of unequal length were compared, or an embedding does not
    have the configured dimension. This is a programming or configuration
    defect and is never converted into a verdict.
    """

    def __init__(self, expected: int, actual: int, message: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        super().__init__(
            message or f"Embedding dimension mismatch: expected {expected}, got {actual}",
            {"expected": expected, "actual": actual},
        )


class RegistrationError(VoterAuthError):
    """Base class for population update failures."""


class DuplicateIdentityError(RegistrationError):
    """The identity key is already registered."""


class NearDuplicateEmbeddingError(RegistrationError):
    """The embedding is within the duplicate threshold of another identity."""

    def __init__(self, existing_identity_id: str, distance: float):
        self.existing_identity_id = existing_identity_id
        self.distance = distance
        super().__init__(
            "Face is already registered to another identity",
            {"distance": round(distance, 4)},
        )
