class PipelineError(Exception):
    """Base error for dispatch and verification pipeline failures."""


class CircuitOpenError(PipelineError):
    """Raised when a controller's breaker blocks a side effect."""

    def __init__(self, controller_key: str, recent_failures: int) -> None:
        super().__init__(f"controller circuit open: {controller_key} (recent_failures={recent_failures})")
        self.controller_key = controller_key
        self.recent_failures = recent_failures


class EnqueueFailure(PipelineError):
    """Raised when the side-effecting submission itself could not be performed."""


class IdempotencyUnavailableError(PipelineError):
    """Raised when the idempotency store cannot confirm a reservation."""


class FetchError(PipelineError):
    """Raised when evidence could not be fetched from a controller."""


class FetchTimeout(FetchError):
    """Raised when an evidence fetch exceeded its timeout."""


class HashMismatchError(PipelineError):
    """Raised when recomputed content digests differ from a stored receipt or manifest."""

    def __init__(self, stored: str | None, recomputed: str | None) -> None:
        super().__init__(f"hash mismatch: stored={stored} recomputed={recomputed}")
        self.stored = stored
        self.recomputed = recomputed


class SignatureInvalidError(PipelineError):
    """Raised when a ledger signature does not verify."""


class UnsupportedAlgorithmError(PipelineError):
    """Raised for unknown signing algorithms or backends."""


class MissingKeyMaterialError(PipelineError):
    """Raised when the configured signing backend lacks the key it needs."""


class NoEvidenceError(PipelineError):
    """Raised when a ledger commit finds no new evidence hashes."""
