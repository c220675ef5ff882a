"""Error taxonomy for the retrieval pipeline."""

from __future__ import annotations


class RetrievalError(RuntimeError):
    pass


class ModelServiceError(RetrievalError):
    """The model service could not be reached or rejected the request."""


class SynthesisFailure(RetrievalError):
    """The model never produced a valid search specification."""


class AuthFailure(RetrievalError):
    pass


class SubmissionFailure(RetrievalError):
    pass


class ExecutionFailure(RetrievalError):
    """The backend reported a failed execution (or it could not be observed)."""


class ReportFailure(RetrievalError):
    pass


class FetchFailure(RetrievalError):
    pass


class RetrievalExhausted(RetrievalError):
    """Every outer attempt failed; the only error surfaced to callers."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts
