"""
Error taxonomy for call processing, LOS pushes and billing reconciliation.

Every error carries the HTTP status the API answers with and a stable
``code`` that is also persisted as the prefix of a job's failure cause.
"""

from __future__ import annotations


class LoanCallError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class JobNotFound(LoanCallError):
    code = "JobNotFound"


class ApplicationNotFound(LoanCallError):
    code = "ApplicationNotFound"


class ArtifactUnavailable(LoanCallError):
    code = "ArtifactUnavailable"


class TranscriptionFailed(LoanCallError):
    code = "TranscriptionFailed"


class ExtractionFailed(LoanCallError):
    code = "ExtractionFailed"


class ExtractionMalformed(LoanCallError):
    code = "ExtractionMalformed"


class PushFailed(LoanCallError):
    code = "PushFailed"


class InvalidSignature(LoanCallError):
    status_code = 400
    code = "InvalidSignature"


class StoreUnavailable(LoanCallError):
    code = "StoreUnavailable"


class WebhookNotConfigured(LoanCallError):
    code = "WebhookNotConfigured"


class InvalidTransition(LoanCallError):
    """Raised when an edit would move a record into a state it cannot reach."""

    status_code = 409
    code = "InvalidTransition"


class InvalidRequest(LoanCallError):
    status_code = 400
    code = "InvalidRequest"
