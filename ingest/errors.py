"""
Error taxonomy for the ingestion pipeline.

Synchronous API calls raise these and views turn them into JSON payloads.
The background pipeline never raises them to a caller; outcomes are only
visible through the job's status and error message.
"""


class IngestError(Exception):
    """Base exception for all ingestion errors."""

    status_code = 500

    def __init__(self, message='', field=None):
        super().__init__(message)
        self.message = message
        self.field = field

    def as_dict(self):
        payload = {'error': self.message}
        if self.field:
            payload['field'] = self.field
        return payload


class ValidationError(IngestError):
    """Bad input, rejected before anything is enqueued."""

    status_code = 400


class InvalidInputError(ValidationError):
    """Upload credential request violates the file type or size policy."""

    pass


class ForbiddenError(IngestError):
    """Requester is neither the job owner nor an administrator."""

    status_code = 403


class NotFoundError(IngestError):
    """Unknown job or catalog target."""

    status_code = 404


class ConflictError(IngestError):
    """Duplicate submission, lost compare-and-swap, or lost lease."""

    status_code = 409


class TransientError(IngestError):
    """Retryable failure (network timeout, rate limit, phase timeout)."""

    status_code = 503


class FatalError(IngestError):
    """Terminal failure: unretryable or retries exhausted."""

    pass


class CatalogWriteError(FatalError):
    """Artifact was published but the catalog could not be updated."""

    pass
