"""Exception hierarchy shared by the whispr services."""

from typing import Optional


class WhisprError(Exception):
    """Base class for all whispr errors."""


class ConfigurationError(WhisprError):
    """Raised when configuration is missing or invalid."""


class IngestionError(WhisprError):
    """Raised when a metadata record cannot be durably stored."""

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        super().__init__(message)
        self.tenant_id = tenant_id


class SignatureVerificationError(WhisprError):
    """Raised when a webhook signature is missing, stale or does not match."""


class UnknownTenantError(WhisprError):
    """Raised when a tenant id has no profile in the tenant directory."""


class StageError(WhisprError):
    """Raised inside a pipeline stage; always recovered by the executor."""

    def __init__(self, message: str, stage_id: str, raw_response: Optional[str] = None):
        super().__init__(message)
        self.stage_id = stage_id
        self.raw_response = raw_response


class AnalysisResponseError(StageError):
    """The analysis collaborator returned non-JSON or schema-violating output."""


class DeliveryError(WhisprError):
    """Raised by a delivery channel when a send attempt fails."""

    def __init__(self, message: str, target_type: Optional[str] = None, retryable: bool = False):
        super().__init__(message)
        self.target_type = target_type
        self.retryable = retryable


class RecipientNotFoundError(DeliveryError):
    """No direct-message recipient could be resolved for a tenant."""


class SessionFinalizedError(WhisprError):
    """Raised on any attempt to modify a finalized session."""


class SessionNotFoundError(WhisprError):
    """Raised when a session id is unknown."""


class JobQueueError(WhisprError):
    """Raised when the job queue cannot accept or update a job."""
