"""Error taxonomy shared by the gateway, the state model and the HTTP layer."""


class LeadtrackError(Exception):
    """Base class for every error raised by leadtrack."""


class GatewayError(LeadtrackError):
    """A persistence call failed."""

    def __init__(self, message: str = "", operation: str = None):
        super().__init__(message)
        self.operation = operation


class NotFound(GatewayError):
    """The target row does not exist (or was deleted concurrently)."""


class ValidationRejected(GatewayError):
    """The backend rejected the payload."""


# The update contract calls this outcome a conflict
Conflict = ValidationRejected


class SchemaMissing(GatewayError):
    """Expected tables are absent; the whole store needs setup."""


class TransientNetwork(GatewayError):
    """Connection failure or timeout. Never retried automatically."""


class InvalidTransition(LeadtrackError):
    """The lead state model refused an update intent."""


class DuplicateColdCheck(InvalidTransition):
    """A cold check-in was already recorded for that day."""


class PermissionDenied(LeadtrackError):
    pass


class InsufficientPoints(LeadtrackError):
    pass
