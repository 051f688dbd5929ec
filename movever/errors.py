class MoveverError(Exception):
    """Base for domain errors surfaced to callers with an HTTP status."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(MoveverError):
    status_code = 422


class NotFound(MoveverError):
    status_code = 404


class NotAuthorized(MoveverError):
    status_code = 403


class StateConflict(MoveverError):
    """Operation is not valid for the entity's current state."""
    status_code = 409


class DuplicateMatch(StateConflict):
    def __init__(self, trip_id: int, request_id: int):
        super().__init__(f"Match request already exists for trip {trip_id} and request {request_id}")


class NotPending(StateConflict):
    def __init__(self, match_id: int, status: str | None = None):
        msg = f"Match {match_id} is not pending"
        if status:
            msg += f" (status: {status})"
        super().__init__(msg)


class InvalidTransition(StateConflict):
    pass


class InvalidCode(StateConflict):
    pass


class CooldownActive(StateConflict):
    status_code = 429

    def __init__(self, remaining_minutes: int):
        super().__init__(f"Please wait {remaining_minutes} minute(s) before requesting another code.")
        self.remaining_minutes = remaining_minutes


class PaymentRequired(StateConflict):
    status_code = 402


class ExternalServiceError(MoveverError):
    status_code = 502
