from typing import Any, Dict


class DispatchError(Exception):
    """Base for failures the API reports to callers as a typed error body."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.code)
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": str(self), **self.context}


# validation

class ValidationFailure(DispatchError):
    status_code = 400
    code = "validation_failed"


class InvalidCallType(ValidationFailure):
    code = "invalid_call_type"


class InvalidStatus(ValidationFailure):
    code = "invalid_status"


class SupplyReportError(ValidationFailure):
    code = "invalid_supply_report"


# not found

class NotFound(DispatchError):
    status_code = 404
    code = "not_found"


class HospitalNotFound(NotFound):
    code = "hospital_not_found"


class AmbulanceNotFound(NotFound):
    code = "ambulance_not_found"


class RequestNotFound(NotFound):
    code = "request_not_found"


class NotificationNotFound(NotFound):
    code = "notification_not_found"


# conflict / forbidden

class Conflict(DispatchError):
    status_code = 409
    code = "conflict"


class NoAvailableAmbulances(Conflict):
    code = "no_available_ambulances"


class NoEligibleAmbulance(Conflict):
    code = "no_eligible_ambulance"


class PersistenceConflict(Conflict):
    code = "persistence_conflict"


class BreakTooEarly(Conflict):
    status_code = 403
    code = "break_too_early"


class AmbulanceBusy(Conflict):
    status_code = 403
    code = "ambulance_busy"
