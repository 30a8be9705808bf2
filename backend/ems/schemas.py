from datetime import datetime
from typing import Any, List, Optional

from pydantic import field_validator, model_validator
from sqlmodel import Field, SQLModel

from .models import MAX_QUANTITY, Notification, PatientCareRecord, as_utc


class HospitalCreate(SQLModel):
    name: str = Field(min_length=1)
    latitude: float
    longitude: float


class AmbulanceRegister(SQLModel):
    name: str = Field(min_length=1)
    designation_level: int = Field(ge=1, le=4)
    shift_length_hours: float = Field(gt=0)
    shift_start: Optional[datetime] = None
    latitude: float = 0.0
    longitude: float = 0.0

    @field_validator("shift_start")
    @classmethod
    def shift_start_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


class TransportRequestCreate(SQLModel):
    patient_name: str = Field(min_length=1)
    age: int = Field(ge=0)
    chief_complaint: str = Field(min_length=1)
    # validated against the known call types by the dispatch engine
    call_type: str
    hospital_id: int
    hospital_latitude: Optional[float] = None
    hospital_longitude: Optional[float] = None


class LocationUpdate(SQLModel):
    name: str = Field(min_length=1)
    latitude: float
    longitude: float


class StatusUpdate(SQLModel):
    ambulance_id: int
    status: str

    @model_validator(mode="before")
    @classmethod
    def accept_event_keys(cls, data: Any) -> Any:
        # field units may echo the statusUpdate event shape ({ambulanceId, status})
        if isinstance(data, dict) and "ambulance_id" not in data and "ambulanceId" in data:
            data = {**data, "ambulance_id": data["ambulanceId"]}
        return data


class BreakRequest(SQLModel):
    ambulance_id: int


class StockLevel(SQLModel):
    supply_name: str = Field(min_length=1)
    quantity: int = Field(ge=-MAX_QUANTITY, le=MAX_QUANTITY)
    par_level: int = Field(ge=0, le=MAX_QUANTITY)


class CareRecordCreate(SQLModel):
    transport_request_id: int
    patient_name: str = Field(min_length=1)
    chief_complaint: str = Field(min_length=1)
    age: Optional[int] = None
    gender: Optional[str] = None
    vital_signs: Optional[str] = None
    medical_history: Optional[str] = None
    assessment: Optional[str] = None
    interventions: Optional[str] = None
    narrative: Optional[str] = None
    timestamps: Optional[str] = None
    crew_info: Optional[str] = None
    outcome: Optional[str] = None
    # mapping of supply name -> units used, or the same as a JSON string
    supply_usage: Optional[Any] = None


class AssignmentResult(SQLModel):
    request_id: int
    ambulance_id: int
    ambulance_name: str
    needs_approval: bool
    travel_minutes: float
    message: str


class ClosestAmbulance(SQLModel):
    name: str
    eta_minutes: int


class PendingTransport(SQLModel):
    id: int
    status: str
    ambulance_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class BreakGrant(SQLModel):
    ambulance_id: int
    break_ends_at: datetime
    message: str


class CareRecordResult(SQLModel):
    record: PatientCareRecord
    notifications: List[Notification] = []
