"""Pydantic schemas for requests.

Request bodies are validated once here, at the HTTP boundary.  Responses are
returned as plain dicts built from the models.
"""
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from models import TicketStatus, TicketType


class IssueTicketRequest(BaseModel):
    ticket_type: TicketType = TicketType.normal
    manual_number: Optional[int] = Field(default=None, ge=0)
    organ_id: Optional[str] = None
    client_label: Optional[str] = Field(default=None, max_length=120)


class CallNextRequest(BaseModel):
    counter_id: str = Field(min_length=1)
    attendant_id: str = Field(min_length=1)
    organ_id: Optional[str] = None


class ManualCallRequest(BaseModel):
    ticket_number: int = Field(ge=0)
    ticket_type: TicketType = TicketType.normal
    counter_id: str = Field(min_length=1)
    attendant_id: str = Field(min_length=1)
    organ_id: Optional[str] = None


class TransitionRequest(BaseModel):
    new_status: TicketStatus
    reason: Optional[str] = None
    # Plain strings: unknown values are reported as an invalid transition.
    service_type: Optional[str] = None
    completion_status: Optional[str] = None
    counter_id: Optional[str] = None
    attendant_id: Optional[str] = None
    user_id: Optional[str] = None


class RepeatCallRequest(BaseModel):
    attendant_id: Optional[str] = None


class ResetRequest(BaseModel):
    user_id: Optional[str] = None


class SettingsUpdate(BaseModel):
    normal_priority: Optional[int] = Field(default=None, ge=1)
    preferential_priority: Optional[int] = Field(default=None, ge=1)
    manual_mode_enabled: Optional[bool] = None
    manual_mode_min_number: Optional[int] = Field(default=None, ge=0)
    manual_mode_min_number_preferential: Optional[int] = Field(default=None, ge=0)
    calling_system_active: Optional[bool] = None
    per_organ_numbers_enabled: Optional[bool] = None
    timezone: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone {value!r}")
        return value


class OrganUpsert(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    min_number_normal: int = Field(default=1, ge=0)
    min_number_preferential: int = Field(default=1, ge=0)
    active: bool = True
