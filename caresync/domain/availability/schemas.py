"""Availability domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, field_validator, model_validator

from ...shared.validators import parse_weekday, time_to_minutes, validate_time_string


class TemplateEntry(BaseModel):
    """One working window in a doctor's weekly template"""

    weekday: int  # Monday=0 ... Sunday=6; day names are accepted on input
    start_time: str
    end_time: str
    slot_duration: int  # minutes

    @field_validator("weekday", mode="before")
    @classmethod
    def validate_weekday(cls, v: Union[int, str]):
        return parse_weekday(v)

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_times(cls, v):
        return validate_time_string(v)

    @field_validator("slot_duration")
    @classmethod
    def validate_duration(cls, v):
        if v <= 0:
            raise ValueError("slot_duration must be a positive number of minutes")
        return v

    @model_validator(mode="after")
    def validate_window(self):
        if time_to_minutes(self.start_time) >= time_to_minutes(self.end_time):
            raise ValueError("start_time must be before end_time")
        return self


class GenerateSlotsRequest(BaseModel):
    start_date: date
    end_date: date
    template: list[TemplateEntry]
    excluded_dates: list[date] = []

    @model_validator(mode="after")
    def validate_range(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class SlotCreate(BaseModel):
    """Schema for adding a single slot by hand"""

    doctor: Union[int, str]
    date: date
    start_time: str
    end_time: str

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_times(cls, v):
        return validate_time_string(v)


class SlotUpdate(BaseModel):
    """Administrative status change: available <-> blocked"""

    status: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_times(cls, v):
        if v is not None:
            return validate_time_string(v)
        return v


class TimeSlotResponse(BaseModel):
    id: int
    doctor_id: int
    date: date
    start_time: str
    end_time: str
    status: str
    external_event_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    created_by: Optional[str] = None

    class Config:
        from_attributes = True


class GenerateSlotsResponse(BaseModel):
    created: int
    slots: list[TimeSlotResponse]
