"""Pydantic schemas for requests.

Request bodies use the camelCase field names the kiosk, counter and
admin screens send.  Responses are returned as plain dicts built by the
service layer.
"""
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import TicketStatus

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class JoinRequest(CamelModel):
    name: str = Field(min_length=1)
    service_id: str = Field(alias="serviceId")
    phone: Optional[str] = None
    channel: Literal["kiosk", "mobile"] = "kiosk"


class FinishRequest(BaseModel):
    status: TicketStatus


class AssignRequest(CamelModel):
    staff_id: str = Field(alias="staffId", min_length=1)


class ServiceCreate(CamelModel):
    id: Optional[str] = None
    name: str = Field(min_length=1)
    prefix: str = Field(pattern=r"^[A-Z]$")
    color_theme: str = Field(default="blue", alias="colorTheme")
    default_wait_minutes: int = Field(default=5, ge=1, alias="defaultWaitMinutes")


class ServiceUpdate(CamelModel):
    name: Optional[str] = None
    prefix: Optional[str] = Field(default=None, pattern=r"^[A-Z]$")
    color_theme: Optional[str] = Field(default=None, alias="colorTheme")
    default_wait_minutes: Optional[int] = Field(default=None, ge=1, alias="defaultWaitMinutes")


class OperatingHours(BaseModel):
    enabled: bool = True
    start: str = Field(default="09:00", pattern=HHMM_PATTERN)
    end: str = Field(default="17:00", pattern=HHMM_PATTERN)


class SettingsUpdate(CamelModel):
    whatsapp_enabled: Optional[bool] = Field(default=None, alias="whatsappEnabled")
    whatsapp_template: Optional[str] = Field(default=None, alias="whatsappTemplate")
    whatsapp_api_key: Optional[str] = Field(default=None, alias="whatsappApiKey")
    allow_mobile_entry: Optional[bool] = Field(default=None, alias="allowMobileEntry")
    mobile_entry_url: Optional[str] = Field(default=None, alias="mobileEntryUrl")
    operating_hours: Optional[OperatingHours] = Field(default=None, alias="operatingHours")
    country_code: Optional[str] = Field(default=None, alias="countryCode")

    @field_validator("country_code")
    @classmethod
    def digits_only(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lstrip("+")
        if v and not v.isdigit():
            raise ValueError("countryCode must contain digits only")
        return v

    def to_columns(self) -> dict:
        """Flatten into ``SystemSettings`` column names, dropping unset fields."""
        data = self.model_dump(exclude_none=True, exclude={"operating_hours"})
        if self.operating_hours is not None:
            data["hours_enabled"] = self.operating_hours.enabled
            data["hours_start"] = self.operating_hours.start
            data["hours_end"] = self.operating_hours.end
        return data


class SendWhatsAppRequest(CamelModel):
    phone: str
    message: str
    ticket_id: Optional[str] = Field(default=None, alias="ticketId")
    api_key: str = Field(alias="apiKey")
