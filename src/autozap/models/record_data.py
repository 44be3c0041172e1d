"""
Models for the tenant-owned records served by the generic record API.
Every record carries id, user_id and timestamps. A create payload is validated
as given; an update is merged into the stored record and the result is
validated as a whole.
"""
import re
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime, timedelta


class RecordBase(BaseModel):
    model_config = ConfigDict(extra='ignore')

    id: Optional[str] = None  # MongoDB _id
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ClientData(RecordBase):
    instance_id: Optional[str] = None
    name: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=8)
    email: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("phone_number")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        digits = re.sub(r"\D", "", value)
        if len(digits) < 8:
            raise ValueError("Phone number must have at least 8 digits")
        return digits


class AppointmentData(RecordBase):
    instance_id: Optional[str] = None
    contact_number: str = Field(..., min_length=1)
    contact_name: Optional[str] = None
    date: datetime
    duration: int = Field(default=60, gt=0, description="Duration in minutes")
    end_date: Optional[datetime] = None
    description: Optional[str] = None
    status: Literal["pending", "confirmed", "completed", "cancelled"] = "pending"

    @model_validator(mode="after")
    def _compute_end_date(self) -> "AppointmentData":
        self.end_date = self.date + timedelta(minutes=self.duration)
        return self


class ServiceData(RecordBase):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    duration: int = Field(default=60, gt=0, description="Duration in minutes")
    image_url: Optional[str] = None
    is_active: bool = True


class CatalogData(RecordBase):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    is_active: bool = True
    nodes: List[Dict[str, Any]] = []
    edges: List[Dict[str, Any]] = []


class OrderItem(BaseModel):
    name: str
    quantity: int = Field(default=1, gt=0)
    unit_price: float = Field(default=0, ge=0)


class OrderData(RecordBase):
    instance_id: Optional[str] = None
    contact_number: str = Field(..., min_length=1)
    contact_name: Optional[str] = None
    items: List[OrderItem] = []
    total_amount: Optional[float] = Field(default=None, ge=0)
    delivery_address: Optional[str] = None
    notes: Optional[str] = None
    status: Literal["pending", "confirmed", "preparing", "delivered", "cancelled"] = "pending"

    @model_validator(mode="after")
    def _compute_total(self) -> "OrderData":
        if self.total_amount is None:
            self.total_amount = round(sum(item.quantity * item.unit_price for item in self.items), 2)
        return self


class PixKeyData(RecordBase):
    label: str = Field(..., min_length=1, max_length=100)
    key: str = Field(..., min_length=1, max_length=200)
    key_type: Literal["cpf", "cnpj", "email", "phone", "random"] = "random"
    is_default: bool = False


class WorkingHoursData(RecordBase):
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday")
    start: str = Field(default="09:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    end: str = Field(default="18:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    is_open: bool = True

    @model_validator(mode="after")
    def _start_before_end(self) -> "WorkingHoursData":
        if self.is_open and self.start >= self.end:
            raise ValueError("start must be before end")
        return self
