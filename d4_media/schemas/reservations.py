from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict


class LineItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: Optional[int] = None
    description: Optional[str] = None
    quantity: int = 1
    rate: Optional[float] = None
    notes: Optional[str] = None


class AdditionalChargeDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    description: Optional[str] = None
    amount: float = 0


class CreateReservationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: Literal["equipment_checkout", "event_checkout", "rental", "studio_booking"]
    windowStart: datetime
    windowEnd: datetime
    requesterID: Optional[int] = None
    clientName: Optional[str] = None
    contactName: Optional[str] = None
    contactPhone: Optional[str] = None
    contactEmail: Optional[str] = None
    company: Optional[str] = None
    purpose: Optional[str] = None
    location: Optional[str] = None
    studioRoom: Optional[str] = None
    bookingType: Optional[str] = None
    eventName: Optional[str] = None
    eventType: Optional[str] = None
    teamSize: Optional[int] = None
    baseRate: Optional[float] = None
    discount: Optional[float] = None
    securityDeposit: Optional[float] = None
    additionalCharges: List[AdditionalChargeDto] = []
    items: List[LineItemDto] = []
    notes: Optional[str] = None
    operatorUserID: Optional[int] = None


class UpdateReservationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    clientName: Optional[str] = None
    contactName: Optional[str] = None
    contactPhone: Optional[str] = None
    contactEmail: Optional[str] = None
    company: Optional[str] = None
    purpose: Optional[str] = None
    location: Optional[str] = None
    eventName: Optional[str] = None
    teamSize: Optional[int] = None
    baseRate: Optional[float] = None
    discount: Optional[float] = None
    securityDeposit: Optional[float] = None
    additionalCharges: Optional[List[AdditionalChargeDto]] = None
    windowStart: Optional[datetime] = None
    windowEnd: Optional[datetime] = None
    notes: Optional[str] = None
    operatorUserID: Optional[int] = None


class ReservationDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    decision: Literal["approve", "reject"]
    notes: Optional[str] = None
    operatorUserID: Optional[int] = None


class StatusUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    notes: Optional[str] = None
    operatorUserID: Optional[int] = None


class ReturnItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reservationItemID: int
    condition: Optional[str] = None
    notes: Optional[str] = None


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    condition: str = "good"
    notes: Optional[str] = None
    items: List[ReturnItemDto] = []
    operatorUserID: Optional[int] = None


class ExtensionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newEndDate: datetime
    notes: Optional[str] = None
    operatorUserID: Optional[int] = None


class MarkLostRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = None
    lossAmount: Optional[float] = None
    operatorUserID: Optional[int] = None


class InvoiceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    operatorUserID: Optional[int] = None


class PriceEstimateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    baseRate: float = 0
    durationUnits: Optional[float] = None
    windowStart: Optional[datetime] = None
    windowEnd: Optional[datetime] = None
    unit: Literal["days", "hours"] = "days"
    context: Literal["studio", "event", "rental"] = "rental"
    items: List[LineItemDto] = []
    additionalCharges: List[Union[float, AdditionalChargeDto]] = []
    discount: float = 0
