from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class EquipmentUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: Optional[int] = None
    name: Optional[str] = None
    equipmentCode: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    specifications: Optional[str] = None
    studioDailyRate: Optional[float] = None
    studioHourlyRate: Optional[float] = None
    eventDailyRate: Optional[float] = None
    eventHourlyRate: Optional[float] = None
    rentalDailyRate: Optional[float] = None
    rentalHourlyRate: Optional[float] = None
    rentalWeeklyRate: Optional[float] = None
    rentalMonthlyRate: Optional[float] = None
    usageTypes: Optional[List[str]] = None
    availableQuantity: Optional[int] = None
    condition: Optional[str] = None
    location: Optional[str] = None
    serialNumber: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    notes: Optional[str] = None


class MaintenanceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: Literal["start", "complete", "retire"]
    maintenanceType: Optional[str] = "repair"
    description: Optional[str] = None
    performedBy: Optional[str] = None
    cost: Optional[float] = None
    conditionAfter: Optional[str] = "good"
    notes: Optional[str] = None


class InOutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    direction: Literal["out", "in"]
    quantity: int = 1
    reference: Optional[str] = None
    condition: Optional[str] = None
    operatorUserID: Optional[int] = None
    notes: Optional[str] = None
