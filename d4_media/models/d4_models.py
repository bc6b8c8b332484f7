from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False, unique=True)
    EquipmentCode = Column(String(50), unique=True)
    Category = Column(String(50), nullable=False)
    Description = Column(String(1000))
    Specifications = Column(String(1000))
    StudioDailyRate = Column(Numeric(10, 2), default=0)
    StudioHourlyRate = Column(Numeric(10, 2))
    EventDailyRate = Column(Numeric(10, 2), default=0)
    EventHourlyRate = Column(Numeric(10, 2))
    RentalDailyRate = Column(Numeric(10, 2), default=0)
    RentalHourlyRate = Column(Numeric(10, 2))
    RentalWeeklyRate = Column(Numeric(10, 2))
    RentalMonthlyRate = Column(Numeric(10, 2))
    UsageTypes = Column(JSON, default=lambda: ["studio", "event", "rental"])
    AvailableQuantity = Column(Integer, nullable=False, default=1)
    CurrentQuantityOut = Column(Integer, nullable=False, default=0)
    CheckoutStatus = Column(String(30), nullable=False, default="available")
    Condition = Column(String(20), default="good")
    Location = Column(String(255), default="storage")
    SerialNumber = Column(String(255))
    Brand = Column(String(255))
    Model = Column(String(255))
    Notes = Column(String(1000))
    IsActive = Column(Boolean, nullable=False, default=True)
    Version = Column(Integer, nullable=False, default=1)
    CreatedBy = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    ReservationItems = relationship("ReservationItem", back_populates="Equipment")
    MaintenanceRecords = relationship("MaintenanceRecord", back_populates="Equipment", order_by="MaintenanceRecord.MaintenanceID")
    InOutRecords = relationship("InOutRecord", back_populates="Equipment", order_by="InOutRecord.RecordID")


class Reservation(Base):
    __tablename__ = "Reservations"

    ReservationID = Column(Integer, primary_key=True)
    ReservationNumber = Column(String(30), nullable=False, unique=True)
    Kind = Column(String(30), nullable=False)
    Status = Column(String(30), nullable=False)
    RequesterID = Column(Integer)
    ClientName = Column(String(255))
    ContactName = Column(String(255))
    ContactPhone = Column(String(50))
    ContactEmail = Column(String(255))
    Company = Column(String(255))
    Purpose = Column(String(1000))
    Location = Column(String(255))
    StudioRoom = Column(String(100))
    BookingType = Column(String(20))
    EventName = Column(String(255))
    EventType = Column(String(30))
    TeamSize = Column(Integer)
    WindowStart = Column(DateTime, nullable=False)
    WindowEnd = Column(DateTime, nullable=False)
    ActualStart = Column(DateTime)
    ActualReturn = Column(DateTime)
    DurationUnits = Column(Float)
    BaseRate = Column(Numeric(10, 2), default=0)
    EquipmentCost = Column(Numeric(10, 2), default=0)
    AdditionalCharges = Column(JSON, default=list)
    Discount = Column(Numeric(10, 2), default=0)
    SecurityDeposit = Column(Numeric(10, 2), default=0)
    Subtotal = Column(Numeric(10, 2), default=0)
    TotalAmount = Column(Numeric(10, 2), default=0)
    ApprovedBy = Column(Integer)
    ApprovalDate = Column(DateTime)
    ApprovalNotes = Column(String(1000))
    ConfirmedBy = Column(Integer)
    ConfirmedAt = Column(DateTime)
    ReturnCondition = Column(String(20))
    ReturnNotes = Column(String(1000))
    ReturnedBy = Column(Integer)
    LossAmount = Column(Numeric(10, 2))
    InvoiceID = Column(Integer)
    Notes = Column(String(2000))
    LastReminderDate = Column(DateTime)
    CreatedBy = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Items = relationship(
        "ReservationItem",
        back_populates="Reservation",
        cascade="all, delete-orphan",
        order_by="ReservationItem.ReservationItemID",
    )


class ReservationItem(Base):
    __tablename__ = "ReservationItems"

    ReservationItemID = Column(Integer, primary_key=True)
    ReservationID = Column(Integer, ForeignKey("Reservations.ReservationID"), nullable=False)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"))
    Description = Column(String(255))
    Quantity = Column(Integer, nullable=False, default=1)
    Rate = Column(Numeric(10, 2), default=0)
    TotalAmount = Column(Numeric(10, 2), default=0)
    Status = Column(String(20), nullable=False, default="requested")
    ReturnCondition = Column(String(20))
    ReturnedDate = Column(DateTime)
    Notes = Column(String(500))

    Reservation = relationship("Reservation", back_populates="Items")
    Equipment = relationship("Equipment", back_populates="ReservationItems")


class Invoice(Base):
    __tablename__ = "Invoices"
    __table_args__ = (UniqueConstraint("ReservationID", name="uq_invoice_reservation"),)

    InvoiceID = Column(Integer, primary_key=True)
    InvoiceNumber = Column(String(30), nullable=False, unique=True)
    ReservationID = Column(Integer, ForeignKey("Reservations.ReservationID"))
    InvoiceType = Column(String(30), nullable=False)
    ClientName = Column(String(255))
    ClientPhone = Column(String(50))
    ClientEmail = Column(String(255))
    Subtotal = Column(Numeric(10, 2), default=0)
    Discount = Column(Numeric(10, 2), default=0)
    Total = Column(Numeric(10, 2), default=0)
    Status = Column(String(20), nullable=False, default="draft")
    DueDate = Column(DateTime)
    Notes = Column(String(2000))
    CreatedBy = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())

    Items = relationship(
        "InvoiceItem",
        back_populates="Invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.InvoiceItemID",
    )


class InvoiceItem(Base):
    __tablename__ = "InvoiceItems"

    InvoiceItemID = Column(Integer, primary_key=True)
    InvoiceID = Column(Integer, ForeignKey("Invoices.InvoiceID"), nullable=False)
    ItemType = Column(String(20), nullable=False)
    Description = Column(String(500), nullable=False)
    Quantity = Column(Float, default=1)
    Rate = Column(Numeric(10, 2), default=0)
    Amount = Column(Numeric(10, 2), default=0)

    Invoice = relationship("Invoice", back_populates="Items")


class MaintenanceRecord(Base):
    __tablename__ = "MaintenanceRecords"

    MaintenanceID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    MaintenanceType = Column(String(50), nullable=False)
    Description = Column(String(1000), nullable=False)
    Status = Column(String(20), nullable=False, default="open")
    Cost = Column(Numeric(10, 2))
    PerformedBy = Column(String(200))
    StartedAt = Column(DateTime, nullable=False)
    CompletedAt = Column(DateTime)
    ConditionAfter = Column(String(20))
    Notes = Column(String(1000))

    Equipment = relationship("Equipment", back_populates="MaintenanceRecords")


class InOutRecord(Base):
    __tablename__ = "InOutRecords"

    RecordID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    ReservationID = Column(Integer, ForeignKey("Reservations.ReservationID"))
    Direction = Column(String(3), nullable=False)
    Quantity = Column(Integer, nullable=False)
    Reference = Column(String(255))
    Condition = Column(String(20))
    OperatorUserID = Column(Integer)
    RecordedAt = Column(DateTime, nullable=False)
    Notes = Column(String(500))

    Equipment = relationship("Equipment", back_populates="InOutRecords")


class StudioRoom(Base):
    __tablename__ = "StudioRooms"

    RoomID = Column(Integer, primary_key=True)
    Name = Column(String(100), nullable=False, unique=True)
    Version = Column(Integer, nullable=False, default=1)
    UpdatedDate = Column(DateTime)


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    ReservationID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Recipient = Column(String(50))
    Payload = Column(String(2000))
    AttachDocument = Column(Boolean, default=False)
    Attempts = Column(Integer, nullable=False, default=0)
    LastError = Column(String(500))
    DeliveryID = Column(String(100))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
