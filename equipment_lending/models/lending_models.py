from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


REQUEST_PENDING = "PENDING"
REQUEST_APPROVED = "APPROVED"
REQUEST_REJECTED = "REJECTED"
REQUEST_RETURNED = "RETURNED"
REQUEST_STATUSES = (REQUEST_PENDING, REQUEST_APPROVED, REQUEST_REJECTED, REQUEST_RETURNED)

BOOKING_ACTIVE = "ACTIVE"
BOOKING_RELEASED = "RELEASED"


class LabUser(Base):
    __tablename__ = "Users"

    UserID = Column(Integer, primary_key=True)
    FullName = Column(String(255), nullable=False)
    Email = Column(String(255))
    Role = Column(String(50), nullable=False, default="STUDENT")
    IsActive = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())


class Equipment(Base):
    __tablename__ = "Equipment"
    __table_args__ = (
        CheckConstraint("TotalQuantity >= 0", name="CK_Equipment_TotalQuantity"),
        CheckConstraint("AvailableQuantity >= 0", name="CK_Equipment_AvailableQuantity"),
    )

    EquipmentID = Column(Integer, primary_key=True)
    EquipmentName = Column(String(100), nullable=False)
    Category = Column(String(50), nullable=False)
    ConditionStatus = Column(String(50), default="Good")
    TotalQuantity = Column(Integer, nullable=False)
    AvailableQuantity = Column(Integer, nullable=False)
    Description = Column(Text)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    BorrowRequests = relationship("BorrowRequest", back_populates="Equipment")
    Bookings = relationship("EquipmentBooking", back_populates="Equipment")


class BorrowRequest(Base):
    __tablename__ = "BorrowRequests"
    __table_args__ = (
        CheckConstraint("Quantity >= 1", name="CK_BorrowRequests_Quantity"),
        CheckConstraint("FromDate <= ToDate", name="CK_BorrowRequests_DateRange"),
    )

    RequestID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    RequestedBy = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    ApprovedBy = Column(Integer, ForeignKey("Users.UserID"))
    Quantity = Column(Integer, nullable=False)
    FromDate = Column(Date, nullable=False)
    ToDate = Column(Date, nullable=False)
    ReturnDate = Column(Date)
    Reason = Column(String(1000))
    Status = Column(String(20), nullable=False, default=REQUEST_PENDING, index=True)
    Remarks = Column(String(1000))
    ConditionAfterUse = Column(String(100))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("Equipment", back_populates="BorrowRequests")
    Requester = relationship("LabUser", foreign_keys=[RequestedBy])
    Approver = relationship("LabUser", foreign_keys=[ApprovedBy])
    Bookings = relationship(
        "EquipmentBooking",
        back_populates="BorrowRequest",
        cascade="all, delete-orphan",
        order_by="EquipmentBooking.BookingDate",
    )


class EquipmentBooking(Base):
    __tablename__ = "EquipmentBookings"
    __table_args__ = (
        UniqueConstraint("RequestID", "BookingDate", name="UQ_EquipmentBookings_Request_Date"),
        Index("IX_EquipmentBookings_Equipment_Date_Status", "EquipmentID", "BookingDate", "Status"),
    )

    BookingID = Column(Integer, primary_key=True)
    RequestID = Column(Integer, ForeignKey("BorrowRequests.RequestID"), nullable=False, index=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    BookingDate = Column(Date, nullable=False)
    Quantity = Column(Integer, nullable=False)
    Status = Column(String(20), nullable=False, default=BOOKING_ACTIVE)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    BorrowRequest = relationship("BorrowRequest", back_populates="Bookings")
    Equipment = relationship("Equipment", back_populates="Bookings")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
