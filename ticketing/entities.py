from datetime import datetime
from typing import Any, List, Optional

import pymongo
from beanie import Document, Indexed, PydanticObjectId
from pydantic import BaseModel, Field

from ticketing.constants import (AdminAction, AdminLogStatus, Currency, Device,
                                 EventStatus, PaymentMethod, PaymentStatus,
                                 RiskLevel, Role, SuspiciousReason,
                                 TargetType, TicketPaymentStatus, TicketStatus,
                                 VerificationMethod)
from ticketing.core import utcnow


class UserStats(BaseModel):
    total_tickets: int = 0
    total_spent: float = 0


class User(Document):
    """
    Registered account (attendee, organizer or admin)
    """
    name: str
    email: Indexed(str, unique=True)
    password_hash: str
    role: Role = "user"
    phone: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False

    # Brute force protection
    login_attempts: int = 0
    last_login_attempt: Optional[datetime] = None
    is_locked: bool = False
    lock_expires: Optional[datetime] = None
    last_login: Optional[datetime] = None
    last_active: Optional[datetime] = None

    admin_notes: Optional[str] = None
    updated_by: Optional[PydanticObjectId] = None
    stats: UserStats = Field(default_factory=UserStats)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "users"
        indexes = [
            [("role", pymongo.ASCENDING), ("is_active", pymongo.ASCENDING)],
            [("login_attempts", pymongo.DESCENDING)],
            [("created_at", pymongo.ASCENDING)],
        ]


class Event(Document):
    """
    Event that sells tickets
    """
    title: str
    description: str = ""
    category: str = "other"
    date: datetime
    end_date: datetime
    venue: str
    total_tickets: int
    available_tickets: int
    price: float
    currency: Currency = "USD"
    max_tickets_per_user: int = 10
    discount: float = 0
    discount_end_date: Optional[datetime] = None
    status: EventStatus = "draft"
    is_featured: bool = False
    organizer_id: PydanticObjectId
    admin_notes: Optional[str] = None
    approved_by: Optional[PydanticObjectId] = None
    approved_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "events"
        indexes = [
            [("status", pymongo.ASCENDING), ("date", pymongo.ASCENDING)],
            [("category", pymongo.ASCENDING)],
            [("organizer_id", pymongo.ASCENDING)],
            [("created_at", pymongo.ASCENDING)],
        ]


class Ticket(Document):
    """
    A booking of one or more admissions to an event
    """
    ticket_number: Indexed(str, unique=True)
    event_id: PydanticObjectId
    user_id: PydanticObjectId
    quantity: int
    total_amount: float
    currency: Currency = "USD"
    status: TicketStatus = "pending"
    payment_status: TicketPaymentStatus = "pending"
    payment_id: Optional[str] = None
    booking_date: datetime = Field(default_factory=utcnow)
    event_date: datetime
    qr_code: Optional[str] = None
    is_verified: bool = False
    verified_at: Optional[datetime] = None
    verified_by: Optional[PydanticObjectId] = None
    notes: Optional[str] = None
    refund_reason: Optional[str] = None
    refund_amount: float = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "tickets"
        indexes = [
            [("status", pymongo.ASCENDING)],
            [("user_id", pymongo.ASCENDING), ("booking_date", pymongo.DESCENDING)],
            [("payment_status", pymongo.ASCENDING)],
            [("verified_at", pymongo.DESCENDING)],
            [("event_id", pymongo.ASCENDING), ("user_id", pymongo.ASCENDING),
             ("status", pymongo.ASCENDING)],
        ]


class GatewayResponse(BaseModel):
    gateway: str
    transaction_id: Optional[str] = None
    response_code: Optional[str] = None
    response_message: Optional[str] = None
    raw_response: dict = Field(default_factory=dict)


class RefundDetails(BaseModel):
    refund_id: str
    refund_amount: float
    refund_reason: Optional[str] = None
    refunded_at: datetime = Field(default_factory=utcnow)
    refunded_by: Optional[PydanticObjectId] = None


class Payment(Document):
    """
    Payment attempt for a ticket, settled by a simulated gateway
    """
    payment_id: Indexed(str, unique=True)
    ticket_id: PydanticObjectId
    user_id: PydanticObjectId
    event_id: PydanticObjectId
    amount: float
    currency: Currency = "USD"
    payment_method: PaymentMethod
    status: PaymentStatus = "pending"
    client_secret: Optional[str] = None
    gateway_response: Optional[GatewayResponse] = None
    refund_details: Optional[RefundDetails] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "payments"
        indexes = [
            [("status", pymongo.ASCENDING), ("created_at", pymongo.ASCENDING)],
            [("payment_method", pymongo.ASCENDING)],
            [("ticket_id", pymongo.ASCENDING)],
            [("user_id", pymongo.ASCENDING)],
            [("event_id", pymongo.ASCENDING)],
        ]


class VerificationResult(BaseModel):
    is_valid: bool = False
    can_enter: bool = False
    reason: str = ""
    details: dict = Field(default_factory=dict)


class VerificationFlags(BaseModel):
    is_suspicious: bool = False
    suspicious_reasons: List[SuspiciousReason] = Field(default_factory=list)
    risk_score: int = 0


class RateLimitWindow(BaseModel):
    attempts_in_window: int = 1
    window_start: datetime = Field(default_factory=utcnow)


class VerificationLog(Document):
    """
    Audit record of one verification attempt, successful or not
    """
    ticket_id: Optional[PydanticObjectId] = None
    event_id: Optional[PydanticObjectId] = None
    user_id: Optional[PydanticObjectId] = None
    verified_by: PydanticObjectId
    verification_method: VerificationMethod
    verification_result: VerificationResult
    ip_address: str
    user_agent: Optional[str] = None
    device: Device = "unknown"
    verification_time: datetime = Field(default_factory=utcnow)
    response_time_ms: int = 0
    notes: Optional[str] = None
    flags: VerificationFlags = Field(default_factory=VerificationFlags)
    rate_limit: RateLimitWindow = Field(default_factory=RateLimitWindow)

    class Settings:
        name = "verification_logs"
        indexes = [
            [("event_id", pymongo.ASCENDING),
             ("verification_time", pymongo.DESCENDING)],
            [("verified_by", pymongo.ASCENDING),
             ("verification_time", pymongo.DESCENDING)],
            [("ip_address", pymongo.ASCENDING),
             ("verification_time", pymongo.DESCENDING)],
            [("flags.is_suspicious", pymongo.ASCENDING)],
        ]


class AdminLogDetails(BaseModel):
    before: Optional[Any] = None
    after: Optional[Any] = None
    changes: List[str] = Field(default_factory=list)
    reason: Optional[str] = None
    notes: Optional[str] = None


class AdminLogContext(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    request_id: Optional[str] = None


class RiskAssessment(BaseModel):
    risk_level: RiskLevel = "low"
    risk_score: int = 0
    risk_factors: List[str] = Field(default_factory=list)
    requires_review: bool = False


class Approval(BaseModel):
    required: bool = False
    approved_by: Optional[PydanticObjectId] = None
    approved_at: Optional[datetime] = None
    approval_notes: Optional[str] = None


class AdminLogError(BaseModel):
    code: str
    message: str


class AdminLog(Document):
    """
    Audit trail of administrative actions
    """
    admin_id: PydanticObjectId
    action: AdminAction
    target_type: TargetType
    target_id: Optional[str] = None
    details: AdminLogDetails = Field(default_factory=AdminLogDetails)
    context: AdminLogContext = Field(default_factory=AdminLogContext)
    risk_assessment: RiskAssessment = Field(default_factory=RiskAssessment)
    approval: Approval = Field(default_factory=Approval)
    status: AdminLogStatus = "completed"
    error: Optional[AdminLogError] = None
    duration_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "admin_logs"
        indexes = [
            [("admin_id", pymongo.ASCENDING), ("created_at", pymongo.DESCENDING)],
            [("action", pymongo.ASCENDING), ("created_at", pymongo.DESCENDING)],
            [("risk_assessment.risk_level", pymongo.ASCENDING),
             ("created_at", pymongo.DESCENDING)],
            [("status", pymongo.ASCENDING), ("created_at", pymongo.DESCENDING)],
        ]


class BlockedIP(Document):
    ip_address: Indexed(str, unique=True)
    reason: str = "Admin action"
    blocked_by: PydanticObjectId
    blocked_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    class Settings:
        name = "blocked_ips"


DOCUMENT_MODELS = [
    User, Event, Ticket, Payment, VerificationLog, AdminLog, BlockedIP
]
