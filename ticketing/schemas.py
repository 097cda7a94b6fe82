import ipaddress
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional

from beanie import PydanticObjectId
from bson.objectid import ObjectId
from pydantic import (AfterValidator, BaseModel, ConfigDict, EmailStr, Field,
                      field_validator, model_validator)

from ticketing.constants import (MAX_TICKETS_PER_BOOKING, Currency,
                                 PaymentMethod, Role)
from ticketing.core import to_naive_utc
from ticketing.entities import Ticket

Category = Literal["conference", "concert", "sports", "workshop", "festival",
                   "theatre", "exhibition", "networking", "other"]


def _object_id(value: str) -> str:
    if not ObjectId.is_valid(value):
        raise ValueError("invalid object id format")
    return value


ObjectIdStr = Annotated[str, AfterValidator(_object_id)]


# [Auth]
class RegisterRequest(BaseModel):
    name: str = Field(min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    role: Role = "user"
    phone: Optional[str] = Field(default=None, max_length=20)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=1, max_length=128)


class UserStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_tickets: int = 0
    total_spent: float = 0


class UserPublic(BaseModel):
    """
    User as exposed by the API, never carries the password hash
    """
    model_config = ConfigDict(from_attributes=True)

    id: PydanticObjectId
    name: str
    email: str
    role: Role
    phone: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    last_login: Optional[datetime] = None
    stats: UserStatsResponse = Field(default_factory=UserStatsResponse)
    created_at: Optional[datetime] = None


class AdminUserView(UserPublic):
    login_attempts: int = 0
    is_locked: bool = False
    lock_expires: Optional[datetime] = None
    last_active: Optional[datetime] = None
    admin_notes: Optional[str] = None


class AuthResponse(BaseModel):
    user: UserPublic
    token: str
    token_type: str = "bearer"


# [Event]
class CreateEventRequest(BaseModel):
    title: str = Field(min_length=3, max_length=100)
    description: str = Field(default="", max_length=2000)
    category: Category = "other"
    date: datetime
    end_date: datetime
    venue: str = Field(min_length=3, max_length=200)
    total_tickets: int = Field(gt=0)
    price: float = Field(ge=0)
    currency: Currency = "USD"
    max_tickets_per_user: int = Field(default=MAX_TICKETS_PER_BOOKING,
                                      ge=1,
                                      le=MAX_TICKETS_PER_BOOKING)
    discount: float = Field(default=0, ge=0, le=100)
    discount_end_date: Optional[datetime] = None
    is_featured: bool = False
    # Only honoured for admins, organizers always start from draft
    publish: bool = False

    @field_validator("date", "end_date", "discount_end_date")
    @classmethod
    def normalize_datetime(cls, value):
        return to_naive_utc(value)

    @model_validator(mode="after")
    def validate_dates(self) -> 'CreateEventRequest':
        if self.end_date <= self.date:
            raise ValueError("end_date must be after date")
        return self


class UpdateEventRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=3, max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)
    category: Optional[Category] = None
    date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    venue: Optional[str] = Field(default=None, min_length=3, max_length=200)
    total_tickets: Optional[int] = Field(default=None, gt=0)
    price: Optional[float] = Field(default=None, ge=0)
    currency: Optional[Currency] = None
    max_tickets_per_user: Optional[int] = Field(default=None,
                                                ge=1,
                                                le=MAX_TICKETS_PER_BOOKING)
    discount: Optional[float] = Field(default=None, ge=0, le=100)
    discount_end_date: Optional[datetime] = None
    is_featured: Optional[bool] = None

    @field_validator("date", "end_date", "discount_end_date")
    @classmethod
    def normalize_datetime(cls, value):
        return to_naive_utc(value)

    @model_validator(mode="after")
    def validate_dates(self) -> 'UpdateEventRequest':
        if self.date and self.end_date and self.end_date <= self.date:
            raise ValueError("end_date must be after date")
        return self


class CategoryCount(BaseModel):
    category: str
    count: int


# [Ticket]
class BookTicketRequest(BaseModel):
    event_id: ObjectIdStr
    quantity: int = Field(default=1, ge=1, le=MAX_TICKETS_PER_BOOKING)


class CancelTicketRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class QRCodeResponse(BaseModel):
    ticket_number: str
    qr_code: str


class EventTicketsResponse(BaseModel):
    tickets: List[Ticket]
    stats: Dict[str, Any]


# [Payment]
class CreatePaymentIntentRequest(BaseModel):
    ticket_id: ObjectIdStr
    payment_method: Optional[PaymentMethod] = None


class PaymentIntentResponse(BaseModel):
    payment_id: str
    client_secret: Optional[str] = None
    amount: float
    currency: str
    gateway: str
    status: str


class ConfirmPaymentRequest(BaseModel):
    payment_id: str = Field(min_length=1)


class RefundPaymentRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    amount: Optional[float] = Field(default=None, gt=0)


# [Verification]
class ScanRequest(BaseModel):
    qr_data: str = Field(min_length=1)
    verification_method: Literal["qr", "manual"] = "qr"


class TicketNumberRequest(BaseModel):
    ticket_number: str = Field(min_length=1, max_length=50)


class BulkVerificationRequest(BaseModel):
    tickets: List[str] = Field(min_length=1)
    verification_method: Literal["qr", "manual"] = "manual"


class VerificationResponse(BaseModel):
    verification_result: Dict[str, Any]
    ticket: Optional[Dict[str, Any]] = None


# [Admin]
class ApproveEventRequest(BaseModel):
    action: Literal["approve", "reject"]
    notes: Optional[str] = Field(default=None, max_length=1000)


class UpdateUserRequest(BaseModel):
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class IPBlockRequest(BaseModel):
    action: Literal["block", "unblock"]
    ip_address: str
    reason: Optional[str] = Field(default=None, max_length=500)
    duration_minutes: Optional[int] = Field(default=None, gt=0)

    @field_validator("ip_address")
    @classmethod
    def validate_ip(cls, value: str) -> str:
        return str(ipaddress.ip_address(value.strip()))
