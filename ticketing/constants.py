from typing import Literal

# Every error the API can return is declared here so that error_code
# and message stay consistent between endpoints
ERROR_CODE_DICT = {
    "EVENT_NOT_FOUND": {
        "code": "EVENT_NOT_FOUND",
        "message": "event not found"
    },
    "INVALID_QUOTA": {
        "code": "INVALID_QUOTA",
        "message": "ticket quota cannot be less than tickets already sold"
    },
    "SOLD_OUT": {
        "code": "SOLD_OUT",
        "message": "not enough tickets available"
    },
    "EVENT_NOT_AVAILABLE": {
        "code": "EVENT_NOT_AVAILABLE",
        "message": "event is not available for booking"
    },
    "EVENT_IN_PAST": {
        "code": "EVENT_IN_PAST",
        "message": "cannot book tickets for past events"
    },
    "INVALID_EVENT_DATES": {
        "code": "INVALID_EVENT_DATES",
        "message": "end_date must be after date"
    },
    "EVENT_HAS_TICKETS": {
        "code": "EVENT_HAS_TICKETS",
        "message": "event has active tickets and cannot be deleted"
    },
    "INVALID_EVENT_STATE": {
        "code": "INVALID_EVENT_STATE",
        "message": "event cannot change to the requested status"
    },
    "TICKET_LIMIT_EXCEEDED": {
        "code": "TICKET_LIMIT_EXCEEDED",
        "message": "ticket limit per user exceeded for this event"
    },
    "TICKET_NOT_FOUND": {
        "code": "TICKET_NOT_FOUND",
        "message": "ticket not found"
    },
    "TICKET_NOT_CANCELLABLE": {
        "code": "TICKET_NOT_CANCELLABLE",
        "message": "ticket cannot be cancelled"
    },
    "TICKET_NOT_VALID": {
        "code": "TICKET_NOT_VALID",
        "message": "ticket is not valid for entry"
    },
    "TICKET_ALREADY_USED": {
        "code": "TICKET_ALREADY_USED",
        "message": "ticket already used"
    },
    "TICKET_GENERATION_FAILED": {
        "code": "SERVER-500",
        "message": "failed to generate unique ticket number"
    },
    "QR_GENERATION_FAILED": {
        "code": "QR_GENERATION_FAILED",
        "message": "failed to generate QR code"
    },
    "INVALID_QR_DATA": {
        "code": "INVALID_QR_DATA",
        "message": "invalid QR code data format"
    },
    "PAYMENT_NOT_FOUND": {
        "code": "PAYMENT_NOT_FOUND",
        "message": "payment not found"
    },
    "PAYMENT_NOT_ALLOWED": {
        "code": "PAYMENT_NOT_ALLOWED",
        "message": "ticket is not awaiting payment"
    },
    "PAYMENT_NOT_PENDING": {
        "code": "PAYMENT_NOT_PENDING",
        "message": "payment is not pending"
    },
    "PAYMENT_NOT_REFUNDABLE": {
        "code": "PAYMENT_NOT_REFUNDABLE",
        "message": "payment cannot be refunded"
    },
    "GATEWAY_ERROR": {
        "code": "GATEWAY_ERROR",
        "message": "payment gateway error"
    },
    "USER_NOT_FOUND": {
        "code": "USER_NOT_FOUND",
        "message": "user not found"
    },
    "EMAIL_TAKEN": {
        "code": "EMAIL_TAKEN",
        "message": "email already registered"
    },
    "WEAK_PASSWORD": {
        "code": "WEAK_PASSWORD",
        "message": "password does not meet strength requirements"
    },
    "PASSWORD_UNCHANGED": {
        "code": "PASSWORD_UNCHANGED",
        "message": "new password must differ from the current one"
    },
    "INVALID_CREDENTIALS": {
        "code": "INVALID_CREDENTIALS",
        "message": "invalid credentials"
    },
    "ACCOUNT_INACTIVE": {
        "code": "ACCOUNT_INACTIVE",
        "message": "account is deactivated"
    },
    "ACCOUNT_LOCKED": {
        "code": "ACCOUNT_LOCKED",
        "message": "account is temporarily locked"
    },
    "MISSING_TOKEN": {
        "code": "MISSING_TOKEN",
        "message": "missing token"
    },
    "INVALID_TOKEN": {
        "code": "INVALID_TOKEN",
        "message": "invalid or expired token"
    },
    "FORBIDDEN": {
        "code": "FORBIDDEN",
        "message": "forbidden"
    },
    "SELF_MODIFICATION": {
        "code": "SELF_MODIFICATION",
        "message": "cannot modify your own account"
    },
    "RATE_LIMITED": {
        "code": "RATE_LIMITED",
        "message": "too many requests, please try again later"
    },
    "IP_BLOCKED": {
        "code": "IP_BLOCKED",
        "message": "access denied from this IP address"
    },
    "INVALID_ACTION": {
        "code": "INVALID_ACTION",
        "message": "invalid action"
    },
    "BULK_LIMIT_EXCEEDED": {
        "code": "BULK_LIMIT_EXCEEDED",
        "message": "maximum 100 tickets can be verified at once"
    },
    "MONGO_CONNECTION_ERROR": {
        "code": "MONGO_CONNECTION_ERROR",
        "message": "mongo connection error"
    },
    "INVALID_OBJECT_ID": {
        "code": "INVALID_OBJECT_ID",
        "message": "invalid object id format"
    }
}

Role = Literal["user", "organizer", "admin"]
EventStatus = Literal["draft", "pending", "published", "rejected",
                      "cancelled"]
TicketStatus = Literal["pending", "confirmed", "cancelled", "refunded",
                       "used"]
TicketPaymentStatus = Literal["pending", "completed", "failed", "refunded"]
PaymentStatus = Literal["pending", "processing", "completed", "failed",
                        "cancelled", "refunded"]
PaymentMethod = Literal["stripe", "razorpay", "paypal", "cash",
                        "bank_transfer"]
Currency = Literal["USD", "EUR", "GBP", "INR", "CAD", "AUD"]
VerificationMethod = Literal["qr", "manual", "bulk"]
Device = Literal["mobile", "tablet", "desktop", "unknown"]
SuspiciousReason = Literal["multiple_failed_attempts", "unusual_location",
                           "unusual_time", "suspicious_ip",
                           "rate_limit_exceeded", "signature_mismatch"]
AdminAction = Literal["user_create", "user_update", "user_delete",
                      "user_deactivate", "user_reactivate", "event_approve",
                      "event_reject", "event_publish", "event_unpublish",
                      "ticket_verify", "ticket_cancel", "ticket_refund",
                      "payment_process", "payment_refund", "payment_fail",
                      "system_config", "system_backup", "system_maintenance",
                      "security_alert", "ip_block", "ip_unblock",
                      "role_change", "permission_update", "audit_log"]
TargetType = Literal["user", "event", "ticket", "payment", "system",
                     "security", "other"]
RiskLevel = Literal["low", "medium", "high", "critical"]
AdminLogStatus = Literal["pending", "completed", "failed", "cancelled",
                         "requires_approval"]

EVENT_CATEGORIES = [
    "conference", "concert", "sports", "workshop", "festival", "theatre",
    "exhibition", "networking", "other"
]

SUPPORTED_CURRENCIES = {
    "USD": {"symbol": "$", "name": "US Dollar"},
    "EUR": {"symbol": "€", "name": "Euro"},
    "GBP": {"symbol": "£", "name": "British Pound"},
    "INR": {"symbol": "₹", "name": "Indian Rupee"},
    "CAD": {"symbol": "C$", "name": "Canadian Dollar"},
    "AUD": {"symbol": "A$", "name": "Australian Dollar"},
}

MAX_TICKETS_PER_BOOKING = 10
MAX_BULK_VERIFICATIONS = 100
# Entry gates open this long before the start and close this long after the end
ENTRY_WINDOW_HOURS = 2
