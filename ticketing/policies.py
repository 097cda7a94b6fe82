"""
Domain rules that only look at document attributes.

Nothing here touches the database, so the same functions serve the services
and the unit tests (which feed them plain namespaces).
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ticketing.constants import ENTRY_WINDOW_HOURS

CANCELLABLE_STATUSES = ("pending", "confirmed")
ACTIVE_STATUSES = ("pending", "confirmed")


def compute_total_amount(price: float,
                         quantity: int,
                         discount: float = 0,
                         discount_end_date: Optional[datetime] = None,
                         event_date: Optional[datetime] = None,
                         now: Optional[datetime] = None) -> float:
    """
    price * quantity, reduced by the discount percentage while the
    discount is running (until discount_end_date, or the event itself)
    """
    total = price * quantity
    if discount and discount > 0:
        deadline = discount_end_date or event_date
        if deadline is None or now is None or now < deadline:
            total -= total * (discount / 100)
    return round(total, 2)


def validate_ticket_for_entry(ticket,
                              event,
                              now: datetime,
                              attendee_name: Optional[str] = None,
                              signature_valid: Optional[bool] = None
                              ) -> Dict[str, Any]:
    """
    Gate check for a ticket at the door. The first failing rule decides the
    reason. signature_valid is None when no QR signature was presented.
    """
    result = {
        "is_valid": False,
        "can_enter": False,
        "reason": "",
        "details": {},
    }

    if ticket.status != "confirmed":
        result["reason"] = f"Ticket status is {ticket.status}"
        result["details"] = {"status": ticket.status}
        return result

    if ticket.is_verified:
        result["reason"] = "Ticket has already been used"
        result["details"] = {
            "verified_at": ticket.verified_at,
            "verified_by": str(ticket.verified_by)
            if ticket.verified_by else None,
        }
        return result

    if not event.date.date() <= now.date() <= event.end_date.date():
        result["reason"] = "Event is not today"
        result["details"] = {
            "event_date": event.date,
            "today": now.date().isoformat()
        }
        return result

    window = timedelta(hours=ENTRY_WINDOW_HOURS)
    if now < event.date - window:
        result["reason"] = "Event has not started yet"
        result["details"] = {
            "event_start_time": event.date,
            "gates_open_at": event.date - window,
            "current_time": now,
        }
        return result

    if now > event.end_date + window:
        result["reason"] = "Event has ended"
        result["details"] = {
            "event_end_time": event.end_date,
            "gates_close_at": event.end_date + window,
            "current_time": now,
        }
        return result

    if signature_valid is False:
        result["reason"] = "Invalid QR code signature"
        result["details"] = {"signature_mismatch": True}
        return result

    result["is_valid"] = True
    result["can_enter"] = True
    result["reason"] = "Ticket is valid for entry"
    result["details"] = {
        "event_title": event.title,
        "event_date": event.date,
        "event_end_date": event.end_date,
        "venue": event.venue,
        "attendee_name": attendee_name,
        "ticket_number": ticket.ticket_number,
        "quantity": ticket.quantity,
    }
    return result


def is_valid_for_entry(ticket, event, now: datetime) -> bool:
    return (ticket.status == "confirmed"
            and ticket.payment_status == "completed"
            and not ticket.is_verified and now <= event.end_date)


def can_be_cancelled(ticket, event, now: datetime) -> bool:
    return ticket.status in CANCELLABLE_STATUSES and event.date > now


def is_account_locked(user, now: datetime) -> bool:
    return bool(user.is_locked and user.lock_expires
                and user.lock_expires > now)


def failed_login_update(user,
                        now: datetime,
                        max_attempts: int = 5,
                        lock_minutes: int = 30) -> Dict[str, Any]:
    """
    Fields to $set after a wrong password. An expired lock starts the
    count over
    """
    attempts = user.login_attempts or 0
    if user.is_locked and user.lock_expires and user.lock_expires <= now:
        attempts = 0

    attempts += 1
    update = {
        "login_attempts": attempts,
        "last_login_attempt": now,
        "is_locked": False,
        "lock_expires": None,
    }
    if attempts >= max_attempts:
        update["is_locked"] = True
        update["lock_expires"] = now + timedelta(minutes=lock_minutes)
    return update


def successful_login_update(now: datetime) -> Dict[str, Any]:
    return {
        "login_attempts": 0,
        "is_locked": False,
        "lock_expires": None,
        "last_login": now,
        "last_active": now,
    }
