import logging
from typing import List, Optional, Tuple

from bson.objectid import ObjectId
from fastapi import status
from pymongo.errors import DuplicateKeyError
from starlette.concurrency import run_in_threadpool

from ticketing.core import APIError, PageParams, clean_aggregate, utcnow
from ticketing.entities import Event, Ticket, User
from ticketing.pipelines import active_quantity, ticket_status_summary
from ticketing.policies import (CANCELLABLE_STATUSES, can_be_cancelled,
                                compute_total_amount, is_valid_for_entry)
from ticketing.schemas import BookTicketRequest, QRCodeResponse
from ticketing.security import CurrentUser
from ticketing.services.events import can_manage_event
from ticketing.services.payments import PaymentService
from ticketing.ticket_generator import TicketGenerator

logger = logging.getLogger(__name__)

MAX_RETRIES = 10


class TicketService():

    def __init__(self, generator: TicketGenerator,
                 payment_service: PaymentService):
        self.generator = generator
        self.payment_service = payment_service

    async def book(self, user: CurrentUser,
                   request: BookTicketRequest) -> Ticket:
        now = utcnow()
        event = await Event.find_one({"_id": ObjectId(request.event_id)})
        if not event:
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="EVENT_NOT_FOUND")
        if event.status != "published":
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="EVENT_NOT_AVAILABLE")
        if event.date <= now:
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="EVENT_IN_PAST")

        user_id = ObjectId(user.id)
        held = await Ticket.aggregate(active_quantity(event.id,
                                                      user_id)).to_list()
        already = held[0]["quantity"] if held else 0
        if already + request.quantity > event.max_tickets_per_user:
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="TICKET_LIMIT_EXCEEDED",
                           details={
                               "max_tickets_per_user":
                               event.max_tickets_per_user,
                               "already_booked": already,
                           })

        total_amount = compute_total_amount(event.price, request.quantity,
                                            event.discount,
                                            event.discount_end_date,
                                            event.date, now)

        # Take the seats in one conditional update so two buyers can
        # never both get the last ones
        result = await Event.find_one({
            "_id": event.id,
            "status": "published",
            "available_tickets": {
                "$gte": request.quantity
            }
        }).update({
            "$inc": {
                "available_tickets": -request.quantity
            },
            "$set": {
                "updated_at": now
            }
        })
        if result.modified_count == 0:
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="SOLD_OUT")

        free = total_amount == 0
        try:
            ticket = await self._insert_ticket(event, user_id,
                                               request.quantity,
                                               total_amount, free)
        except Exception:
            await Event.find_one({
                "_id": event.id
            }).update({"$inc": {
                "available_tickets": request.quantity
            }})
            logger.exception("booking for event %s failed, stock restored",
                             event.id)
            raise

        if free:
            await User.find_one({
                "_id": user_id
            }).update({"$inc": {
                "stats.total_tickets": request.quantity
            }})

        logger.info("ticket %s booked for event %s (%d x, %.2f %s)",
                    ticket.ticket_number, event.id, request.quantity,
                    total_amount, event.currency)
        return ticket

    async def _insert_ticket(self, event: Event, user_id: ObjectId,
                             quantity: int, total_amount: float,
                             free: bool) -> Ticket:
        # The unique index on ticket_number decides collisions
        attempt = 0
        while True:
            if attempt >= MAX_RETRIES:
                raise APIError(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    error_code="TICKET_GENERATION_FAILED")

            ticket_number = self.generator.generate_ticket_number()
            qr_code = await run_in_threadpool(self.generator.qr_data_url,
                                              ticket_number, str(event.id),
                                              str(user_id))
            try:
                return await Ticket(
                    ticket_number=ticket_number,
                    event_id=event.id,
                    user_id=user_id,
                    quantity=quantity,
                    total_amount=total_amount,
                    currency=event.currency,
                    status="confirmed" if free else "pending",
                    payment_status="completed" if free else "pending",
                    event_date=event.date,
                    qr_code=qr_code,
                ).insert()
            except DuplicateKeyError:
                attempt += 1
                continue

    async def my_tickets(
            self,
            user: CurrentUser,
            params: PageParams,
            ticket_status: Optional[str] = None) -> Tuple[List[Ticket], int]:
        query = {"user_id": ObjectId(user.id)}
        if ticket_status:
            query["status"] = ticket_status
        tickets = await Ticket.find(query).sort("-booking_date").skip(
            params.skip).limit(params.limit).to_list()
        total = await Ticket.find(query).count()
        return tickets, total

    async def _load(self, ticket_id: str) -> Tuple[Ticket, Event]:
        ticket = await Ticket.find_one({"_id": ObjectId(ticket_id)})
        if not ticket:
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="TICKET_NOT_FOUND")
        event = await Event.find_one({"_id": ticket.event_id})
        if not event:
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="EVENT_NOT_FOUND")
        return ticket, event

    async def _load_for_viewer(self, ticket_id: str,
                               user: CurrentUser) -> Tuple[Ticket, Event]:
        ticket, event = await self._load(ticket_id)
        if str(ticket.user_id) != user.id and not can_manage_event(
                event, user):
            raise APIError(status_code=status.HTTP_403_FORBIDDEN,
                           error_code="FORBIDDEN")
        return ticket, event

    async def _load_for_organizer(self, ticket_id: str,
                                  user: CurrentUser) -> Tuple[Ticket, Event]:
        ticket, event = await self._load(ticket_id)
        if not can_manage_event(event, user):
            raise APIError(status_code=status.HTTP_403_FORBIDDEN,
                           error_code="FORBIDDEN",
                           error_message="not the organizer of this event")
        return ticket, event

    async def get_ticket(self, ticket_id: str, user: CurrentUser) -> Ticket:
        ticket, _ = await self._load_for_viewer(ticket_id, user)
        return ticket

    async def cancel(self, ticket_id: str, user: CurrentUser,
                     reason: Optional[str]) -> Ticket:
        ticket, event = await self._load(ticket_id)
        if str(ticket.user_id) != user.id and not user.is_admin:
            raise APIError(status_code=status.HTTP_403_FORBIDDEN,
                           error_code="FORBIDDEN")
        if not can_be_cancelled(ticket, event, utcnow()):
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="TICKET_NOT_CANCELLABLE",
                           details={"status": ticket.status})

        result = await Ticket.find_one({
            "_id": ticket.id,
            "status": {
                "$in": list(CANCELLABLE_STATUSES)
            }
        }).update({
            "$set": {
                "status": "cancelled",
                "notes": reason,
                "updated_at": utcnow()
            }
        })
        if result.modified_count == 0:
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="TICKET_NOT_CANCELLABLE")

        refunded = 0
        if ticket.payment_status == "completed":
            try:
                refunded = await self.payment_service.refund_ticket_payment(
                    ticket, reason, user.id)
            except APIError:
                # No money moved, so the booking stands
                await Ticket.find_one({
                    "_id": ticket.id,
                    "status": "cancelled"
                }).update({
                    "$set": {
                        "status": ticket.status,
                        "notes": ticket.notes,
                        "updated_at": utcnow()
                    }
                })
                logger.warning("refund for ticket %s failed, cancel undone",
                               ticket.ticket_number)
                raise
            await Ticket.find_one({
                "_id": ticket.id
            }).update({
                "$set": {
                    "status": "refunded" if ticket.payment_id else "cancelled",
                    "payment_status": "refunded",
                    "refund_amount": refunded,
                    "refund_reason": reason,
                }
            })
            await User.find_one({
                "_id": ticket.user_id
            }).update({
                "$inc": {
                    "stats.total_tickets": -ticket.quantity,
                    "stats.total_spent": -refunded
                }
            })

        await Event.find_one({
            "_id": event.id
        }).update({"$inc": {
            "available_tickets": ticket.quantity
        }})

        logger.info("ticket %s cancelled by %s (refunded %.2f)",
                    ticket.ticket_number, user.id, refunded)
        return await Ticket.find_one({"_id": ticket.id})

    async def verify(self, ticket_id: str, user: CurrentUser) -> Ticket:
        ticket, event = await self._load_for_organizer(ticket_id, user)
        if ticket.is_verified:
            raise APIError(status_code=status.HTTP_409_CONFLICT,
                           error_code="TICKET_ALREADY_USED",
                           details={"verified_at": ticket.verified_at})
        if not is_valid_for_entry(ticket, event, utcnow()):
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="TICKET_NOT_VALID",
                           details={
                               "status": ticket.status,
                               "payment_status": ticket.payment_status
                           })

        await self.mark_used(ticket, user.id)
        logger.info("ticket %s checked in by %s", ticket.ticket_number,
                    user.id)
        return await Ticket.find_one({"_id": ticket.id})

    @staticmethod
    async def mark_used(ticket: Ticket, verified_by: str):
        """
        Admit once: the is_verified guard makes concurrent scans race on
        a single document update
        """
        now = utcnow()
        result = await Ticket.find_one({
            "_id": ticket.id,
            "status": "confirmed",
            "is_verified": False
        }).update({
            "$set": {
                "status": "used",
                "is_verified": True,
                "verified_at": now,
                "verified_by": ObjectId(verified_by),
                "updated_at": now
            }
        })
        if result.modified_count == 0:
            raise APIError(status_code=status.HTTP_409_CONFLICT,
                           error_code="TICKET_ALREADY_USED")
        return now

    async def event_tickets(self,
                            event_id: str,
                            user: CurrentUser,
                            params: PageParams,
                            ticket_status: Optional[str] = None):
        event = await Event.find_one({"_id": ObjectId(event_id)})
        if not event:
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="EVENT_NOT_FOUND")
        if not can_manage_event(event, user):
            raise APIError(status_code=status.HTTP_403_FORBIDDEN,
                           error_code="FORBIDDEN",
                           error_message="not the organizer of this event")

        query = {"event_id": event.id}
        if ticket_status:
            query["status"] = ticket_status
        tickets = await Ticket.find(query).sort("-booking_date").skip(
            params.skip).limit(params.limit).to_list()
        total = await Ticket.find(query).count()

        rows = clean_aggregate(await Ticket.aggregate(
            ticket_status_summary({"event_id": event.id})).to_list())
        stats = {
            row["_id"]: {
                "count": row["count"],
                "total_amount": row["total_amount"],
                "quantity": row["quantity"],
            }
            for row in rows
        }
        return tickets, total, stats

    async def qr_code(self, ticket_id: str,
                      user: CurrentUser) -> QRCodeResponse:
        ticket, _ = await self._load_for_viewer(ticket_id, user)
        if not ticket.qr_code:
            ticket.qr_code = await self._store_new_qr(ticket)
        return QRCodeResponse(ticket_number=ticket.ticket_number,
                              qr_code=ticket.qr_code)

    async def _store_new_qr(self, ticket: Ticket) -> str:
        try:
            qr_code = await run_in_threadpool(self.generator.qr_data_url,
                                              ticket.ticket_number,
                                              str(ticket.event_id),
                                              str(ticket.user_id))
        except (ValueError, OSError):
            logger.exception("qr generation failed for %s",
                             ticket.ticket_number)
            raise APIError(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                           error_code="QR_GENERATION_FAILED")
        await Ticket.find_one({
            "_id": ticket.id
        }).update({"$set": {
            "qr_code": qr_code,
            "updated_at": utcnow()
        }})
        return qr_code

    async def regenerate_qr(self, ticket_id: str,
                            user: CurrentUser) -> QRCodeResponse:
        ticket, _ = await self._load_for_organizer(ticket_id, user)
        qr_code = await self._store_new_qr(ticket)
        logger.info("qr regenerated for %s by %s", ticket.ticket_number,
                    user.id)
        return QRCodeResponse(ticket_number=ticket.ticket_number,
                              qr_code=qr_code)

    async def _attendee_name(self, ticket: Ticket) -> str:
        owner = await User.find_one({"_id": ticket.user_id})
        return owner.name if owner else "Guest"

    async def pdf(self, ticket_id: str, user: CurrentUser) -> Tuple[bytes, str]:
        ticket, event = await self._load_for_viewer(ticket_id, user)
        if not ticket.qr_code:
            ticket.qr_code = await self._store_new_qr(ticket)
        attendee = await self._attendee_name(ticket)
        content = await run_in_threadpool(self.generator.render_pdf, ticket,
                                          event, attendee)
        return content, f"ticket-{ticket.ticket_number}.pdf"

    async def html(self, ticket_id: str, user: CurrentUser) -> str:
        ticket, event = await self._load_for_viewer(ticket_id, user)
        attendee = await self._attendee_name(ticket)
        return self.generator.render_html(ticket, event, attendee)
