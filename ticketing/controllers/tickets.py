from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import HTMLResponse, Response

from ticketing.constants import TicketStatus
from ticketing.core import (APIResponse, PageParams, page_params,
                            pagination_meta, valid_event_id, valid_ticket_id)
from ticketing.entities import Ticket
from ticketing.schemas import (BookTicketRequest, CancelTicketRequest,
                               EventTicketsResponse, QRCodeResponse)
from ticketing.security import Authenticator, CurrentUser, current_user
from ticketing.services.tickets import TicketService


class TicketController():
    """
    Booking, the attendee's tickets and their printable forms
    """
    router = APIRouter()

    def __init__(self, *, ticket_service: TicketService,
                 authenticator: Authenticator):
        self.router = APIRouter(prefix="/tickets", tags=["tickets"])
        self.ticket_service = ticket_service
        self.authenticator = authenticator

        self._init_router()

    async def book_ticket(self,
                          request: BookTicketRequest,
                          user: CurrentUser = Depends(current_user)):
        """
        Reserve seats. Paid tickets stay pending until their payment
        is confirmed, free ones are confirmed right away
        """
        ticket = await self.ticket_service.book(user, request)
        return APIResponse(success=True,
                           message="ticket booked successfully",
                           data=ticket)

    async def get_my_tickets(self,
                             params: PageParams = Depends(page_params),
                             ticket_status: Optional[TicketStatus] = Query(
                                 None, alias="status"),
                             user: CurrentUser = Depends(current_user)):
        tickets, total = await self.ticket_service.my_tickets(
            user, params, ticket_status)
        return APIResponse(success=True,
                           message="tickets fetched successfully",
                           data=tickets,
                           meta=pagination_meta(params, total,
                                                "total_tickets"))

    async def get_event_tickets(self,
                                event_id: str = Depends(valid_event_id),
                                params: PageParams = Depends(page_params),
                                ticket_status: Optional[TicketStatus] = Query(
                                    None, alias="status"),
                                user: CurrentUser = Depends(current_user)):
        tickets, total, stats = await self.ticket_service.event_tickets(
            event_id, user, params, ticket_status)
        return APIResponse(success=True,
                           message="event tickets fetched successfully",
                           data=EventTicketsResponse(tickets=tickets,
                                                     stats=stats),
                           meta=pagination_meta(params, total,
                                                "total_tickets"))

    async def get_ticket(self,
                         ticket_id: str = Depends(valid_ticket_id),
                         user: CurrentUser = Depends(current_user)):
        ticket = await self.ticket_service.get_ticket(ticket_id, user)
        return APIResponse(success=True,
                           message="ticket fetched successfully",
                           data=ticket)

    async def cancel_ticket(self,
                            request: Optional[CancelTicketRequest] = None,
                            ticket_id: str = Depends(valid_ticket_id),
                            user: CurrentUser = Depends(current_user)):
        reason = request.reason if request else None
        ticket = await self.ticket_service.cancel(ticket_id, user, reason)
        return APIResponse(success=True,
                           message="ticket cancelled successfully",
                           data=ticket)

    async def verify_ticket(self,
                            ticket_id: str = Depends(valid_ticket_id),
                            user: CurrentUser = Depends(current_user)):
        """
        Check-in from the organizer's ticket list
        """
        ticket = await self.ticket_service.verify(ticket_id, user)
        return APIResponse(success=True,
                           message="ticket verified successfully",
                           data=ticket)

    async def get_qr_code(self,
                          ticket_id: str = Depends(valid_ticket_id),
                          user: CurrentUser = Depends(current_user)):
        data = await self.ticket_service.qr_code(ticket_id, user)
        return APIResponse(success=True,
                           message="qr code fetched successfully",
                           data=data)

    async def regenerate_qr_code(self,
                                 ticket_id: str = Depends(valid_ticket_id),
                                 user: CurrentUser = Depends(current_user)):
        data = await self.ticket_service.regenerate_qr(ticket_id, user)
        return APIResponse(success=True,
                           message="qr code regenerated successfully",
                           data=data)

    async def download_pdf(self,
                           ticket_id: str = Depends(valid_ticket_id),
                           user: CurrentUser = Depends(current_user)):
        content, filename = await self.ticket_service.pdf(ticket_id, user)
        return Response(
            content=content,
            media_type="application/pdf",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'})

    async def view_html(self,
                        ticket_id: str = Depends(valid_ticket_id),
                        user: CurrentUser = Depends(current_user)):
        html = await self.ticket_service.html(ticket_id, user)
        return HTMLResponse(content=html)

    def _init_router(self):
        authenticated = [Depends(self.authenticator)]
        organizer = [Depends(self.authenticator.require("organizer", "admin"))]

        self.router.add_api_route(
            "/book",
            self.book_ticket,
            methods=["POST"],
            response_model=APIResponse[Ticket],
            status_code=status.HTTP_201_CREATED,
            dependencies=authenticated,
        )
        self.router.add_api_route(
            "/my-tickets",
            self.get_my_tickets,
            methods=["GET"],
            response_model=APIResponse[List[Ticket]],
            dependencies=authenticated,
        )
        self.router.add_api_route(
            "/event/{event_id}",
            self.get_event_tickets,
            methods=["GET"],
            response_model=APIResponse[EventTicketsResponse],
            dependencies=organizer,
        )
        self.router.add_api_route(
            "/{ticket_id}",
            self.get_ticket,
            methods=["GET"],
            response_model=APIResponse[Ticket],
            dependencies=authenticated,
        )
        self.router.add_api_route(
            "/{ticket_id}/cancel",
            self.cancel_ticket,
            methods=["PATCH"],
            response_model=APIResponse[Ticket],
            dependencies=authenticated,
        )
        self.router.add_api_route(
            "/{ticket_id}/verify",
            self.verify_ticket,
            methods=["PATCH"],
            response_model=APIResponse[Ticket],
            dependencies=organizer,
        )
        self.router.add_api_route(
            "/{ticket_id}/qr",
            self.get_qr_code,
            methods=["GET"],
            response_model=APIResponse[QRCodeResponse],
            dependencies=authenticated,
        )
        self.router.add_api_route(
            "/{ticket_id}/regenerate-qr",
            self.regenerate_qr_code,
            methods=["POST"],
            response_model=APIResponse[QRCodeResponse],
            dependencies=organizer,
        )
        self.router.add_api_route(
            "/{ticket_id}/pdf",
            self.download_pdf,
            methods=["GET"],
            response_class=Response,
            dependencies=authenticated,
        )
        self.router.add_api_route(
            "/{ticket_id}/html",
            self.view_html,
            methods=["GET"],
            response_class=HTMLResponse,
            dependencies=authenticated,
        )
