from datetime import date, datetime, time
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query

from ticketing.constants import TicketStatus
from ticketing.core import (APIResponse, PageParams, page_params,
                            pagination_meta)
from ticketing.entities import Ticket
from ticketing.rate_limit import (DeviceInfo, RateLimiter, RateLimitRule,
                                  device_info)
from ticketing.schemas import (BulkVerificationRequest, ObjectIdStr,
                               ScanRequest, TicketNumberRequest,
                               VerificationResponse)
from ticketing.security import Authenticator, CurrentUser, current_user
from ticketing.services.security import SecurityService
from ticketing.services.verification import VerificationService

StatsPeriod = Literal["today", "week", "month", "year"]
DashboardPeriod = Literal["1h", "24h", "7d", "30d"]


class VerificationController():
    """
    Door scanning for organizers and admins. Blocked addresses are
    refused before anything else runs
    """
    router = APIRouter()

    def __init__(self, *, verification_service: VerificationService,
                 security_service: SecurityService,
                 authenticator: Authenticator, limiter: RateLimiter,
                 rules: dict):
        self.router = APIRouter(prefix="/verification", tags=["verification"])
        self.verification_service = verification_service
        self.security_service = security_service
        self.authenticator = authenticator
        self.limiter = limiter
        self.rules = rules

        self._init_router()

    async def scan(self,
                   request: ScanRequest,
                   device: DeviceInfo = Depends(device_info),
                   user: CurrentUser = Depends(current_user)):
        data = await self.verification_service.scan(request, user, device)
        return APIResponse(success=data.verification_result["can_enter"],
                           message=data.verification_result["reason"],
                           data=data)

    async def verify_ticket_number(self,
                                   request: TicketNumberRequest,
                                   device: DeviceInfo = Depends(device_info),
                                   user: CurrentUser = Depends(current_user)):
        data = await self.verification_service.verify_ticket_number(
            request, user, device)
        return APIResponse(success=data.verification_result["can_enter"],
                           message=data.verification_result["reason"],
                           data=data)

    async def bulk_verify(self,
                          request: BulkVerificationRequest,
                          device: DeviceInfo = Depends(device_info),
                          user: CurrentUser = Depends(current_user)):
        data = await self.verification_service.bulk(request, user, device)
        return APIResponse(success=True,
                           message="bulk verification completed",
                           data=data)

    async def get_history(self,
                          params: PageParams = Depends(page_params),
                          event_id: Optional[ObjectIdStr] = None,
                          ticket_status: Optional[TicketStatus] = Query(
                              None, alias="status"),
                          day: Optional[date] = Query(None, alias="date"),
                          user: CurrentUser = Depends(current_user)):
        """
        Checked-in tickets, or tickets in the given status
        """
        tickets, total, stats = await self.verification_service.history(
            user, params, event_id, ticket_status,
            datetime.combine(day, time.min) if day else None)
        return APIResponse(success=True,
                           message="verification history fetched successfully",
                           data=tickets,
                           meta={
                               **pagination_meta(params, total,
                                                 "total_tickets"),
                               "stats": stats,
                           })

    async def get_stats(self,
                        event_id: Optional[ObjectIdStr] = None,
                        period: StatsPeriod = "today",
                        user: CurrentUser = Depends(current_user)):
        data = await self.verification_service.stats(user, event_id, period)
        return APIResponse(success=True,
                           message="verification stats fetched successfully",
                           data=data)

    async def get_dashboard_overview(self,
                                     event_id: Optional[ObjectIdStr] = None,
                                     user: CurrentUser = Depends(
                                         current_user)):
        data = await self.verification_service.dashboard_overview(
            user, event_id)
        return APIResponse(success=True,
                           message="verification overview fetched successfully",
                           data=data)

    async def get_dashboard_analytics(self,
                                      period: DashboardPeriod = "7d",
                                      event_id: Optional[ObjectIdStr] = None,
                                      user: CurrentUser = Depends(
                                          current_user)):
        data = await self.verification_service.dashboard_analytics(
            user, period, event_id)
        return APIResponse(success=True,
                           message="verification analytics fetched successfully",
                           data=data)

    async def get_dashboard_security(self,
                                     period: DashboardPeriod = "24h",
                                     event_id: Optional[ObjectIdStr] = None,
                                     user: CurrentUser = Depends(
                                         current_user)):
        data = await self.verification_service.dashboard_security(
            user, period, event_id)
        return APIResponse(success=True,
                           message="verification security fetched successfully",
                           data=data)

    def _guards(self, rule: Optional[RateLimitRule] = None) -> list:
        """
        A route with its own limit is counted against that rule only,
        everything else shares the general one
        """
        verifier = self.authenticator.require("organizer", "admin")
        return [
            Depends(self.security_service.ensure_not_blocked),
            Depends(verifier),
            Depends(self.limiter.guard(rule or self.rules["general"],
                                       verifier)),
        ]

    def _init_router(self):
        self.router.add_api_route(
            "/scan",
            self.scan,
            methods=["POST"],
            response_model=APIResponse[VerificationResponse],
            dependencies=self._guards(self.rules["qr_scan"]),
        )
        self.router.add_api_route(
            "/ticket-number",
            self.verify_ticket_number,
            methods=["POST"],
            response_model=APIResponse[VerificationResponse],
            dependencies=self._guards(self.rules["manual"]),
        )
        self.router.add_api_route(
            "/bulk",
            self.bulk_verify,
            methods=["POST"],
            response_model=APIResponse[dict],
            dependencies=self._guards(self.rules["bulk"]),
        )
        self.router.add_api_route(
            "/history",
            self.get_history,
            methods=["GET"],
            response_model=APIResponse[List[Ticket]],
            dependencies=self._guards(),
        )
        self.router.add_api_route(
            "/stats",
            self.get_stats,
            methods=["GET"],
            response_model=APIResponse[dict],
            dependencies=self._guards(),
        )
        self.router.add_api_route(
            "/dashboard/overview",
            self.get_dashboard_overview,
            methods=["GET"],
            response_model=APIResponse[dict],
            dependencies=self._guards(),
        )
        self.router.add_api_route(
            "/dashboard/analytics",
            self.get_dashboard_analytics,
            methods=["GET"],
            response_model=APIResponse[dict],
            dependencies=self._guards(),
        )
        self.router.add_api_route(
            "/dashboard/security",
            self.get_dashboard_security,
            methods=["GET"],
            response_model=APIResponse[dict],
            dependencies=self._guards(),
        )
