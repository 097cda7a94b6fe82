from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request

from ticketing.constants import (AdminAction, AdminLogStatus, Currency,
                                 RiskLevel, Role)
from ticketing.core import (APIResponse, PageParams, page_params,
                            pagination_meta, to_naive_utc, valid_event_id,
                            valid_user_id)
from ticketing.entities import AdminLog, Event
from ticketing.rate_limit import RateLimiter, RateLimitRule
from ticketing.schemas import (AdminUserView, ApproveEventRequest, Category,
                               IPBlockRequest, ObjectIdStr, UpdateUserRequest)
from ticketing.security import Authenticator, CurrentUser, current_user
from ticketing.services.admin import AdminService
from ticketing.services.security import audit_context

ReportPeriod = Literal["today", "week", "month", "year", "7d", "30d", "90d",
                       "1y"]
AnalyticsPeriod = Literal["7d", "30d", "90d", "1y"]
GroupBy = Literal["hour", "day", "week", "month"]
SecurityPeriod = Literal["1h", "24h", "7d"]
AccountStatus = Literal["active", "inactive", "locked"]
UserSortField = Literal["created_at", "name", "email", "last_login",
                        "login_attempts"]


class AdminController():
    """
    Admin dashboards, moderation and security tooling
    """
    router = APIRouter()

    def __init__(self, *, admin_service: AdminService,
                 authenticator: Authenticator, limiter: RateLimiter,
                 general_rule: RateLimitRule):
        self.router = APIRouter(prefix="/admin", tags=["admin"])
        self.admin_service = admin_service
        self.authenticator = authenticator
        self.limiter = limiter
        self.general_rule = general_rule

        self._init_router()

    async def get_overview(self):
        data = await self.admin_service.overview()
        return APIResponse(success=True,
                           message="dashboard overview fetched successfully",
                           data=data)

    async def get_metrics(self):
        data = await self.admin_service.metrics()
        return APIResponse(success=True,
                           message="dashboard metrics fetched successfully",
                           data=data)

    async def get_financial(self,
                            period: ReportPeriod = "30d",
                            currency: Optional[Currency] = None):
        data = await self.admin_service.financial(period, currency)
        return APIResponse(success=True,
                           message="financial report fetched successfully",
                           data=data)

    async def get_operational(self, period: ReportPeriod = "30d"):
        data = await self.admin_service.operational(period)
        return APIResponse(success=True,
                           message="operational report fetched successfully",
                           data=data)

    async def get_engagement(self, period: ReportPeriod = "30d"):
        data = await self.admin_service.engagement(period)
        return APIResponse(success=True,
                           message="engagement report fetched successfully",
                           data=data)

    async def get_pending_events(self,
                                 params: PageParams = Depends(page_params),
                                 category: Optional[Category] = None,
                                 organizer_id: Optional[ObjectIdStr] = None):
        events, total = await self.admin_service.pending_events(
            params, category, organizer_id)
        return APIResponse(success=True,
                           message="pending events fetched successfully",
                           data=events,
                           meta=pagination_meta(params, total, "total_events"))

    async def approve_event(self,
                            request: ApproveEventRequest,
                            http_request: Request,
                            event_id: str = Depends(valid_event_id),
                            user: CurrentUser = Depends(current_user)):
        event = await self.admin_service.approve_event(
            event_id, request, user, audit_context(http_request))
        return APIResponse(success=True,
                           message=f"event {event.status} successfully",
                           data=event)

    async def get_users(self,
                        params: PageParams = Depends(page_params),
                        role: Optional[Role] = None,
                        account_status: Optional[AccountStatus] = Query(
                            None, alias="status"),
                        search: Optional[str] = Query(None, max_length=100),
                        sort_by: UserSortField = "created_at",
                        sort_order: Literal["asc", "desc"] = "desc"):
        users, total, role_stats = await self.admin_service.users(
            params, role, account_status, search, sort_by, sort_order)
        return APIResponse(success=True,
                           message="users fetched successfully",
                           data=users,
                           meta={
                               **pagination_meta(params, total, "total_users"),
                               "role_stats": role_stats,
                           })

    async def update_user(self,
                          request: UpdateUserRequest,
                          http_request: Request,
                          user_id: str = Depends(valid_user_id),
                          user: CurrentUser = Depends(current_user)):
        data = await self.admin_service.update_user(
            user_id, request, user, audit_context(http_request))
        return APIResponse(success=True,
                           message="user updated successfully",
                           data=data)

    async def get_analytics(self,
                            period: AnalyticsPeriod = "30d",
                            group_by: GroupBy = "day"):
        data = await self.admin_service.analytics(period, group_by)
        return APIResponse(success=True,
                           message="analytics fetched successfully",
                           data=data)

    async def get_security_insights(self, period: SecurityPeriod = "24h"):
        data = await self.admin_service.security_insights(period)
        return APIResponse(success=True,
                           message="security insights fetched successfully",
                           data=data)

    async def manage_ip_block(self,
                              request: IPBlockRequest,
                              http_request: Request,
                              user: CurrentUser = Depends(current_user)):
        data = await self.admin_service.ip_block(request, user,
                                                 audit_context(http_request))
        return APIResponse(success=True,
                           message=f"ip {request.action}ed successfully",
                           data=data)

    async def get_logs(self,
                       params: PageParams = Depends(page_params),
                       action: Optional[AdminAction] = None,
                       risk_level: Optional[RiskLevel] = None,
                       log_status: Optional[AdminLogStatus] = Query(
                           None, alias="status"),
                       admin_id: Optional[ObjectIdStr] = None,
                       start_date: Optional[datetime] = None,
                       end_date: Optional[datetime] = None):
        logs, total = await self.admin_service.logs(
            params, action, risk_level, log_status, admin_id,
            to_naive_utc(start_date), to_naive_utc(end_date))
        return APIResponse(success=True,
                           message="admin logs fetched successfully",
                           data=logs,
                           meta=pagination_meta(params, total, "total_logs"))

    def _init_router(self):
        admin = self.authenticator.require("admin")
        guards = [
            Depends(admin),
            Depends(self.limiter.guard(self.general_rule, admin)),
        ]

        routes = [
            ("/dashboard/overview", self.get_overview, "GET",
             APIResponse[dict]),
            ("/dashboard/metrics", self.get_metrics, "GET", APIResponse[dict]),
            ("/dashboard/financial", self.get_financial, "GET",
             APIResponse[dict]),
            ("/dashboard/operational", self.get_operational, "GET",
             APIResponse[dict]),
            ("/dashboard/engagement", self.get_engagement, "GET",
             APIResponse[dict]),
            ("/events/pending", self.get_pending_events, "GET",
             APIResponse[List[Event]]),
            ("/events/{event_id}/approve", self.approve_event, "PATCH",
             APIResponse[Event]),
            ("/users", self.get_users, "GET", APIResponse[List[AdminUserView]]),
            ("/users/{user_id}", self.update_user, "PATCH",
             APIResponse[AdminUserView]),
            ("/analytics", self.get_analytics, "GET", APIResponse[dict]),
            ("/security", self.get_security_insights, "GET",
             APIResponse[dict]),
            ("/security/ip-block", self.manage_ip_block, "POST",
             APIResponse[dict]),
            ("/logs", self.get_logs, "GET", APIResponse[List[AdminLog]]),
        ]
        for path, endpoint, method, response_model in routes:
            self.router.add_api_route(path,
                                      endpoint,
                                      methods=[method],
                                      response_model=response_model,
                                      dependencies=guards)
