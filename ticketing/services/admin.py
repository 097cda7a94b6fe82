import logging
import re
import time
from datetime import datetime
from typing import List, Optional, Tuple

from bson.objectid import ObjectId
from fastapi import status

from ticketing.core import APIError, PageParams, clean_aggregate, utcnow
from ticketing.entities import (AdminLog, AdminLogContext, BlockedIP, Event,
                                Payment, Ticket, User, VerificationLog)
from ticketing.pipelines import (activity_patterns, admin_action_breakdown,
                                 admin_activity, count_by, daily_totals,
                                 date_format, grouped_trend, ip_risk_analysis,
                                 period_start, repeat_buyers,
                                 status_category_matrix, sum_by,
                                 suspicious_patterns, ticket_status_matrix,
                                 top_events_by_revenue, top_spenders,
                                 total_of, user_status_matrix,
                                 verification_method_matrix)
from ticketing.risk import security_recommendations
from ticketing.schemas import (AdminUserView, ApproveEventRequest,
                               IPBlockRequest, UpdateUserRequest)
from ticketing.security import CurrentUser
from ticketing.services.security import SecurityService

logger = logging.getLogger(__name__)

USER_SORT_FIELDS = ("created_at", "name", "email", "last_login",
                    "login_attempts")
RECENT_LIMIT = 5


async def _aggregate(document, pipeline: List[dict]) -> List[dict]:
    return clean_aggregate(await document.aggregate(pipeline).to_list())


async def _total(document, match: dict, field: str = "$amount") -> float:
    rows = await _aggregate(document, total_of(match, field))
    return rows[0]["total"] if rows else 0


def _as_dict(rows: List[dict]) -> dict:
    return {str(row["_id"]): row["count"] for row in rows}


class AdminService():
    """
    Platform dashboards and the administrative operations, every
    mutation lands in the admin audit trail
    """

    def __init__(self, security: SecurityService, max_login_attempts: int = 5):
        self.security = security
        self.max_login_attempts = max_login_attempts

    # [Dashboards]
    async def overview(self) -> dict:
        now = utcnow()
        month_start = period_start("month", now)
        year_start = period_start("year", now)
        completed = {"status": "completed"}

        events_by_status = _as_dict(await _aggregate(Event,
                                                     count_by("status")))
        recent_users = await User.find().sort("-created_at").limit(
            RECENT_LIMIT).to_list()
        recent_events = await Event.find().sort("-created_at").limit(
            RECENT_LIMIT).to_list()
        recent_payments = await Payment.find(completed).sort(
            "-created_at").limit(RECENT_LIMIT).to_list()

        return {
            "totals": {
                "users": await User.find().count(),
                "events": await Event.find().count(),
                "tickets": await Ticket.find().count(),
                "payments": await Payment.find(completed).count(),
            },
            "events": {
                "pending": events_by_status.get("pending", 0),
                "active": await Event.find({
                    "status": "published",
                    "end_date": {
                        "$gte": now
                    }
                }).count(),
                "completed": await Event.find({
                    "status": "published",
                    "end_date": {
                        "$lt": now
                    }
                }).count(),
                "by_status": events_by_status,
            },
            "revenue": {
                "monthly": await _total(Payment, {
                    **completed, "created_at": {
                        "$gte": month_start
                    }
                }),
                "yearly": await _total(Payment, {
                    **completed, "created_at": {
                        "$gte": year_start
                    }
                }),
                "all_time": await _total(Payment, completed),
            },
            "distributions": {
                "roles": _as_dict(await _aggregate(User, count_by("role"))),
                "categories": _as_dict(await _aggregate(
                    Event, count_by("category"))),
            },
            "recent_activity": {
                "users": [
                    AdminUserView.model_validate(user).model_dump(mode="json")
                    for user in recent_users
                ],
                "events": clean_aggregate([
                    event.model_dump(include={
                        "id", "title", "status", "date", "created_at"
                    }) for event in recent_events
                ]),
                "payments": clean_aggregate([
                    payment.model_dump(include={
                        "payment_id", "amount", "currency", "payment_method",
                        "created_at"
                    }) for payment in recent_payments
                ]),
            },
        }

    async def _window_metrics(self, start: datetime) -> dict:
        since = {"created_at": {"$gte": start}}
        return {
            "new_users": await User.find(since).count(),
            "new_events": await Event.find(since).count(),
            "tickets_booked": await Ticket.find(since).count(),
            "verifications": await VerificationLog.find({
                "verification_time": {
                    "$gte": start
                }
            }).count(),
            "revenue": await _total(Payment, {
                **since, "status": "completed"
            }),
        }

    async def metrics(self) -> dict:
        now = utcnow()
        return {
            "today": await self._window_metrics(period_start("today", now)),
            "week": await self._window_metrics(period_start("week", now)),
            "month": await self._window_metrics(period_start("month", now)),
        }

    async def financial(self,
                        period: str = "30d",
                        currency: Optional[str] = None) -> dict:
        now = utcnow()
        start = period_start(period, now)
        match = {"created_at": {"$gte": start}}
        if currency:
            match["currency"] = currency
        completed = {**match, "status": "completed"}

        refunded = await _aggregate(Payment, total_of({
            **match, "status": "refunded"
        }, "$refund_details.refund_amount"))
        return {
            "period": period,
            "currency": currency,
            "start_date": start,
            "end_date": now,
            "revenue": await _total(Payment, completed),
            "daily_revenue": await _aggregate(
                Payment, daily_totals("created_at", completed)),
            "payment_methods": await _aggregate(
                Payment, sum_by("payment_method", completed)),
            "currencies": await _aggregate(Payment,
                                           sum_by("currency", completed)),
            "failed_payments": await Payment.find({
                **match, "status": "failed"
            }).count(),
            "refunds": {
                "total": refunded[0]["total"] if refunded else 0,
                "count": refunded[0]["count"] if refunded else 0,
            },
            "top_events": await _aggregate(Payment,
                                           top_events_by_revenue(start)),
        }

    async def operational(self, period: str = "30d") -> dict:
        now = utcnow()
        start = period_start(period, now)
        return {
            "period": period,
            "start_date": start,
            "end_date": now,
            "events": await _aggregate(Event, status_category_matrix(start)),
            "tickets": await _aggregate(Ticket, ticket_status_matrix(start)),
            "verifications": await _aggregate(
                VerificationLog,
                verification_method_matrix(
                    {"verification_time": {
                        "$gte": start
                    }})),
            "admin_activity": await _aggregate(
                AdminLog, admin_activity({"created_at": {
                    "$gte": start
                }})),
            "admin_actions": await _aggregate(
                AdminLog,
                admin_action_breakdown({"created_at": {
                    "$gte": start
                }})),
            "pending": {
                "events": await Event.find({"status": "pending"}).count(),
                "payments": await Payment.find({
                    "status": {
                        "$in": ["pending", "processing"]
                    }
                }).count(),
                "approvals": await AdminLog.find({
                    "status": "requires_approval"
                }).count(),
            },
        }

    async def engagement(self, period: str = "30d") -> dict:
        now = utcnow()
        start = period_start(period, now)
        repeat = await _aggregate(Ticket, repeat_buyers(start))
        return {
            "period": period,
            "start_date": start,
            "end_date": now,
            "active_users": await User.find({
                "last_active": {
                    "$gte": start
                }
            }).count(),
            "new_users": await User.find({
                "created_at": {
                    "$gte": start
                }
            }).count(),
            "top_spenders": await _aggregate(Payment, top_spenders(start)),
            "repeat_buyers": repeat[0] if repeat else {
                "repeat_buyers": 0,
                "avg_events": None,
                "avg_tickets": None
            },
            "activity_patterns": await _aggregate(User,
                                                  activity_patterns(start)),
            "user_segments": await _aggregate(User, user_status_matrix(start)),
        }

    async def analytics(self, period: str = "30d",
                        group_by: str = "day") -> dict:
        now = utcnow()
        start = period_start(period, now)
        fmt = date_format(group_by)
        return {
            "period": period,
            "group_by": group_by,
            "start_date": start,
            "end_date": now,
            "users": await _aggregate(
                User, grouped_trend("created_at", start, fmt, "role", "role")),
            "events": await _aggregate(
                Event,
                grouped_trend("created_at", start, fmt, "category",
                              "category")),
            "tickets": await _aggregate(
                Ticket,
                grouped_trend("booking_date",
                              start,
                              fmt,
                              "status",
                              "status",
                              amount="$total_amount")),
            "revenue": await _aggregate(
                Payment,
                grouped_trend("created_at",
                              start,
                              fmt,
                              "payment_method",
                              "payment_method",
                              match={"status": "completed"},
                              amount="$amount")),
            "verifications": await _aggregate(
                VerificationLog,
                grouped_trend("verification_time", start, fmt,
                              "verification_method", "method")),
        }

    async def security_insights(self, period: str = "24h") -> dict:
        now = utcnow()
        start = period_start(period, now, default="24h")
        window = {"verification_time": {"$gte": start}}

        patterns = await _aggregate(VerificationLog,
                                    suspicious_patterns(window))
        ip_analysis = await _aggregate(VerificationLog,
                                       ip_risk_analysis(window))
        struggling = await User.find({
            "login_attempts": {
                "$gt": 0
            }
        }).sort("-login_attempts").limit(20).to_list()
        failed_logins = [
            clean_aggregate(
                user.model_dump(include={
                    "id", "email", "login_attempts", "last_login_attempt",
                    "is_locked", "lock_expires"
                })) for user in struggling
        ]
        high_risk_actions = await AdminLog.find({
            "created_at": {
                "$gte": start
            },
            "risk_assessment.risk_level": {
                "$in": ["high", "critical"]
            }
        }).sort("-created_at").limit(20).to_list()
        blocked = await BlockedIP.find({
            "$or": [{
                "expires_at": None
            }, {
                "expires_at": {
                    "$gt": now
                }
            }]
        }).sort("-blocked_at").to_list()

        return {
            "period": period,
            "start_date": start,
            "end_date": now,
            "suspicious_activity": patterns,
            "failed_auth_attempts": failed_logins,
            "ip_analysis": ip_analysis,
            "high_risk_admin_actions": clean_aggregate(
                [log.model_dump() for log in high_risk_actions]),
            "blocked_ips": clean_aggregate([ip.model_dump()
                                            for ip in blocked]),
            "recommendations": security_recommendations(
                patterns, failed_logins, ip_analysis,
                self.max_login_attempts),
            "summary": {
                "suspicious_attempts": sum(row["count"] for row in patterns),
                "failed_auth_users": len(failed_logins),
                "locked_accounts": len(
                    [row for row in failed_logins if row["is_locked"]]),
                "high_risk_ips": len([
                    row for row in ip_analysis
                    if (row.get("suspicious_rate") or 0) > 50
                ]),
                "blocked_ips": len(blocked),
            },
        }

    # [Events]
    async def pending_events(
            self,
            params: PageParams,
            category: Optional[str] = None,
            organizer_id: Optional[str] = None) -> Tuple[List[Event], int]:
        query = {"status": "pending"}
        if category:
            query["category"] = category
        if organizer_id:
            query["organizer_id"] = ObjectId(organizer_id)
        events = await Event.find(query).sort("+created_at").skip(
            params.skip).limit(params.limit).to_list()
        total = await Event.find(query).count()
        return events, total

    async def approve_event(self,
                            event_id: str,
                            request: ApproveEventRequest,
                            admin: CurrentUser,
                            context: Optional[AdminLogContext] = None
                            ) -> Event:
        started = time.perf_counter()
        action = "event_approve" if request.action == "approve" \
            else "event_reject"

        event = await Event.find_one({"_id": ObjectId(event_id)})
        if not event:
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="EVENT_NOT_FOUND")

        now = utcnow()
        changes = {
            "status": "published" if request.action == "approve" else
            "rejected",
            "admin_notes": request.notes,
            "approved_by": ObjectId(admin.id),
            "approved_at": now,
            "updated_at": now,
        }
        result = await Event.find_one({
            "_id": event.id,
            "status": "pending"
        }).update({"$set": changes})
        if result.modified_count == 0:
            error = APIError(status_code=status.HTTP_400_BAD_REQUEST,
                             error_code="INVALID_EVENT_STATE",
                             error_message="only pending events can be "
                             "approved or rejected",
                             details={"status": event.status})
            await self.security.record_admin_action(admin,
                                                    action,
                                                    "event",
                                                    event_id,
                                                    context=context,
                                                    reason=request.notes,
                                                    error=error,
                                                    started=started)
            raise error

        await self.security.record_admin_action(
            admin,
            action,
            "event",
            event_id,
            context=context,
            before={"status": event.status},
            after={"status": changes["status"]},
            changes=["status", "admin_notes"],
            notes=request.notes,
            started=started)
        return await Event.find_one({"_id": event.id})

    # [Users]
    async def users(self,
                    params: PageParams,
                    role: Optional[str] = None,
                    account_status: Optional[str] = None,
                    search: Optional[str] = None,
                    sort_by: str = "created_at",
                    sort_order: str = "desc"
                    ) -> Tuple[List[AdminUserView], int, List[dict]]:
        query = {}
        if role:
            query["role"] = role
        if account_status == "active":
            query["is_active"] = True
        elif account_status == "inactive":
            query["is_active"] = False
        elif account_status == "locked":
            query["is_locked"] = True
        if search:
            pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
            query["$or"] = [{"name": pattern}, {"email": pattern}]

        if sort_by not in USER_SORT_FIELDS:
            sort_by = "created_at"
        direction = "+" if sort_order == "asc" else "-"

        users = await User.find(query).sort(f"{direction}{sort_by}").skip(
            params.skip).limit(params.limit).to_list()
        total = await User.find(query).count()
        role_stats = await _aggregate(User, [
            {"$group": {"_id": "$role", "count": {"$sum": 1},
                        "active": {"$sum": {"$cond": ["$is_active", 1, 0]}},
                        "total_spent": {"$sum": "$stats.total_spent"}}},
            {"$sort": {"_id": 1}},
        ])
        return [AdminUserView.model_validate(user)
                for user in users], total, role_stats

    @staticmethod
    def _user_action(before: User, changes: dict) -> str:
        if "role" in changes and changes["role"] != before.role:
            return "role_change"
        if changes.get("is_active") is False and before.is_active:
            return "user_deactivate"
        if changes.get("is_active") is True and not before.is_active:
            return "user_reactivate"
        return "user_update"

    async def update_user(self,
                          user_id: str,
                          request: UpdateUserRequest,
                          admin: CurrentUser,
                          context: Optional[AdminLogContext] = None
                          ) -> AdminUserView:
        started = time.perf_counter()
        if user_id == admin.id:
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="SELF_MODIFICATION")

        user = await User.find_one({"_id": ObjectId(user_id)})
        if not user:
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="USER_NOT_FOUND")

        requested = request.model_dump(exclude_unset=True, exclude={"notes"})
        changes = {
            key: value
            for key, value in requested.items()
            if getattr(user, key) != value
        }
        update = {
            **changes, "updated_by": ObjectId(admin.id),
            "updated_at": utcnow()
        }
        if request.notes is not None:
            update["admin_notes"] = request.notes
        if changes.get("is_active"):
            # Reactivation also clears a brute force lock
            update.update({
                "login_attempts": 0,
                "is_locked": False,
                "lock_expires": None
            })

        await User.find_one({"_id": user.id}).update({"$set": update})

        await self.security.record_admin_action(
            admin,
            self._user_action(user, changes),
            "user",
            user_id,
            context=context,
            before={key: getattr(user, key)
                    for key in changes},
            after=changes,
            changes=sorted(changes),
            notes=request.notes,
            started=started)
        return AdminUserView.model_validate(await User.find_one(
            {"_id": user.id}))

    # [Security]
    async def ip_block(self,
                       request: IPBlockRequest,
                       admin: CurrentUser,
                       context: Optional[AdminLogContext] = None) -> dict:
        started = time.perf_counter()
        if request.action == "block":
            blocked = await self.security.block_ip(request.ip_address,
                                                   request.reason, admin.id,
                                                   request.duration_minutes)
            outcome = {
                "ip_address": blocked.ip_address,
                "blocked": True,
                "expires_at": blocked.expires_at,
            }
        else:
            removed = await self.security.unblock_ip(request.ip_address)
            outcome = {"ip_address": request.ip_address, "blocked": False,
                       "was_blocked": removed}

        await self.security.record_admin_action(
            admin,
            "ip_block" if request.action == "block" else "ip_unblock",
            "security",
            request.ip_address,
            context=context,
            after=clean_aggregate(outcome),
            reason=request.reason,
            started=started)
        return outcome

    async def logs(self,
                   params: PageParams,
                   action: Optional[str] = None,
                   risk_level: Optional[str] = None,
                   log_status: Optional[str] = None,
                   admin_id: Optional[str] = None,
                   start_date: Optional[datetime] = None,
                   end_date: Optional[datetime] = None
                   ) -> Tuple[List[AdminLog], int]:
        query = {}
        if action:
            query["action"] = action
        if risk_level:
            query["risk_assessment.risk_level"] = risk_level
        if log_status:
            query["status"] = log_status
        if admin_id:
            query["admin_id"] = ObjectId(admin_id)
        if start_date or end_date:
            query["created_at"] = {}
            if start_date:
                query["created_at"]["$gte"] = start_date
            if end_date:
                query["created_at"]["$lte"] = end_date

        logs = await AdminLog.find(query).sort("-created_at").skip(
            params.skip).limit(params.limit).to_list()
        total = await AdminLog.find(query).count()
        return logs, total
