import logging
import time
from datetime import timedelta
from typing import Any, Optional

from beanie import PydanticObjectId
from fastapi import Request, status
from slowapi.util import get_remote_address

from ticketing.core import APIError, utcnow
from ticketing.entities import (AdminLog, AdminLogContext, AdminLogDetails,
                                AdminLogError, Approval, BlockedIP,
                                RiskAssessment)
from ticketing.logging_config import get_request_id
from ticketing.risk import assess_admin_action, requires_approval
from ticketing.security import CurrentUser

logger = logging.getLogger(__name__)


def audit_context(request: Request) -> AdminLogContext:
    return AdminLogContext(ip_address=get_remote_address(request),
                           user_agent=request.headers.get("user-agent"),
                           endpoint=request.url.path,
                           method=request.method,
                           request_id=get_request_id() or None)


class SecurityService():
    """
    Admin audit trail and the IP block list
    """

    async def record_admin_action(self,
                                  admin: CurrentUser,
                                  action: str,
                                  target_type: str,
                                  target_id: Optional[str] = None,
                                  *,
                                  context: Optional[AdminLogContext] = None,
                                  before: Any = None,
                                  after: Any = None,
                                  changes=None,
                                  reason: Optional[str] = None,
                                  notes: Optional[str] = None,
                                  error: Optional[APIError] = None,
                                  started: Optional[float] = None) -> AdminLog:
        context = context or AdminLogContext()
        now = utcnow()
        risk = assess_admin_action(action, target_type, context.ip_address,
                                   now)

        log_status = "completed"
        if error is not None:
            log_status = "failed"
        elif requires_approval(risk["risk_level"]):
            log_status = "requires_approval"

        entry = AdminLog(
            admin_id=PydanticObjectId(admin.id),
            action=action,
            target_type=target_type,
            target_id=target_id,
            details=AdminLogDetails(before=before,
                                    after=after,
                                    changes=changes or [],
                                    reason=reason,
                                    notes=notes),
            context=context,
            risk_assessment=RiskAssessment(**risk),
            approval=Approval(required=requires_approval(risk["risk_level"])),
            status=log_status,
            error=AdminLogError(code=error.error_code,
                                message=error.error_message)
            if error else None,
            duration_ms=int((time.perf_counter() - started) *
                            1000) if started else None,
            created_at=now,
        )
        await entry.insert()

        if risk["requires_review"]:
            logger.warning("admin %s performed %s on %s %s (risk %s/%s)",
                           admin.id, action, target_type, target_id,
                           risk["risk_level"], risk["risk_score"])
        else:
            logger.info("admin %s performed %s on %s %s", admin.id, action,
                        target_type, target_id)
        return entry

    async def is_ip_blocked(self, ip_address: str) -> bool:
        blocked = await BlockedIP.find_one({
            "ip_address": ip_address,
            "$or": [{
                "expires_at": None
            }, {
                "expires_at": {
                    "$gt": utcnow()
                }
            }],
        })
        return blocked is not None

    async def ensure_not_blocked(self, request: Request):
        ip_address = get_remote_address(request)
        if await self.is_ip_blocked(ip_address):
            logger.warning("request from blocked ip %s refused", ip_address)
            raise APIError(status_code=status.HTTP_403_FORBIDDEN,
                           error_code="IP_BLOCKED")

    async def block_ip(self, ip_address: str, reason: Optional[str],
                       blocked_by: str,
                       duration_minutes: Optional[int]) -> BlockedIP:
        now = utcnow()
        expires_at = now + timedelta(
            minutes=duration_minutes) if duration_minutes else None
        await BlockedIP.find_one({
            "ip_address": ip_address
        }).upsert(
            {
                "$set": {
                    "reason": reason or "Admin action",
                    "blocked_by": PydanticObjectId(blocked_by),
                    "blocked_at": now,
                    "expires_at": expires_at,
                }
            },
            on_insert=BlockedIP(ip_address=ip_address,
                                reason=reason or "Admin action",
                                blocked_by=PydanticObjectId(blocked_by),
                                blocked_at=now,
                                expires_at=expires_at),
        )
        logger.warning("ip %s blocked by %s until %s", ip_address,
                       blocked_by, expires_at or "further notice")
        return await BlockedIP.find_one({"ip_address": ip_address})

    async def unblock_ip(self, ip_address: str) -> bool:
        result = await BlockedIP.find({"ip_address": ip_address}).delete()
        removed = bool(result and result.deleted_count)
        if removed:
            logger.info("ip %s unblocked", ip_address)
        return removed
