"""
Request throttling and client fingerprinting.

Fixed-window counters from "limits" (the engine slowapi runs on) kept in
process memory. Keys combine the client address with the authenticated user
so several scanners behind one gateway do not starve each other. Admins are
never throttled.
"""

import logging
import re
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Depends, Request, status
from limits import RateLimitItem, parse
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter
from pydantic import BaseModel
from slowapi.util import get_remote_address

from ticketing.core import APIError
from ticketing.security import CurrentUser

logger = logging.getLogger(__name__)


class RateLimitRule():

    def __init__(self, name: str, limit: str, message: str):
        self.name = name
        self.item: RateLimitItem = parse(limit)
        self.message = message

    @property
    def retry_after(self) -> str:
        minutes = self.item.get_expiry() // 60
        if minutes >= 1:
            return f"{minutes} minutes"
        return f"{self.item.get_expiry()} seconds"


class RateLimiter():

    def __init__(self):
        self.storage = MemoryStorage()
        self.strategy = FixedWindowRateLimiter(self.storage)

    def check(self, rule: RateLimitRule, key: str):
        """
        Count one hit against the rule; raises 429 once the window is spent
        """
        if self.strategy.hit(rule.item, rule.name, key):
            return

        stats = self.strategy.get_window_stats(rule.item, rule.name, key)
        logger.warning("rate limit %s exceeded for %s", rule.name, key)
        raise APIError(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            error_code="RATE_LIMITED",
            error_message=rule.message,
            details={
                "retry_after": rule.retry_after,
                "limit": rule.item.amount,
                "remaining": stats.remaining,
                "reset_time": datetime.fromtimestamp(
                    stats.reset_time, tz=timezone.utc).isoformat(),
                "retry_in_seconds": max(int(stats.reset_time - time.time()),
                                        0),
            })

    def guard(self,
              rule: RateLimitRule,
              user_dependency: Optional[Callable] = None):
        """
        Dependency factory. With a user dependency the key is
        "<ip>-<user id>" and admins skip the limiter entirely
        """
        if user_dependency is None:

            async def anonymous(request: Request):
                self.check(rule, get_remote_address(request))

            return anonymous

        async def authenticated(request: Request,
                                user: CurrentUser = Depends(user_dependency)):
            if user.is_admin:
                return
            self.check(rule, f"{get_remote_address(request)}-{user.id}")

        return authenticated


class DeviceInfo(BaseModel):
    type: str
    user_agent: str
    ip: str


def detect_device(user_agent: str) -> str:
    if re.search(r"Mobile|Android|iPhone|iPad", user_agent):
        return "mobile"
    if re.search(r"Tablet", user_agent):
        return "tablet"
    if re.search(r"Windows|Mac|Linux", user_agent):
        return "desktop"
    return "unknown"


def device_info(request: Request) -> DeviceInfo:
    user_agent = request.headers.get("user-agent", "")
    return DeviceInfo(type=detect_device(user_agent),
                      user_agent=user_agent,
                      ip=get_remote_address(request))


def build_rules(settings) -> dict:
    return {
        "general":
        RateLimitRule(
            "general", settings.rate_limit_general,
            "Too many verification attempts from this IP, please try again later"
        ),
        "qr_scan":
        RateLimitRule(
            "qr_scan", settings.rate_limit_qr_scan,
            "Too many QR code scans from this IP, please try again later"),
        "manual":
        RateLimitRule(
            "manual", settings.rate_limit_manual_verification,
            "Too many manual verification attempts from this IP, please try again later"
        ),
        "bulk":
        RateLimitRule(
            "bulk", settings.rate_limit_bulk_verification,
            "Too many bulk verification attempts from this IP, please try again later"
        ),
        "login":
        RateLimitRule("login", settings.rate_limit_login,
                      "Too many login attempts, please try again later"),
    }
