import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from bson.objectid import ObjectId
from fastapi import status

from ticketing.constants import MAX_BULK_VERIFICATIONS
from ticketing.core import APIError, PageParams, clean_aggregate, utcnow
from ticketing.entities import (Event, RateLimitWindow, Ticket,
                                VerificationFlags, VerificationLog,
                                VerificationResult, User)
from ticketing.pipelines import (count_by, daily_verifications,
                                 hourly_verifications, ip_risk_analysis,
                                 period_start, suspicious_patterns,
                                 verification_breakdown, verification_summary,
                                 verified_tickets_by_day)
from ticketing.policies import validate_ticket_for_entry
from ticketing.rate_limit import DeviceInfo
from ticketing.risk import (ATTEMPT_BURST_THRESHOLD, ATTEMPT_WINDOW_MINUTES,
                            SUSPICIOUS_THRESHOLD, verification_flags)
from ticketing.schemas import (BulkVerificationRequest, ScanRequest,
                               TicketNumberRequest, VerificationResponse)
from ticketing.security import CurrentUser
from ticketing.services.events import can_manage_event
from ticketing.services.tickets import TicketService
from ticketing.ticket_generator import TicketGenerator

logger = logging.getLogger(__name__)


class VerificationService():
    """
    Door checks for tickets. Every attempt, including the ones that fail
    before a ticket is found, leaves a VerificationLog behind
    """

    def __init__(self, generator: TicketGenerator):
        self.generator = generator

    async def _attempts_in_window(self, ip_address: str,
                                  now: datetime) -> int:
        since = now - timedelta(minutes=ATTEMPT_WINDOW_MINUTES)
        previous = await VerificationLog.find({
            "ip_address": ip_address,
            "verification_time": {
                "$gte": since
            }
        }).count()
        return previous + 1

    async def _log_attempt(self,
                           *,
                           verifier: CurrentUser,
                           method: str,
                           result: Dict[str, Any],
                           device: DeviceInfo,
                           started: float,
                           notes: str,
                           ticket: Optional[Ticket] = None) -> VerificationLog:
        now = utcnow()
        attempts = await self._attempts_in_window(device.ip, now)
        flags = verification_flags(result["is_valid"], result["reason"], now,
                                   attempts)

        entry = await VerificationLog(
            ticket_id=ticket.id if ticket else None,
            event_id=ticket.event_id if ticket else None,
            user_id=ticket.user_id if ticket else None,
            verified_by=ObjectId(verifier.id),
            verification_method=method,
            verification_result=VerificationResult(**result),
            ip_address=device.ip,
            user_agent=device.user_agent or None,
            device=device.type,
            verification_time=now,
            response_time_ms=int((time.perf_counter() - started) * 1000),
            notes=notes,
            flags=VerificationFlags(**flags),
            rate_limit=RateLimitWindow(
                attempts_in_window=attempts,
                window_start=now - timedelta(minutes=ATTEMPT_WINDOW_MINUTES)),
        ).insert()

        if flags["is_suspicious"]:
            logger.warning(
                "suspicious verification from %s by %s: %s (risk %d)",
                device.ip, verifier.id, result["reason"],
                flags["risk_score"])
        elif not result["is_valid"]:
            logger.info("verification rejected: %s", result["reason"])
        if attempts > ATTEMPT_BURST_THRESHOLD:
            logger.warning("%d verification attempts from %s in %d minutes",
                           attempts, device.ip, ATTEMPT_WINDOW_MINUTES)
        return entry

    @staticmethod
    def _failure(reason: str, **details) -> Dict[str, Any]:
        return {
            "is_valid": False,
            "can_enter": False,
            "reason": reason,
            "details": details
        }

    async def _verify(self, ticket_number: str,
                      payload: Optional[Dict[str, Any]], method: str,
                      verifier: CurrentUser,
                      device: DeviceInfo) -> VerificationResponse:
        started = time.perf_counter()

        ticket = await Ticket.find_one({"ticket_number": ticket_number})
        event = await Event.find_one({"_id": ticket.event_id
                                      }) if ticket else None
        if not ticket or not event:
            result = self._failure("Ticket not found in system",
                                   ticket_number=ticket_number)
            await self._log_attempt(verifier=verifier,
                                    method=method,
                                    result=result,
                                    device=device,
                                    started=started,
                                    notes="Ticket not found")
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="TICKET_NOT_FOUND",
                           details={"verification_result": result})

        if not can_manage_event(event, verifier):
            result = self._failure(
                "Not authorized to verify tickets for this event",
                organizer_id=str(event.organizer_id))
            await self._log_attempt(verifier=verifier,
                                    method=method,
                                    result=result,
                                    device=device,
                                    started=started,
                                    notes="Unauthorized verification attempt",
                                    ticket=ticket)
            raise APIError(
                status_code=status.HTTP_403_FORBIDDEN,
                error_code="FORBIDDEN",
                error_message="not authorized to verify tickets for this event")

        signature_valid = None
        if payload and payload.get("signature"):
            signature_valid = self.generator.verify_signature(
                payload["signature"], ticket.ticket_number,
                str(ticket.event_id), str(ticket.user_id))

        owner = await User.find_one({"_id": ticket.user_id})
        attendee = owner.name if owner else None
        now = utcnow()
        result = validate_ticket_for_entry(ticket,
                                           event,
                                           now,
                                           attendee_name=attendee,
                                           signature_valid=signature_valid)

        verified_at = None
        if result["can_enter"]:
            try:
                verified_at = await TicketService.mark_used(
                    ticket, verifier.id)
            except APIError:
                # Another scanner admitted this ticket a moment ago
                result = self._failure("Ticket has already been used",
                                       ticket_number=ticket.ticket_number)

        await self._log_attempt(
            verifier=verifier,
            method=method,
            result=result,
            device=device,
            started=started,
            notes="Ticket verified successfully" if result["can_enter"] else
            f"Verification failed: {result['reason']}",
            ticket=ticket)

        return VerificationResponse(
            verification_result=result,
            ticket={
                "ticket_number": ticket.ticket_number,
                "event_title": event.title,
                "attendee_name": attendee,
                "quantity": ticket.quantity,
                "status": "used" if verified_at else ticket.status,
                "verified_at": verified_at,
                "verified_by": verifier.name if verified_at else None,
            })

    async def scan(self, request: ScanRequest, verifier: CurrentUser,
                   device: DeviceInfo) -> VerificationResponse:
        if request.verification_method == "manual":
            return await self._verify(request.qr_data.strip(), None, "manual",
                                      verifier, device)

        started = time.perf_counter()
        try:
            payload = self.generator.parse_qr_payload(request.qr_data)
        except ValueError:
            result = self._failure("Invalid QR code data format",
                                   qr_data=request.qr_data[:200])
            await self._log_attempt(verifier=verifier,
                                    method="qr",
                                    result=result,
                                    device=device,
                                    started=started,
                                    notes="Unreadable QR payload")
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="INVALID_QR_DATA")
        return await self._verify(str(payload["ticket_number"]), payload, "qr",
                                  verifier, device)

    async def verify_ticket_number(self, request: TicketNumberRequest,
                                   verifier: CurrentUser,
                                   device: DeviceInfo) -> VerificationResponse:
        return await self._verify(request.ticket_number.strip(), None,
                                  "manual", verifier, device)

    async def bulk(self, request: BulkVerificationRequest,
                   verifier: CurrentUser, device: DeviceInfo) -> dict:
        if len(request.tickets) > MAX_BULK_VERIFICATIONS:
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="BULK_LIMIT_EXCEEDED",
                           details={"received": len(request.tickets)})

        verified = []
        errors = []
        for item in request.tickets:
            payload = None
            ticket_number = item.strip()
            if request.verification_method == "qr":
                started = time.perf_counter()
                try:
                    payload = self.generator.parse_qr_payload(item)
                except ValueError:
                    await self._log_attempt(
                        verifier=verifier,
                        method="bulk",
                        result=self._failure("Invalid QR code data format",
                                             qr_data=item[:200]),
                        device=device,
                        started=started,
                        notes="Unreadable QR payload")
                    errors.append({
                        "ticket_data": item[:200],
                        "error": "Invalid QR code format"
                    })
                    continue
                ticket_number = str(payload["ticket_number"])

            try:
                response = await self._verify(ticket_number, payload, "bulk",
                                              verifier, device)
            except APIError as exc:
                errors.append({
                    "ticket_number": ticket_number,
                    "error": exc.error_message
                })
                continue
            verified.append(response.model_dump())

        admitted = sum(1 for entry in verified
                       if entry["verification_result"]["can_enter"])
        logger.info("bulk verification by %s: %d checked, %d admitted",
                    verifier.id, len(request.tickets), admitted)
        return {
            "results": {
                "successful": len(verified),
                "admitted": admitted,
                "failed": len(errors),
                "total": len(request.tickets),
            },
            "verified_tickets": verified,
            "errors": errors,
        }

    async def _event_scope(self, verifier: CurrentUser,
                           event_id: Optional[str]) -> Optional[dict]:
        """
        Filter on event_id restricting non-admins to their own events;
        None means no restriction
        """
        if event_id:
            event = await Event.find_one({"_id": ObjectId(event_id)})
            if not event:
                raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                               error_code="EVENT_NOT_FOUND")
            if not can_manage_event(event, verifier):
                raise APIError(status_code=status.HTTP_403_FORBIDDEN,
                               error_code="FORBIDDEN",
                               error_message="not the organizer of this event")
            return {"event_id": event.id}

        if verifier.is_admin:
            return None
        own = await Event.find({
            "organizer_id": ObjectId(verifier.id)
        }).to_list()
        return {"event_id": {"$in": [event.id for event in own]}}

    async def history(self,
                      verifier: CurrentUser,
                      params: PageParams,
                      event_id: Optional[str] = None,
                      ticket_status: Optional[str] = None,
                      day: Optional[datetime] = None
                      ) -> Tuple[List[Ticket], int, List[dict]]:
        query = dict(await self._event_scope(verifier, event_id) or {})
        if ticket_status:
            query["status"] = ticket_status
        else:
            query["is_verified"] = True
        if day:
            start = day.replace(hour=0, minute=0, second=0, microsecond=0)
            query["verified_at"] = {
                "$gte": start,
                "$lt": start + timedelta(days=1)
            }

        tickets = await Ticket.find(query).sort("-verified_at").skip(
            params.skip).limit(params.limit).to_list()
        total = await Ticket.find(query).count()
        stats = clean_aggregate(await Ticket.aggregate(
            count_by("status", query)).to_list())
        return tickets, total, stats

    async def stats(self,
                    verifier: CurrentUser,
                    event_id: Optional[str] = None,
                    period: str = "today") -> dict:
        now = utcnow()
        start = period_start(period, now, default="24h")
        query = dict(await self._event_scope(verifier, event_id) or {})
        query["verified_at"] = {"$gte": start}

        daily = clean_aggregate(await Ticket.aggregate(
            verified_tickets_by_day(query)).to_list())
        totals = clean_aggregate(await Ticket.aggregate(
            count_by("status", query)).to_list())
        by_status = {row["_id"]: row["count"] for row in totals}
        return {
            "period": period,
            "start_date": start,
            "end_date": now,
            "daily_stats": daily,
            "total_stats": totals,
            "summary": {
                "total_verified": by_status.get("used", 0),
                "total_pending": by_status.get("confirmed", 0),
                "total_cancelled": by_status.get("cancelled", 0),
            },
        }

    async def _log_scope(self, verifier: CurrentUser,
                         event_id: Optional[str], start: datetime) -> dict:
        query = dict(await self._event_scope(verifier, event_id) or {})
        query["verification_time"] = {"$gte": start}
        return query

    async def dashboard_overview(self,
                                 verifier: CurrentUser,
                                 event_id: Optional[str] = None) -> dict:
        now = utcnow()
        start = period_start("24h", now)
        query = await self._log_scope(verifier, event_id, start)

        summary = clean_aggregate(await VerificationLog.aggregate(
            verification_summary(query)).to_list())
        by_method = clean_aggregate(await VerificationLog.aggregate(
            verification_breakdown(query, "verification_method")).to_list())
        by_device = clean_aggregate(await VerificationLog.aggregate(
            verification_breakdown(query, "device")).to_list())
        by_event = clean_aggregate(await VerificationLog.aggregate(
            verification_breakdown(query, "event_id")).to_list())

        recent = await VerificationLog.find(query).sort(
            "-verification_time").limit(10).to_list()
        suspicious = await VerificationLog.find({
            **query, "flags.is_suspicious": True
        }).sort("-flags.risk_score", "-verification_time").limit(10).to_list()

        return {
            "period": "24h",
            "start_date": start,
            "end_date": now,
            "summary": summary[0] if summary else {
                "total_verifications": 0,
                "successful_verifications": 0,
                "failed_verifications": 0,
                "suspicious_attempts": 0,
                "avg_response_time": None,
                "avg_risk_score": None,
            },
            "by_method": by_method,
            "by_device": by_device,
            "top_events": by_event[:10],
            "recent_verifications": clean_aggregate(
                [log.model_dump() for log in recent]),
            "suspicious_activity": clean_aggregate(
                [log.model_dump() for log in suspicious]),
        }

    async def dashboard_analytics(self,
                                  verifier: CurrentUser,
                                  period: str = "7d",
                                  event_id: Optional[str] = None) -> dict:
        now = utcnow()
        start = period_start(period, now, default="7d")
        query = await self._log_scope(verifier, event_id, start)

        return {
            "period": period,
            "start_date": start,
            "end_date": now,
            "daily": clean_aggregate(await VerificationLog.aggregate(
                daily_verifications(query)).to_list()),
            "hourly": clean_aggregate(await VerificationLog.aggregate(
                hourly_verifications(query)).to_list()),
            "by_event": clean_aggregate(await VerificationLog.aggregate(
                verification_breakdown(query, "event_id")).to_list()),
            "by_verifier": clean_aggregate(await VerificationLog.aggregate(
                verification_breakdown(query, "verified_by")).to_list()),
            "by_method": clean_aggregate(await VerificationLog.aggregate(
                verification_breakdown(query,
                                       "verification_method")).to_list()),
        }

    async def dashboard_security(self,
                                 verifier: CurrentUser,
                                 period: str = "24h",
                                 event_id: Optional[str] = None) -> dict:
        now = utcnow()
        start = period_start(period, now, default="24h")
        query = await self._log_scope(verifier, event_id, start)

        patterns = clean_aggregate(await VerificationLog.aggregate(
            suspicious_patterns(query)).to_list())
        ip_analysis = clean_aggregate(await VerificationLog.aggregate(
            ip_risk_analysis(query)).to_list())
        suspicious_devices = clean_aggregate(await VerificationLog.aggregate(
            verification_breakdown({
                **query, "flags.is_suspicious": True
            }, "device")).to_list())
        high_risk = await VerificationLog.find({
            **query, "flags.risk_score": {
                "$gt": SUSPICIOUS_THRESHOLD
            }
        }).sort("-flags.risk_score").limit(20).to_list()
        bursts = [
            row for row in ip_analysis
            if (row.get("max_attempts_in_window") or 0) >
            ATTEMPT_BURST_THRESHOLD
        ]

        return {
            "period": period,
            "start_date": start,
            "end_date": now,
            "suspicious_patterns": patterns,
            "ip_analysis": ip_analysis,
            "suspicious_devices": suspicious_devices,
            "high_risk_verifications": clean_aggregate(
                [log.model_dump() for log in high_risk]),
            "rate_limit_violations": bursts,
            "summary": {
                "suspicious_attempts": sum(row["count"] for row in patterns),
                "high_risk_ips": len([
                    row for row in ip_analysis
                    if (row.get("suspicious_rate") or 0) > 50
                ]),
                "rate_limit_violations": len(bursts),
            },
        }
