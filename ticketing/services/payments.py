import logging
from typing import List, Optional, Tuple

from bson.objectid import ObjectId
from fastapi import status
from pymongo.errors import DuplicateKeyError

from ticketing.config import Settings
from ticketing.constants import SUPPORTED_CURRENCIES
from ticketing.core import APIError, PageParams, utcnow
from ticketing.entities import (Event, GatewayResponse, Payment,
                                RefundDetails, Ticket, User)
from ticketing.payments import (OFFLINE_METHODS, GatewayResult,
                                PaymentGatewayFactory, UnsupportedGateway,
                                generate_payment_id, generate_refund_id)
from ticketing.schemas import (ConfirmPaymentRequest,
                               CreatePaymentIntentRequest,
                               PaymentIntentResponse, RefundPaymentRequest)
from ticketing.security import CurrentUser
from ticketing.services.security import SecurityService

logger = logging.getLogger(__name__)

MAX_RETRIES = 10


def _gateway_response(result: GatewayResult) -> GatewayResponse:
    return GatewayResponse(gateway=result.gateway,
                           transaction_id=result.transaction_id,
                           response_code=result.response_code,
                           response_message=result.response_message,
                           raw_response=result.raw_response)


class PaymentService():

    def __init__(self, settings: Settings, gateways: PaymentGatewayFactory,
                 security: SecurityService):
        self.settings = settings
        self.gateways = gateways
        self.security = security

    def _gateway(self, name: str):
        try:
            return self.gateways.create(name)
        except UnsupportedGateway as exc:
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="GATEWAY_ERROR",
                           error_message=str(exc))

    async def create_intent(
            self, user: CurrentUser,
            request: CreatePaymentIntentRequest) -> PaymentIntentResponse:
        ticket = await Ticket.find_one({"_id": ObjectId(request.ticket_id)})
        if not ticket:
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="TICKET_NOT_FOUND")
        if str(ticket.user_id) != user.id:
            raise APIError(status_code=status.HTTP_403_FORBIDDEN,
                           error_code="FORBIDDEN")
        if ticket.status != "pending" or ticket.payment_status not in (
                "pending", "failed"):
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="PAYMENT_NOT_ALLOWED",
                           details={
                               "status": ticket.status,
                               "payment_status": ticket.payment_status
                           })

        method = request.payment_method or self.gateways.for_currency(
            ticket.currency)

        result = None
        if method not in OFFLINE_METHODS:
            result = await self._gateway(method).create_intent(
                ticket.total_amount, ticket.currency, ticket.ticket_number)
            if not result.success:
                raise APIError(status_code=status.HTTP_502_BAD_GATEWAY,
                               error_code="GATEWAY_ERROR",
                               error_message=result.response_message)

        attempt = 0
        while True:
            if attempt >= MAX_RETRIES:
                raise APIError(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    error_code="SERVER-500",
                    error_message="failed to generate unique payment id")
            try:
                payment = await Payment(
                    payment_id=generate_payment_id(),
                    ticket_id=ticket.id,
                    user_id=ticket.user_id,
                    event_id=ticket.event_id,
                    amount=ticket.total_amount,
                    currency=ticket.currency,
                    payment_method=method,
                    client_secret=result.client_secret if result else None,
                    gateway_response=_gateway_response(result)
                    if result else None,
                ).insert()
                break
            except DuplicateKeyError:
                attempt += 1
                continue

        logger.info("payment %s created for ticket %s via %s",
                    payment.payment_id, ticket.ticket_number, method)
        return PaymentIntentResponse(payment_id=payment.payment_id,
                                     client_secret=payment.client_secret,
                                     amount=payment.amount,
                                     currency=payment.currency,
                                     gateway=method,
                                     status=payment.status)

    async def confirm(self, user: CurrentUser,
                      request: ConfirmPaymentRequest) -> Payment:
        payment = await Payment.find_one({"payment_id": request.payment_id})
        if not payment:
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="PAYMENT_NOT_FOUND")
        if str(payment.user_id) != user.id:
            raise APIError(status_code=status.HTTP_403_FORBIDDEN,
                           error_code="FORBIDDEN")
        if payment.status != "pending":
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="PAYMENT_NOT_PENDING",
                           details={"status": payment.status})
        if payment.payment_method in OFFLINE_METHODS:
            raise APIError(
                status_code=status.HTTP_400_BAD_REQUEST,
                error_code="PAYMENT_NOT_ALLOWED",
                error_message=f"{payment.payment_method} payments are "
                "settled manually")

        # Claim the payment so a double submit settles once
        claimed = await Payment.find_one({
            "_id": payment.id,
            "status": "pending"
        }).update({"$set": {
            "status": "processing",
            "updated_at": utcnow()
        }})
        if claimed.modified_count == 0:
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="PAYMENT_NOT_PENDING")

        gateway = self._gateway(payment.payment_method)
        intent_id = payment.gateway_response.transaction_id \
            if payment.gateway_response else payment.payment_id
        result = await gateway.confirm(intent_id, payment.amount)

        if not result.success:
            await Payment.find_one({
                "_id": payment.id
            }).update({
                "$set": {
                    "status": "failed",
                    "gateway_response": _gateway_response(result).model_dump(),
                    "updated_at": utcnow()
                }
            })
            await Ticket.find_one({
                "_id": payment.ticket_id,
                "status": "pending"
            }).update({
                "$set": {
                    "payment_status": "failed",
                    "updated_at": utcnow()
                }
            })
            logger.warning("payment %s failed: %s", payment.payment_id,
                           result.response_code)
            return await Payment.find_one({"_id": payment.id})

        await Payment.find_one({
            "_id": payment.id
        }).update({
            "$set": {
                "status": "completed",
                "gateway_response": _gateway_response(result).model_dump(),
                "updated_at": utcnow()
            }
        })

        ticket_update = await Ticket.find_one({
            "_id": payment.ticket_id,
            "status": "pending"
        }).update({
            "$set": {
                "status": "confirmed",
                "payment_status": "completed",
                "payment_id": payment.payment_id,
                "updated_at": utcnow()
            }
        })
        if ticket_update.modified_count == 0:
            # Ticket was cancelled while the gateway was settling
            refreshed = await Payment.find_one({"_id": payment.id})
            await self._refund(refreshed, refreshed.amount,
                               "Ticket no longer pending", None)
            raise APIError(status_code=status.HTTP_409_CONFLICT,
                           error_code="PAYMENT_NOT_ALLOWED",
                           error_message="ticket is no longer awaiting "
                           "payment, the charge was refunded")

        ticket = await Ticket.find_one({"_id": payment.ticket_id})
        await User.find_one({
            "_id": payment.user_id
        }).update({
            "$inc": {
                "stats.total_tickets": ticket.quantity,
                "stats.total_spent": payment.amount
            }
        })
        logger.info("payment %s completed for ticket %s", payment.payment_id,
                    ticket.ticket_number)
        return await Payment.find_one({"_id": payment.id})

    async def my_payments(self, user: CurrentUser,
                          params: PageParams) -> Tuple[List[Payment], int]:
        query = {"user_id": ObjectId(user.id)}
        payments = await Payment.find(query).sort("-created_at").skip(
            params.skip).limit(params.limit).to_list()
        total = await Payment.find(query).count()
        return payments, total

    def gateway_status(self) -> dict:
        return {
            "gateways": self.gateways.status(),
            "default_gateway": self.settings.default_gateway,
            "default_currency": self.settings.default_currency,
            "supported_currencies": SUPPORTED_CURRENCIES,
        }

    async def _refund(self, payment: Payment, amount: float,
                      reason: Optional[str],
                      refunded_by: Optional[str]) -> RefundDetails:
        if payment.payment_method in OFFLINE_METHODS:
            transaction_id = None
        else:
            gateway = self._gateway(payment.payment_method)
            reference = payment.gateway_response.transaction_id \
                if payment.gateway_response else payment.payment_id
            result = await gateway.refund(reference, amount)
            if not result.success:
                raise APIError(status_code=status.HTTP_502_BAD_GATEWAY,
                               error_code="GATEWAY_ERROR",
                               error_message=result.response_message)
            transaction_id = result.transaction_id

        details = RefundDetails(
            refund_id=generate_refund_id(),
            refund_amount=amount,
            refund_reason=reason,
            refunded_by=ObjectId(refunded_by) if refunded_by else None)

        result = await Payment.find_one({
            "_id": payment.id,
            "status": {
                "$in": ["completed", "processing"]
            }
        }).update({
            "$set": {
                "status": "refunded",
                "refund_details": details.model_dump(),
                "updated_at": utcnow()
            }
        })
        if result.modified_count == 0:
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="PAYMENT_NOT_REFUNDABLE")

        logger.info("payment %s refunded %.2f (gateway ref %s)",
                    payment.payment_id, amount, transaction_id)
        return details

    async def refund_ticket_payment(self, ticket: Ticket,
                                    reason: Optional[str],
                                    refunded_by: str) -> float:
        """
        Refund the completed payment behind a ticket, returns the amount
        """
        if not ticket.payment_id:
            return 0
        payment = await Payment.find_one({
            "payment_id": ticket.payment_id,
            "status": "completed"
        })
        if not payment:
            return 0
        details = await self._refund(payment, payment.amount, reason,
                                     refunded_by)
        return details.refund_amount

    async def refund(self, payment_id: str, request: RefundPaymentRequest,
                     admin: CurrentUser, context=None) -> Payment:
        payment = await Payment.find_one({"payment_id": payment_id})
        if not payment:
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="PAYMENT_NOT_FOUND")
        if payment.status != "completed":
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="PAYMENT_NOT_REFUNDABLE",
                           details={"status": payment.status})

        amount = request.amount or payment.amount
        if amount > payment.amount:
            raise APIError(
                status_code=status.HTTP_400_BAD_REQUEST,
                error_code="PAYMENT_NOT_REFUNDABLE",
                error_message="refund amount exceeds the payment amount")

        details = await self._refund(payment, amount, request.reason,
                                     admin.id)

        ticket = await Ticket.find_one({"_id": payment.ticket_id})
        if ticket and ticket.status in ("confirmed", "pending"):
            released = await Ticket.find_one({
                "_id": ticket.id,
                "status": ticket.status
            }).update({
                "$set": {
                    "status": "refunded",
                    "payment_status": "refunded",
                    "refund_amount": amount,
                    "refund_reason": request.reason,
                    "updated_at": utcnow()
                }
            })
            if released.modified_count:
                await Event.find_one({
                    "_id": ticket.event_id
                }).update({"$inc": {
                    "available_tickets": ticket.quantity
                }})
                await User.find_one({
                    "_id": ticket.user_id
                }).update({
                    "$inc": {
                        "stats.total_tickets": -ticket.quantity,
                        "stats.total_spent": -amount
                    }
                })

        await self.security.record_admin_action(
            admin,
            "payment_refund",
            "payment",
            payment.payment_id,
            context=context,
            after=details.model_dump(mode="json"),
            reason=request.reason)
        return await Payment.find_one({"_id": payment.id})
