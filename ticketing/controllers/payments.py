from typing import List

from fastapi import APIRouter, Depends, Request

from ticketing.core import (APIResponse, PageParams, page_params,
                            pagination_meta)
from ticketing.entities import Payment
from ticketing.schemas import (ConfirmPaymentRequest,
                               CreatePaymentIntentRequest,
                               PaymentIntentResponse, RefundPaymentRequest)
from ticketing.security import Authenticator, CurrentUser, current_user
from ticketing.services.payments import PaymentService
from ticketing.services.security import audit_context


class PaymentController():
    """
    Simulated checkout for pending tickets
    """
    router = APIRouter()

    def __init__(self, *, payment_service: PaymentService,
                 authenticator: Authenticator):
        self.router = APIRouter(prefix="/payments", tags=["payments"])
        self.payment_service = payment_service
        self.authenticator = authenticator

        self._init_router()

    async def create_intent(self,
                            request: CreatePaymentIntentRequest,
                            user: CurrentUser = Depends(current_user)):
        data = await self.payment_service.create_intent(user, request)
        return APIResponse(success=True,
                           message="payment intent created successfully",
                           data=data)

    async def confirm_payment(self,
                              request: ConfirmPaymentRequest,
                              user: CurrentUser = Depends(current_user)):
        """
        Settle a pending payment. A declined charge is still a 200
        response, the payment status tells the outcome
        """
        payment = await self.payment_service.confirm(user, request)
        message = "payment completed successfully" \
            if payment.status == "completed" else "payment failed"
        return APIResponse(success=payment.status == "completed",
                           message=message,
                           data=payment)

    async def get_my_payments(self,
                              params: PageParams = Depends(page_params),
                              user: CurrentUser = Depends(current_user)):
        payments, total = await self.payment_service.my_payments(user, params)
        return APIResponse(success=True,
                           message="payments fetched successfully",
                           data=payments,
                           meta=pagination_meta(params, total,
                                                "total_payments"))

    async def get_gateway_status(self):
        return APIResponse(success=True,
                           message="gateway status fetched successfully",
                           data=self.payment_service.gateway_status())

    async def refund_payment(self,
                             payment_id: str,
                             request: RefundPaymentRequest,
                             http_request: Request,
                             user: CurrentUser = Depends(current_user)):
        payment = await self.payment_service.refund(
            payment_id, request, user, audit_context(http_request))
        return APIResponse(success=True,
                           message="payment refunded successfully",
                           data=payment)

    def _init_router(self):
        authenticated = [Depends(self.authenticator)]

        self.router.add_api_route(
            "/create-intent",
            self.create_intent,
            methods=["POST"],
            response_model=APIResponse[PaymentIntentResponse],
            dependencies=authenticated,
        )
        self.router.add_api_route(
            "/confirm",
            self.confirm_payment,
            methods=["POST"],
            response_model=APIResponse[Payment],
            dependencies=authenticated,
        )
        self.router.add_api_route(
            "/me",
            self.get_my_payments,
            methods=["GET"],
            response_model=APIResponse[List[Payment]],
            dependencies=authenticated,
        )
        self.router.add_api_route(
            "/gateways",
            self.get_gateway_status,
            methods=["GET"],
            response_model=APIResponse[dict],
        )
        self.router.add_api_route(
            "/{payment_id}/refund",
            self.refund_payment,
            methods=["POST"],
            response_model=APIResponse[Payment],
            dependencies=[Depends(self.authenticator.require("admin"))],
        )
