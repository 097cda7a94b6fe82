import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from beanie import init_beanie
from fastapi import APIRouter, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import AsyncMongoClient
from starlette.exceptions import HTTPException as StarletteHTTPException

from ticketing import __version__
from ticketing.config import Settings
from ticketing.controllers.admin import AdminController
from ticketing.controllers.auth import AuthController
from ticketing.controllers.events import EventController
from ticketing.controllers.payments import PaymentController
from ticketing.controllers.tickets import TicketController
from ticketing.controllers.util import UtilController
from ticketing.controllers.verification import VerificationController
from ticketing.core import APIError, APIResponse, ErrorModel
from ticketing.entities import DOCUMENT_MODELS
from ticketing.logging_config import (generate_request_id, set_request_id,
                                      setup_logging)
from ticketing.payments import PaymentGatewayFactory
from ticketing.rate_limit import RateLimiter, build_rules
from ticketing.security import Authenticator
from ticketing.services.admin import AdminService
from ticketing.services.auth import AuthService
from ticketing.services.events import EventService
from ticketing.services.payments import PaymentService
from ticketing.services.security import SecurityService
from ticketing.services.tickets import TicketService
from ticketing.services.verification import VerificationService
from ticketing.ticket_generator import TicketGenerator

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class Application():

    def __init__(self,
                 settings: Optional[Settings] = None,
                 services: Optional[dict] = None):
        """
        "services" replaces individual entries of the default service
        registry (keys as in "_build_services")
        """
        self.settings = settings or Settings()
        setup_logging(self.settings.log_level, self.settings.log_json)
        self.settings.validate_runtime()

        self.app = FastAPI(title=self.settings.app_name,
                           version=__version__,
                           lifespan=self.lifespan)
        self.db_client: AsyncMongoClient = None

        self.authenticator = Authenticator(self.settings)
        self.limiter = RateLimiter()
        self.rules = build_rules(self.settings)
        self.services = self._build_services()
        self.services.update(services or {})

        self._start_up()

    async def connect(self):
        self.db_client = AsyncMongoClient(self.settings.db_url)
        self.db = self.db_client[self.settings.db_name]
        await init_beanie(database=self.db, document_models=DOCUMENT_MODELS)
        logger.info("connected to mongodb database %s", self.settings.db_name)

    async def disconnect(self):
        if self.db_client is not None:
            await self.db_client.close()
            self.db_client = None

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        await self.connect()

        yield

        await self.disconnect()

    def _build_services(self) -> dict:
        generator = TicketGenerator(self.settings.qr_signing_secret)
        security = SecurityService()
        payments = PaymentService(self.settings,
                                  PaymentGatewayFactory(self.settings),
                                  security)
        return {
            "security": security,
            "auth": AuthService(self.settings, self.authenticator),
            "events": EventService(),
            "payments": payments,
            "tickets": TicketService(generator, payments),
            "verification": VerificationService(generator),
            "admin": AdminService(security, self.settings.max_login_attempts),
        }

    def _start_up(self):
        self.app.add_exception_handler(APIError, self._api_exception_handler)
        self.app.add_exception_handler(StarletteHTTPException,
                                       self._starlette_exception_handler)
        self.app.add_exception_handler(RequestValidationError,
                                       self._request_exception_handler)
        self.app.add_exception_handler(Exception,
                                       self._global_exception_handler)

        self.app.middleware("http")(self._request_context)
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=[REQUEST_ID_HEADER],
        )

        services = self.services
        controllers = [
            AuthController(auth_service=services["auth"],
                           authenticator=self.authenticator,
                           limiter=self.limiter,
                           login_rule=self.rules["login"]),
            EventController(event_service=services["events"],
                            authenticator=self.authenticator),
            TicketController(ticket_service=services["tickets"],
                             authenticator=self.authenticator),
            PaymentController(payment_service=services["payments"],
                              authenticator=self.authenticator),
            VerificationController(
                verification_service=services["verification"],
                security_service=services["security"],
                authenticator=self.authenticator,
                limiter=self.limiter,
                rules=self.rules),
            AdminController(admin_service=services["admin"],
                            authenticator=self.authenticator,
                            limiter=self.limiter,
                            general_rule=self.rules["general"]),
        ]
        UtilController(root_router=self.app.router,
                       app_name=self.settings.app_name)

        api_v1_router = APIRouter(prefix="/api/v1")
        for controller in controllers:
            api_v1_router.include_router(controller.router)

        self.app.include_router(api_v1_router)

    async def _request_context(self, request: Request, call_next):
        """
        Tag the request with an id, log its outcome and echo the id back
        """
        request_id = request.headers.get(REQUEST_ID_HEADER) or \
            generate_request_id()
        set_request_id(request_id)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            response = await self._global_exception_handler(request, exc)
        duration_ms = (time.perf_counter() - started) * 1000

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info("%s %s -> %d (%.1f ms)", request.method, request.url.path,
                    response.status_code, duration_ms)
        return response

    async def _api_exception_handler(self, request: Request, exc: APIError):
        """
        Handles exceptions raised by the API
        """
        response_model = APIResponse(
            success=False,
            message=exc.error_message,
            error=ErrorModel(
                code=exc.error_code,
                message=exc.error_message,
                details=exc.details,
            ),
        )

        return JSONResponse(
            status_code=exc.status_code,
            content=response_model.model_dump(mode="json"),
        )

    async def _starlette_exception_handler(self, request: Request,
                                           exc: StarletteHTTPException):
        """
        Handles exceptions raised by Starlette (usually HTTP
        level errors such as unknown routes)
        """
        response_model = APIResponse(
            success=False,
            message=str(exc.detail),
            error=ErrorModel(
                code="STARLETTE-" + str(exc.status_code),
                message=str(exc.detail),
            ),
        )

        return JSONResponse(
            status_code=exc.status_code,
            content=response_model.model_dump(mode="json"),
        )

    async def _request_exception_handler(self, request: Request,
                                         exc: RequestValidationError):
        """
        Gives form validation errors the same response shape as
        every other error
        """
        response_model = APIResponse(
            success=False,
            message="Validation Error",
            error=ErrorModel(code="PYDANTIC-422",
                             message="Validation Error",
                             fields=jsonable_encoder(
                                 exc.errors(),
                                 custom_encoder={Exception: str})),
        )

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=response_model.model_dump(mode="json"),
        )

    async def _global_exception_handler(self, request: Request,
                                        exc: Exception):
        """
        Last resort for unexpected exceptions, the traceback only
        goes to the log
        """
        logger.exception("unhandled error on %s %s", request.method,
                         request.url.path)
        response_model = APIResponse(
            success=False,
            message="Internal Server Error",
            error=ErrorModel(
                code="SERVER-500",
                message="Internal Server Error",
            ),
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response_model.model_dump(mode="json"),
        )


# Instance for the "uvicorn ticketing.app:main" command
instance = Application()
main = instance.app

if __name__ == "__main__":
    logger.info("starting %s on %s:%d", instance.settings.app_name,
                instance.settings.host, instance.settings.port)
    uvicorn.run(instance.app,
                host=instance.settings.host,
                port=instance.settings.port)
