from fastapi import APIRouter, Depends, status

from ticketing.core import APIResponse
from ticketing.rate_limit import RateLimiter, RateLimitRule
from ticketing.schemas import (AuthResponse, ChangePasswordRequest,
                               LoginRequest, RegisterRequest, UserPublic)
from ticketing.security import Authenticator, CurrentUser, current_user
from ticketing.services.auth import AuthService


class AuthController():
    """
    Registration, login and the caller's own account
    """
    router = APIRouter()

    def __init__(self, *, auth_service: AuthService,
                 authenticator: Authenticator, limiter: RateLimiter,
                 login_rule: RateLimitRule):
        self.router = APIRouter(prefix="/auth", tags=["auth"])
        self.auth_service = auth_service
        self.authenticator = authenticator
        self.limiter = limiter
        self.login_rule = login_rule

        self._init_router()

    async def register(self, request: RegisterRequest):
        """
        Create an attendee or organizer account
        """
        data = await self.auth_service.register(request)
        return APIResponse(success=True,
                           message="user registered successfully",
                           data=data)

    async def login(self, request: LoginRequest):
        data = await self.auth_service.login(request)
        return APIResponse(success=True,
                           message="login successful",
                           data=data)

    async def me(self, user: CurrentUser = Depends(current_user)):
        data = await self.auth_service.get_profile(user.id)
        return APIResponse(success=True,
                           message="profile fetched successfully",
                           data=data)

    async def change_password(self,
                              request: ChangePasswordRequest,
                              user: CurrentUser = Depends(current_user)):
        await self.auth_service.change_password(user.id, request)
        return APIResponse(success=True,
                           message="password changed successfully")

    def _init_router(self):
        authenticated = [Depends(self.authenticator)]

        self.router.add_api_route(
            "/register",
            self.register,
            methods=["POST"],
            response_model=APIResponse[AuthResponse],
            status_code=status.HTTP_201_CREATED,
        )
        self.router.add_api_route(
            "/login",
            self.login,
            methods=["POST"],
            response_model=APIResponse[AuthResponse],
            dependencies=[Depends(self.limiter.guard(self.login_rule))],
        )
        self.router.add_api_route(
            "/me",
            self.me,
            methods=["GET"],
            response_model=APIResponse[UserPublic],
            dependencies=authenticated,
        )
        self.router.add_api_route(
            "/change-password",
            self.change_password,
            methods=["PUT"],
            response_model=APIResponse[None],
            dependencies=authenticated,
        )
