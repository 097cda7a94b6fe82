import logging

from bson.objectid import ObjectId
from fastapi import status
from pymongo.errors import DuplicateKeyError
from starlette.concurrency import run_in_threadpool

from ticketing.config import Settings
from ticketing.core import APIError, utcnow
from ticketing.entities import User
from ticketing.policies import (failed_login_update, is_account_locked,
                                successful_login_update)
from ticketing.schemas import (AuthResponse, ChangePasswordRequest,
                               LoginRequest, RegisterRequest, UserPublic)
from ticketing.security import (Authenticator, hash_password,
                                validate_password_strength, verify_password)

logger = logging.getLogger(__name__)


class AuthService():

    def __init__(self, settings: Settings, authenticator: Authenticator):
        self.settings = settings
        self.authenticator = authenticator

    def _auth_response(self, user: User) -> AuthResponse:
        token = self.authenticator.issue_token(user_id=str(user.id),
                                               role=user.role,
                                               name=user.name,
                                               email=user.email)
        return AuthResponse(user=UserPublic.model_validate(user), token=token)

    @staticmethod
    def _check_strength(password: str):
        problems = validate_password_strength(password)
        if problems:
            raise APIError(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                           error_code="WEAK_PASSWORD",
                           details={"requirements": problems})

    async def register(self, request: RegisterRequest) -> AuthResponse:
        # Admin accounts are only granted by another admin
        if request.role == "admin":
            raise APIError(status_code=status.HTTP_403_FORBIDDEN,
                           error_code="FORBIDDEN",
                           error_message="cannot self-register as admin")

        self._check_strength(request.password)

        email = request.email.lower()
        if await User.find_one({"email": email}):
            raise APIError(status_code=status.HTTP_409_CONFLICT,
                           error_code="EMAIL_TAKEN")

        password_hash = await run_in_threadpool(hash_password,
                                                request.password,
                                                self.settings.bcrypt_rounds)
        try:
            user = await User(name=request.name.strip(),
                              email=email,
                              password_hash=password_hash,
                              role=request.role,
                              phone=request.phone).insert()
        except DuplicateKeyError:
            # Lost a race with a concurrent registration
            raise APIError(status_code=status.HTTP_409_CONFLICT,
                           error_code="EMAIL_TAKEN")

        logger.info("user %s registered as %s", user.id, user.role)
        return self._auth_response(user)

    async def login(self, request: LoginRequest) -> AuthResponse:
        now = utcnow()
        user = await User.find_one({"email": request.email.lower()})
        if not user:
            logger.warning("login attempt for unknown email")
            raise APIError(status_code=status.HTTP_401_UNAUTHORIZED,
                           error_code="INVALID_CREDENTIALS")

        if is_account_locked(user, now):
            logger.warning("login attempt on locked account %s", user.id)
            raise APIError(status_code=status.HTTP_423_LOCKED,
                           error_code="ACCOUNT_LOCKED",
                           details={"lock_expires": user.lock_expires})

        if not user.is_active:
            raise APIError(status_code=status.HTTP_403_FORBIDDEN,
                           error_code="ACCOUNT_INACTIVE")

        valid = await run_in_threadpool(verify_password, request.password,
                                        user.password_hash)
        if not valid:
            update = failed_login_update(user, now,
                                         self.settings.max_login_attempts,
                                         self.settings.account_lock_minutes)
            await User.find_one({"_id": user.id}).update({"$set": update})

            if update["is_locked"]:
                logger.warning("account %s locked after %d failed logins",
                               user.id, update["login_attempts"])
                raise APIError(status_code=status.HTTP_423_LOCKED,
                               error_code="ACCOUNT_LOCKED",
                               details={"lock_expires": update["lock_expires"]})

            logger.warning("failed login for %s (%d attempts)", user.id,
                           update["login_attempts"])
            raise APIError(
                status_code=status.HTTP_401_UNAUTHORIZED,
                error_code="INVALID_CREDENTIALS",
                details={
                    "attempts_remaining":
                    self.settings.max_login_attempts - update["login_attempts"]
                })

        update = successful_login_update(now)
        await User.find_one({"_id": user.id}).update({"$set": update})
        for key, value in update.items():
            setattr(user, key, value)

        logger.info("user %s logged in", user.id)
        return self._auth_response(user)

    async def get_profile(self, user_id: str) -> UserPublic:
        user = await User.find_one({"_id": ObjectId(user_id)})
        if not user:
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="USER_NOT_FOUND")
        await User.find_one({
            "_id": user.id
        }).update({"$set": {
            "last_active": utcnow()
        }})
        return UserPublic.model_validate(user)

    async def change_password(self, user_id: str,
                              request: ChangePasswordRequest):
        user = await User.find_one({"_id": ObjectId(user_id)})
        if not user:
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="USER_NOT_FOUND")

        valid = await run_in_threadpool(verify_password,
                                        request.current_password,
                                        user.password_hash)
        if not valid:
            raise APIError(status_code=status.HTTP_401_UNAUTHORIZED,
                           error_code="INVALID_CREDENTIALS",
                           error_message="current password is incorrect")

        if request.new_password == request.current_password:
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="PASSWORD_UNCHANGED")
        self._check_strength(request.new_password)

        password_hash = await run_in_threadpool(hash_password,
                                                request.new_password,
                                                self.settings.bcrypt_rounds)
        await User.find_one({
            "_id": user.id
        }).update(
            {"$set": {
                "password_hash": password_hash,
                "updated_at": utcnow()
            }})
        logger.info("user %s changed password", user.id)
