import math
from datetime import datetime, timezone
from typing import Any, Generic, List, Optional, TypeVar

from bson.objectid import ObjectId
from fastapi import Query, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_core import ErrorDetails

from ticketing.constants import ERROR_CODE_DICT


class ErrorModel(BaseModel):
    """
    Detail of the "error" part of an HTTP response
    """
    code: str
    message: str
    fields: Optional[List[ErrorDetails]] = []
    details: Optional[dict] = None


T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    """
    Envelope shared by every endpoint so the response structure
    stays consistent and documents cleanly in swagger
    """
    model_config = ConfigDict(json_encoders={ObjectId: str})

    success: bool
    message: str
    data: Optional[T] = None
    error: Optional[ErrorModel] = None
    meta: dict = Field(default_factory=dict)

    @model_validator(mode="after")
    def auto_fill_meta(self) -> 'APIResponse':
        """
        Stamp "timestamp" into "meta" to ease debugging
        """
        self.meta["timestamp"] = datetime.now().isoformat()
        return self


class APIError(Exception):
    """
    API exception that the application turns into a
    well-formed error response
    """

    def __init__(self,
                 status_code: int,
                 error_code: str,
                 error_message: str = None,
                 details: dict = None):
        self.status_code = status_code
        self.details = details

        if error_code in ERROR_CODE_DICT:
            self.error_code = ERROR_CODE_DICT[error_code]["code"]
            self.error_message = error_message or ERROR_CODE_DICT[error_code][
                "message"]
        else:
            self.error_code = error_code
            self.error_message = error_message

        super().__init__(self.error_message)


class PageParams(BaseModel):
    page: int = 1
    limit: int = 20

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def page_params(page: int = Query(1, ge=1),
                limit: int = Query(20, ge=1, le=100)) -> PageParams:
    return PageParams(page=page, limit=limit)


def pagination_meta(params: PageParams, total: int, key: str = "total"):
    return {
        "pagination": {
            "current_page": params.page,
            "total_pages": math.ceil(total / params.limit) if total else 0,
            key: total,
        }
    }


def utcnow() -> datetime:
    """
    Current time as naive UTC, the representation MongoDB hands back
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def clean_aggregate(rows: Any) -> Any:
    """
    Aggregation results may carry raw ObjectIds in "_id" or grouped keys
    """
    return jsonable_encoder(rows, custom_encoder={ObjectId: str})


# "Depends" pattern that guarantees the incoming id is a valid ObjectId
def validate_object_id(id_str: str):
    if not ObjectId.is_valid(id_str):
        raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                       error_code="INVALID_OBJECT_ID")
    return id_str


def valid_event_id(event_id: str):
    return validate_object_id(event_id)


def valid_ticket_id(ticket_id: str):
    return validate_object_id(ticket_id)


def valid_user_id(user_id: str):
    return validate_object_id(user_id)
