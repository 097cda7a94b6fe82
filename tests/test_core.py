import logging
from datetime import datetime, timedelta, timezone

import pytest
from bson.objectid import ObjectId

from ticketing.config import Settings
from ticketing.core import (APIError, APIResponse, PageParams, clean_aggregate,
                            pagination_meta, to_naive_utc, validate_object_id)
from ticketing.logging_config import (JSONFormatter, RequestIdFilter,
                                      set_request_id)
from ticketing.rate_limit import RateLimiter, RateLimitRule, detect_device


def test_api_error_uses_the_registered_message():
    error = APIError(status_code=404, error_code="TICKET_NOT_FOUND")

    assert error.error_code == "TICKET_NOT_FOUND"
    assert error.error_message == "ticket not found"


def test_api_error_can_override_the_message():
    error = APIError(status_code=403,
                     error_code="FORBIDDEN",
                     error_message="cannot self-register as admin",
                     details={"role": "admin"})

    assert error.error_message == "cannot self-register as admin"
    assert error.details == {"role": "admin"}


def test_generation_failure_maps_to_server_error_code():
    error = APIError(status_code=500, error_code="TICKET_GENERATION_FAILED")

    assert error.error_code == "SERVER-500"


def test_response_meta_gets_a_timestamp():
    response = APIResponse(success=True, message="ok")

    assert "timestamp" in response.meta


def test_pagination_meta():
    meta = pagination_meta(PageParams(page=2, limit=20), 41, "total_events")

    assert meta == {
        "pagination": {
            "current_page": 2,
            "total_pages": 3,
            "total_events": 41,
        }
    }


def test_pagination_meta_empty():
    meta = pagination_meta(PageParams(), 0)

    assert meta["pagination"]["total_pages"] == 0
    assert meta["pagination"]["total"] == 0


def test_page_params_skip():
    assert PageParams(page=3, limit=10).skip == 20


def test_to_naive_utc():
    aware = datetime(2030, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=5)))

    assert to_naive_utc(aware) == datetime(2030, 1, 1, 7, 0)
    assert to_naive_utc(datetime(2030, 1, 1)) == datetime(2030, 1, 1)
    assert to_naive_utc(None) is None


def test_validate_object_id():
    valid = str(ObjectId())

    assert validate_object_id(valid) == valid
    with pytest.raises(APIError) as error:
        validate_object_id("123")
    assert error.value.error_code == "INVALID_OBJECT_ID"


def test_clean_aggregate_stringifies_object_ids():
    oid = ObjectId()

    rows = clean_aggregate([{"_id": oid, "count": 2}])

    assert rows == [{"_id": str(oid), "count": 2}]


def test_production_refuses_default_jwt_secret():
    settings = Settings(_env_file=None, environment="production")

    with pytest.raises(RuntimeError):
        settings.validate_runtime()


def test_json_formatter_includes_request_id():
    set_request_id("abc123")
    record = logging.LogRecord("ticketing", logging.INFO, __file__, 1,
                               "hello %s", ("world", ), None)
    RequestIdFilter().filter(record)

    line = JSONFormatter().format(record)

    assert '"message": "hello world"' in line
    assert '"request_id": "abc123"' in line
    set_request_id("")


@pytest.mark.parametrize("user_agent, device", [
    ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)", "mobile"),
    ("Mozilla/5.0 (Linux; Android 14) Mobile", "mobile"),
    ("SomeTablet/1.0", "tablet"),
    ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "desktop"),
    ("curl/8.0", "unknown"),
])
def test_detect_device(user_agent, device):
    assert detect_device(user_agent) == device


def test_rate_limiter_blocks_after_the_limit():
    limiter = RateLimiter()
    rule = RateLimitRule("unit", "2/minute", "slow down")

    limiter.check(rule, "127.0.0.1")
    limiter.check(rule, "127.0.0.1")
    with pytest.raises(APIError) as error:
        limiter.check(rule, "127.0.0.1")

    assert error.value.status_code == 429
    assert error.value.error_message == "slow down"
    assert error.value.details["limit"] == 2
    assert error.value.details["remaining"] == 0
    # Other keys have their own window
    limiter.check(rule, "10.0.0.1")


def test_retry_after():
    assert RateLimitRule("a", "50/5 minutes", "").retry_after == "5 minutes"
    assert RateLimitRule("b", "5/30 seconds", "").retry_after == "30 seconds"
