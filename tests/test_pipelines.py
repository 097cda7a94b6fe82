from datetime import datetime, timedelta

import pytest

from ticketing.pipelines import (count_by, date_format, grouped_trend,
                                 period_start, published_category_counts,
                                 total_of, verification_breakdown)

NOW = datetime(2030, 6, 15, 13, 45, 10)


@pytest.mark.parametrize("period, expected", [
    ("today", datetime(2030, 6, 15)),
    ("week", NOW - timedelta(days=7)),
    ("month", datetime(2030, 6, 1)),
    ("year", datetime(2030, 1, 1)),
    ("1h", NOW - timedelta(hours=1)),
    ("24h", NOW - timedelta(hours=24)),
    ("90d", NOW - timedelta(days=90)),
    ("1y", NOW - timedelta(days=365)),
])
def test_period_start(period, expected):
    assert period_start(period, NOW) == expected


def test_unknown_period_falls_back_to_default():
    assert period_start("fortnight", NOW) == NOW - timedelta(days=30)
    assert period_start("fortnight", NOW, default="7d") == NOW - timedelta(
        days=7)


def test_date_format():
    assert date_format("month") == "%Y-%m"
    assert date_format("nonsense") == "%Y-%m-%d"


def test_count_by_without_match_has_no_match_stage():
    pipeline = count_by("role")

    assert pipeline[0] == {"$group": {"_id": "$role", "count": {"$sum": 1}}}
    assert pipeline[1] == {"$sort": {"count": -1}}


def test_total_of():
    pipeline = total_of({"status": "completed"})

    assert pipeline[0] == {"$match": {"status": "completed"}}
    assert pipeline[1]["$group"]["total"] == {"$sum": "$amount"}


def test_published_category_counts_only_counts_published_events():
    pipeline = published_category_counts()

    assert pipeline[0] == {"$match": {"status": "published"}}
    assert pipeline[-1] == {"$sort": {"count": -1, "category": 1}}


def test_grouped_trend_with_amount():
    start = datetime(2030, 6, 1)

    pipeline = grouped_trend("created_at",
                             start,
                             "%Y-%m",
                             "status",
                             "status",
                             match={"currency": "USD"},
                             amount="$amount")

    assert pipeline[0] == {
        "$match": {
            "created_at": {
                "$gte": start
            },
            "currency": "USD"
        }
    }
    inner, outer = pipeline[1]["$group"], pipeline[2]["$group"]
    assert inner["_id"]["date"]["$dateToString"]["format"] == "%Y-%m"
    assert inner["total_amount"] == {"$sum": "$amount"}
    assert outer["breakdown"]["$push"]["total_amount"] == "$total_amount"


def test_grouped_trend_without_amount():
    pipeline = grouped_trend("created_at", NOW, "%Y-%m-%d", "role", "role")

    assert "total_amount" not in pipeline[1]["$group"]
    assert pipeline[2]["$group"]["breakdown"]["$push"] == {
        "role": "$_id.split",
        "count": "$count"
    }


def test_verification_breakdown_groups_by_field():
    pipeline = verification_breakdown({"event_id": "x"}, "device")

    assert pipeline[1]["$group"]["_id"] == "$device"
    assert "success_rate" in pipeline[2]["$addFields"]
