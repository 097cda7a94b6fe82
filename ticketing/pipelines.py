"""
MongoDB aggregation pipelines used by the dashboards.

Builders only return lists of stages; services run them with
Document.aggregate(...).to_list().
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

ROLLING_PERIODS = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
}

DATE_FORMATS = {
    "hour": "%Y-%m-%d %H:00",
    "day": "%Y-%m-%d",
    "week": "%G-W%V",
    "month": "%Y-%m",
}

SUCCESSFUL_VERIFICATION = {
    "$and": ["$verification_result.is_valid", "$verification_result.can_enter"]
}


def period_start(period: str,
                 now: datetime,
                 default: str = "30d") -> datetime:
    """
    Start of a reporting period. Calendar periods (today, week, month,
    year) align to day/month/year boundaries, the others are rolling
    """
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "today":
        return start_of_day
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        return start_of_day.replace(day=1)
    if period == "year":
        return start_of_day.replace(month=1, day=1)
    if period in ROLLING_PERIODS:
        return now - ROLLING_PERIODS[period]
    return period_start(default, now, default="30d")


def date_format(group_by: str) -> str:
    return DATE_FORMATS.get(group_by, DATE_FORMATS["day"])


def _count_if(condition: Any) -> dict:
    return {"$sum": {"$cond": [condition, 1, 0]}}


def _percentage(part: str, whole: str) -> dict:
    return {
        "$cond": [{
            "$gt": [whole, 0]
        }, {
            "$multiply": [{
                "$divide": [part, whole]
            }, 100]
        }, 0]
    }


def total_of(match: Dict[str, Any], field: str = "$amount") -> List[dict]:
    return [
        {"$match": match},
        {"$group": {"_id": None, "total": {"$sum": field}, "count": {"$sum": 1}}},
    ]


def count_by(field: str, match: Optional[Dict[str, Any]] = None) -> List[dict]:
    pipeline = []
    if match:
        pipeline.append({"$match": match})
    pipeline += [
        {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
        {"$sort": {"count": -1}},
    ]
    return pipeline


def sum_by(field: str,
           match: Dict[str, Any],
           amount: str = "$amount") -> List[dict]:
    return [
        {"$match": match},
        {"$group": {"_id": f"${field}", "total": {"$sum": amount},
                    "count": {"$sum": 1}}},
        {"$sort": {"total": -1}},
    ]


def published_category_counts() -> List[dict]:
    return [
        {"$match": {"status": "published"}},
        {"$group": {"_id": "$category", "count": {"$sum": 1}}},
        {"$project": {"_id": 0, "category": "$_id", "count": 1}},
        {"$sort": {"count": -1, "category": 1}},
    ]


def ticket_status_summary(match: Dict[str, Any]) -> List[dict]:
    """
    Per status count and money for an event's tickets
    """
    return [
        {"$match": match},
        {"$group": {"_id": "$status", "count": {"$sum": 1},
                    "total_amount": {"$sum": "$total_amount"},
                    "quantity": {"$sum": "$quantity"}}},
        {"$sort": {"_id": 1}},
    ]


def active_quantity(event_id: Any, user_id: Any) -> List[dict]:
    return [
        {"$match": {"event_id": event_id, "user_id": user_id,
                    "status": {"$in": ["pending", "confirmed"]}}},
        {"$group": {"_id": None, "quantity": {"$sum": "$quantity"}}},
    ]


def grouped_trend(date_field: str,
                  start: datetime,
                  fmt: str,
                  split_field: str,
                  split_name: str,
                  match: Optional[Dict[str, Any]] = None,
                  amount: Optional[str] = None) -> List[dict]:
    """
    Buckets documents by formatted date, then nests a per-split breakdown
    inside each bucket
    """
    stage_match = {date_field: {"$gte": start}}
    stage_match.update(match or {})

    inner: Dict[str, Any] = {
        "_id": {
            "date": {"$dateToString": {"format": fmt,
                                       "date": f"${date_field}"}},
            "split": f"${split_field}",
        },
        "count": {"$sum": 1},
    }
    entry: Dict[str, Any] = {split_name: "$_id.split", "count": "$count"}
    outer: Dict[str, Any] = {
        "_id": "$_id.date",
        "breakdown": {"$push": entry},
        "count": {"$sum": "$count"},
    }
    if amount:
        inner["total_amount"] = {"$sum": amount}
        entry["total_amount"] = "$total_amount"
        outer["total_amount"] = {"$sum": "$total_amount"}

    return [
        {"$match": stage_match},
        {"$group": inner},
        {"$group": outer},
        {"$sort": {"_id": 1}},
    ]


def daily_totals(date_field: str,
                 match: Dict[str, Any],
                 amount: str = "$amount") -> List[dict]:
    return [
        {"$match": match},
        {"$group": {
            "_id": {"$dateToString": {"format": "%Y-%m-%d",
                                      "date": f"${date_field}"}},
            "total": {"$sum": amount},
            "count": {"$sum": 1},
        }},
        {"$sort": {"_id": 1}},
    ]


def top_events_by_revenue(start: datetime, limit: int = 10) -> List[dict]:
    return [
        {"$match": {"status": "completed", "created_at": {"$gte": start}}},
        {"$group": {"_id": "$event_id", "total_revenue": {"$sum": "$amount"},
                    "payment_count": {"$sum": 1}}},
        {"$sort": {"total_revenue": -1}},
        {"$limit": limit},
        {"$lookup": {"from": "events", "localField": "_id",
                     "foreignField": "_id", "as": "event"}},
        {"$unwind": {"path": "$event", "preserveNullAndEmptyArrays": True}},
        {"$project": {"_id": 0, "event_id": "$_id",
                      "event_title": "$event.title", "total_revenue": 1,
                      "payment_count": 1}},
    ]


def status_category_matrix(start: datetime) -> List[dict]:
    return [
        {"$match": {"created_at": {"$gte": start}}},
        {"$group": {"_id": {"status": "$status", "category": "$category"},
                    "count": {"$sum": 1},
                    "avg_total_tickets": {"$avg": "$total_tickets"},
                    "avg_sold": {"$avg": {"$subtract": ["$total_tickets",
                                                        "$available_tickets"]}}}},
        {"$sort": {"_id.status": 1, "_id.category": 1}},
    ]


def ticket_status_matrix(start: datetime) -> List[dict]:
    return [
        {"$match": {"created_at": {"$gte": start}}},
        {"$group": {"_id": {"status": "$status",
                            "payment_status": "$payment_status"},
                    "count": {"$sum": 1},
                    "total_amount": {"$sum": "$total_amount"}}},
        {"$sort": {"_id.status": 1, "_id.payment_status": 1}},
    ]


def verification_method_matrix(match: Dict[str, Any]) -> List[dict]:
    return [
        {"$match": match},
        {"$group": {"_id": {"method": "$verification_method",
                            "is_valid": "$verification_result.is_valid"},
                    "count": {"$sum": 1},
                    "avg_response_time": {"$avg": "$response_time_ms"},
                    "suspicious_count": _count_if("$flags.is_suspicious")}},
        {"$sort": {"_id.method": 1, "_id.is_valid": 1}},
    ]


def admin_activity(match: Dict[str, Any]) -> List[dict]:
    return [
        {"$match": match},
        {"$group": {
            "_id": None,
            "total_actions": {"$sum": 1},
            "completed_actions": _count_if({"$eq": ["$status", "completed"]}),
            "failed_actions": _count_if({"$eq": ["$status", "failed"]}),
            "pending_approvals": _count_if(
                {"$eq": ["$status", "requires_approval"]}),
            "high_risk_actions": _count_if(
                {"$in": ["$risk_assessment.risk_level", ["high", "critical"]]}),
        }},
        {"$project": {"_id": 0}},
    ]


def admin_action_breakdown(match: Dict[str, Any]) -> List[dict]:
    return [
        {"$match": match},
        {"$group": {"_id": {"action": "$action",
                            "target_type": "$target_type"},
                    "count": {"$sum": 1},
                    "avg_duration_ms": {"$avg": "$duration_ms"},
                    "high_risk_count": _count_if(
                        {"$in": ["$risk_assessment.risk_level",
                                 ["high", "critical"]]})}},
        {"$sort": {"_id.action": 1}},
    ]


def verification_summary(match: Dict[str, Any]) -> List[dict]:
    return [
        {"$match": match},
        {"$group": {
            "_id": None,
            "total_verifications": {"$sum": 1},
            "successful_verifications": _count_if(SUCCESSFUL_VERIFICATION),
            "failed_verifications": _count_if(
                {"$not": [SUCCESSFUL_VERIFICATION]}),
            "suspicious_attempts": _count_if("$flags.is_suspicious"),
            "avg_response_time": {"$avg": "$response_time_ms"},
            "avg_risk_score": {"$avg": "$flags.risk_score"},
        }},
        {"$project": {"_id": 0}},
    ]


def verification_breakdown(match: Dict[str, Any], field: str) -> List[dict]:
    """
    Attempts, successes and success rate per value of a log field
    (verification_method, device, event_id...)
    """
    return [
        {"$match": match},
        {"$group": {"_id": f"${field}",
                    "total_attempts": {"$sum": 1},
                    "successful_verifications": _count_if(
                        SUCCESSFUL_VERIFICATION),
                    "avg_response_time": {"$avg": "$response_time_ms"}}},
        {"$addFields": {
            "failed_verifications": {"$subtract": [
                "$total_attempts", "$successful_verifications"]},
            "success_rate": _percentage("$successful_verifications",
                                        "$total_attempts"),
        }},
        {"$sort": {"total_attempts": -1}},
    ]


def hourly_verifications(match: Dict[str, Any]) -> List[dict]:
    return [
        {"$match": match},
        {"$group": {"_id": {"$hour": "$verification_time"},
                    "total_verifications": {"$sum": 1},
                    "successful_verifications": _count_if(
                        SUCCESSFUL_VERIFICATION)}},
        {"$addFields": {"success_rate": _percentage(
            "$successful_verifications", "$total_verifications")}},
        {"$sort": {"_id": 1}},
    ]


def daily_verifications(match: Dict[str, Any]) -> List[dict]:
    return [
        {"$match": match},
        {"$group": {
            "_id": {"$dateToString": {"format": "%Y-%m-%d",
                                      "date": "$verification_time"}},
            "total": {"$sum": 1},
            "successful": _count_if(SUCCESSFUL_VERIFICATION),
            "suspicious": _count_if("$flags.is_suspicious"),
        }},
        {"$sort": {"_id": 1}},
    ]


def suspicious_patterns(match: Dict[str, Any], limit: int = 20) -> List[dict]:
    stage_match = {"flags.is_suspicious": True}
    stage_match.update(match)
    return [
        {"$match": stage_match},
        {"$group": {"_id": {"reasons": "$flags.suspicious_reasons",
                            "ip_address": "$ip_address"},
                    "count": {"$sum": 1},
                    "avg_risk_score": {"$avg": "$flags.risk_score"},
                    "max_risk_score": {"$max": "$flags.risk_score"}}},
        {"$sort": {"count": -1}},
        {"$limit": limit},
    ]


def ip_risk_analysis(match: Dict[str, Any], limit: int = 20) -> List[dict]:
    return [
        {"$match": match},
        {"$group": {"_id": "$ip_address",
                    "total_attempts": {"$sum": 1},
                    "successful_verifications": _count_if(
                        SUCCESSFUL_VERIFICATION),
                    "suspicious_attempts": _count_if("$flags.is_suspicious"),
                    "avg_risk_score": {"$avg": "$flags.risk_score"},
                    "max_risk_score": {"$max": "$flags.risk_score"},
                    "max_attempts_in_window": {
                        "$max": "$rate_limit.attempts_in_window"},
                    "unique_events": {"$addToSet": "$event_id"},
                    "unique_verifiers": {"$addToSet": "$verified_by"}}},
        {"$project": {"_id": 0, "ip_address": "$_id", "total_attempts": 1,
                      "successful_verifications": 1,
                      "suspicious_attempts": 1, "avg_risk_score": 1,
                      "max_risk_score": 1, "max_attempts_in_window": 1,
                      "unique_event_count": {"$size": "$unique_events"},
                      "unique_verifier_count": {"$size": "$unique_verifiers"},
                      "suspicious_rate": _percentage("$suspicious_attempts",
                                                     "$total_attempts")}},
        {"$sort": {"suspicious_rate": -1, "total_attempts": -1}},
        {"$limit": limit},
    ]


def verified_tickets_by_day(match: Dict[str, Any]) -> List[dict]:
    """
    Tickets grouped by verification day and status
    """
    return [
        {"$match": match},
        {"$group": {"_id": {"status": "$status",
                            "date": {"$dateToString": {
                                "format": "%Y-%m-%d",
                                "date": "$verified_at"}}},
                    "count": {"$sum": 1}}},
        {"$group": {"_id": "$_id.date",
                    "statuses": {"$push": {"status": "$_id.status",
                                           "count": "$count"}},
                    "total_count": {"$sum": "$count"}}},
        {"$sort": {"_id": 1}},
    ]


def top_spenders(start: datetime, limit: int = 10) -> List[dict]:
    return [
        {"$match": {"status": "completed", "created_at": {"$gte": start}}},
        {"$group": {"_id": "$user_id", "total_spent": {"$sum": "$amount"},
                    "payments": {"$sum": 1}}},
        {"$sort": {"total_spent": -1}},
        {"$limit": limit},
        {"$lookup": {"from": "users", "localField": "_id",
                     "foreignField": "_id", "as": "user"}},
        {"$unwind": {"path": "$user", "preserveNullAndEmptyArrays": True}},
        {"$project": {"_id": 0, "user_id": "$_id", "name": "$user.name",
                      "email": "$user.email", "total_spent": 1,
                      "payments": 1}},
    ]


def repeat_buyers(start: datetime) -> List[dict]:
    """
    Buyers holding tickets for more than one event in the period
    """
    return [
        {"$match": {"created_at": {"$gte": start},
                    "status": {"$in": ["confirmed", "used"]}}},
        {"$group": {"_id": "$user_id", "events": {"$addToSet": "$event_id"},
                    "tickets": {"$sum": "$quantity"}}},
        {"$project": {"event_count": {"$size": "$events"}, "tickets": 1}},
        {"$match": {"event_count": {"$gt": 1}}},
        {"$group": {"_id": None, "repeat_buyers": {"$sum": 1},
                    "avg_events": {"$avg": "$event_count"},
                    "avg_tickets": {"$avg": "$tickets"}}},
        {"$project": {"_id": 0}},
    ]


def activity_patterns(start: datetime) -> List[dict]:
    return [
        {"$match": {"last_active": {"$gte": start}}},
        {"$group": {"_id": {"hour": {"$hour": "$last_active"},
                            "day_of_week": {"$dayOfWeek": "$last_active"}},
                    "active_users": {"$sum": 1}}},
        {"$sort": {"_id.day_of_week": 1, "_id.hour": 1}},
    ]


def user_status_matrix(start: datetime) -> List[dict]:
    return [
        {"$match": {"created_at": {"$gte": start}}},
        {"$group": {"_id": {"role": "$role", "is_active": "$is_active",
                            "is_verified": "$is_verified"},
                    "count": {"$sum": 1}}},
        {"$sort": {"_id.role": 1}},
    ]
