"""
Fixed-weight risk scoring for verification attempts and admin actions.
"""

import ipaddress
from datetime import datetime
from typing import Any, Dict, List, Optional

MAX_RISK_SCORE = 100
SUSPICIOUS_THRESHOLD = 70
SUSPICIOUS_FLAG_WEIGHT = 20
# Attempts from one address inside the window before it counts as a burst
ATTEMPT_BURST_THRESHOLD = 10
ATTEMPT_WINDOW_MINUTES = 15

ADMIN_ACTION_WEIGHTS = {
    "user_delete": 30,
    "system_config": 30,
    "security_alert": 30,
    "role_change": 25,
    "permission_update": 25,
    "user_deactivate": 20,
    "ip_block": 20,
    "event_reject": 15,
    "ticket_refund": 15,
}
SENSITIVE_TARGETS = ("system", "security")


def is_off_hours(moment: datetime) -> bool:
    return moment.hour < 6 or moment.hour > 22


def score_verification(is_valid: bool, reason: str, verification_time: datetime,
                       attempts_in_window: int) -> Dict[str, Any]:
    score = 0
    if not is_valid:
        score += 20
    if "signature" in reason:
        score += 30
    if "not found" in reason:
        score += 25
    if is_off_hours(verification_time):
        score += 15
    if attempts_in_window > ATTEMPT_BURST_THRESHOLD:
        score += 20

    score = min(score, MAX_RISK_SCORE)
    return {
        "is_suspicious": score > SUSPICIOUS_THRESHOLD,
        "suspicious_reasons": [],
        "risk_score": score,
    }


def add_suspicious_flag(flags: Dict[str, Any], reason: str) -> Dict[str, Any]:
    reasons: List[str] = list(flags.get("suspicious_reasons", []))
    if reason not in reasons:
        reasons.append(reason)

    score = min(flags.get("risk_score", 0) + SUSPICIOUS_FLAG_WEIGHT,
                MAX_RISK_SCORE)
    return {
        "is_suspicious": flags.get("is_suspicious", False)
        or score > SUSPICIOUS_THRESHOLD,
        "suspicious_reasons": reasons,
        "risk_score": score,
    }


def verification_flags(is_valid: bool, reason: str, verification_time: datetime,
                       attempts_in_window: int) -> Dict[str, Any]:
    """
    Base score plus the suspicious markers a reason or a burst implies
    """
    flags = score_verification(is_valid, reason, verification_time,
                               attempts_in_window)
    if "signature" in reason:
        flags = add_suspicious_flag(flags, "signature_mismatch")
    if "not found" in reason:
        flags = add_suspicious_flag(flags, "multiple_failed_attempts")
    if attempts_in_window > ATTEMPT_BURST_THRESHOLD:
        flags = add_suspicious_flag(flags, "rate_limit_exceeded")
    return flags


def is_private_lan_address(ip_address: Optional[str]) -> bool:
    if not ip_address:
        return False
    try:
        address = ipaddress.ip_address(ip_address)
    except ValueError:
        return False
    return address in ipaddress.ip_network("192.168.0.0/16")


def risk_level(score: int) -> str:
    if score >= 50:
        return "critical"
    if score >= 30:
        return "high"
    if score >= 15:
        return "medium"
    return "low"


def assess_admin_action(action: str, target_type: str,
                        ip_address: Optional[str],
                        moment: datetime) -> Dict[str, Any]:
    score = 0
    factors = []

    weight = ADMIN_ACTION_WEIGHTS.get(action, 0)
    if weight:
        score += weight
        factors.append(f"high_risk_action:{action}")
    if target_type in SENSITIVE_TARGETS:
        score += 10
        factors.append(f"sensitive_target:{target_type}")
    if is_private_lan_address(ip_address):
        score += 5
        factors.append("private_network")
    if is_off_hours(moment):
        score += 10
        factors.append("off_hours")

    score = min(score, MAX_RISK_SCORE)
    return {
        "risk_level": risk_level(score),
        "risk_score": score,
        "risk_factors": factors,
        "requires_review": score >= 30,
    }


def requires_approval(level: str) -> bool:
    return level in ("high", "critical")


def security_recommendations(suspicious_patterns: List[dict],
                             failed_logins: List[dict],
                             ip_analysis: List[dict],
                             max_login_attempts: int = 5) -> List[dict]:
    recommendations = []
    if suspicious_patterns:
        recommendations.append({
            "type": "warning",
            "message": "Suspicious verification activity detected",
            "details": f"{len(suspicious_patterns)} suspicious patterns found",
            "action": "Review suspicious activity and consider IP blocking",
        })

    struggling = [
        row for row in failed_logins
        if row.get("login_attempts", 0) >= max_login_attempts
    ]
    if struggling:
        recommendations.append({
            "type": "alert",
            "message": "Multiple failed authentication attempts",
            "details": f"{len(struggling)} users with {max_login_attempts} "
                       "or more failed attempts",
            "action": "Review and potentially lock compromised accounts",
        })

    risky_ips = [
        row for row in ip_analysis if (row.get("suspicious_rate") or 0) > 50
    ]
    if risky_ips:
        recommendations.append({
            "type": "warning",
            "message": "High-risk IP addresses detected",
            "details": f"{len(risky_ips)} IPs with >50% suspicious activity",
            "action": "Consider blocking high-risk IP addresses",
        })

    if not recommendations:
        recommendations.append({
            "type": "success",
            "message": "No security issues detected",
            "details": "System appears to be operating securely",
            "action": "Continue monitoring for any unusual activity",
        })
    return recommendations
