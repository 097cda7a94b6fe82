from datetime import datetime

import pytest

from ticketing.risk import (add_suspicious_flag, assess_admin_action,
                            is_off_hours, is_private_lan_address,
                            requires_approval, risk_level,
                            security_recommendations, verification_flags)

DAYTIME = datetime(2030, 6, 1, 14, 0)
NIGHT = datetime(2030, 6, 1, 3, 0)


@pytest.mark.parametrize("hour, expected", [(5, True), (6, False),
                                            (22, False), (23, True)])
def test_off_hours(hour, expected):
    assert is_off_hours(datetime(2030, 1, 1, hour, 0)) is expected


class TestVerificationFlags:

    def test_clean_attempt(self):
        flags = verification_flags(True, "Ticket is valid for entry", DAYTIME,
                                   1)

        assert flags == {
            "is_suspicious": False,
            "suspicious_reasons": [],
            "risk_score": 0,
        }

    def test_forged_signature(self):
        """Invalid + signature, then the mismatch flag on top"""
        flags = verification_flags(False, "Invalid QR code signature",
                                   DAYTIME, 1)

        assert flags["risk_score"] == 70
        assert flags["suspicious_reasons"] == ["signature_mismatch"]
        assert flags["is_suspicious"] is False

    def test_unknown_ticket_at_night_in_a_burst(self):
        flags = verification_flags(False, "Ticket not found", NIGHT, 11)

        # 20 + 25 + 15 + 20 base, then two flags of 20 each, capped
        assert flags["risk_score"] == 100
        assert flags["is_suspicious"] is True
        assert flags["suspicious_reasons"] == [
            "multiple_failed_attempts", "rate_limit_exceeded"
        ]

    def test_flag_is_not_duplicated(self):
        flags = add_suspicious_flag(
            {
                "suspicious_reasons": ["suspicious_ip"],
                "risk_score": 10
            }, "suspicious_ip")

        assert flags["suspicious_reasons"] == ["suspicious_ip"]
        assert flags["risk_score"] == 30


@pytest.mark.parametrize("score, level", [(0, "low"), (14, "low"),
                                          (15, "medium"), (30, "high"),
                                          (49, "high"), (50, "critical")])
def test_risk_level_thresholds(score, level):
    assert risk_level(score) == level


def test_private_lan_address():
    assert is_private_lan_address("192.168.1.20")
    assert not is_private_lan_address("10.0.0.1")
    assert not is_private_lan_address("not-an-ip")
    assert not is_private_lan_address(None)


class TestAssessAdminAction:

    def test_routine_update_is_low_risk(self):
        assessment = assess_admin_action("user_update", "user", "8.8.8.8",
                                         DAYTIME)

        assert assessment["risk_level"] == "low"
        assert assessment["risk_factors"] == []
        assert assessment["requires_review"] is False

    def test_ip_block_from_lan_at_night(self):
        """20 (action) + 10 (security target) + 5 (LAN) + 10 (off hours)"""
        assessment = assess_admin_action("ip_block", "security",
                                         "192.168.0.10", NIGHT)

        assert assessment["risk_score"] == 45
        assert assessment["risk_level"] == "high"
        assert assessment["requires_review"] is True
        assert assessment["risk_factors"] == [
            "high_risk_action:ip_block", "sensitive_target:security",
            "private_network", "off_hours"
        ]

    def test_approval_needed_for_high_and_critical(self):
        assert requires_approval("high")
        assert requires_approval("critical")
        assert not requires_approval("medium")


class TestSecurityRecommendations:

    def test_all_clear(self):
        recommendations = security_recommendations([], [], [])

        assert len(recommendations) == 1
        assert recommendations[0]["type"] == "success"

    def test_each_problem_gets_a_recommendation(self):
        recommendations = security_recommendations(
            [{"count": 3}],
            [{"login_attempts": 5}, {"login_attempts": 2}],
            [{"suspicious_rate": 80}, {"suspicious_rate": 50}],
            max_login_attempts=5)

        assert [r["type"] for r in recommendations
                ] == ["warning", "alert", "warning"]
        assert recommendations[1]["details"].startswith("1 users")
        assert recommendations[2]["details"].startswith("1 IPs")
