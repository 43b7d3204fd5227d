"""
Unit Tests for SMS Gateway Status Mapping
"""

import pytest

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.campaign_service.clients.sms_sender import (
    describe_sms_status,
    is_sms_success,
)


class TestIsSmsSuccess:
    """Positive gateway codes are message ids"""

    @pytest.mark.parametrize("status", [1, "42", 987654])
    def test_positive_codes(self, status):
        assert is_sms_success(status) is True

    @pytest.mark.parametrize("status", [0, -1, "-4", None, "abc", ""])
    def test_non_success(self, status):
        assert is_sms_success(status) is False


class TestDescribeSmsStatus:
    """Tests for error descriptions"""

    @pytest.mark.parametrize(
        "status,expected",
        [
            (-3, "Insufficient provider credit"),
            ("-4", "Invalid phone number"),
            ("-10", "Message too long"),
        ],
    )
    def test_known_codes(self, status, expected):
        assert describe_sms_status(status) == expected

    def test_unknown_code_uses_fallback(self):
        assert describe_sms_status("-99", "gateway said no") == "gateway said no"

    def test_unknown_code_without_fallback(self):
        assert describe_sms_status("-99") == "Unknown provider error (-99)"
