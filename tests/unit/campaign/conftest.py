"""
Unit Test Fixtures for Campaign Service

Uses CampaignTestDataFactory from the data contract.
"""

import pytest
from datetime import datetime, timezone

import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from tests.contracts.campaign.data_contract import CampaignTestDataFactory


@pytest.fixture
def factory():
    """Provide test data factory"""
    return CampaignTestDataFactory


@pytest.fixture
def now():
    """Fixed reference time"""
    return datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def contact(factory):
    """Contact with every template field filled in"""
    return factory.make_contact(
        "usr_unit",
        first_name="Ada",
        email="ada@example.com",
        phone="+15550100",
        last_name="Lovelace",
        company="Analytical Engines",
    )
