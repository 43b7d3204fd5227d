"""
Component Test Layer Configuration

Component tests run the real services against in-memory repository,
job broker, event bus and channel senders. No network is touched.

Usage:
    pytest tests/component -v
    pytest tests/component/campaign -v
"""
import os
import sys

import pytest

# Set testing environment BEFORE any imports
os.environ["ENV"] = "testing"
os.environ["ENVIRONMENT"] = "testing"
os.environ["NATS_ENABLED"] = "false"
os.environ["RUN_CAMPAIGN_WORKERS"] = "false"

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))


def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "component: marks tests as component tests"
    )
