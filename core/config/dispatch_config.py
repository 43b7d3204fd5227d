#!/usr/bin/env python3
"""Dispatch and job queue configuration

Per-channel batch throttling, provider endpoints and retry policy for
campaign dispatch jobs.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


@dataclass
class ChannelThrottle:
    """Batch size and inter-batch delay for a channel"""
    batch_size: int
    delay_seconds: float


def _default_throttles() -> Dict[str, ChannelThrottle]:
    return {
        "EMAIL": ChannelThrottle(batch_size=50, delay_seconds=1.0),
        "SMS": ChannelThrottle(batch_size=10, delay_seconds=2.0),
        "PUSH": ChannelThrottle(batch_size=100, delay_seconds=0.5),
    }


@dataclass
class DispatchConfig:
    """Batch dispatcher and channel sender settings"""

    # ===========================================
    # Throttling
    # ===========================================
    throttles: Dict[str, ChannelThrottle] = field(default_factory=_default_throttles)

    # ===========================================
    # Email relay
    # ===========================================
    email_relay_url: str = "http://localhost:8025/api/v1/send"
    email_api_key: Optional[str] = None
    email_from_address: str = "no-reply@example.com"

    # ===========================================
    # SMS gateway
    # ===========================================
    sms_gateway_url: str = "http://localhost:8026/api/sms/send"
    sms_username: Optional[str] = None
    sms_password: Optional[str] = None
    sms_api_key: Optional[str] = None

    default_sender_name: str = "Poply"
    http_timeout: float = 30.0

    def throttle_for(self, channel: str) -> ChannelThrottle:
        return self.throttles.get(channel, self.throttles["EMAIL"])

    @classmethod
    def from_env(cls) -> 'DispatchConfig':
        """Load dispatch config from environment"""
        throttles = _default_throttles()
        for channel, throttle in throttles.items():
            throttle.batch_size = _int(
                os.getenv(f"{channel}_BATCH_SIZE", ""), throttle.batch_size
            )
            throttle.delay_seconds = _float(
                os.getenv(f"{channel}_BATCH_DELAY", ""), throttle.delay_seconds
            )

        return cls(
            throttles=throttles,
            email_relay_url=os.getenv("EMAIL_RELAY_URL", "http://localhost:8025/api/v1/send"),
            email_api_key=os.getenv("EMAIL_API_KEY"),
            email_from_address=os.getenv("EMAIL_FROM_ADDRESS", "no-reply@example.com"),
            sms_gateway_url=os.getenv("SMS_GATEWAY_URL", "http://localhost:8026/api/sms/send"),
            sms_username=os.getenv("SMS_USERNAME"),
            sms_password=os.getenv("SMS_PASSWORD"),
            sms_api_key=os.getenv("SMS_API_KEY"),
            default_sender_name=os.getenv("DEFAULT_SENDER_NAME", "Poply"),
            http_timeout=_float(os.getenv("PROVIDER_HTTP_TIMEOUT", "30"), 30.0),
        )


@dataclass
class QueueConfig:
    """Campaign job queue settings"""
    queue_name: str = "campaign-dispatch"
    max_attempts: int = 3
    backoff_base_seconds: float = 5.0
    keep_completed: int = 50
    keep_failed: int = 100
    completed_max_age_hours: int = 24
    failed_max_age_days: int = 7
    worker_concurrency: int = 2
    poll_interval_seconds: float = 1.0
    stuck_after_minutes: int = 60
    lock_duration_seconds: int = 300

    @classmethod
    def from_env(cls) -> 'QueueConfig':
        """Load queue config from environment"""
        return cls(
            queue_name=os.getenv("CAMPAIGN_QUEUE_NAME", "campaign-dispatch"),
            max_attempts=_int(os.getenv("CAMPAIGN_JOB_ATTEMPTS", "3"), 3),
            backoff_base_seconds=_float(os.getenv("CAMPAIGN_JOB_BACKOFF", "5"), 5.0),
            keep_completed=_int(os.getenv("CAMPAIGN_KEEP_COMPLETED", "50"), 50),
            keep_failed=_int(os.getenv("CAMPAIGN_KEEP_FAILED", "100"), 100),
            completed_max_age_hours=_int(os.getenv("CAMPAIGN_COMPLETED_MAX_AGE_HOURS", "24"), 24),
            failed_max_age_days=_int(os.getenv("CAMPAIGN_FAILED_MAX_AGE_DAYS", "7"), 7),
            worker_concurrency=_int(os.getenv("CAMPAIGN_WORKER_CONCURRENCY", "2"), 2),
            poll_interval_seconds=_float(os.getenv("CAMPAIGN_WORKER_POLL_INTERVAL", "1"), 1.0),
            stuck_after_minutes=_int(os.getenv("CAMPAIGN_STUCK_AFTER_MINUTES", "60"), 60),
            lock_duration_seconds=_int(os.getenv("CAMPAIGN_JOB_LOCK_SECONDS", "300"), 300),
        )
