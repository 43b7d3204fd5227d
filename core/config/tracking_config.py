#!/usr/bin/env python3
"""Link tracking and consent configuration"""
import os
from dataclasses import dataclass
from typing import Optional

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


@dataclass
class LinkConfig:
    """Short link and session correlation settings"""
    client_url: str = "http://localhost:3000"
    short_link_domain: Optional[str] = None
    tracking_base_url: str = "http://localhost:8251"
    session_window_days: int = 30
    session_cookie_name: str = "cmp_session"
    unsubscribe_link_expiry_days: int = 365
    behavioral_queue_size: int = 1000

    @property
    def short_link_base(self) -> str:
        """Base for tokenized short URLs"""
        if self.short_link_domain:
            return self.short_link_domain.rstrip("/")
        return f"{self.client_url.rstrip('/')}/l"

    @classmethod
    def from_env(cls) -> 'LinkConfig':
        return cls(
            client_url=os.getenv("CLIENT_URL", "http://localhost:3000"),
            short_link_domain=os.getenv("SHORT_LINK_DOMAIN"),
            tracking_base_url=os.getenv("TRACKING_BASE_URL", "http://localhost:8251"),
            session_window_days=_int(os.getenv("SESSION_WINDOW_DAYS", "30"), 30),
            session_cookie_name=os.getenv("SESSION_COOKIE_NAME", "cmp_session"),
            unsubscribe_link_expiry_days=_int(os.getenv("UNSUBSCRIBE_LINK_EXPIRY_DAYS", "365"), 365),
            behavioral_queue_size=_int(os.getenv("BEHAVIORAL_QUEUE_SIZE", "1000"), 1000),
        )


@dataclass
class ConsentConfig:
    """Consent gate settings"""
    # Historic behaviour lets an already used token resubscribe
    resubscribe_requires_active_token: bool = False

    @classmethod
    def from_env(cls) -> 'ConsentConfig':
        return cls(
            resubscribe_requires_active_token=_bool(
                os.getenv("RESUBSCRIBE_REQUIRES_ACTIVE_TOKEN", "false")
            ),
        )
