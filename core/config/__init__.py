#!/usr/bin/env python3
"""Modular configuration system for the campaign dispatch service

Configuration hierarchy:
- infra_config: Infrastructure services (PostgreSQL, Redis, NATS)
- dispatch_config: Batch throttling, channel providers and job queue policy
- tracking_config: Short links, sessions and consent settings
- logging_config: Logging configuration
"""
import os
from dotenv import load_dotenv
from .campaign_config import CampaignServiceConfig
from .dispatch_config import ChannelThrottle, DispatchConfig, QueueConfig
from .infra_config import InfraConfig
from .logging_config import LoggingConfig
from .tracking_config import ConsentConfig, LinkConfig

# Load environment file based on ENV
env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
env_files = {
    "development": "deployment/environments/dev.env",
    "dev": "deployment/environments/dev.env",
    "testing": "deployment/environments/test.env",
    "test": "deployment/environments/test.env",
    "staging": "deployment/environments/staging.env",
    "production": "deployment/environments/production.env",
}
env_file = env_files.get(env, "deployment/environments/dev.env")
load_dotenv(env_file, override=False)

# Create global settings instance
settings = CampaignServiceConfig.from_env()

def get_settings() -> CampaignServiceConfig:
    """Get global settings instance"""
    return settings


__all__ = [
    'CampaignServiceConfig',
    'get_settings',
    'settings',
    'ChannelThrottle',
    'ConsentConfig',
    'DispatchConfig',
    'InfraConfig',
    'LinkConfig',
    'LoggingConfig',
    'QueueConfig',
]
