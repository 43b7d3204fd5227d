#!/usr/bin/env python3
"""
Core Module for the Campaign Platform

Shared infrastructure components for microservices.

COMPONENTS:
    - config/: Dataclass configuration loaded from environment
    - postgres_client.py: asyncpg pool wrapper
    - redis_client.py: redis.asyncio connection factory
    - nats_client.py: NATS JetStream event bus

USAGE:
    from core.config import get_settings
    from core.postgres_client import get_postgres_client

    settings = get_settings()
    db = await get_postgres_client(settings.service_name, settings.infrastructure)
"""

__version__ = "2.0.0"
