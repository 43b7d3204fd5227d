#!/usr/bin/env python3
"""Campaign service main configuration

Combines all sub-configs for the campaign dispatch service.
"""
import os
from dataclasses import dataclass, field

from .dispatch_config import DispatchConfig, QueueConfig
from .infra_config import InfraConfig
from .logging_config import LoggingConfig
from .tracking_config import ConsentConfig, LinkConfig


def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


@dataclass
class CampaignServiceConfig:
    """Main campaign service configuration with all sub-configs"""

    # Environment
    environment: str = "development"
    debug: bool = False

    service_name: str = "campaign_service"
    host: str = "0.0.0.0"
    port: int = 8251
    run_workers: bool = True

    # Sub-configurations
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    links: LinkConfig = field(default_factory=LinkConfig)
    consent: ConsentConfig = field(default_factory=ConsentConfig)

    @classmethod
    def from_env(cls) -> 'CampaignServiceConfig':
        """Load complete configuration from environment"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            environment=env,
            debug=_bool(os.getenv("DEBUG", "true" if env == "development" else "false")),
            service_name=os.getenv("SERVICE_NAME", "campaign_service"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_int(os.getenv("SERVICE_PORT", "8251"), 8251),
            run_workers=_bool(os.getenv("RUN_CAMPAIGN_WORKERS", "true")),

            # Load sub-configs
            logging=LoggingConfig.from_env(),
            infrastructure=InfraConfig.from_env(),
            dispatch=DispatchConfig.from_env(),
            queue=QueueConfig.from_env(),
            links=LinkConfig.from_env(),
            consent=ConsentConfig.from_env(),
        )
