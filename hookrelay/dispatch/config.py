"""Configuration for notification dispatch and work-queue submission."""

import os

from pydantic import BaseModel, Field


class DispatchSettings(BaseModel):
    """Dispatcher settings loaded from environment variables."""

    # Basic app settings
    debug: bool = Field(default=False, env="DEBUG")
    log_level: str = Field(default="INFO", env="LOG_LEVEL")

    # Loop prevention
    dedup_window_seconds: float = Field(default=120.0, env="DEDUP_WINDOW_SECONDS")
    dedup_max_entries: int = Field(default=10000, env="DEDUP_MAX_ENTRIES")

    # Forwarding
    forward_timeout_seconds: float = Field(default=10.0, env="FORWARD_TIMEOUT_SECONDS")
    envelope_source: str = Field(default="SharePoint-Webhook-Proxy", env="ENVELOPE_SOURCE")
    hostname: str = Field(default="hookrelay", env="WEBSITE_HOSTNAME")

    # Item resolution
    item_fetch_timeout_seconds: float = Field(default=10.0, env="ITEM_FETCH_TIMEOUT_SECONDS")
    recent_items_page_size: int = Field(default=5, env="RECENT_ITEMS_PAGE_SIZE")
    change_cache_size: int = Field(default=5000, env="CHANGE_CACHE_SIZE")

    # Work queue (UiPath Orchestrator)
    queue_enabled: bool = Field(default=False, env="UIPATH_ENABLED")
    orchestrator_url: str | None = Field(default=None, env="UIPATH_ORCHESTRATOR_URL")
    queue_token_url: str | None = Field(default=None, env="UIPATH_TOKEN_URL")
    queue_client_id: str | None = Field(default=None, env="UIPATH_CLIENT_ID")
    queue_client_secret: str | None = Field(default=None, env="UIPATH_CLIENT_SECRET")
    queue_scope: str = Field(default="OR.Queues", env="UIPATH_SCOPE")
    organization_unit_id: str | None = Field(default=None, env="UIPATH_ORGANIZATION_UNIT_ID")
    default_queue: str | None = Field(default=None, env="UIPATH_DEFAULT_QUEUE")
    default_priority: str = Field(default="Normal", env="UIPATH_DEFAULT_PRIORITY")
    queue_timeout_seconds: float = Field(default=30.0, env="UIPATH_TIMEOUT_SECONDS")

    model_config = {
        "env_file": ".env.dispatch",
        "env_file_encoding": "utf-8"
    }


def _is_true(value: str) -> bool:
    return value.lower() in ('true', '1', 'yes', 'on')


def load_dispatch_settings() -> DispatchSettings:
    """Load dispatch settings from environment variables."""
    file_vars = {}

    # Read from .env.dispatch if it exists
    env_file = ".env.dispatch"
    if os.path.exists(env_file):
        with open(env_file) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    file_vars[key.strip()] = value.strip()

    def env(key: str, default: str | None = None) -> str | None:
        # Process environment wins over the env file
        return os.getenv(key, file_vars.get(key, default))

    return DispatchSettings(
        debug=_is_true(env('DEBUG', 'false')),
        log_level=env('LOG_LEVEL', 'INFO'),
        dedup_window_seconds=float(env('DEDUP_WINDOW_SECONDS', '120')),
        dedup_max_entries=int(env('DEDUP_MAX_ENTRIES', '10000')),
        forward_timeout_seconds=float(env('FORWARD_TIMEOUT_SECONDS', '10')),
        envelope_source=env('ENVELOPE_SOURCE', 'SharePoint-Webhook-Proxy'),
        hostname=env('WEBSITE_HOSTNAME', 'hookrelay'),
        item_fetch_timeout_seconds=float(env('ITEM_FETCH_TIMEOUT_SECONDS', '10')),
        recent_items_page_size=int(env('RECENT_ITEMS_PAGE_SIZE', '5')),
        change_cache_size=int(env('CHANGE_CACHE_SIZE', '5000')),
        queue_enabled=_is_true(env('UIPATH_ENABLED', 'false')),
        orchestrator_url=env('UIPATH_ORCHESTRATOR_URL'),
        queue_token_url=env('UIPATH_TOKEN_URL'),
        queue_client_id=env('UIPATH_CLIENT_ID'),
        queue_client_secret=env('UIPATH_CLIENT_SECRET'),
        queue_scope=env('UIPATH_SCOPE', 'OR.Queues'),
        organization_unit_id=env('UIPATH_ORGANIZATION_UNIT_ID'),
        default_queue=env('UIPATH_DEFAULT_QUEUE'),
        default_priority=env('UIPATH_DEFAULT_PRIORITY', 'Normal'),
        queue_timeout_seconds=float(env('UIPATH_TIMEOUT_SECONDS', '30')),
    )


dispatch_settings = load_dispatch_settings()
