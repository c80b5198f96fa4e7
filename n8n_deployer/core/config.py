"""
Configuration Management - Pydantic Settings
Securely loads and validates environment variables.
"""
import os
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # n8n Configuration
    n8n_base_url: str = Field(default="http://localhost:5678/api/v1", alias="N8N_BASE_URL")
    n8n_api_key: str = Field(..., alias="N8N_API_KEY")
    n8n_editor_url: str = Field(default="http://localhost:5678", alias="N8N_EDITOR_URL")
    n8n_webhook_url: str = Field(default="", alias="N8N_WEBHOOK_URL")

    # Local persistence (workflow definitions + deployment records)
    data_dir: str = Field(
        default_factory=lambda: os.path.join(os.path.expanduser("~"), ".n8n_deployer"),
        alias="DEPLOYER_DATA_DIR"
    )

    @property
    def api_url(self) -> str:
        """Ensure the API URL is correctly formatted."""
        url = self.n8n_base_url.rstrip("/")
        if not url.endswith("/api/v1"):
            url += "/api/v1"
        return url + "/"

    @property
    def engine_root_url(self) -> str:
        """Base URL of the n8n instance without the REST API suffix."""
        url = self.n8n_base_url.rstrip("/")
        if url.endswith("/api/v1"):
            url = url[: -len("/api/v1")]
        return url

    @property
    def webhook_base_url(self) -> str:
        return (self.n8n_webhook_url or self.n8n_editor_url).rstrip("/")

    # Server Configuration
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: Optional[str] = Field(default=None, alias="LOG_LEVEL")

    # HTTP Client Configuration
    http_timeout: float = Field(default=30.0, alias="HTTP_TIMEOUT")
    health_probe_timeout: float = Field(default=5.0, alias="HEALTH_PROBE_TIMEOUT")

    # Validation limits
    max_nodes: int = Field(default=50, alias="MAX_NODES")
    max_nodes_hard: int = Field(default=100, alias="MAX_NODES_HARD")
    large_workflow_threshold: int = Field(default=20, alias="LARGE_WORKFLOW_THRESHOLD")
    strict_node_types: bool = Field(default=False, alias="STRICT_NODE_TYPES")
    denied_node_types: List[str] = Field(
        default_factory=lambda: ["n8n-nodes-base.executeCommand"],
        alias="DENIED_NODE_TYPES"
    )

    # Deployment
    test_mode_delay: float = Field(default=1.0, alias="TEST_MODE_DELAY")

    # Auto-heal queue
    autoheal_workers: int = Field(default=2, alias="AUTOHEAL_WORKERS")
    autoheal_max_retries: int = Field(default=3, alias="AUTOHEAL_MAX_RETRIES")
    autoheal_backoff_base: float = Field(default=1.0, alias="AUTOHEAL_BACKOFF_BASE")
    autoheal_job_retention: int = Field(default=1000, alias="AUTOHEAL_JOB_RETENTION")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


@lru_cache
def get_settings() -> Settings:
    """Build the settings once per process. Services receive it explicitly."""
    return Settings()
