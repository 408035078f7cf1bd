"""Configuration management for the Checkly operator."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Operator settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Settings
    service_name: str = "checkly-operator"
    version: str = "0.1.0"
    log_level: str = "INFO"

    # Controller
    controller_domain: str = Field(
        default="k8s.checklyhq.com",
        description="Domain to use for annotations, labels and finalizers",
    )
    api_version: str = "v1alpha1"

    # Checkly API
    checkly_api_key: str = Field(..., description="Checkly API key")
    checkly_account_id: str = Field(..., description="Checkly account id")
    checkly_base_url: str = "https://api.checklyhq.com"
    http_timeout_seconds: float = 30.0
    http_max_attempts: int = 3

    # Kubernetes Settings
    kubeconfig_path: Optional[str] = Field(
        default=None,
        description="Path to kubeconfig file; in-cluster config when unset",
    )
    kube_context: Optional[str] = None
    watch_namespace: Optional[str] = Field(
        default=None,
        description="Namespace to watch for ingresses and checks; all when unset",
    )

    # Reconciliation Settings
    workers_per_kind: int = 2
    resync_interval_seconds: int = 300
    conflict_retry_limit: int = 3
    dependency_retry_seconds: float = 10.0
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0

    @property
    def annotation_prefix(self) -> str:
        return f"{self.controller_domain}/"

    @property
    def finalizer_name(self) -> str:
        return f"{self.controller_domain}/finalizer"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
