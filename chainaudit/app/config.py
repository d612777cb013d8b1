"""
Runtime configuration for the ChainAudit service.

This module centralizes environment-driven configuration, resource
limits, and external service settings. It defines which optional
collaborators (enrichment provider, external tools) are wired and how
they are reached.

Configuration is read-only at runtime.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator, ValidationInfo


class ChainAuditConfig(BaseModel):
    """
    Runtime configuration for the ChainAudit service.

    Configuration is environment-driven and read-only at runtime.
    """

    # ------------------------------------------------------------------
    # Aggregation defaults
    # ------------------------------------------------------------------

    CONFIDENCE_THRESHOLD: float = Field(
        0.3,
        ge=0.0,
        le=1.0,
        description="Findings below this confidence are treated as false positives",
    )

    MAX_REPORT_FINDINGS: int = Field(
        500,
        gt=0,
        description="Upper bound on findings carried into a report",
    )

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    DEFAULT_TIMEOUT_MS: Optional[int] = Field(
        None,
        gt=0,
        description=(
            "Whole-job deadline applied when a request does not set "
            "configuration.timeout_ms. None disables the deadline."
        ),
    )

    # ------------------------------------------------------------------
    # Safety and resource limits
    # ------------------------------------------------------------------

    MAX_FILES: int = Field(
        500,
        gt=0,
        description="Maximum number of files per audit request",
    )

    MAX_FILE_SIZE_KB: int = Field(
        1024,
        gt=0,
        description="Maximum size of a single uploaded file in kilobytes",
    )

    # ------------------------------------------------------------------
    # External tools
    # ------------------------------------------------------------------

    ENABLE_EXTERNAL_TOOLS: bool = Field(
        False,
        description="Run cargo clippy / cargo audit in the external-tools stage",
    )

    EXTERNAL_TOOL_TIMEOUT_SECONDS: float = Field(
        120.0,
        gt=0,
        description="Per-tool subprocess timeout",
    )

    # ------------------------------------------------------------------
    # Enrichment (AI analysis and report enrichment)
    # ------------------------------------------------------------------

    ENRICHMENT_PROVIDER: str = Field(
        "disabled",
        description="Enrichment provider identifier",
    )

    AZURE_OPENAI_ENDPOINT: str = Field(
        "",
        description="Azure OpenAI endpoint URL",
    )

    AZURE_OPENAI_DEPLOYMENT: str = Field(
        "",
        validate_default=True,
        description="Azure OpenAI deployment name",
    )

    AZURE_OPENAI_API_VERSION: str = Field(
        "",
        description="Azure OpenAI API version",
    )

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    LOG_LEVEL: str = Field(
        "INFO",
        description="Root log level for the service process",
    )

    # ------------------------------------------------------------------
    # Validators (Pydantic v2)
    # ------------------------------------------------------------------

    @field_validator("ENRICHMENT_PROVIDER")
    @classmethod
    def validate_enrichment_provider(cls, v: str) -> str:
        allowed = {"disabled", "azure_openai"}
        if v not in allowed:
            raise ValueError(
                f"Unsupported ENRICHMENT_PROVIDER '{v}'. "
                f"Allowed values: {sorted(allowed)}"
            )
        return v

    @field_validator("AZURE_OPENAI_DEPLOYMENT")
    @classmethod
    def azure_settings_required_for_provider(
        cls, v: str, info: ValidationInfo
    ) -> str:
        if info.data.get("ENRICHMENT_PROVIDER") == "azure_openai":
            if not info.data.get("AZURE_OPENAI_ENDPOINT"):
                raise ValueError(
                    "ENRICHMENT_PROVIDER is azure_openai but "
                    "AZURE_OPENAI_ENDPOINT is not configured."
                )
            if not v:
                raise ValueError(
                    "ENRICHMENT_PROVIDER is azure_openai but "
                    "AZURE_OPENAI_DEPLOYMENT is not configured."
                )
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown LOG_LEVEL '{v}'")
        return level

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls) -> "ChainAuditConfig":
        """
        Load configuration from environment variables.

        All values are parsed once at startup and must remain immutable.
        """

        def env_bool(name: str, default: bool) -> bool:
            raw = os.getenv(name)
            if raw is None:
                return default
            return raw.lower() in {"1", "true", "yes", "on"}

        timeout_env = os.getenv("CHAINAUDIT_DEFAULT_TIMEOUT_MS")

        return cls(
            CONFIDENCE_THRESHOLD=float(
                os.getenv("CHAINAUDIT_CONFIDENCE_THRESHOLD", "0.3")
            ),
            MAX_REPORT_FINDINGS=int(
                os.getenv("CHAINAUDIT_MAX_REPORT_FINDINGS", "500")
            ),
            DEFAULT_TIMEOUT_MS=(
                int(timeout_env)
                if timeout_env
                else None
            ),
            MAX_FILES=int(
                os.getenv("CHAINAUDIT_MAX_FILES", "500")
            ),
            MAX_FILE_SIZE_KB=int(
                os.getenv("CHAINAUDIT_MAX_FILE_SIZE_KB", "1024")
            ),
            ENABLE_EXTERNAL_TOOLS=env_bool(
                "CHAINAUDIT_ENABLE_EXTERNAL_TOOLS", False
            ),
            EXTERNAL_TOOL_TIMEOUT_SECONDS=float(
                os.getenv("CHAINAUDIT_EXTERNAL_TOOL_TIMEOUT_SECONDS", "120")
            ),
            ENRICHMENT_PROVIDER=os.getenv(
                "CHAINAUDIT_ENRICHMENT_PROVIDER", "disabled"
            ),
            AZURE_OPENAI_ENDPOINT=os.getenv(
                "AZURE_OPENAI_ENDPOINT", ""
            ),
            AZURE_OPENAI_DEPLOYMENT=os.getenv(
                "AZURE_OPENAI_DEPLOYMENT", ""
            ),
            AZURE_OPENAI_API_VERSION=os.getenv(
                "AZURE_OPENAI_API_VERSION", ""
            ),
            LOG_LEVEL=os.getenv(
                "CHAINAUDIT_LOG_LEVEL", "INFO"
            ),
        )

    model_config = {
        "frozen": True,
    }
