from typing import Annotated, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from msp_sync.core.errors import ConfigurationError


# Engineers whose data is mirrored (matched case-insensitively)
DEFAULT_ENGINEER_IDENTIFIERS = [
    "bwolff",
    "kmoreno",
    "scano",
    "pcounts",
    "ehammond",
    "dcooper",
    "dsolomon",
]

# Service boards whose tickets are mirrored
DEFAULT_SERVICE_BOARD_NAMES = [
    "Escalations(MS)",
    "HelpDesk (MS)",
    "HelpDesk (TS)",
    "Triage",
    "RMM-Continuum",
    "WL Internal",
]


class ConnectWiseConfig(BaseModel):
    """Validated credentials for the ConnectWise REST API."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    public_key: str
    private_key: str
    base_url: str
    company_id: str
    codebase: Optional[str] = None

    @field_validator("base_url")
    @classmethod
    def normalize_base_url(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ConnectWise credentials (legacy VITE_ names are still honoured)
    cw_client_id: str = Field("", validation_alias=AliasChoices("cw_client_id", "vite_cw_client_id"))
    cw_public_key: str = Field("", validation_alias=AliasChoices("cw_public_key", "vite_cw_public_key"))
    cw_private_key: str = Field("", validation_alias=AliasChoices("cw_private_key"))
    cw_base_url: str = Field("", validation_alias=AliasChoices("cw_base_url", "vite_cw_base_url"))
    cw_company_id: str = Field("", validation_alias=AliasChoices("cw_company_id", "vite_cw_company_id"))
    # Explicit codebase path (e.g. "v2017_3/"); auto-detected when empty
    cw_codebase: str = ""

    # Remote API behaviour
    cw_page_size: int = 1000
    cw_request_timeout: float = 30.0
    cw_codebase_probe_timeout: float = 5.0
    cw_api_delay_ms: int = 100  # Delay between page requests
    cw_api_max_retries: int = 3  # Retries on HTTP 429

    # Database Configuration
    database_url: str = "sqlite+aiosqlite:///./msp_sync.db"

    # Sync scope
    allowed_engineer_identifiers: Annotated[List[str], NoDecode] = DEFAULT_ENGINEER_IDENTIFIERS
    service_board_names: Annotated[List[str], NoDecode] = DEFAULT_SERVICE_BOARD_NAMES

    # Sync policy - strict limits to avoid transfer overages
    minimum_sync_interval_hours: float = 6.0
    stale_threshold_hours: float = 168.0
    sync_incremental_fallback: bool = False
    time_entry_lookback_days: int = 5 * 365
    upsert_batch_size: int = 50
    id_chunk_size: int = 50
    sync_project_audits: bool = True

    # Logging
    log_level: str = "INFO"

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    app_title: str = "MSP Sync"
    app_description: str = "Mirror ConnectWise service data into a local database"

    @field_validator("allowed_engineer_identifiers", "service_board_names", mode="before")
    @classmethod
    def split_comma_list(cls, v):
        """Accept comma separated strings from the environment."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("upsert_batch_size", "id_chunk_size", "cw_page_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    def connectwise_config(self) -> ConnectWiseConfig:
        """
        Build the validated ConnectWise configuration.

        Raises:
            ConfigurationError: If any required credential is missing.
        """
        required = {
            "CW_CLIENT_ID": self.cw_client_id,
            "CW_PUBLIC_KEY": self.cw_public_key,
            "CW_PRIVATE_KEY": self.cw_private_key,
            "CW_BASE_URL": self.cw_base_url,
            "CW_COMPANY_ID": self.cw_company_id,
        }
        missing = [name for name, value in required.items() if not value or not value.strip()]
        if missing:
            raise ConfigurationError(
                f"Missing required ConnectWise settings: {', '.join(missing)}"
            )

        return ConnectWiseConfig(
            client_id=self.cw_client_id.strip(),
            public_key=self.cw_public_key.strip(),
            private_key=self.cw_private_key.strip(),
            base_url=self.cw_base_url,
            company_id=self.cw_company_id.strip(),
            codebase=self.cw_codebase.strip() or None,
        )


settings = Settings()
