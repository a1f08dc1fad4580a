from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Beacon Export Gate"
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    cors_origins: str = "http://localhost:3000"
    cors_allow_credentials: bool = True
    log_level: str = "INFO"
    request_id_header: str = "X-Request-ID"
    auth_enabled: bool = False
    cognito_region: str = ""
    cognito_user_pool_id: str = ""
    cognito_app_client_id: str = ""
    cognito_issuer: str = ""
    aws_region: str = "us-east-1"
    # Claim carrying the caller's organization when tokens are validated.
    organization_claim: str = "custom:organization_id"
    # With auth disabled (local development, tests) the caller context comes from headers.
    organization_header: str = "X-Organization-ID"
    user_header: str = "X-User-ID"

    # MVP default is sqlite; every component receives its own store handle.
    database_url: str = "sqlite:///./beacon.db"
    database_timeout_seconds: float = 10.0
    embedding_dim: int = 128
    retrieval_top_k_default: int = 10

    citation_confidence_threshold: float = 0.5
    citation_grounded_threshold: float = 0.7
    max_supporting_chunks: int = 3
    claim_verify_threshold: float = 0.7
    claim_numeric_tolerance: float = 0.1
    min_section_content_length: int = 50
    # Word limit overage, in percent, above which a violation is reported as severe.
    word_limit_block_percent: float = 10.0
    checklist_auto_map_min_confidence: float = 0.3
    gate_recompute_timeout_seconds: float = 30.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


settings = Settings()
