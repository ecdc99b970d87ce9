from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "datah-municipal-indicators"
    app_env: str = "local"
    log_level: str = "INFO"
    pipeline_version: str = "0.1.0"
    schema_version: str = "1.0.0"
    base_url_path: str = "/v1"

    data_root: Path = Field(default_factory=lambda: Path("data"))
    data_cache_root: Path = Field(default_factory=lambda: Path("data-cache"))
    fetch_cache_root: Path = Field(default_factory=lambda: Path(".cache/indicators"))
    mapping_path: Path = Field(default_factory=lambda: Path("configs/indicator_mappings.yml"))
    static_data_path: Path = Field(default_factory=lambda: Path("configs/static-data-absolute.csv"))

    ine_base_url: str = "https://www.ine.pt"
    ine_lang: str = "PT"
    dgt_base_url: str = (
        "https://observatorioindicadores.dgterritorio.gov.pt/websig/bi/ngGeoAPI/public/index.php"
    )

    request_timeout_seconds: int = 30
    http_max_retries: int = Field(default=0, ge=0)
    http_backoff_seconds: float = 1.5
    request_delay_seconds: float = 0.5
    cache_max_age_hours: float | None = None

    expected_municipality_count: int = 308
    min_municipalities_per_indicator: int = 100
    valid_dimensions: str = "coesao_territorial,sustentabilidade_ambiental"

    @property
    def valid_dimensions_list(self) -> list[str]:
        return [item.strip() for item in self.valid_dimensions.split(",") if item.strip()]

    @property
    def output_root(self) -> Path:
        return self.data_root

    @property
    def api_root(self) -> Path:
        return self.data_root / self.base_url_path.strip("/")

    @property
    def manifests_root(self) -> Path:
        return self.data_root / "manifests"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
