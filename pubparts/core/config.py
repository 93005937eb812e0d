from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PLATFORMS = [
    "MBoards",
    "Meepo",
    "Radium Performance",
    "Bioboards",
    "Hoyt St",
    "Lacroix",
    "Trampa",
    "Evolve",
    "Backfire",
    "Exway",
    "Onsra",
    "Wowgo",
    "Tynee",
    "Other",
    # Older catalog entries still carry these.
    "Floatwheel",
    "GT/GT-S",
    "Miscellaneous Items",
    "Pint/X/S",
    "VESC Electronics",
    "XR/Funwheel",
    "XR Classic",
]

DEFAULT_CATEGORIES = [
    "Deck",
    "Truck",
    "Motor",
    "Enclosure",
    "Adapter",
    "Battery Box",
    "Mount",
    "Hardware",
    "Remote",
    "BMS",
    "ESC",
    "Drivetrain",
    "Wheel",
    "Pulley",
    "Bearing",
    "Gasket",
    "Bracket",
    "Headlight",
    "Gland",
    "Miscellaneous",
]

DEFAULT_RESOLVER_PROXIES = [
    "allorigins=https://api.allorigins.win/raw?url={url}",
    "corsproxy=https://corsproxy.io/?url={url}",
]


class Settings(BaseSettings):
    app_name: str = "pubparts-api"
    environment: str = "dev"
    log_level: str = "INFO"

    github_token: str | None = None
    github_owner: str = "Focerqc"
    github_repo: str = "CLONEpubparts.xyz"
    github_base_branch: str = "master"
    github_api_url: str = "https://api.github.com"
    github_web_url: str = "https://github.com"
    github_timeout_seconds: float = 15.0

    catalog_strategy: str = "files"
    parts_dir: str = "src/data/parts"
    part_file_prefix: str = "part-"
    part_id_width: int = 4
    catalog_path: str = "src/util/parts.ts"
    catalog_array_marker: str = r"\]\s*as\s*ItemData\[\]"
    categories_path: str = "src/data/categories.json"

    platforms: list[str] = Field(default_factory=lambda: list(DEFAULT_PLATFORMS))
    default_categories: list[str] = Field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    default_fabrication_method: str = "3d Printed"
    max_batch_size: int = 10

    rate_limit_window_seconds: int = 60
    reject_anonymous_submissions: bool = False
    trusted_proxy_headers: bool = False
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 5

    admin_password: str | None = None
    admin_header: str = "x-admin-password"

    firecrawl_api_key: str | None = None
    firecrawl_url: str = "https://api.firecrawl.dev/v1/scrape"
    printables_graphql_url: str = "https://api.printables.com/graphql/"
    printables_media_url: str = "https://media.printables.com"
    resolver_timeout_seconds: float = 10.0
    resolver_proxies: list[str] = Field(default_factory=lambda: list(DEFAULT_RESOLVER_PROXIES))

    otel_enabled: bool = True
    otel_service_name: str = "pubparts-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="PUBPARTS_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
