"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from article_cache.utils.keys import EndpointType

DEFAULT_USER_AGENT = "article-cache/0.3 (offline reading cache)"


class CacheConfig(BaseModel):
    """A validated configuration model for the cache."""

    model_config = ConfigDict(validate_assignment=True, str_strip_whitespace=True)

    # Storage
    cache_dir: str
    database_name: str = "article_cache.sqlite"
    legacy_dir: str = ""

    # Fetching
    max_workers: int = 8
    request_timeout: float = 60.0
    fetch_attempts: int = 1
    include_media_list: bool = False
    user_agent: str = DEFAULT_USER_AGENT

    # Internal fields not loaded from INI file
    config_path: str = Field(..., repr=False)

    @field_validator("max_workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        """Ensures a reasonable number of concurrent downloads."""
        if v < 1 or v > 32:
            raise ValueError("Max workers must be between 1 and 32.")
        return v

    @field_validator("request_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Request timeout must be a positive number of seconds.")
        return v

    @field_validator("fetch_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1 or v > 10:
            raise ValueError("Fetch attempts must be between 1 and 10.")
        return v

    @field_validator("database_name")
    @classmethod
    def validate_database_name(cls, v: str) -> str:
        """Keeps the database file inside the cache directory."""
        if not v:
            raise ValueError("Database name cannot be empty.")
        if "/" in v or "\\" in v or v.startswith("."):
            raise ValueError("Database name must be a plain file name.")
        return v

    @model_validator(mode="after")
    def validate_directories(self) -> "CacheConfig":
        """Checks that the payload and legacy directories don't overlap."""
        if not self.cache_dir:
            raise ValueError("Cache directory is not configured.")
        if self.legacy_dir:
            cache_dir = Path(self.cache_dir).expanduser().resolve()
            legacy_dir = Path(self.legacy_dir).expanduser().resolve()
            if cache_dir == legacy_dir or legacy_dir in cache_dir.parents:
                raise ValueError(
                    "Legacy directory must not contain the cache directory."
                )
        return self

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_dir).expanduser()

    @property
    def database_path(self) -> Path:
        return self.cache_path / self.database_name

    @property
    def legacy_path(self) -> Path | None:
        return Path(self.legacy_dir).expanduser() if self.legacy_dir else None

    @property
    def auxiliary_endpoints(self) -> list[EndpointType]:
        """Endpoint types whose manifests are cached alongside each article."""
        endpoints = [EndpointType.MOBILE_HTML_OFFLINE_RESOURCES]
        if self.include_media_list:
            endpoints.append(EndpointType.MEDIA_LIST)
        return endpoints

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}
