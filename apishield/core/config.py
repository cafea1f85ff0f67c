"""
Application configuration.

Loads settings from environment variables and .env file.
All configuration is centralized here. No scattered magic strings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline settings loaded from environment.

    Attributes:
        project_name: Display name for the API.
        version: Current API version string.
        environment: Runtime mode. "production" hides failure details
            from error responses.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        client_origins: Origins allowed to make credentialed cross-origin calls.
        api_origins: Extra origins the browser may connect to (CSP connect-src).
        rate_limit_general: Rate for every path not claimed by another tier.
        rate_limit_auth: Rate for authentication endpoints.
        rate_limit_heavy: Rate for compute-heavy endpoints.
        auth_paths: Path prefixes covered by the auth tier.
        heavy_paths: Path prefixes covered by the heavy-API tier.
        trust_forwarded_for: Key clients on the leftmost X-Forwarded-For entry
            instead of the peer. Only enable behind a proxy that overwrites
            the header, since clients control it otherwise.
        max_request_size_bytes: Largest JSON or form body that is read and
            sanitized. Larger bodies are rejected with 413.
        allowed_html_fields: Body fields that keep non-script markup.
        allowed_repeated_params: Parameters allowed to carry several values.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    project_name: str = "api-shield"
    version: str = "0.1.0"
    environment: str = "development"
    log_level: str = "INFO"

    client_origins: list[str] = [
        "https://nexus-ecommerce-chi.vercel.app",
        "http://localhost:3000",
        "http://localhost:5000",
    ]
    api_origins: list[str] = [
        "https://generativelanguage.googleapis.com",
        "https://www.googleapis.com",
    ]

    # Rate strings use the slowapi / limits notation.
    rate_limit_general: str = "100/15 minutes"
    rate_limit_auth: str = "5/15 minutes"
    rate_limit_heavy: str = "50/15 minutes"
    auth_paths: list[str] = ["/users/login", "/users/register", "/api/users/login", "/api/users/register"]
    heavy_paths: list[str] = ["/recommendations", "/upload", "/api/recommendations", "/api/upload"]
    trust_forwarded_for: bool = False
    max_request_size_bytes: int = 1_048_576  # 1 MB

    allowed_html_fields: list[str] = ["description"]
    allowed_repeated_params: list[str] = []

    @property
    def is_production(self) -> bool:
        """Whether failure details must be withheld from clients."""
        return self.environment.lower() == "production"


settings = Settings()
