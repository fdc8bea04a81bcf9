"""
Configuration module for the Gangway authentication gateway.

This module uses Pydantic Settings to load and validate the identity
provider, session, TLS and server settings. Values come from (highest
priority first):

1. ``GANGWAY_*`` environment variables
2. A ``.env`` file in the working directory
3. An optional YAML config file passed with ``--config``
"""

import logging
import re
from typing import Annotated, Any, Dict, List, Optional, Union

import yaml
from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)


class StartupConfigError(Exception):
    """Raised when the configuration cannot be loaded or is invalid."""
    pass


class Settings(BaseSettings):
    """
    Gateway settings.

    The IdP and server fields mirror what the login flow needs; the
    cluster fields are only used to render the kubeconfig handed out
    after login.
    """

    # =========================================================================
    # Identity Provider (OAuth2 / OIDC)
    # =========================================================================

    CLIENT_ID: str = Field(..., min_length=1, description="OAuth2 client ID")

    CLIENT_SECRET: str = Field(..., min_length=1, description="OAuth2 client secret")

    REDIRECT_URL: str = Field(
        ...,
        description="Callback URL registered with the IdP (e.g. https://gangway.example.com/callback)",
    )

    SCOPES: Annotated[List[str], NoDecode] = Field(
        default=["openid", "profile", "email", "offline_access"],
        description="Ordered list of scopes requested at login",
    )

    AUTHORIZE_URL: str = Field(..., description="IdP authorization endpoint")

    TOKEN_URL: str = Field(..., description="IdP token endpoint")

    AUDIENCE: Optional[str] = Field(
        None,
        description="Extra 'audience' authorization parameter (required by some IdPs)",
    )

    TRUSTED_CA_PATH: Optional[str] = Field(
        None,
        description="PEM bundle appended to the system roots for IdP calls",
    )

    IDP_TIMEOUT: float = Field(default=10.0, gt=0, description="Timeout for IdP requests in seconds")

    # =========================================================================
    # Cluster (credential artifact)
    # =========================================================================

    CLUSTER_NAME: str = Field(default="kubernetes", min_length=1)

    API_SERVER_URL: str = Field(default="https://kubernetes.default.svc", description="Kubernetes API server URL")

    CLUSTER_CA_PATH: Optional[str] = Field(
        None,
        description="CA bundle of the API server, embedded into the kubeconfig",
    )

    USERNAME_CLAIM: str = Field(default="nickname", description="ID token claim used as the kubeconfig user")

    EMAIL_CLAIM: str = Field(default="email", description="ID token claim shown as the user's email")

    # =========================================================================
    # Sessions
    # =========================================================================

    SESSION_SECURITY_KEY: str = Field(
        ...,
        min_length=32,
        description="Secret used to sign session cookies",
    )

    SESSION_ENCRYPTION_KEY: Optional[str] = Field(
        None,
        description="Fernet key; when set, session cookies are encrypted instead of only signed",
    )

    SESSION_MAX_AGE: int = Field(default=86400, ge=60, description="Session cookie lifetime in seconds")

    # Consumed nonces are remembered for this long, capped at
    # auth.session.MAX_CONSUMED_NONCES entries (about 1.5 MB)
    STATE_MAX_AGE: int = Field(default=600, ge=30, description="Login state nonce lifetime in seconds")

    SECURE_COOKIES: bool = Field(default=True, description="Set the Secure flag on cookies")

    # =========================================================================
    # Server
    # =========================================================================

    HOST: str = Field(default="0.0.0.0")

    PORT: int = Field(default=8080, ge=1, le=65535)

    SERVE_TLS: bool = Field(default=False)

    CERT_FILE: Optional[str] = Field(None, description="TLS certificate served when SERVE_TLS is set")

    KEY_FILE: Optional[str] = Field(None, description="TLS private key served when SERVE_TLS is set")

    REQUEST_TIMEOUT: float = Field(default=10.0, gt=0, description="Per-request read/write deadline in seconds")

    SHUTDOWN_TIMEOUT: float = Field(default=30.0, gt=0, description="Graceful shutdown deadline in seconds")

    LOG_LEVEL: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="GANGWAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Constructor kwargs carry the YAML file and must lose to the environment.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("SCOPES", mode="before")
    @classmethod
    def split_scopes(cls, v: Union[str, List[str]]) -> List[str]:
        """Accept either a list or a comma/space separated string."""
        if isinstance(v, str):
            return [s for s in v.replace(",", " ").split() if s]
        return v

    @field_validator("REDIRECT_URL", "AUTHORIZE_URL", "TOKEN_URL", "API_SERVER_URL")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid URL: '{v}'. Expected an http:// or https:// URL")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_tls_files(self) -> "Settings":
        if self.SERVE_TLS and not (self.CERT_FILE and self.KEY_FILE):
            raise ValueError("SERVE_TLS requires both CERT_FILE and KEY_FILE")
        return self

    @property
    def bind_address(self) -> str:
        return f"{self.HOST}:{self.PORT}"


# =============================================================================
# Loading
# =============================================================================

def _field_name(key: str) -> str:
    key = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", key)
    key = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", key)
    return key.upper()


def _read_config_file(config_file: str) -> Dict[str, Any]:
    """
    Read a YAML config file into Settings keyword arguments.

    Keys may be snake_case or camelCase (``clientID``, ``trustedCAPath``);
    both are normalised to the upper-case field names.
    """
    with open(config_file, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    if not isinstance(data, dict):
        raise StartupConfigError(f"Config file {config_file} must contain a mapping")

    return {_field_name(str(key)): value for key, value in data.items()}


def load_settings(config_file: Optional[str] = None) -> Settings:
    """
    Build the immutable Settings for this process.

    Args:
        config_file: Optional path to a YAML config file

    Returns:
        Validated Settings

    Raises:
        StartupConfigError: If the file cannot be read or validation fails
    """
    values: Dict[str, Any] = {}

    if config_file:
        try:
            values = _read_config_file(config_file)
        except (OSError, yaml.YAMLError) as e:
            raise StartupConfigError(f"Could not read config file {config_file}: {e}") from e

    try:
        settings = Settings(**values)
    except ValidationError as e:
        raise StartupConfigError(f"Invalid configuration: {e}") from e

    logger.debug(
        "Configuration loaded",
        extra={"config_file": config_file, "authorize_url": settings.AUTHORIZE_URL},
    )
    return settings
