"""Central environment-driven settings for the WalletGate server.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`); tests build their own instance.
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class ClientBootstrap:
    """One OAuth client registered at startup."""

    client_id: str
    secret: str
    redirect_uris: list[str]


class WalletGateSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "walletgate"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./walletgate.db"
    database_pool_timeout_seconds: int = 10
    release_version: str = "latest"
    port: int = 3030
    trust_proxy: int = 0
    session_secret: str = "test"
    secure_session: bool = False
    api_key: str = "dev-secret"
    otel_exporter_otlp_endpoint: str = ""

    # Comma separated client names; each name reads OAUTH_<NAME>_CLIENT_ID,
    # OAUTH_<NAME>_CLIENT_SECRET and OAUTH_<NAME>_REDIRECT_URLS.
    oauth_client_id: str = "DEFAULT"
    oauth_default_client_id: str = "1"

    auth_code_ttl_seconds: int = 60
    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_seconds: int = 86400
    guest_user_ttl_seconds: int = 86400
    password_salt_rounds: int = 10
    initial_balance: Decimal = Decimal("100000")
    supported_languages: str = "en-US"
    purge_interval_seconds: int = 60
    seed_players: bool = True

    # `allow` keeps the dynamic OAUTH_<NAME>_* keys from `.env` in `model_extra`.
    model_config = SettingsConfigDict(env_file=".env", extra="allow")

    @property
    def base_path(self) -> str:
        return f"/v{self.release_version}"

    def language_list(self) -> list[str]:
        return [lang.strip() for lang in self.supported_languages.split(",") if lang.strip()]

    def _lookup(self, key: str, default: str) -> str:
        """Read a dynamic key with the same precedence as declared fields: env, then `.env`."""

        field = key.lower()
        if field in type(self).model_fields:
            return str(getattr(self, field))
        if key in os.environ:
            return os.environ[key]
        return str((self.model_extra or {}).get(field, default))

    def bootstrap_clients(self) -> list[ClientBootstrap]:
        """Resolve the client bootstrap list from `OAUTH_<NAME>_*` variables."""

        clients = []
        for name in self.oauth_client_id.split(","):
            name = name.strip()
            if not name:
                continue
            redirect_urls = self._lookup(f"OAUTH_{name}_REDIRECT_URLS", "http://localhost,https://localhost")
            clients.append(
                ClientBootstrap(
                    client_id=self._lookup(f"OAUTH_{name}_CLIENT_ID", "1"),
                    secret=self._lookup(f"OAUTH_{name}_CLIENT_SECRET", "1"),
                    redirect_uris=[url.strip() for url in redirect_urls.split(",") if url.strip()],
                )
            )
        return clients


@lru_cache
def get_settings() -> WalletGateSettings:
    return WalletGateSettings()
