"""
Application settings loaded from environment variables.
"""

from typing import Dict, List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Server ───────────────────────────────────────────────────────────
    port: int = 8000
    host: str = "0.0.0.0"
    debug: bool = False
    cors_origins: list = ["*"]

    # ── Browser-facing origins ──────────────────────────────────────────
    ui_server: str = "http://localhost:8000"    # origin notified when a flow completes
    allowed_origins: List[str] = []             # extra origins allowed to start a flow

    # ── Sessions ────────────────────────────────────────────────────────
    session_secret: str = "change-me-session-secret"  # signs the session cookie (opaque id only)
    session_max_age: int = 1209600                    # 14 days
    session_https_only: bool = False
    flow_session_ttl: int = 900                       # how long an unfinished OAuth flow survives
    flow_session_maxsize: int = 10000

    # ── External collaborators ──────────────────────────────────────────
    settings_api_base_url: str = "http://localhost:5053/v1"   # team settings store
    vault_api_base_url: str = "http://localhost:5055"          # secrets backend
    http_timeout: float = 15.0

    # 403 from the settings store: "fail" | "retry_once" | "retry_once_invalidate"
    team_forbidden_policy: str = "fail"

    # ── Secret vault ────────────────────────────────────────────────────
    vault_cache_ttl: int = 3600
    vault_cache_maxsize: int = 1024
    legacy_key_aliases: Dict[str, str] = {"anthropic": "claude"}

    # ── Token storage ───────────────────────────────────────────────────
    token_encryption_key: str = ""   # comma-separated Fernet keys; the first one encrypts

    # Providers that omit expires_in but document a token lifetime.
    provider_expiration_times: Dict[str, Dict[str, int]] = {
        "public-api.wordpress.com": {
            "expires_in_seconds": 14 * 24 * 60 * 60,
            "buffer_seconds": 60 * 60,
        },
    }

    # ── PKCE provider endpoints (X / Twitter) ───────────────────────────
    twitter_authorize_url: str = "https://x.com/i/oauth2/authorize"
    twitter_token_url: str = "https://api.twitter.com/2/oauth2/token"

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }

    def origin_allow_list(self) -> List[str]:
        """Origins allowed to initiate flows and receive completion messages."""
        origins = [o.rstrip("/") for o in self.allowed_origins if o]
        if self.ui_server:
            origins.insert(0, self.ui_server.rstrip("/"))
        return origins


config = Settings()
