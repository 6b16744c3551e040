"""
Pydantic schemas for the OAuth routes.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from oauth.flow import ProtocolKind

URL_FIELDS = (
    "authorizationURL",
    "tokenURL",
    "requestTokenURL",
    "accessTokenURL",
    "userAuthorizationURL",
    "callbackURL",
    "oauth2CallbackURL",
    "oauth1CallbackURL",
)

OAUTH1_SERVICES = frozenset({"oauth1", "twitter"})

_STRATEGY_TYPES = {
    "oauth": ProtocolKind.OAUTH1,
    "oauth1": ProtocolKind.OAUTH1,
    "oauth2": ProtocolKind.OAUTH2,
}


def is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _split_scope(scope: Union[str, List[str], None]) -> List[str]:
    if not scope:
        return []
    if isinstance(scope, str):
        return [s for s in scope.replace(",", " ").split() if s]
    return [str(s).strip() for s in scope if str(s).strip()]


class TokenResult(BaseModel):
    """Normalised outcome of any token exchange."""

    primary: str                       # access token (OAuth2) / token (OAuth1)
    secondary: str = ""                # refresh token (OAuth2) / token secret (OAuth1)
    expires_in: Optional[int] = None   # seconds, when the provider says


class CallbackParams(BaseModel):
    code: Optional[str] = None
    state: Optional[str] = None
    oauth_token: Optional[str] = None
    oauth_verifier: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


class ProviderFields(BaseModel):
    """
    Opaque provider configuration bag.

    Known fields are validated; unknown ones are kept as-is so they are
    persisted with the connection.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    service: Optional[str] = None
    scope: Optional[Union[str, List[str]]] = None
    strategyType: Optional[str] = None
    oauth_keys_prefix: Optional[str] = None
    name: Optional[str] = None
    platform: Optional[str] = None

    clientID: Optional[str] = None
    clientSecret: Optional[str] = None
    consumerKey: Optional[str] = None
    consumerSecret: Optional[str] = None

    authorizationURL: Optional[str] = None
    tokenURL: Optional[str] = None
    requestTokenURL: Optional[str] = None
    accessTokenURL: Optional[str] = None
    userAuthorizationURL: Optional[str] = None
    callbackURL: Optional[str] = None
    oauth2CallbackURL: Optional[str] = None
    oauth1CallbackURL: Optional[str] = None

    @field_validator(*URL_FIELDS)
    @classmethod
    def _check_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not value:
            return None
        if not is_http_url(value):
            raise ValueError("must be an http(s) URL")
        return value

    @property
    def scopes(self) -> List[str]:
        return _split_scope(self.scope)

    def submitted(self) -> Dict[str, Any]:
        """Only the fields the caller actually sent."""
        return self.model_dump(exclude_unset=True)


class InitRequest(ProviderFields):
    service: str = Field(..., min_length=1)

    @field_validator("service")
    @classmethod
    def _check_service(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("service is required")
        return value

    @property
    def kind(self) -> ProtocolKind:
        if self.strategyType:
            return _STRATEGY_TYPES[self.strategyType.lower()]
        if self.consumerKey or self.consumerSecret:
            return ProtocolKind.OAUTH1
        if self.service.lower() in OAUTH1_SERVICES and not self.clientID:
            return ProtocolKind.OAUTH1
        return ProtocolKind.OAUTH2

    @property
    def entry_prefix(self) -> str:
        return (self.oauth_keys_prefix or self.service).strip()

    @property
    def callback(self) -> Optional[str]:
        if self.kind == ProtocolKind.OAUTH1:
            return self.oauth1CallbackURL or self.callbackURL
        return self.oauth2CallbackURL or self.callbackURL

    @model_validator(mode="after")
    def _check_credentials(self) -> "InitRequest":
        if self.strategyType and self.strategyType.lower() not in _STRATEGY_TYPES:
            raise ValueError("strategyType must be one of oauth, oauth1, oauth2")
        if self.kind == ProtocolKind.OAUTH2:
            if not self.clientID or not self.clientSecret:
                raise ValueError("clientID and clientSecret are required for OAuth2")
        elif not self.consumerKey or not self.consumerSecret:
            raise ValueError("consumerKey and consumerSecret are required for OAuth1")
        return self


class ClientCredentialsRequest(ProviderFields):
    clientID: str = Field(..., min_length=1)
    clientSecret: str = Field(..., min_length=1)
    tokenURL: str = Field(..., min_length=1)

    @property
    def entry_prefix(self) -> str:
        return (self.oauth_keys_prefix or self.service or "").strip()


class SignOutRequest(BaseModel):
    oauth_keys_prefix: str = Field(..., min_length=1)
    invalidateAuthentication: Optional[bool] = None
