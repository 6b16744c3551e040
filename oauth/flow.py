"""
FlowSession — the short-lived state of one in-progress authorization flow.

A flow is created by ``POST /oauth/init``, advanced by the redirect and the
callback, and consumed exactly once by the callback.  Flows live in a
server-side TTL store keyed by the caller's HTTP session id; the session
cookie itself only carries that opaque id.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from cachetools import TTLCache
from pydantic import BaseModel, Field

from utils.errors import InvalidTransition

logger = logging.getLogger(__name__)


class ProtocolKind(str, Enum):
    OAUTH1 = "oauth1"
    OAUTH2 = "oauth2"
    CLIENT_CREDENTIALS = "client_credentials"


class FlowState(str, Enum):
    REQUESTED = "requested"
    REDIRECTED = "redirected"
    RECEIVED = "received"
    EXCHANGED = "exchanged"
    PERSISTED = "persisted"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = frozenset({FlowState.DONE, FlowState.FAILED})

_TRANSITIONS: Dict[FlowState, frozenset] = {
    # client credentials skip the browser hops entirely
    FlowState.REQUESTED: frozenset({FlowState.REDIRECTED, FlowState.EXCHANGED}),
    # a second visit to /oauth/{provider} starts a fresh attempt
    FlowState.REDIRECTED: frozenset({FlowState.REDIRECTED, FlowState.RECEIVED}),
    FlowState.RECEIVED: frozenset({FlowState.EXCHANGED}),
    FlowState.EXCHANGED: frozenset({FlowState.PERSISTED}),
    FlowState.PERSISTED: frozenset({FlowState.DONE}),
    FlowState.DONE: frozenset(),
    FlowState.FAILED: frozenset(),
}


class FlowSession(BaseModel):
    """Everything the redirect and the callback need to finish one flow."""

    provider: str
    kind: ProtocolKind
    team_id: str
    entry_prefix: str

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None

    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    request_token_url: Optional[str] = None
    access_token_url: Optional[str] = None
    callback_url: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)

    code_verifier: Optional[str] = None
    csrf_state: Optional[str] = None
    request_token: Optional[str] = None
    request_token_secret: Optional[str] = None

    origin: Optional[str] = None
    # provider config as submitted (vault templates unresolved); this is what gets stored
    provider_config: Dict[str, Any] = Field(default_factory=dict)

    state: FlowState = FlowState.REQUESTED
    failure: Optional[str] = None
    created_at: float = Field(default_factory=time.time)

    @property
    def entry_id(self) -> str:
        return f"{self.entry_prefix}_TOKENS"

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, target: FlowState) -> None:
        """Move to ``target``; raises :class:`InvalidTransition` if not allowed."""
        if target == FlowState.FAILED:
            if self.is_terminal:
                raise InvalidTransition(f"Flow already {self.state.value}.")
            self.state = target
            return
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Cannot move flow from {self.state.value} to {target.value}."
            )
        self.state = target

    def fail(self, reason: str) -> None:
        if not self.is_terminal:
            self.state = FlowState.FAILED
        self.failure = reason


class FlowSessionStore:
    """Server-side flow storage, one flow per HTTP session id."""

    def __init__(self, ttl: int = 900, maxsize: int = 10000) -> None:
        self._flows: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)

    def get(self, session_id: str) -> Optional[FlowSession]:
        return self._flows.get(session_id)

    def save(self, session_id: str, flow: FlowSession) -> None:
        self._flows[session_id] = flow

    def pop(self, session_id: str) -> Optional[FlowSession]:
        """Read-and-clear: a flow can be consumed once."""
        return self._flows.pop(session_id, None)

    def discard(self, session_id: str) -> None:
        self._flows.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._flows)
