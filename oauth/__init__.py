"""
oauth — third-party authorization flows for teams.

Provides:
  • OAuth 1.0a, OAuth2 (incl. PKCE) and client-credentials strategies
  • Server-side flow sessions with an explicit state machine
  • Callback handling (grant → token exchange → storage)
  • Migration of stored connections between the legacy and current shapes
  • Redaction of secrets in everything returned to clients
"""
