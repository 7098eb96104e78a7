"""
connectors — booking-provider integrations.

Provides a generic connector framework that handles:
  • OAuth2 auth-URL generation (PKCE where the provider needs it)
  • Callback handling (code → token exchange)
  • Per-user token storage & auto-refresh
  • Fernet encryption of tokens at rest
  • Revocation / disconnect
  • Reading open slots from the provider

Each provider (Acuity, Square, …) is a subclass of BaseConnector.
"""
