"""
auth — caller identity.

Provides:
  • HMAC-signed access token creation & verification
  • ``get_current_user_id`` / ``get_optional_user_id`` FastAPI dependencies
"""
