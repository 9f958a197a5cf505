"""Rate limiting with slowapi."""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

# Rate limit strings for use with @limiter.limit() decorator
API_LIMIT = "100/minute"        # Management reads
WRITE_LIMIT = "30/minute"       # Flow create/update/delete, transfers
WEBHOOK_LIMIT = "500/minute"    # Twilio webhooks
