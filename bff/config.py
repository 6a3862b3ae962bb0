"""
BFF configuration. Tokens stay server-side; the browser only holds the session cookie.
"""
import os

# Identity Server (issuer)
ISSUER = os.environ.get("OAUTH_ISSUER", "http://127.0.0.1:9000").rstrip("/")
TOKEN_ENDPOINT = os.environ.get("OAUTH_TOKEN_ENDPOINT", f"{ISSUER}/token")
REVOCATION_ENDPOINT = os.environ.get("OAUTH_REVOCATION_ENDPOINT", f"{ISSUER}/revoke")

# Our client registration at the Identity Server; must allow the password and refresh_token grants
CLIENT_ID = os.environ.get("OAUTH_CLIENT_ID", "bff-client")
CLIENT_SECRET = os.environ.get("OAUTH_CLIENT_SECRET") or None

# Tenant used when the login request does not name one
DEFAULT_TENANT_ID = os.environ.get("OAUTH_TENANT_ID", "tenant1")

DEFAULT_SCOPE = os.environ.get("OAUTH_SCOPE", "openid profile email offline_access api")

# Session lifetime: sliding idle timeout, capped by an absolute lifetime
SESSION_IDLE_SECONDS = int(os.environ.get("BFF_SESSION_IDLE_SECONDS", str(30 * 60)))
SESSION_MAX_LIFETIME_SECONDS = int(os.environ.get("BFF_SESSION_MAX_LIFETIME_SECONDS", str(12 * 3600)))

# Refresh when the access token expires within this many seconds
REFRESH_MARGIN_SECONDS = int(os.environ.get("BFF_REFRESH_MARGIN_SECONDS", "60"))

# Timeout for calls to the Identity Server
HTTP_TIMEOUT = float(os.environ.get("BFF_HTTP_TIMEOUT", "10.0"))

COOKIE_NAME = "bff_session"
COOKIE_SECURE = os.environ.get("BFF_COOKIE_SECURE", "true").lower() in ("1", "true", "yes")
