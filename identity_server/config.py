"""
Identity Server configuration.
No secrets in this file; credentials come from env or DB.
"""
import os

# Issuer URL (public identifier)
ISSUER = os.environ.get("OAUTH_ISSUER", "http://127.0.0.1:9000").rstrip("/")

# SQLite for development; any SQLAlchemy URL works (tests use sqlite:///:memory:)
DATABASE_URL = os.environ.get("AUTH_DATABASE_URL", "sqlite:///./identity_server.db")

# Tenant selection header
TENANT_HEADER = "X-Tenant-ID"
# Seconds a tenant validation result may be served from the in-process cache
TENANT_CACHE_SECONDS = int(os.environ.get("OAUTH_TENANT_CACHE_SECONDS", "30"))

# Authorization code lifetime (seconds): short-lived, single use
CODE_TTL_SECONDS = int(os.environ.get("OAUTH_CODE_TTL_SECONDS", "300"))

# Allowed scopes
ALLOWED_SCOPES = {"openid", "profile", "email", "offline_access", "api", "api.read", "api.admin"}

# Resource indicator of the protected API served under /api/resource
RESOURCE_AUDIENCE = "resource_server"
SCOPE_API = "api"
SCOPE_ADMIN = "api.admin"

# Scope -> resource indicators (audiences) placed in access tokens
SCOPE_RESOURCES = {
    SCOPE_API: [RESOURCE_AUDIENCE],
    "api.read": [RESOURCE_AUDIENCE],
    SCOPE_ADMIN: [RESOURCE_AUDIENCE],
}

# Default access token audience when no scope maps to a resource
API_AUDIENCE = os.environ.get("OAUTH_API_AUDIENCE", "http://127.0.0.1:7000")

# Access token lifetime (seconds)
ACCESS_TOKEN_EXPIRES = int(os.environ.get("OAUTH_ACCESS_TOKEN_EXPIRES", "1800"))

# Refresh token lifetime (seconds); default 30 days
REFRESH_TOKEN_EXPIRES = int(os.environ.get("OAUTH_REFRESH_TOKEN_EXPIRES", str(30 * 24 * 3600)))
# Revoked/expired refresh token records are kept this long past expires_at to detect reuse
REFRESH_RETENTION_SECONDS = int(os.environ.get("OAUTH_REFRESH_RETENTION_SECONDS", str(7 * 24 * 3600)))
# Revocation markers outlive the record retention window
REVOCATION_MARKER_TTL_SECONDS = REFRESH_TOKEN_EXPIRES + REFRESH_RETENTION_SECONDS + 24 * 3600

# Signing keys: rotation cadence and verification grace period
KEY_LIFETIME_DAYS = int(os.environ.get("OAUTH_KEY_LIFETIME_DAYS", "90"))
KEY_GRACE_DAYS = int(os.environ.get("OAUTH_KEY_GRACE_DAYS", "30"))
KEY_BITS = 2048
# Per-tenant signing keys; when false every tenant signs with the "default" ring
KEYS_PER_TENANT = os.environ.get("OAUTH_KEYS_PER_TENANT", "true").lower() in ("1", "true", "yes")
# Seconds the current key may be served from the in-process cache
KEY_CACHE_SECONDS = int(os.environ.get("OAUTH_KEY_CACHE_SECONDS", "60"))
# Background rotation check interval (seconds); 0 disables the loop
KEY_ROTATION_CHECK_SECONDS = int(os.environ.get("OAUTH_KEY_ROTATION_CHECK_SECONDS", str(24 * 3600)))

# Login session cookie (HS256 JWT). Generated per process when unset: sessions do not survive restarts.
SESSION_SECRET = os.environ.get("OAUTH_SESSION_SECRET") or os.urandom(32).hex()
SESSION_COOKIE = "auth_session"
SESSION_LIFETIME_SECONDS = int(os.environ.get("OAUTH_SESSION_LIFETIME_SECONDS", str(12 * 3600)))
SESSION_COOKIE_SECURE = os.environ.get("OAUTH_SESSION_COOKIE_SECURE", "false").lower() in ("1", "true", "yes")

# Resource-owner password grant (demo-grade); clients must also list "password" in grant_types
ENABLE_PASSWORD_GRANT = os.environ.get("OAUTH_ENABLE_PASSWORD_GRANT", "true").lower() in ("1", "true", "yes")

# Admin key operations are disabled unless a token is configured
ADMIN_TOKEN = os.environ.get("OAUTH_ADMIN_TOKEN", "").strip() or None

# Rate limiting: per-IP, per minute
RATE_LIMIT_LOGIN_PER_MINUTE = int(os.environ.get("OAUTH_RATE_LIMIT_LOGIN_PER_MINUTE", "20"))
RATE_LIMIT_TOKEN_PER_MINUTE = int(os.environ.get("OAUTH_RATE_LIMIT_TOKEN_PER_MINUTE", "60"))
