"""
Shared constants.
"""

# Handshake state tokens: 32 random bytes, hex encoded.
STATE_TOKEN_BYTES = 32
STATE_ACTION_LOGIN = "login"
STATE_ACTION_BIND = "bind"
STATE_ACTIONS = (STATE_ACTION_LOGIN, STATE_ACTION_BIND)

# Audit record actions/results.
AUDIT_ACTION_AUTHORIZE = "authorize"
AUDIT_ACTION_LOGIN = "login"
AUDIT_ACTION_BIND = "bind"
AUDIT_ACTION_UNBIND = "unbind"
AUDIT_ACTION_REFRESH = "refresh"
AUDIT_RESULT_SUCCESS = "success"
AUDIT_RESULT_FAIL = "fail"
AUDIT_MAX_TRIES = 3

# Configuration resolution cache.
CONFIG_CACHE_PREFIX = "oauth:config"
CONFIG_NEGATIVE_CACHE_SECONDS = 60

PROVIDER_USER_AGENT = "authbridge-oauth/1.0"

# Keys redacted from audit snapshots.
REDACTED_KEYS = {
    "code",
    "state",
    "access_token",
    "refresh_token",
    "session_key",
    "app_secret",
    "secret",
    "client_secret",
    "encrypted_data",
    "iv",
    "token",
    "session_token",
}
