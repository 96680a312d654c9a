"""
OAuth token lifecycle: models, storage, refresh transport and the
proactive refresh manager.
"""

from resilient_access.auth.manager import REFRESH_OPERATION, RefreshConfig, TokenLifecycleManager
from resilient_access.auth.notifier import ChangeNotifier
from resilient_access.auth.store import (
    FileTokenStore,
    KeyringTokenStore,
    MemoryTokenStore,
    TokenStore,
)
from resilient_access.auth.tokens import (
    DEFAULT_EXPIRES_IN,
    RefreshResult,
    RefreshState,
    RefreshStatus,
    TokenData,
    TokenEvent,
    TokenEventType,
)
from resilient_access.auth.transport import (
    EBAY_SANDBOX_TOKEN_URL,
    EBAY_TOKEN_URL,
    HttpRefreshTransport,
    RefreshTransport,
    resolve_client_credentials,
)

__all__ = [
    # Manager
    "REFRESH_OPERATION",
    "RefreshConfig",
    "TokenLifecycleManager",
    "ChangeNotifier",
    # Storage
    "TokenStore",
    "MemoryTokenStore",
    "FileTokenStore",
    "KeyringTokenStore",
    # Models
    "DEFAULT_EXPIRES_IN",
    "RefreshResult",
    "RefreshState",
    "RefreshStatus",
    "TokenData",
    "TokenEvent",
    "TokenEventType",
    # Transport
    "EBAY_SANDBOX_TOKEN_URL",
    "EBAY_TOKEN_URL",
    "HttpRefreshTransport",
    "RefreshTransport",
    "resolve_client_credentials",
]
