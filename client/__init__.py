"""
client/ -- Python client for the Sales CRM API.

SessionClient keeps a Session (access token, refresh token, user) in a
TokenStorage and transparently refreshes an expired access token. Only one
refresh is ever in flight; concurrent callers wait for it and retry once.

Layer rule: no imports from api/, auth/ or core/. The client talks to the
server over HTTP only.
"""

from client.session import (
    ApiError,
    FileTokenStorage,
    MemoryTokenStorage,
    Session,
    SessionClient,
    SessionExpiredError,
)

__all__ = [
    "ApiError",
    "FileTokenStorage",
    "MemoryTokenStorage",
    "Session",
    "SessionClient",
    "SessionExpiredError",
]
