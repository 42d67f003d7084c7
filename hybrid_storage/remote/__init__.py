"""
Remote collection API client.
"""

from .client import (
    AUTH_ENDPOINT,
    DATA_ENDPOINT,
    AuthResult,
    HttpMethod,
    RemoteClient,
    RemoteRequest,
)

__all__ = [
    "RemoteClient",
    "RemoteRequest",
    "HttpMethod",
    "AuthResult",
    "DATA_ENDPOINT",
    "AUTH_ENDPOINT",
]
