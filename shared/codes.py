"""
Shared error codes used across the server and client layers.

Single source of truth so exceptions, logs and tests agree on the numbers.
"""
from enum import IntEnum


class ErrorCode(IntEnum):
    """Runtime error codes."""

    OK = 0

    # Configuration errors (1xxxx)
    CONFIGURATION_ERROR = 10000
    INVALID_PORT = 10001
    INVALID_TARGET = 10002
    NO_ADDRESSES = 10003
    UNKNOWN_SCHEME = 10004
    TLS_MATERIAL_ERROR = 10005

    # Discovery errors (2xxxx)
    DISCOVERY_ERROR = 20000

    # Server lifecycle errors (3xxxx)
    SERVER_STATE_ERROR = 30000
    SERVER_START_ERROR = 30001
    SHUTDOWN_INTERRUPTED = 30002

    # Client errors (4xxxx)
    CHANNEL_BUILD_ERROR = 40000


__all__ = ["ErrorCode"]
