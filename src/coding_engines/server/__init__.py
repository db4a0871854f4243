"""Long-lived agent server lifecycle and HTTP session client."""

from coding_engines.server.client import OpencodeClient, SessionReply
from coding_engines.server.manager import (
    ServerManager,
    ServerOptions,
    build_server_env,
    get_default_server_manager,
)

__all__ = [
    "OpencodeClient",
    "ServerManager",
    "ServerOptions",
    "SessionReply",
    "build_server_env",
    "get_default_server_manager",
]
