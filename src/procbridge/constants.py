from __future__ import annotations

DEFAULT_SOCKET_PATH = "~/.procbridge/service.sock"
DEFAULT_SOCKET_MODE = 0o600

# Upper bound on a single pump read.
BUFFER_SIZE = 8192

CONNECT_TIMEOUT_SECONDS = 5.0
