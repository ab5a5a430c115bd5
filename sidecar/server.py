import os
import socket

import uvicorn

REQUIRE_AUTH = os.getenv("REQUIRE_AUTH", "").lower() == "true"
SIDECAR_PORT = int(os.getenv("SIDECAR_PORT", "0"))


def find_free_port() -> int:
    """SIDECAR_PORT when set, else an ephemeral port on localhost."""
    if SIDECAR_PORT:
        return SIDECAR_PORT
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def start_server(app, port: int):
    # Web mode listens on all interfaces; desktop mode stays on localhost
    host = "0.0.0.0" if REQUIRE_AUTH else "127.0.0.1"
    # The desktop shell reads the port from this line
    print(f"PORT:{port}", flush=True)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=os.getenv("UVICORN_LOG_LEVEL", "warning"),
    )
