"""Global constants for nbgate."""

# Backing Jupyter server defaults

DEFAULT_JUPYTER_PORT = 9000
DEFAULT_JUPYTER_EXECUTABLE = "jupyter"
JUPYTER_SUBCOMMAND = "notebook"
DEFAULT_JUPYTER_HOST = "localhost"

# Readiness probe

DEFAULT_READY_POLL_INTERVAL_MS = 100
DEFAULT_READY_TIMEOUT_MS = 15000

# Seconds to wait for the Jupyter process after close() before killing it
DEFAULT_STOP_TIMEOUT = 5.0

# Jupyter logs this once every 3 seconds per kernel
POLLING_KERNEL_MARKER = "Polling kernel"

# Gateway listener defaults
DEFAULT_GATEWAY_HOST = "127.0.0.1"
DEFAULT_GATEWAY_PORT = 8080

# URL/Routing
NBGATE_MANAGEMENT_PREFIX = "/__nbgate__"

# Settings discovery
SETTINGS_PATH_ENV = "NBGATE_CONFIG"

# note: header names must be lowercase
ALLOW_ORIGIN_HEADER = "access-control-allow-origin"
ALLOW_CREDENTIALS_HEADER = "access-control-allow-credentials"

LOG_BUFFER_SIZE = 10000
