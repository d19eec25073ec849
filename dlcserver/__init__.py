"""
DLC file server.

Multi-process static file server for large downloadable-content archives:
byte ranges, optional gzip, and a live count of in-flight requests
aggregated across workers.
"""

from .config import RestartPolicy, ServerConfig
from .supervisor import Supervisor
from .worker import Worker

__version__ = "1.0.0"

__all__ = ["RestartPolicy", "ServerConfig", "Supervisor", "Worker", "__version__"]
