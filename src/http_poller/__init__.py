"""
HTTP Poller

Resilient polling of paginated HTTP APIs: pagination and offset tracking
combined with caching, rate limiting and circuit breaking.
"""

__version__ = "0.1.0"
__author__ = "HTTP Poller"
__email__ = "support@example.com"

from .config import Settings, SourceConfig
from .exceptions import PollerError
from .polling.scheduler import PollScheduler
from .records import SourceRecord
from .standalone import StandaloneApp

__all__ = [
    "Settings",
    "SourceConfig",
    "PollerError",
    "PollScheduler",
    "SourceRecord",
    "StandaloneApp",
]
