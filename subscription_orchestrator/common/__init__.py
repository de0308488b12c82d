from .async_utils import guarded_call, race_with_timeout
from .logging import log_event

__all__ = [
    "guarded_call",
    "log_event",
    "race_with_timeout",
]
