from .async_utils import close_all, guarded_call
from .logging import log_event, register_secret, sanitize_text, sanitize_value

__all__ = [
    "close_all",
    "guarded_call",
    "log_event",
    "register_secret",
    "sanitize_text",
    "sanitize_value",
]
