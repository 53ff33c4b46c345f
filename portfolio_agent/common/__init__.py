from .logging import guarded_call, log_event, sanitize_text

__all__ = [
    "guarded_call",
    "log_event",
    "sanitize_text",
]
