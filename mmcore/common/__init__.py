from .async_utils import guarded_call, wait_with_stop
from .logging import log_event
from .parsing import now_iso, to_bool, to_float, to_float_tuple, to_int

__all__ = [
    "guarded_call",
    "log_event",
    "now_iso",
    "to_bool",
    "to_float",
    "to_float_tuple",
    "to_int",
    "wait_with_stop",
]
