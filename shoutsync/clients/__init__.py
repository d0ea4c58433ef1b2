"""Backend clients: contracts, HTTP implementation and the in-process backend."""
from .backend import (
    Backend,
    BackendError,
    ChannelConflictError,
    Filter,
    FilterOp,
    Order,
    RealtimeTransport,
    eq,
    gt,
    gte,
    in_,
    neq,
)
from .memory_backend import MemoryBackend, MemoryRealtime
from .rest_backend import RestBackend

__all__ = [
    "Backend",
    "BackendError",
    "ChannelConflictError",
    "Filter",
    "FilterOp",
    "MemoryBackend",
    "MemoryRealtime",
    "Order",
    "RealtimeTransport",
    "RestBackend",
    "eq",
    "gt",
    "gte",
    "in_",
    "neq",
]
