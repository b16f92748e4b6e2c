"""共有レイヤの公開インターフェース。"""

from .concurrency import KeyedLocks, run_bounded
from .config import AppSettings, get_settings
from .events import (
    DiffEvent,
    EventSinkProtocol,
    RejectEvent,
    ResolveEvent,
    StructlogEventSink,
    encode_event,
)
from .exceptions import BaseAppError, ConfigurationError, DomainError, Result, is_fatal
from .logging import bind_context, configure_logging, get_logger
from .types import DTO, Document, EntryKey, UserID, utc_now

__all__ = [
    "AppSettings",
    "get_settings",
    "configure_logging",
    "bind_context",
    "get_logger",
    "BaseAppError",
    "ConfigurationError",
    "DomainError",
    "Result",
    "is_fatal",
    "DiffEvent",
    "EventSinkProtocol",
    "RejectEvent",
    "ResolveEvent",
    "StructlogEventSink",
    "encode_event",
    "KeyedLocks",
    "run_bounded",
    "DTO",
    "Document",
    "EntryKey",
    "UserID",
    "utc_now",
]
