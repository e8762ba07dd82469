"""
Scrum PM — Structured Logging System

Structured log records with request correlation, an in-memory ring buffer
for the audit views, and a prefix-aware logger that forwards every record to
the standard ``logging`` hierarchy so handlers configured in ``main`` apply.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Callable
from datetime import datetime, timezone
from enum import Enum
from collections import deque
import contextvars
import json
import logging
import os
import time
import traceback
import uuid


class LogLevel(str, Enum):
    """Log severity levels"""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"

    @property
    def numeric(self) -> int:
        levels = {"debug": 10, "info": 20, "warn": 30, "error": 40, "fatal": 50}
        return levels[self.value]

    @property
    def stdlib(self) -> int:
        return {
            "debug": logging.DEBUG,
            "info": logging.INFO,
            "warn": logging.WARNING,
            "error": logging.ERROR,
            "fatal": logging.CRITICAL,
        }[self.value]


class LogCategory(str, Enum):
    """Log categories for filtering"""
    REQUEST = "request"
    RESPONSE = "response"
    DATABASE = "database"
    AUTH = "auth"
    ACCESS = "access"
    SYSTEM = "system"
    SECURITY = "security"
    PERFORMANCE = "performance"
    INTEGRATION = "integration"
    USER_ACTION = "user_action"
    AUDIT = "audit"


@dataclass
class LogEntry:
    """A structured log entry"""
    id: str
    timestamp: Optional[str]
    level: LogLevel
    category: LogCategory
    message: str
    service: str
    prefix: Optional[str] = None
    correlation_id: Optional[str] = None
    request_id: Optional[str] = None
    user_id: Optional[str] = None
    duration_ms: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "service": self.service,
            "prefix": self.prefix,
            "correlation_id": self.correlation_id,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "duration_ms": self.duration_ms,
            "metadata": self.metadata,
            "tags": self.tags,
            "error": self.error,
            "stack_trace": self.stack_trace,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class RequestContext:
    """Context for request tracing"""
    request_id: str
    correlation_id: str
    user_id: Optional[str] = None
    start_time: float = field(default_factory=time.time)

    @staticmethod
    def create(
        request_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> "RequestContext":
        request_id = request_id or str(uuid.uuid4())
        return RequestContext(
            request_id=request_id,
            correlation_id=correlation_id or request_id,
            user_id=user_id,
        )

    @property
    def elapsed_ms(self) -> float:
        return (time.time() - self.start_time) * 1000


_context_var: contextvars.ContextVar[Optional[RequestContext]] = contextvars.ContextVar(
    "request_context", default=None
)


def get_current_context() -> Optional[RequestContext]:
    return _context_var.get()


def set_current_context(context: RequestContext) -> contextvars.Token:
    return _context_var.set(context)


def reset_current_context(token: contextvars.Token) -> None:
    _context_var.reset(token)


class LogBuffer:
    """Bounded buffer of recent entries"""

    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self._buffer: deque = deque(maxlen=max_size)

    def append(self, entry: LogEntry) -> None:
        self._buffer.append(entry)

    def get_all(self) -> List[LogEntry]:
        return list(self._buffer)

    def clear(self) -> int:
        count = len(self._buffer)
        self._buffer.clear()
        return count

    def filter(
        self,
        level: Optional[LogLevel] = None,
        category: Optional[LogCategory] = None,
        correlation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 100,
    ) -> List[LogEntry]:
        results = []
        for entry in reversed(self._buffer):
            if level and entry.level.numeric < level.numeric:
                continue
            if category and entry.category != category:
                continue
            if correlation_id and entry.correlation_id != correlation_id:
                continue
            if user_id and entry.user_id != user_id:
                continue
            if search and search.lower() not in entry.message.lower():
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results


class StructuredLogger:
    """Structured logger with level threshold, optional prefix and timestamps"""

    def __init__(
        self,
        service_name: str = "scrum-pm",
        min_level: LogLevel = LogLevel.INFO,
        prefix: Optional[str] = None,
        timestamp: bool = True,
        buffer: Optional[LogBuffer] = None,
        output_handlers: Optional[List[Callable[[LogEntry], None]]] = None,
    ):
        self.service_name = service_name
        self.min_level = min_level
        self.prefix = prefix
        self.timestamp = timestamp
        self.buffer = buffer if buffer is not None else LogBuffer()
        self.output_handlers = output_handlers if output_handlers is not None else []
        self._stdlib = logging.getLogger(
            f"{service_name}.{prefix}" if prefix else service_name
        )

    def child(self, prefix: str) -> "StructuredLogger":
        """Logger sharing this one's buffer and handlers, with a nested prefix."""
        nested = f"{self.prefix}.{prefix}" if self.prefix else prefix
        return StructuredLogger(
            service_name=self.service_name,
            min_level=self.min_level,
            prefix=nested,
            timestamp=self.timestamp,
            buffer=self.buffer,
            output_handlers=self.output_handlers,
        )

    def set_level(self, level: LogLevel) -> None:
        self.min_level = level

    def add_handler(self, handler: Callable[[LogEntry], None]) -> None:
        self.output_handlers.append(handler)

    def _create_entry(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        error: Optional[BaseException] = None,
        duration_ms: Optional[float] = None,
    ) -> LogEntry:
        context = get_current_context()

        entry = LogEntry(
            id=str(uuid.uuid4())[:12],
            timestamp=datetime.now(timezone.utc).isoformat() if self.timestamp else None,
            level=level,
            category=category,
            message=message,
            service=self.service_name,
            prefix=self.prefix,
            correlation_id=context.correlation_id if context else None,
            request_id=context.request_id if context else None,
            user_id=context.user_id if context else None,
            duration_ms=duration_ms,
            metadata=metadata or {},
            tags=tags or [],
        )

        if error is not None:
            entry.error = {
                "type": type(error).__name__,
                "message": str(error),
            }
            entry.stack_trace = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )

        return entry

    def _log(self, level: LogLevel, category: LogCategory, message: str, **kwargs) -> Optional[LogEntry]:
        if level.numeric < self.min_level.numeric:
            return None

        entry = self._create_entry(level, category, message, **kwargs)
        self.buffer.append(entry)
        self._stdlib.log(level.stdlib, entry.to_json())

        for handler in self.output_handlers:
            handler(entry)

        return entry

    def debug(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.DEBUG, category, message, **kwargs)

    def info(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.INFO, category, message, **kwargs)

    def warn(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.WARN, category, message, **kwargs)

    def error(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.ERROR, category, message, **kwargs)

    def fatal(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.FATAL, category, message, **kwargs)

    # Convenience methods
    def response(self, method: str, path: str, status_code: int, duration_ms: float) -> Optional[LogEntry]:
        level = LogLevel.INFO if status_code < 400 else LogLevel.WARN if status_code < 500 else LogLevel.ERROR
        return self._log(
            level,
            LogCategory.RESPONSE,
            f"{method} {path} -> {status_code}",
            duration_ms=duration_ms,
            metadata={"method": method, "path": path, "status_code": status_code},
        )

    def access_denied(self, reason: str, **metadata) -> Optional[LogEntry]:
        return self.warn(
            f"Access denied: {reason}",
            category=LogCategory.ACCESS,
            tags=["access", reason],
            metadata=metadata,
        )

    def security_event(self, event_type: str, **metadata) -> Optional[LogEntry]:
        return self.warn(
            f"Security event: {event_type}",
            category=LogCategory.SECURITY,
            tags=["security", event_type],
            metadata=metadata,
        )

    def audit(self, action: str, entity_type: str, entity_id: str, **metadata) -> Optional[LogEntry]:
        return self.info(
            f"Audit: {action} on {entity_type}/{entity_id}",
            category=LogCategory.AUDIT,
            tags=["audit"],
            metadata={"action": action, "entity_type": entity_type, "entity_id": entity_id, **metadata},
        )

    def get_logs(self, **filters) -> List[LogEntry]:
        return self.buffer.filter(**filters)


class TimedOperation:
    """Context manager for timing operations"""

    def __init__(self, logger: StructuredLogger, operation: str, category: LogCategory = LogCategory.PERFORMANCE):
        self.logger = logger
        self.operation = operation
        self.category = category
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.time() - self.start_time) * 1000
        if exc_type:
            self.logger.error(
                f"Operation failed: {self.operation}",
                category=self.category,
                duration_ms=duration_ms,
                error=exc_val,
            )
        else:
            level = LogLevel.INFO if duration_ms < 1000 else LogLevel.WARN
            self.logger._log(level, self.category, f"Performance: {self.operation}", duration_ms=duration_ms)
        return False


# Global singleton
_logger: Optional[StructuredLogger] = None


def get_logger(prefix: Optional[str] = None) -> StructuredLogger:
    """Get the global Scrum PM logger, or a prefixed child of it"""
    global _logger
    if _logger is None:
        _logger = StructuredLogger(
            service_name="scrum-pm",
            min_level=LogLevel.DEBUG if os.getenv("DEBUG") else LogLevel.INFO,
        )
    return _logger.child(prefix) if prefix else _logger
