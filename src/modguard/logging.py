from __future__ import annotations

import json
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional


class ModguardLogger:
    """Structured JSON logger. One line per event on stderr."""

    def __init__(self, correlation_id: str = "", component: Optional[str] = None):
        self.correlation_id = correlation_id
        self.component = component
        self._stage_starts: dict[str, datetime] = {}

    def bind(self, correlation_id: str) -> "ModguardLogger":
        """Return a logger tagged with a request's correlation id."""
        return ModguardLogger(correlation_id, component=self.component)

    def child(self, component: str) -> "ModguardLogger":
        return ModguardLogger(self.correlation_id, component=component)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._emit("debug", message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._emit("info", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._emit("warning", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._emit("error", message, **kwargs)

    @contextmanager
    def stage(self, name: str, **fields: Any) -> Iterator[None]:
        """Context manager that tracks stage timing."""
        start = datetime.now(timezone.utc)
        self._stage_starts[name] = start
        status = "ok"
        try:
            yield
        except BaseException as exc:
            status = "error"
            self.error("stage_error", stage=name, error=str(exc) or type(exc).__name__)
            raise
        finally:
            end = datetime.now(timezone.utc)
            duration_ms = int((end - start).total_seconds() * 1000)
            self.debug("stage_end", stage=name, duration_ms=duration_ms, status=status, **fields)

    def _emit(self, level: str, message: str, **kwargs: Any) -> None:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "correlation_id": self.correlation_id,
            "message": message,
        }
        if self.component:
            payload["component"] = self.component
        payload.update(self._sanitize(kwargs))

        sys.stderr.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
        sys.stderr.flush()

    @staticmethod
    def _sanitize(fields: Dict[str, Any]) -> Dict[str, Any]:
        redacted: Dict[str, Any] = {}
        for key, value in fields.items():
            if ModguardLogger._is_sensitive_key(key):
                redacted[key] = "***"
            else:
                redacted[key] = value
        return redacted

    @staticmethod
    def _is_sensitive_key(key: str) -> bool:
        lowered = key.lower()
        if lowered.endswith("token"):
            return True
        return any(token in lowered for token in ("secret", "password", "api_key", "apikey", "authorization"))
