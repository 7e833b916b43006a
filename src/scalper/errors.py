"""
Error classification and tracking for the scalper engine
"""

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


class ErrorType(Enum):
    """Categories of errors for tracking"""
    NETWORK = "network"           # Connection/timeout errors
    API_REJECTION = "api_rejection"  # Kalshi rejected the request
    RATE_LIMIT = "rate_limit"     # Hit rate limits
    NOT_FOUND = "not_found"       # Resource gone (404)
    VALIDATION = "validation"     # Bad data/validation errors
    ORDER_FAILED = "order_failed" # Order placement failed
    CANCEL_FAILED = "cancel_failed"  # Cancel operation failed
    UNKNOWN = "unknown"           # Uncategorized errors


@dataclass
class ErrorRecord:
    """Record of a single error"""
    timestamp: datetime
    error_type: ErrorType
    message: str
    ticker: Optional[str] = None


def classify_error(error: Exception, context: str = "") -> ErrorType:
    """Classify an exception into an error type"""
    error_str = str(error).lower()

    if any(x in error_str for x in ["connection", "timeout", "refused", "reset", "network"]):
        return ErrorType.NETWORK
    if any(x in error_str for x in ["rate limit", "429", "too many requests", "throttle"]):
        return ErrorType.RATE_LIMIT
    if any(x in error_str for x in ["404", "not found"]):
        return ErrorType.NOT_FOUND
    if any(x in error_str for x in ["400", "401", "403", "invalid", "unauthorized", "forbidden"]):
        return ErrorType.API_REJECTION
    if isinstance(error, (ValueError, TypeError, KeyError)) or \
            any(x in error_str for x in ["validation", "parse", "format"]):
        return ErrorType.VALIDATION

    if "cancel" in context.lower():
        return ErrorType.CANCEL_FAILED
    if "order" in context.lower():
        return ErrorType.ORDER_FAILED
    return ErrorType.UNKNOWN


def classify_api_error(result: dict, context: str = "") -> ErrorType:
    """Classify a client error dict ({"error": True, "status": ..., "message": ...})."""
    status = result.get("status")
    if status == 429:
        return ErrorType.RATE_LIMIT
    if status == 404:
        return ErrorType.NOT_FOUND
    if status is None:
        message = str(result.get("message", "")).lower()
        if "credentials" in message:
            return ErrorType.API_REJECTION
        return ErrorType.NETWORK
    if "cancel" in context.lower():
        return ErrorType.CANCEL_FAILED
    if "order" in context.lower():
        return ErrorType.ORDER_FAILED
    return ErrorType.API_REJECTION


class ErrorTracker:
    """Bounded error history with a time-windowed summary"""

    def __init__(self, max_records: int = 100, window_seconds: int = 300):
        self.window_seconds = window_seconds
        self._history = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def record(self, error: Exception = None, error_type: ErrorType = None,
               message: str = "", ticker: str = None) -> ErrorRecord:
        """
        Record an error with categorization and time tracking.

        Args:
            error: The exception (will be classified automatically)
            error_type: Override automatic classification
            message: Description of what was happening
            ticker: Market ticker if relevant
        """
        if error_type is None and error is not None:
            error_type = classify_error(error, message)
        elif error_type is None:
            error_type = ErrorType.UNKNOWN

        if error is not None and message:
            text = f"{message}: {error}"
        else:
            text = message or (str(error) if error else "Unknown error")

        record = ErrorRecord(
            timestamp=datetime.now(timezone.utc),
            error_type=error_type,
            message=text,
            ticker=ticker,
        )
        with self._lock:
            self._history.append(record)
        print(f"[ERROR] {error_type.value}: {record.message[:120]}")
        return record

    def record_api_error(self, result: dict, message: str, ticker: str = None) -> ErrorRecord:
        return self.record(
            error_type=classify_api_error(result, message),
            message=f"{message}: {str(result.get('message', 'Unknown'))[:200]}",
            ticker=ticker,
        )

    def counts(self) -> Dict[ErrorType, int]:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.window_seconds)
        counts = {et: 0 for et in ErrorType}
        with self._lock:
            for record in self._history:
                if record.timestamp >= cutoff:
                    counts[record.error_type] += 1
        return counts

    def summary(self) -> dict:
        """Get summary of recent errors"""
        counts = self.counts()
        with self._lock:
            recent = list(self._history)[-5:]

        return {
            "window_seconds": self.window_seconds,
            "total_in_window": sum(counts.values()),
            "by_type": {et.value: count for et, count in counts.items() if count > 0},
            "recent": [
                {
                    "time": e.timestamp.isoformat(),
                    "type": e.error_type.value,
                    "message": e.message[:80],
                    "ticker": e.ticker,
                }
                for e in recent
            ],
        }

    def clear(self):
        with self._lock:
            self._history.clear()

    def __len__(self):
        with self._lock:
            return len(self._history)
