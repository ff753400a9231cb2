"""
Query timing and database health for the Client Verification Portal

Repository methods that scan the roster (search, export listing, dashboard
counters) are wrapped in ``timed_query``; per-operation counts and timings
are kept in memory and slow calls are logged. ``check_health`` backs the
``/api/health`` endpoint.
"""

import logging
import time
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from typing import Optional, Dict, Any, List, Callable

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


@dataclass
class MonitoringConfig:
    slow_query_threshold_ms: float = 1000.0  # logged as WARNING
    warning_threshold_ms: float = 500.0  # logged as INFO
    enable_logging: bool = True


_config = MonitoringConfig()


def configure_monitoring(
    slow_query_threshold_ms: float = 1000.0,
    warning_threshold_ms: float = 500.0,
    enable_logging: bool = True
) -> None:
    """Replace the timing thresholds (milliseconds)."""
    global _config
    _config = MonitoringConfig(
        slow_query_threshold_ms=slow_query_threshold_ms,
        warning_threshold_ms=warning_threshold_ms,
        enable_logging=enable_logging
    )


# ============================================
# PER-OPERATION STATISTICS
# ============================================

@dataclass
class QueryStats:
    operation: str
    count: int = 0
    total_time_ms: float = 0.0
    max_time_ms: float = 0.0
    errors: int = 0
    slow_queries: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'count': self.count,
            'avg_time_ms': round(self.total_time_ms / self.count, 2) if self.count else 0.0,
            'max_time_ms': round(self.max_time_ms, 2),
            'errors': self.errors,
            'slow_queries': self.slow_queries
        }


class QueryStatsCollector:
    """Thread-safe; the import worker and request threads both record."""

    def __init__(self):
        self._stats: Dict[str, QueryStats] = {}
        self._lock = threading.Lock()

    def record(self, operation: str, duration_ms: float, error: bool, slow: bool) -> None:
        with self._lock:
            stats = self._stats.setdefault(operation, QueryStats(operation=operation))
            stats.count += 1
            stats.total_time_ms += duration_ms
            stats.max_time_ms = max(stats.max_time_ms, duration_ms)
            stats.errors += int(error)
            stats.slow_queries += int(slow)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {op: stats.to_dict() for op, stats in self._stats.items()}

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()


_stats_collector = QueryStatsCollector()


def get_db_metrics(operation: Optional[str] = None) -> Dict[str, Any]:
    """Statistics for one operation ({} if never run), or all of them."""
    snapshot = _stats_collector.snapshot()
    if operation:
        return snapshot.get(operation, {})
    return snapshot


def get_slow_query_report() -> List[Dict[str, Any]]:
    """Operations that have logged at least one slow query."""
    return [s for s in _stats_collector.snapshot().values() if s['slow_queries'] > 0]


def reset_metrics() -> None:
    _stats_collector.reset()


# ============================================
# TIMING
# ============================================

@contextmanager
def query_timer(operation: str):
    """
    Time the enclosed block and record it under ``operation``.

    Args:
        operation: Name such as 'search_records' or 'record_stats'
    """
    started = time.perf_counter()
    failed = False
    try:
        yield
    except Exception:
        failed = True
        raise
    finally:
        duration_ms = (time.perf_counter() - started) * 1000
        slow = duration_ms > _config.slow_query_threshold_ms
        _stats_collector.record(operation, duration_ms, error=failed, slow=slow)

        if _config.enable_logging:
            if slow:
                logger.warning(
                    f"SLOW QUERY: {operation} took {duration_ms:.2f}ms "
                    f"(threshold: {_config.slow_query_threshold_ms}ms)"
                )
            elif duration_ms > _config.warning_threshold_ms and not failed:
                logger.info(f"Query {operation} took {duration_ms:.2f}ms")


def timed_query(operation: str):
    """
    Method decorator form of ``query_timer``.

    Usage:
        @timed_query("search_records")
        def search(self, query: str):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with query_timer(operation):
                return func(*args, **kwargs)
        return wrapper
    return decorator


# ============================================
# HEALTH
# ============================================

@dataclass
class HealthStatus:
    healthy: bool
    latency_ms: float
    pool_size: int = 0
    pool_checked_out: int = 0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'healthy': self.healthy,
            'latency_ms': round(self.latency_ms, 2),
            'pool': {
                'size': self.pool_size,
                'checked_out': self.pool_checked_out
            },
            'error': self.error,
            'timestamp': self.timestamp.isoformat()
        }


def _pool_figure(pool, name: str) -> int:
    # SQLite pools do not implement every QueuePool counter
    method = getattr(pool, name, None)
    if method is None:
        return 0
    try:
        return int(method())
    except (TypeError, NotImplementedError):
        return 0


def check_health(engine, session_factory) -> HealthStatus:
    """
    Run SELECT 1 and report latency and pool usage.

    Args:
        engine: SQLAlchemy Engine
        session_factory: Session factory bound to the engine

    Returns:
        HealthStatus; a database error yields ``healthy=False`` with the message
    """
    started = time.perf_counter()
    try:
        session = session_factory()
        try:
            session.execute(text("SELECT 1"))
        finally:
            session.close()
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return HealthStatus(
            healthy=False,
            latency_ms=(time.perf_counter() - started) * 1000,
            error=str(e)
        )

    return HealthStatus(
        healthy=True,
        latency_ms=(time.perf_counter() - started) * 1000,
        pool_size=_pool_figure(engine.pool, "size"),
        pool_checked_out=_pool_figure(engine.pool, "checkedout")
    )
