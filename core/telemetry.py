"""Structured logging for engine runs and LAVS calls"""
import logging
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any, Optional

import structlog


structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "INFO") -> None:
    """Configure stdlib logging; structlog output is routed through it"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


class Telemetry:
    """Timing and structured event helpers"""

    def __init__(self, name: str = "studio"):
        self.logger = structlog.get_logger(name)

    @asynccontextmanager
    async def trace_task(self, name: str, **context):
        """Time an async operation, logging start/complete/failed"""
        start = perf_counter()
        self.logger.info(f"{name}.start", **context)

        try:
            yield
        except BaseException as e:
            self.logger.error(
                f"{name}.failed",
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
                duration_ms=_elapsed_ms(start),
                **context
            )
            raise

        self.logger.info(f"{name}.complete", duration_ms=_elapsed_ms(start), **context)

    def log_event(self, event_type: str, level: str = "info", **context):
        log_fn = getattr(self.logger, level, self.logger.info)
        log_fn(event_type, **context)

    def log_metric(self, metric_name: str, value: float, **context):
        self.logger.info("metric", metric_name=metric_name, value=value, **context)

    def log_lavs_request(
        self,
        phase: str,
        agent_id: str,
        endpoint_id: str,
        duration_ms: Optional[float] = None,
        error_code: Optional[int] = None,
        **context: Any
    ):
        """Log one phase (start/success/error) of a LAVS endpoint call"""
        level = "error" if phase == "error" else "info"
        fields = dict(agent_id=agent_id, endpoint_id=endpoint_id, **context)
        if duration_ms is not None:
            fields["duration_ms"] = duration_ms
        if error_code is not None:
            fields["error_code"] = error_code
        self.log_event(f"lavs.request_{phase}", level=level, **fields)


def _elapsed_ms(start: float) -> float:
    return round((perf_counter() - start) * 1000, 2)


telemetry = Telemetry()
