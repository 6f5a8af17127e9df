"""CloudWatch custom metric emission for fulfillment business events.

All functions are fire-and-forget: they catch exceptions internally and log
warnings via structlog. They NEVER raise or block the caller.

Metrics are emitted via boto3 put_metric_data. Since boto3 is synchronous,
calls are dispatched to a ThreadPoolExecutor to avoid blocking the event loop.
Emission is disabled unless settings.metrics_enabled is set.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

import boto3
import structlog

from storefront.core.config import get_settings

logger = structlog.get_logger(__name__)

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().aws_region)
    return _cw_client


def _put_business_event(namespace: str, event_name: str, value: float, dimensions: dict[str, str]) -> None:
    """Synchronous put_metric_data for business events. Runs in thread pool."""
    metric_dimensions = [{"Name": "Event", "Value": event_name}]
    metric_dimensions.extend({"Name": name, "Value": val} for name, val in dimensions.items())
    try:
        _get_client().put_metric_data(
            Namespace=namespace,
            MetricData=[{
                "MetricName": "EventCount",
                "Dimensions": metric_dimensions,
                "Value": value,
                "Unit": "Count",
                "Timestamp": datetime.now(UTC),
            }],
        )
    except Exception as e:
        logger.warning("business_event_emit_failed", error=str(e), event=event_name)


async def emit_business_event(event_name: str, value: float = 1.0, **dimensions: str) -> None:
    """Emit a business event metric (order_paid, stock_shortfall, ...). Non-blocking."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    loop = asyncio.get_running_loop()
    loop.run_in_executor(
        _executor, _put_business_event, settings.metrics_namespace, event_name, value, dimensions
    )
