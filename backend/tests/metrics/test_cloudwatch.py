"""Tests for fire-and-forget business event metrics."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from storefront.core.config import Settings
from storefront.metrics import cloudwatch

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
async def test_disabled_metrics_never_touch_boto3():
    with (
        patch.object(cloudwatch, "get_settings", return_value=Settings(metrics_enabled=False)),
        patch.object(cloudwatch, "_get_client") as get_client,
    ):
        await cloudwatch.emit_business_event("order_paid")

    get_client.assert_not_called()


@pytest.mark.asyncio
async def test_enabled_metrics_put_event_count():
    client = MagicMock()
    settings = Settings(metrics_enabled=True, metrics_namespace="Test/Fulfillment")

    with (
        patch.object(cloudwatch, "get_settings", return_value=settings),
        patch.object(cloudwatch, "_get_client", return_value=client),
    ):
        await cloudwatch.emit_business_event("stock_shortfall", value=2.0)
        for _ in range(100):
            if client.put_metric_data.called:
                break
            await asyncio.sleep(0.01)

    kwargs = client.put_metric_data.call_args.kwargs
    assert kwargs["Namespace"] == "Test/Fulfillment"
    datum = kwargs["MetricData"][0]
    assert datum["Value"] == 2.0
    assert {"Name": "Event", "Value": "stock_shortfall"} in datum["Dimensions"]


def test_put_failure_is_swallowed():
    client = MagicMock()
    client.put_metric_data.side_effect = RuntimeError("throttled")

    with patch.object(cloudwatch, "_get_client", return_value=client):
        cloudwatch._put_business_event("Test/Fulfillment", "order_paid", 1.0, {})
