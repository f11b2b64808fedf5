from unittest.mock import MagicMock

import pytest

from insurance_billing.src.core.monitoring.app_metrics import (
    ALLOCATED_AMOUNT_DOLLARS,
    ALLOCATION_LINE_SYNC_TOTAL,
    CLAIM_TRANSITIONS_TOTAL,
    CLAIMS_CREATED_TOTAL,
    DATABASE_QUERY_DURATION_SECONDS,
    INVOICING_REQUEST_DURATION_SECONDS,
    PAYMENT_ALLOCATIONS_TOTAL,
    MetricsCollector,
)

MODULE = "insurance_billing.src.core.monitoring.app_metrics"


@pytest.fixture
def metrics_collector() -> MetricsCollector:
    return MetricsCollector()


# Patch all global metric objects for isolation in tests
@pytest.fixture(autouse=True)
def mock_global_metrics(monkeypatch):
    mocks = {}
    for name, metric in (
        ("CLAIMS_CREATED_TOTAL", CLAIMS_CREATED_TOTAL),
        ("CLAIM_TRANSITIONS_TOTAL", CLAIM_TRANSITIONS_TOTAL),
        ("PAYMENT_ALLOCATIONS_TOTAL", PAYMENT_ALLOCATIONS_TOTAL),
        ("ALLOCATED_AMOUNT_DOLLARS", ALLOCATED_AMOUNT_DOLLARS),
        ("ALLOCATION_LINE_SYNC_TOTAL", ALLOCATION_LINE_SYNC_TOTAL),
        ("INVOICING_REQUEST_DURATION_SECONDS", INVOICING_REQUEST_DURATION_SECONDS),
        ("DATABASE_QUERY_DURATION_SECONDS", DATABASE_QUERY_DURATION_SECONDS),
    ):
        mocks[name] = MagicMock(spec=metric)
        monkeypatch.setattr(f"{MODULE}.{name}", mocks[name])
    return mocks


def test_record_claim_created(metrics_collector: MetricsCollector, mock_global_metrics):
    metrics_collector.record_claim_created()
    mock_global_metrics["CLAIMS_CREATED_TOTAL"].inc.assert_called_once_with()


def test_record_claim_transition_labels_creation_edge(metrics_collector: MetricsCollector, mock_global_metrics):
    metrics_collector.record_claim_transition(None, "draft", "success")
    mock_global_metrics["CLAIM_TRANSITIONS_TOTAL"].labels.assert_called_once_with(
        from_status="none", to_status="draft", outcome="success"
    )
    mock_global_metrics["CLAIM_TRANSITIONS_TOTAL"].labels.return_value.inc.assert_called_once()


def test_record_payment_allocation(metrics_collector: MetricsCollector, mock_global_metrics):
    metrics_collector.record_payment_allocation("synced", allocated_amount=240.0)
    mock_global_metrics["PAYMENT_ALLOCATIONS_TOTAL"].labels.assert_called_once_with(outcome="synced")
    mock_global_metrics["ALLOCATED_AMOUNT_DOLLARS"].observe.assert_called_once_with(240.0)


def test_record_payment_allocation_without_amount(metrics_collector: MetricsCollector, mock_global_metrics):
    metrics_collector.record_payment_allocation("rejected")
    mock_global_metrics["ALLOCATED_AMOUNT_DOLLARS"].observe.assert_not_called()


def test_record_invoicing_request(metrics_collector: MetricsCollector, mock_global_metrics):
    metrics_collector.record_invoicing_request("record_payment", "timeout", 5.0)
    histogram = mock_global_metrics["INVOICING_REQUEST_DURATION_SECONDS"]
    histogram.labels.assert_called_once_with(operation="record_payment", outcome="timeout")
    histogram.labels.return_value.observe.assert_called_once_with(5.0)


def test_time_db_query(metrics_collector: MetricsCollector, mock_global_metrics):
    with metrics_collector.time_db_query("list_claims"):
        pass
    histogram = mock_global_metrics["DATABASE_QUERY_DURATION_SECONDS"]
    histogram.labels.assert_called_once_with(query_name="list_claims")
    observed = histogram.labels.return_value.observe.call_args.args[0]
    assert observed >= 0
