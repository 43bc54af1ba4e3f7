"""
Tests for LoggingMonitor.
"""

import logging

import pytest

from ec2_reconciler.monitor import LoggingMonitor, Monitor


def test_prefixed_monitors_share_values():
    monitor = LoggingMonitor()
    cwe = monitor.prefix("cloud-watch-events")

    cwe.count("handled-messages")
    cwe.prefix("global").count("api-lag", 2)
    cwe.measure("global.cwe-out-of-order.delay", 1500.0)

    assert monitor.counters == {
        "cloud-watch-events.handled-messages": 1,
        "cloud-watch-events.global.api-lag": 2,
    }
    assert monitor.measurements["cloud-watch-events.global.cwe-out-of-order.delay"] == [1500.0]


def test_timer_measures_even_on_error():
    monitor = LoggingMonitor()

    with pytest.raises(ValueError):
        with monitor.timer("message-handler-time"):
            raise ValueError("boom")

    (elapsed,) = monitor.measurements["message-handler-time"]
    assert elapsed >= 0


def test_report_error_logs_at_level(caplog):
    monitor = LoggingMonitor().prefix("cloud-watch-events")

    with caplog.at_level(logging.INFO, logger="ec2_reconciler.monitor"):
        monitor.report_error(RuntimeError("alert"), level="info", extra={"instance_id": "i-1"})

    assert monitor.errors[0]["level"] == "info"
    assert monitor.errors[0]["extra"] == {"instance_id": "i-1"}
    assert caplog.records[0].levelno == logging.INFO
    assert "alert" in caplog.records[0].getMessage()


def test_satisfies_protocol():
    assert isinstance(LoggingMonitor(), Monitor)
