"""Tests for job type definitions."""

from bookmark_pipeline.jobs.types import (
    EnqueueOutcome,
    JobPriority,
    JobStatus,
    MaintenanceKind,
    QueueName,
)


class TestQueueName:
    def test_values(self):
        assert QueueName.SNAPSHOT == "snapshot"
        assert QueueName.INDEX == "index"
        assert QueueName.MAINTENANCE == "maintenance"

    def test_from_string(self):
        assert QueueName("index") is QueueName.INDEX


class TestJobStatus:
    def test_terminal_statuses(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal

    def test_non_terminal_statuses(self):
        assert not JobStatus.WAITING.is_terminal
        assert not JobStatus.ACTIVE.is_terminal


class TestJobPriority:
    def test_lower_value_is_higher_priority(self):
        assert JobPriority.HIGH < JobPriority.NORMAL < JobPriority.LOW


def test_enqueue_outcome_values():
    assert EnqueueOutcome.ACCEPTED == "accepted"
    assert EnqueueOutcome.DEDUPLICATED == "deduplicated"


def test_maintenance_kinds_use_wire_names():
    assert MaintenanceKind("duplicate-detection") is MaintenanceKind.DUPLICATE_DETECTION
    assert MaintenanceKind("broken-link-scan") is MaintenanceKind.BROKEN_LINK_SCAN
