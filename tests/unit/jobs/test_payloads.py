"""Tests for queue payload schemas."""

import pytest

from bookmark_pipeline.core.errors import PayloadValidationError
from bookmark_pipeline.jobs.payloads import (
    IndexPayload,
    MaintenancePayload,
    SnapshotPayload,
    parse_payload,
)
from bookmark_pipeline.jobs.types import MaintenanceKind, QueueName


class TestSnapshotPayload:
    def test_parses_camel_case(self):
        payload = parse_payload(
            QueueName.SNAPSHOT,
            {"bookmarkId": "b1", "url": "https://example.com/a", "ownerId": "u1", "ownerPlan": "pro"},
        )
        assert isinstance(payload, SnapshotPayload)
        assert payload.bookmark_id == "b1"
        assert payload.owner_plan == "pro"

    def test_to_wire_round_trips_aliases(self):
        payload = SnapshotPayload(
            bookmark_id="b1", url=" https://example.com/a ", owner_id="u1", owner_plan="pro"
        )
        assert payload.to_wire() == {
            "bookmarkId": "b1",
            "url": "https://example.com/a",
            "ownerId": "u1",
            "ownerPlan": "pro",
        }

    @pytest.mark.parametrize("url", ["ftp://example.com/x", "example.com/a", "https://", ""])
    def test_rejects_unfetchable_urls(self, url):
        with pytest.raises(PayloadValidationError) as exc:
            parse_payload(
                QueueName.SNAPSHOT,
                {"bookmarkId": "b1", "url": url, "ownerId": "u1", "ownerPlan": "pro"},
            )
        assert exc.value.retryable is False
        assert exc.value.errors

    def test_missing_field(self):
        with pytest.raises(PayloadValidationError) as exc:
            parse_payload(QueueName.SNAPSHOT, {"bookmarkId": "b1", "url": "https://a.io"})
        fields = {e["loc"][0] for e in exc.value.errors}
        assert {"ownerId", "ownerPlan"} <= fields


class TestIndexPayload:
    def test_parses(self):
        payload = parse_payload(
            QueueName.INDEX,
            {"bookmarkId": "b1", "snapshotPath": "snapshots/u1/b1/page.html", "ownerId": "u1"},
        )
        assert isinstance(payload, IndexPayload)
        assert payload.snapshot_path == "snapshots/u1/b1/page.html"

    def test_snapshot_path_required(self):
        with pytest.raises(PayloadValidationError):
            parse_payload(QueueName.INDEX, {"bookmarkId": "b1", "ownerId": "u1"})


class TestMaintenancePayload:
    def test_owner_optional(self):
        payload = parse_payload(QueueName.MAINTENANCE, {"type": "broken-link-scan"})
        assert payload.type is MaintenanceKind.BROKEN_LINK_SCAN
        assert payload.owner_id is None
        assert payload.to_wire() == {"type": "broken-link-scan"}

    def test_unknown_kind_rejected(self):
        with pytest.raises(PayloadValidationError):
            parse_payload(QueueName.MAINTENANCE, {"type": "reminder"})


class TestParsePayload:
    def test_accepts_model_for_its_queue(self):
        model = MaintenancePayload(type=MaintenanceKind.DUPLICATE_DETECTION, owner_id="u1")
        assert parse_payload(QueueName.MAINTENANCE, model) is model

    def test_rejects_model_for_another_queue(self):
        model = IndexPayload(bookmark_id="b1", snapshot_path="s/u1/b1/page.html", owner_id="u1")
        with pytest.raises(PayloadValidationError):
            parse_payload(QueueName.SNAPSHOT, model)
