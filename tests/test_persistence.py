"""
Tests for persistence — audit ledger.
"""

import json
from pathlib import Path

from natsocks.core.persistence.audit import AuditEntry, AuditWriter


class TestAuditWriter:
    """Tests for the append-only audit ledger."""

    def test_write_and_read(self, tmp_path: Path):
        path = tmp_path / "audit" / "audit.ndjson"
        writer = AuditWriter(path)
        writer.write(AuditEntry(operation_id="a1", operation_type="deploy", status="ok",
                                backend="gost", ports=[1080]))
        writer.write(AuditEntry(operation_id="a2", operation_type="teardown", status="ok"))

        entries = writer.read_all()
        assert [e.operation_id for e in entries] == ["a1", "a2"]
        assert entries[0].ports == [1080]

    def test_one_json_object_per_line(self, tmp_path: Path):
        path = tmp_path / "audit.ndjson"
        AuditWriter(path).write(AuditEntry(operation_id="x", warnings=["No IPv6 egress"]))
        lines = path.read_text().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["warnings"] == ["No IPv6 egress"]

    def test_read_missing(self, tmp_path: Path):
        assert AuditWriter(tmp_path / "nope.ndjson").read_all() == []

    def test_corrupt_lines_skipped(self, tmp_path: Path):
        path = tmp_path / "audit.ndjson"
        writer = AuditWriter(path)
        writer.write(AuditEntry(operation_id="good"))
        with path.open("a") as f:
            f.write("{not json\n\n")
        writer.write(AuditEntry(operation_id="also-good"))
        assert [e.operation_id for e in writer.read_all()] == ["good", "also-good"]

    def test_read_recent(self, tmp_path: Path):
        writer = AuditWriter(tmp_path / "audit.ndjson")
        for i in range(5):
            writer.write(AuditEntry(operation_id=f"op{i}"))
        assert [e.operation_id for e in writer.read_recent(2)] == ["op3", "op4"]

    def test_write_failure_is_logged_not_raised(self, tmp_path: Path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        writer = AuditWriter(blocker / "audit.ndjson")
        writer.write(AuditEntry(operation_id="lost"))
        assert writer.read_all() == []

    def test_filter_by_operation_type(self, tmp_path: Path):
        writer = AuditWriter(tmp_path / "audit.ndjson")
        writer.write(AuditEntry(operation_id="d1", operation_type="deploy"))
        writer.write(AuditEntry(operation_id="t1", operation_type="teardown"))
        writer.write(AuditEntry(operation_id="d2", operation_type="deploy"))
        assert [e.operation_id for e in writer.read_recent(10, "deploy")] == ["d1", "d2"]
        assert writer.last("teardown").operation_id == "t1"
        assert writer.last().operation_id == "d2"

    def test_last_on_empty_ledger(self, tmp_path: Path):
        assert AuditWriter(tmp_path / "audit.ndjson").last() is None

    def test_read_recent_zero(self, tmp_path: Path):
        writer = AuditWriter(tmp_path / "audit.ndjson")
        writer.write(AuditEntry(operation_id="a"))
        assert writer.read_recent(0) == []


class TestAuditRotation:
    def test_rotates_when_full(self, tmp_path: Path):
        path = tmp_path / "audit.ndjson"
        writer = AuditWriter(path, max_bytes=200)
        writer.write(AuditEntry(operation_id="first", warnings=["x" * 200]))
        writer.write(AuditEntry(operation_id="second"))

        assert writer.rotated_path == tmp_path / "audit.ndjson.1"
        assert [e.operation_id for e in writer.read_all()] == ["second"]
        assert "first" in writer.rotated_path.read_text()

    def test_below_limit_appends(self, tmp_path: Path):
        writer = AuditWriter(tmp_path / "audit.ndjson", max_bytes=10_000)
        writer.write(AuditEntry(operation_id="a"))
        writer.write(AuditEntry(operation_id="b"))
        assert not writer.rotated_path.exists()
        assert len(writer.read_all()) == 2
