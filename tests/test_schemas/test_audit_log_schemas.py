"""Tests for AuditLog response schemas."""

from uuid import uuid4

from timetiles.models.audit_log import AuditLog
from timetiles.schemas.audit_log import AuditLogRead


class TestAuditLogRead:
    """Tests for AuditLogRead schema."""

    def test_from_model(self):
        """Test an audit entry reads back with its values and context."""
        entity_uuid = uuid4()
        log = AuditLog(
            actor="reviewer",
            action="import_job.approve",
            entity_type="import_job",
            entity_uuid=entity_uuid,
            old_value={"stage": "await-approval"},
            new_value={"stage": "create-schema-version"},
            context={"transforms": 1},
        )
        read = AuditLogRead.model_validate(log)
        assert read.actor == "reviewer"
        assert read.entity_uuid == entity_uuid
        assert read.new_value["stage"] == "create-schema-version"
        assert read.context == {"transforms": 1}

    def test_system_action(self):
        """Test entries without an actor are system actions."""
        log = AuditLog(action="scheduled_import.stuck_reset", entity_type="scheduled_import", context={})
        read = AuditLogRead.model_validate(log)
        assert read.actor is None
        assert read.old_value is None
