# services/audit.py
import json

from models import AuditLogEvent


class AuditTrail:
    """Appends audit records inside the caller's open transaction."""

    def __init__(self, session):
        self.session = session

    def record(self, actor_id, entity_type, entity_id, description, old_value=None, new_value=None):
        if isinstance(old_value, (dict, list)):
            old_value = json.dumps(old_value, sort_keys=True)
        if isinstance(new_value, (dict, list)):
            new_value = json.dumps(new_value, sort_keys=True)

        event = AuditLogEvent(
            user_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
            description=description,
            old_value=old_value,
            new_value=new_value
        )
        self.session.add(event)
        return event
