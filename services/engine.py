# services/engine.py
"""Library boundary of the randomization engine.

Every operation runs as one unit of work on the given session and answers
``{"success": True, ...payload}`` or
``{"success": False, "error": <kind>, "message": <text>}``. Any failure
rolls the whole unit back before the answer is returned.
"""
import logging
from functools import wraps

from sqlalchemy.exc import SQLAlchemyError

from services.audit import AuditTrail
from services.config_store import ConfigStore
from services.errors import RandomizationError
from services.preview import DEFAULT_PREVIEW_LIMIT, preview_design
from services.randomizer import Randomizer
from services.sealed_list import SealedListStore

logger = logging.getLogger(__name__)


def unit_of_work(label):
    def decorator(operation):
        @wraps(operation)
        def wrapper(self, *args, **kwargs):
            try:
                payload = operation(self, *args, **kwargs)
                self.session.commit()
            except RandomizationError as e:
                self.session.rollback()
                logger.info("%s rejected (%s): %s", label, e.kind, e.message)
                return {"success": False, "error": e.kind, "message": e.message}
            except SQLAlchemyError:
                self.session.rollback()
                logger.exception("%s failed", label)
                return {"success": False, "error": "infrastructure", "message": f"{label} failed: database error"}
            return {"success": True, **payload}
        return wrapper
    return decorator


class RandomizationEngine:

    def __init__(self, session, preview_limit=DEFAULT_PREVIEW_LIMIT):
        self.session = session
        self.preview_limit = preview_limit
        self.audit = AuditTrail(session)
        self.configs = ConfigStore(session, self.audit)
        self.sealed_list = SealedListStore(session, self.audit)
        self.randomizer = Randomizer(session, self.configs, self.sealed_list, self.audit)

    @unit_of_work("Save randomization config")
    def save_config(self, data, user_id):
        config = self.configs.create(data, user_id)
        return {"config_id": config.id, "config": config.to_dict()}

    @unit_of_work("Update randomization config")
    def update_config(self, config_id, updates, user_id):
        config = self.configs.update(config_id, updates, user_id)
        return {"config": config.to_dict()}

    @unit_of_work("Get randomization config")
    def get_config(self, study_id):
        config = self.configs.get_for_study(study_id)
        if config is None:
            return {"config": None, "message": "No randomization scheme configured for this study"}
        list_stats = self.sealed_list.stats(config.id) if config.is_active else None
        return {"config": config.to_dict(), "list_stats": list_stats}

    @unit_of_work("Get randomization config")
    def get_config_by_id(self, config_id):
        return {"config": self.configs.get(config_id).to_dict()}

    @unit_of_work("Generate randomization list")
    def generate_list(self, config_id, user_id):
        config = self.configs.get(config_id, lock=True)
        return self.sealed_list.generate(config, user_id)

    @unit_of_work("Activate randomization config")
    def activate_config(self, config_id, user_id):
        config = self.configs.activate(config_id, user_id)
        return {"config": config.to_dict()}

    @unit_of_work("Randomization")
    def randomize_subject(self, study_id, subject_id, user_id, stratum_values=None):
        return self.randomizer.randomize(study_id, subject_id, user_id, stratum_values)

    @unit_of_work("Get list stats")
    def get_list_stats(self, config_id):
        config = self.configs.get(config_id)
        return {"stats": self.sealed_list.stats(config.id)}

    @unit_of_work("Test randomization config")
    def test_config(self, data):
        return preview_design(self.session, data, self.preview_limit)

    @unit_of_work("Test randomization config")
    def test_saved_config(self, config_id):
        config = self.configs.get(config_id)
        return preview_design(self.session, config.to_dict(), self.preview_limit)

    @unit_of_work("Can randomize check")
    def can_randomize(self, subject_id):
        return self.randomizer.can_randomize(subject_id)

    @unit_of_work("Get subject randomization")
    def get_subject_randomization(self, subject_id):
        randomization = self.randomizer.subject_randomization(subject_id)
        if randomization is None:
            return {"randomization": None, "message": "Subject not randomized"}
        return {"randomization": randomization}

    @unit_of_work("Unblinding")
    def unblind_subject(self, subject_id, user_id, reason):
        return self.randomizer.unblind(subject_id, user_id, reason)

    @unit_of_work("Get unblinding events")
    def get_unblinding_events(self, study_id):
        return {"events": self.randomizer.unblinding_events(study_id)}
