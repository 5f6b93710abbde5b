# services/randomizer.py
"""Allocation of subjects against the active sealed list."""
import logging

from sqlalchemy import select

from models import AuditLogEvent, RandomizationConfig, StudySubject, SubjectGroupAssignment, TreatmentArm
from services import list_builder
from services.errors import NotFoundError, StateError, ValidationError

logger = logging.getLogger(__name__)

BLINDED_PLACEHOLDER = "[Blinded]"


class GroupLabel:
    """What a caller may see of a treatment group's name.

    ``known`` carries the real name, ``blinded`` means the name exists but is
    withheld, ``unknown`` means no arm could be resolved.
    """
    KNOWN = "known"
    BLINDED = "blinded"
    UNKNOWN = "unknown"

    def __init__(self, kind, name=None):
        self.kind = kind
        self.name = name

    @classmethod
    def for_arm(cls, arm, blinded):
        if arm is None:
            return cls(cls.UNKNOWN)
        if blinded:
            return cls(cls.BLINDED)
        return cls(cls.KNOWN, arm.name)

    @property
    def display(self):
        if self.kind == self.BLINDED:
            return BLINDED_PLACEHOLDER
        return self.name

    def __eq__(self, other):
        return isinstance(other, GroupLabel) and (self.kind, self.name) == (other.kind, other.name)

    def __repr__(self):
        return f"GroupLabel({self.kind!r}, {self.name!r})"


def is_blinded(config):
    return config.blinding_level != "open_label"


class Randomizer:

    def __init__(self, session, configs, sealed_list, audit):
        self.session = session
        self.configs = configs
        self.sealed_list = sealed_list
        self.audit = audit

    def _subject(self, subject_id, lock=False):
        subject = self.session.get(StudySubject, subject_id, with_for_update=lock or None)
        if not subject:
            raise NotFoundError("Subject not found")
        return subject

    def _assignment(self, subject_id, group_class_id):
        return self.session.scalars(
            select(SubjectGroupAssignment).where(
                SubjectGroupAssignment.subject_id == subject_id,
                SubjectGroupAssignment.group_class_id.is_(None) if group_class_id is None
                else SubjectGroupAssignment.group_class_id == group_class_id
            )
        ).first()

    def randomize(self, study_id, subject_id, user_id, stratum_values=None):
        config = self.configs.get_active(study_id)
        if config is None:
            raise StateError(
                "No active randomization scheme for this study. Configure and activate a scheme first."
            )

        # row lock held until commit
        subject = self._subject(subject_id, lock=True)
        if subject.study_id != config.study_id:
            raise ValidationError("Subject does not belong to this study")
        if subject.status != "available":
            raise StateError("Subject is not in active status")

        if self.sealed_list.subject_entry(config.id, subject.id) is not None:
            raise StateError("Subject is already randomized")

        if config.randomization_type == "stratified":
            stratum_key = list_builder.stratum_key_for(config.factors, stratum_values)
        else:
            stratum_key = list_builder.DEFAULT_STRATUM

        entry = self.sealed_list.pop_next(config.id, stratum_key, subject.id, user_id)

        arm = self.session.get(TreatmentArm, entry.treatment_arm_id)
        group_class_id = arm.group_class_id if arm and arm.group_class_id else config.group_class_id
        notes = f"Randomization: {entry.randomization_number}"

        assignment = self._assignment(subject.id, group_class_id)
        if assignment:
            assignment.treatment_arm_id = entry.treatment_arm_id
            assignment.notes = notes
            assignment.updated_by = user_id
        else:
            assignment = SubjectGroupAssignment(
                subject_id=subject.id,
                treatment_arm_id=entry.treatment_arm_id,
                group_class_id=group_class_id,
                notes=notes,
                owner_id=user_id
            )
            self.session.add(assignment)
        self.session.flush()

        blinded = is_blinded(config)
        label = GroupLabel.for_arm(arm, blinded)
        self.audit.record(
            user_id, "subject_group_assignment", subject.id,
            f"Subject {subject.label} randomized ({entry.randomization_number}) to "
            f"{label.display or f'group {entry.treatment_arm_id}'}",
            new_value={
                "config_id": config.id,
                "group_id": entry.treatment_arm_id,
                "randomization_number": entry.randomization_number,
                "sequence_number": entry.sequence_number,
                "stratum_key": stratum_key
            }
        )

        logger.info("Subject randomized: subject_id=%s config_id=%s sequence=%s stratum=%s blinded=%s",
                    subject.id, config.id, entry.sequence_number, stratum_key, blinded)

        return {
            "randomization_code": entry.randomization_number,
            "group_id": entry.treatment_arm_id,
            "group_name": label.display,
            "group_label": label.kind,
            "sequence_number": entry.sequence_number,
            "stratum_key": stratum_key,
            "is_blinded": blinded
        }

    def _governing_config(self, subject):
        return self.session.scalars(
            select(RandomizationConfig)
            .where(RandomizationConfig.study_id == subject.study_id)
            .order_by(RandomizationConfig.is_active.desc(), RandomizationConfig.id.desc())
            .limit(1)
        ).first()

    def can_randomize(self, subject_id):
        subject = self._subject(subject_id)
        already = self.session.scalar(
            select(SubjectGroupAssignment.id).where(SubjectGroupAssignment.subject_id == subject.id).limit(1)
        ) is not None
        active = subject.status == "available"
        has_scheme = self.configs.get_active(subject.study_id) is not None

        if already:
            reason = "Subject already randomized"
        elif not active:
            reason = "Subject is not in active status"
        elif not has_scheme:
            reason = "No active randomization scheme for this study"
        else:
            reason = None

        return {
            "can_randomize": reason is None,
            "already_randomized": already,
            "is_active": active,
            "reason": reason
        }

    def subject_randomization(self, subject_id):
        subject = self._subject(subject_id)
        assignment = self.session.scalars(
            select(SubjectGroupAssignment).where(SubjectGroupAssignment.subject_id == subject.id)
        ).first()
        if assignment is None:
            return None

        config = self._governing_config(subject)
        blinded = config is None or is_blinded(config)
        label = GroupLabel.for_arm(assignment.treatment_arm, blinded)
        return {
            "subject_id": subject.id,
            "subject_label": subject.label,
            "group_id": assignment.treatment_arm_id,
            "group_name": label.display,
            "group_label": label.kind,
            "group_class_id": assignment.group_class_id,
            "notes": assignment.notes,
            "randomized_by": assignment.owner_id,
            "randomized_at": assignment.timestamp_created.isoformat() if assignment.timestamp_created else None
        }

    def unblind(self, subject_id, user_id, reason):
        if not reason or not str(reason).strip():
            raise ValidationError("Reason is required for unblinding")

        subject = self._subject(subject_id)
        assignment = self.session.scalars(
            select(SubjectGroupAssignment).where(SubjectGroupAssignment.subject_id == subject.id)
        ).first()
        if assignment is None:
            raise StateError("Subject is not randomized")

        label = GroupLabel.for_arm(assignment.treatment_arm, blinded=False)
        event = self.audit.record(
            user_id, "unblinding", subject.id, "Subject Unblinded",
            old_value="Blinded",
            new_value=f"Unblinded - Reason: {reason}"
        )
        self.session.flush()

        logger.warning("Subject unblinded: subject_id=%s by user_id=%s", subject.id, user_id)
        return {
            "subject_id": subject.id,
            "group_id": assignment.treatment_arm_id,
            "group_name": label.display,
            "group_label": label.kind,
            "unblinded_at": event.audit_date.isoformat(),
            "reason": reason
        }

    def unblinding_events(self, study_id):
        rows = self.session.execute(
            select(AuditLogEvent, StudySubject.label)
            .join(StudySubject, StudySubject.id == AuditLogEvent.entity_id)
            .where(AuditLogEvent.entity_type == "unblinding", StudySubject.study_id == study_id)
            .order_by(AuditLogEvent.audit_date.desc(), AuditLogEvent.id.desc())
            .limit(100)
        ).all()
        return [
            {
                "audit_id": event.id,
                "audit_date": event.audit_date.isoformat(),
                "subject_id": event.entity_id,
                "subject_label": subject_label,
                "user_id": event.user_id,
                "old_value": event.old_value,
                "new_value": event.new_value
            } for event, subject_label in rows
        ]
