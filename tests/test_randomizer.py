"""Tests for the randomization transaction and the unblinding workflow."""
import json

from sqlalchemy.exc import SQLAlchemyError

from models import db, AuditLogEvent, SealedListEntry, StudySubject, SubjectGroupAssignment
from services.randomizer import BLINDED_PLACEHOLDER, GroupLabel
from tests.helpers import design

FACTORS = [
    {"name": "sex", "values": ["M", "F"]},
    {"name": "age", "values": ["<65", ">=65"]},
]


def used_count(config_id):
    return SealedListEntry.query.filter_by(config_id=config_id, is_used=True).count()


def test_randomize_consumes_first_entry(engine, trial, active_config):
    config_id = active_config()
    first = SealedListEntry.query.filter_by(config_id=config_id, sequence_number=1).one()

    result = engine.randomize_subject(trial.study_id, trial.subject_ids[0], trial.investigator_id)

    assert result["success"]
    assert result["randomization_code"] == first.randomization_number
    assert result["group_id"] == first.treatment_arm_id
    assert result["sequence_number"] == 1
    assert result["stratum_key"] == "default"

    assignment = SubjectGroupAssignment.query.filter_by(subject_id=trial.subject_ids[0]).one()
    assert assignment.treatment_arm_id == first.treatment_arm_id
    assert assignment.group_class_id == trial.class_id
    assert assignment.notes == f"Randomization: {first.randomization_number}"


def test_double_blind_hides_group_name(engine, trial, active_config):
    active_config(blinding_level="double_blind")

    result = engine.randomize_subject(trial.study_id, trial.subject_ids[0], trial.investigator_id)

    assert result["group_name"] == BLINDED_PLACEHOLDER
    assert result["group_label"] == GroupLabel.BLINDED
    assert result["is_blinded"]
    assert result["group_id"] in (trial.arm_a, trial.arm_b)


def test_open_label_reveals_group_name(engine, trial, active_config):
    active_config(blinding_level="open_label")

    result = engine.randomize_subject(trial.study_id, trial.subject_ids[0], trial.investigator_id)

    expected = "Active" if result["group_id"] == trial.arm_a else "Placebo"
    assert result["group_name"] == expected
    assert result["group_label"] == GroupLabel.KNOWN
    assert not result["is_blinded"]


def test_audit_summary_withholds_name_when_blinded(engine, trial, active_config):
    active_config(blinding_level="single_blind")

    result = engine.randomize_subject(trial.study_id, trial.subject_ids[0], trial.investigator_id)

    event = AuditLogEvent.query.filter_by(entity_type="subject_group_assignment").one()
    assert event.user_id == trial.investigator_id
    assert event.entity_id == trial.subject_ids[0]
    assert BLINDED_PLACEHOLDER in event.description
    assert "Active" not in event.description and "Placebo" not in event.description
    assert json.loads(event.new_value)["group_id"] == result["group_id"]


def test_subject_cannot_be_randomized_twice(engine, trial, active_config):
    config_id = active_config()
    subject_id = trial.subject_ids[0]

    first = engine.randomize_subject(trial.study_id, subject_id, trial.investigator_id)
    second = engine.randomize_subject(trial.study_id, subject_id, trial.investigator_id)

    assert first["success"]
    assert not second["success"]
    assert second["error"] == "state"
    assert second["message"] == "Subject is already randomized"
    assert used_count(config_id) == 1


def test_no_active_design(engine, trial):
    engine.save_config(design(trial), trial.admin_id)

    result = engine.randomize_subject(trial.study_id, trial.subject_ids[0], trial.investigator_id)

    assert result["error"] == "state"
    assert "No active randomization scheme" in result["message"]


def test_withdrawn_subject_is_rejected(engine, trial, active_config):
    config_id = active_config()
    db.session.get(StudySubject, trial.subject_ids[0]).status = "removed"
    db.session.commit()

    result = engine.randomize_subject(trial.study_id, trial.subject_ids[0], trial.investigator_id)

    assert result["error"] == "state"
    assert used_count(config_id) == 0


def test_unknown_subject(engine, trial, active_config):
    active_config()
    assert engine.randomize_subject(trial.study_id, 9999, trial.investigator_id)["error"] == "not_found"


def test_exhausted_stratum_leaves_no_assignment(engine, trial, active_config):
    active_config(total_slots=2, block_size=2)
    for subject_id in trial.subject_ids[:2]:
        assert engine.randomize_subject(trial.study_id, subject_id, trial.investigator_id)["success"]

    result = engine.randomize_subject(trial.study_id, trial.subject_ids[2], trial.investigator_id)

    assert not result["success"]
    assert result["error"] == "exhausted"
    assert SubjectGroupAssignment.query.filter_by(subject_id=trial.subject_ids[2]).count() == 0
    assert SubjectGroupAssignment.query.count() == 2


def test_stratified_randomization_uses_subject_stratum(engine, trial, active_config):
    config_id = active_config(randomization_type="stratified", stratification_factors=FACTORS, total_slots=8)

    result = engine.randomize_subject(
        trial.study_id, trial.subject_ids[0], trial.investigator_id, {"age": "<65", "sex": "F"}
    )

    assert result["stratum_key"] == "sex:F|age:<65"
    assert result["sequence_number"] == 1
    entry = SealedListEntry.query.filter_by(config_id=config_id, used_by_subject_id=trial.subject_ids[0]).one()
    assert entry.stratum_key == "sex:F|age:<65"


def test_stratified_randomization_requires_every_factor(engine, trial, active_config):
    config_id = active_config(randomization_type="stratified", stratification_factors=FACTORS, total_slots=8)

    result = engine.randomize_subject(trial.study_id, trial.subject_ids[0], trial.investigator_id, {"sex": "F"})

    assert result["error"] == "validation"
    assert result["message"] == "Missing stratification value for factor: age"
    assert used_count(config_id) == 0


def test_stratum_exhaustion_does_not_borrow(engine, trial, active_config):
    active_config(randomization_type="stratified", stratification_factors=FACTORS, total_slots=4, block_size=2)
    values = {"sex": "M", "age": ">=65"}
    assert engine.randomize_subject(trial.study_id, trial.subject_ids[0], trial.investigator_id, values)["success"]

    result = engine.randomize_subject(trial.study_id, trial.subject_ids[1], trial.investigator_id, values)

    assert result["error"] == "exhausted"
    assert "sex:M|age:>=65" in result["message"]


def test_failure_after_pop_rolls_everything_back(engine, trial, active_config, monkeypatch):
    config_id = active_config()

    def broken_record(*args, **kwargs):
        raise SQLAlchemyError("audit table unavailable")

    monkeypatch.setattr(engine.audit, "record", broken_record)
    result = engine.randomize_subject(trial.study_id, trial.subject_ids[0], trial.investigator_id)

    assert result["error"] == "infrastructure"
    assert used_count(config_id) == 0
    assert SubjectGroupAssignment.query.count() == 0


def test_existing_assignment_in_class_is_updated(engine, trial, active_config):
    active_config()
    subject_id = trial.subject_ids[0]
    db.session.add(SubjectGroupAssignment(
        subject_id=subject_id, treatment_arm_id=trial.arm_a, group_class_id=trial.class_id,
        owner_id=trial.admin_id, notes="manual"
    ))
    db.session.commit()

    result = engine.randomize_subject(trial.study_id, subject_id, trial.investigator_id)

    assignment = SubjectGroupAssignment.query.filter_by(subject_id=subject_id).one()
    assert assignment.treatment_arm_id == result["group_id"]
    assert assignment.updated_by == trial.investigator_id


def test_can_randomize(engine, trial, active_config):
    active_config()
    subject_id = trial.subject_ids[0]

    before = engine.can_randomize(subject_id)
    engine.randomize_subject(trial.study_id, subject_id, trial.investigator_id)
    after = engine.can_randomize(subject_id)

    assert before["can_randomize"] and before["reason"] is None
    assert not after["can_randomize"]
    assert after["already_randomized"]
    assert after["reason"] == "Subject already randomized"


def test_subject_randomization_is_masked_when_blinded(engine, trial, active_config):
    active_config(blinding_level="triple_blind")
    subject_id = trial.subject_ids[0]
    assert engine.get_subject_randomization(subject_id)["randomization"] is None

    engine.randomize_subject(trial.study_id, subject_id, trial.investigator_id)
    randomization = engine.get_subject_randomization(subject_id)["randomization"]

    assert randomization["group_name"] == BLINDED_PLACEHOLDER
    assert randomization["group_label"] == GroupLabel.BLINDED


def test_unblind_reveals_group_and_is_audited(engine, trial, active_config):
    active_config()
    subject_id = trial.subject_ids[0]
    allocated = engine.randomize_subject(trial.study_id, subject_id, trial.investigator_id)

    result = engine.unblind_subject(subject_id, trial.investigator_id, "Serious adverse event")

    assert result["success"]
    assert result["group_name"] == ("Active" if allocated["group_id"] == trial.arm_a else "Placebo")
    events = engine.get_unblinding_events(trial.study_id)["events"]
    assert len(events) == 1
    assert events[0]["subject_id"] == subject_id
    assert events[0]["new_value"] == "Unblinded - Reason: Serious adverse event"


def test_unblind_requires_reason_and_randomization(engine, trial, active_config):
    active_config()
    subject_id = trial.subject_ids[0]

    assert engine.unblind_subject(subject_id, trial.investigator_id, "")["error"] == "validation"
    assert engine.unblind_subject(subject_id, trial.investigator_id, "SAE")["error"] == "state"
    assert AuditLogEvent.query.filter_by(entity_type="unblinding").count() == 0


def test_group_label_variants_are_distinct():
    assert GroupLabel(GroupLabel.UNKNOWN) != GroupLabel(GroupLabel.BLINDED)
    assert GroupLabel(GroupLabel.BLINDED).display == BLINDED_PLACEHOLDER
    assert GroupLabel.for_arm(None, blinded=True).kind == GroupLabel.UNKNOWN
