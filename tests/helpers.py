"""Shared helpers for the test suite."""
from types import SimpleNamespace

from werkzeug.security import generate_password_hash

from models import db, Study, StudySubject, TreatmentArm, TreatmentArmClass, Users

PASSWORD = "correct-horse"

TEST_CONFIG = {
    "TESTING": True,
    "SECRET_KEY": "test-secret-key-with-enough-bytes-for-hs256",
    "JWT_SECRET_KEY": "test-secret-key-with-enough-bytes-for-hs256",
    "SQLALCHEMY_DATABASE_URI": "sqlite://",
    "LOG_LEVEL": "WARNING",
}


def seed_trial(subject_count=10):
    users = {
        role: Users(username=role, password=generate_password_hash(PASSWORD), role=role)
        for role in ("admin", "studymanager", "investigator", "coordinator", "monitor")
    }
    db.session.add_all(users.values())
    db.session.flush()

    study = Study(name="ACE-1", protocol_number="ACE-001", created_by=users["admin"].id)
    db.session.add(study)
    db.session.flush()

    group_class = TreatmentArmClass(study_id=study.id, name="Treatment")
    db.session.add(group_class)
    db.session.flush()

    arm_a = TreatmentArm(study_id=study.id, group_class_id=group_class.id, name="Active")
    arm_b = TreatmentArm(study_id=study.id, group_class_id=group_class.id, name="Placebo")
    db.session.add_all([arm_a, arm_b])
    db.session.flush()

    subjects = [
        StudySubject(study_id=study.id, label=f"S-{i:03d}", entered_by=users["investigator"].id)
        for i in range(1, subject_count + 1)
    ]
    db.session.add_all(subjects)
    db.session.commit()

    return SimpleNamespace(
        user_ids={role: user.id for role, user in users.items()},
        admin_id=users["admin"].id,
        investigator_id=users["investigator"].id,
        study_id=study.id,
        class_id=group_class.id,
        arm_a=arm_a.id,
        arm_b=arm_b.id,
        subject_ids=[s.id for s in subjects],
    )


def design(trial, **overrides):
    data = {
        "study_id": trial.study_id,
        "name": "Permuted blocks",
        "randomization_type": "block",
        "blinding_level": "double_blind",
        "block_size": 4,
        "allocation_ratios": {str(trial.arm_a): 1, str(trial.arm_b): 1},
        "group_class_id": trial.class_id,
        "total_slots": 8,
        "seed": "abc",
    }
    data.update(overrides)
    return data
