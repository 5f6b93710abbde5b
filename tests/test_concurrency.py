"""Concurrent randomization against a file-backed database."""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from app import create_app
from models import db, SealedListEntry, SubjectGroupAssignment
from services.engine import RandomizationEngine
from services.sealed_list import SealedListStore
from tests.helpers import TEST_CONFIG, design, seed_trial


WORKERS = 50


@pytest.fixture
def file_app(tmp_path):
    config = dict(TEST_CONFIG)
    config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{tmp_path / 'trial.db'}"
    config["SQLALCHEMY_ENGINE_OPTIONS"] = {
        "connect_args": {"timeout": 30},
        "pool_size": WORKERS,
        "max_overflow": 10,
    }
    app = create_app(config)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def test_concurrent_requests_each_get_a_distinct_entry(file_app):
    with file_app.app_context():
        trial = seed_trial(subject_count=WORKERS)
        engine = RandomizationEngine(db.session)
        config_id = engine.save_config(design(trial, total_slots=WORKERS), trial.admin_id)["config_id"]
        assert engine.generate_list(config_id, trial.admin_id)["success"]
        assert engine.activate_config(config_id, trial.admin_id)["success"]

    barrier = threading.Barrier(WORKERS)

    def randomize(subject_id):
        with file_app.app_context():
            barrier.wait(timeout=30)
            return RandomizationEngine(db.session).randomize_subject(
                trial.study_id, subject_id, trial.investigator_id
            )

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        results = list(pool.map(randomize, trial.subject_ids))

    assert all(r["success"] for r in results), [r for r in results if not r["success"]]
    assert len({r["randomization_code"] for r in results}) == WORKERS
    assert sorted(r["sequence_number"] for r in results) == list(range(1, WORKERS + 1))

    with file_app.app_context():
        used = SealedListEntry.query.filter_by(config_id=config_id, is_used=True).all()
        assert len(used) == WORKERS
        assert len({e.used_by_subject_id for e in used}) == WORKERS
        assert SubjectGroupAssignment.query.count() == WORKERS


def test_concurrent_requests_for_one_subject_consume_one_entry(file_app, monkeypatch):
    with file_app.app_context():
        trial = seed_trial(subject_count=2)
        engine = RandomizationEngine(db.session)
        config_id = engine.save_config(design(trial), trial.admin_id)["config_id"]
        assert engine.generate_list(config_id, trial.admin_id)["success"]
        assert engine.activate_config(config_id, trial.admin_id)["success"]

    # both requests pass the eligibility checks before either claims an entry
    barrier = threading.Barrier(2)
    pop_next = SealedListStore.pop_next

    def pop_after_barrier(self, *args, **kwargs):
        barrier.wait(timeout=30)
        return pop_next(self, *args, **kwargs)

    monkeypatch.setattr(SealedListStore, "pop_next", pop_after_barrier)

    def randomize(_):
        with file_app.app_context():
            return RandomizationEngine(db.session).randomize_subject(
                trial.study_id, trial.subject_ids[0], trial.investigator_id
            )

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(randomize, range(2)))

    succeeded = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]
    assert len(succeeded) == 1
    assert failed[0]["error"] == "state"
    assert failed[0]["message"] == "Subject is already randomized"

    with file_app.app_context():
        used = SealedListEntry.query.filter_by(config_id=config_id, is_used=True).all()
        assert len(used) == 1
        assert used[0].randomization_number == succeeded[0]["randomization_code"]
        assignment = SubjectGroupAssignment.query.one()
        assert assignment.notes == f"Randomization: {used[0].randomization_number}"
