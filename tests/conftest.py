import pytest

from app import create_app
from models import db
from services.engine import RandomizationEngine
from tests.helpers import PASSWORD, TEST_CONFIG, design, seed_trial



@pytest.fixture
def app():
    app = create_app(TEST_CONFIG)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def trial(app):
    return seed_trial()


@pytest.fixture
def engine(app):
    return RandomizationEngine(db.session)


@pytest.fixture
def active_config(engine, trial):
    """Factory: save, generate and activate a design, returning its id."""
    def make(**overrides):
        saved = engine.save_config(design(trial, **overrides), trial.admin_id)
        assert saved["success"], saved
        config_id = saved["config_id"]
        assert engine.generate_list(config_id, trial.admin_id)["success"]
        assert engine.activate_config(config_id, trial.admin_id)["success"]
        return config_id
    return make


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(client, trial):
    def make(role="admin"):
        response = client.post("/login", json={"username": role, "password": PASSWORD})
        assert response.status_code == 200
        return {"Authorization": f"Bearer {response.get_json()['token']}"}
    return make
