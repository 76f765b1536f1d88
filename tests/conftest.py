"""Shared fixtures: a file-backed SQLite database per test and tenancy factories."""
import pytest
from sqlalchemy.orm import sessionmaker

from taskrail_core import cards, milestones, models, task_lifecycle, workflows
from taskrail_core.database import Base, create_db_engine

ALICE = 1
BOB = 2


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'taskrail-test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    # Objects stay readable after commit, and no read re-opens a write lock
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def org(db):
    return workflows.create_organization(db, "Acme")


@pytest.fixture
def project(db, org):
    return workflows.create_project(db, org.id, "Platform")


@pytest.fixture
def task_type(db, project):
    return workflows.create_task_type(db, project.id, "Feature", icon="star")


@pytest.fixture
def make_task(db, project, task_type):
    """Create an available task, asserting success."""

    def _make(title="Task", **kwargs):
        kwargs.setdefault("project_id", project.id)
        kwargs.setdefault("type_id", task_type.id)
        kwargs.setdefault("created_by", ALICE)
        result = task_lifecycle.create_task(db, title=title, **kwargs)
        assert result.ok, result.failure
        return result.value.task

    return _make


@pytest.fixture
def make_card(db, project):
    def _make(title="Card", **kwargs):
        result = cards.create_card(db, project_id=project.id, title=title, created_by=ALICE, **kwargs)
        assert result.ok, result.failure
        return result.value

    return _make


@pytest.fixture
def make_milestone(db, project):
    def _make(name="Milestone", project_id=None):
        result = milestones.create_milestone(db, project_id or project.id, name, created_by=ALICE)
        assert result.ok, result.failure
        return result.value

    return _make


@pytest.fixture
def claimed(db):
    """Claim a task for a user and return the refreshed task."""

    def _claim(task, user_id=ALICE):
        result = task_lifecycle.claim_task(db, task.id, user_id, task.version, acknowledge_blocked=True)
        assert result.ok, result.failure
        return result.value.task

    return _claim


@pytest.fixture
def completed(db, claimed):
    """Claim and complete a task; returns the TaskView of the completion."""

    def _complete(task, user_id=ALICE):
        task = claimed(task, user_id)
        result = task_lifecycle.complete_task(db, task.id, user_id, task.version)
        assert result.ok, result.failure
        return result.value

    return _complete


@pytest.fixture
def make_rule(db, org):
    """Create an active rule in a fresh active workflow (org-wide unless project_id given)."""
    counter = {"n": 0}

    def _make(
        to_state="completed",
        resource_type=models.ResourceType.TASK,
        project_id=None,
        workflow=None,
        **kwargs,
    ):
        if workflow is None:
            counter["n"] += 1
            workflow = workflows.create_workflow(
                db,
                org.id,
                f"Workflow {counter['n']}",
                created_by=ALICE,
                project_id=project_id,
                active=True,
            )
        kwargs.setdefault("name", f"On {resource_type.value} {to_state}")
        return workflows.create_rule(db, workflow.id, resource_type=resource_type, to_state=to_state, **kwargs)

    return _make


@pytest.fixture
def make_template(db, org, task_type):
    def _make(name="Follow-up", **kwargs):
        kwargs.setdefault("type_id", task_type.id)
        return workflows.create_task_template(db, org.id, name, created_by=ALICE, **kwargs)

    return _make
