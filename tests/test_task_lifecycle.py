"""Tests for the task lifecycle: optimistic concurrency, claims and work sessions."""
from datetime import timedelta

from sqlalchemy import func, select

from taskrail_core import dependencies, models, task_lifecycle, workflows
from taskrail_core.results import FailureKind

ALICE = 1
BOB = 2


class TestCreateTask:
    """Test task creation."""

    def test_new_task_is_available_at_version_one(self, db, make_task):
        task = make_task("Write docs", priority=4)
        assert task.status == models.TaskStatus.AVAILABLE
        assert task.version == 1
        assert task.priority == 4
        assert task.claimed_by is None

    def test_creation_is_audited(self, db, make_task, org):
        task = make_task()
        event = db.execute(select(models.TaskEvent).where(models.TaskEvent.task_id == task.id)).scalar_one()
        assert event.event_type == models.TaskEventType.TASK_CREATED
        assert event.org_id == org.id
        assert event.actor_user_id == ALICE

    def test_unknown_project(self, db, task_type):
        result = task_lifecycle.create_task(db, project_id=999, type_id=task_type.id, title="x", created_by=ALICE)
        assert result.failure.kind == FailureKind.NOT_FOUND

    def test_type_from_other_project(self, db, org, project):
        other = workflows.create_project(db, org.id, "Other")
        foreign_type = workflows.create_task_type(db, other.id, "Bug")
        result = task_lifecycle.create_task(db, project_id=project.id, type_id=foreign_type.id, title="x", created_by=ALICE)
        assert result.failure.kind == FailureKind.INVALID_STATE
        assert result.failure.detail["type_id"] == foreign_type.id

    def test_card_and_milestone_are_exclusive(self, db, project, task_type, make_card, make_milestone):
        card = make_card()
        milestone = make_milestone()
        result = task_lifecycle.create_task(
            db,
            project_id=project.id,
            type_id=task_type.id,
            title="x",
            created_by=ALICE,
            card_id=card.id,
            milestone_id=milestone.id,
        )
        assert result.failure.kind == FailureKind.INVALID_STATE

    def test_priority_out_of_range(self, db, project, task_type):
        result = task_lifecycle.create_task(db, project_id=project.id, type_id=task_type.id, title="x", created_by=ALICE, priority=0)
        assert result.failure.kind == FailureKind.INVALID_STATE


class TestClaim:
    """Test claiming under optimistic concurrency."""

    def test_claim_bumps_version(self, db, make_task):
        task = make_task()
        result = task_lifecycle.claim_task(db, task.id, ALICE, 1)
        assert result.ok
        claimed = result.value.task
        assert claimed.status == models.TaskStatus.CLAIMED
        assert claimed.claimed_by == ALICE
        assert claimed.claimed_at is not None
        assert claimed.version == 2

    def test_second_claim_with_same_version_conflicts(self, db, make_task):
        """Two users racing on version 1: exactly one wins."""
        task = make_task()
        first = task_lifecycle.claim_task(db, task.id, ALICE, 1)
        second = task_lifecycle.claim_task(db, task.id, BOB, 1)
        assert first.ok
        assert second.failure.kind == FailureKind.CONFLICT
        assert second.failure.detail["current_version"] == 2

        db.expire_all()
        assert db.get(models.Task, task.id).claimed_by == ALICE

    def test_claim_of_claimed_task_with_fresh_version(self, db, make_task):
        task = make_task()
        task_lifecycle.claim_task(db, task.id, ALICE, 1)
        result = task_lifecycle.claim_task(db, task.id, BOB, 2)
        assert result.failure.kind == FailureKind.INVALID_STATE
        assert result.failure.detail["status"] == "claimed"

    def test_claim_missing_task(self, db):
        assert task_lifecycle.claim_task(db, 404, ALICE, 1).failure.kind == FailureKind.NOT_FOUND

    def test_blocked_claim_is_refused(self, db, make_task):
        blocker = make_task("Blocker")
        task = make_task("Blocked")
        assert dependencies.add_dependency(db, task.id, blocker.id, ALICE).ok

        result = task_lifecycle.claim_task(db, task.id, ALICE, 1)
        assert result.failure.kind == FailureKind.INVALID_STATE
        assert result.failure.detail["blocked_count"] == 1

    def test_blocked_claim_with_acknowledgement(self, db, make_task):
        blocker = make_task("Blocker")
        task = make_task("Blocked")
        dependencies.add_dependency(db, task.id, blocker.id, ALICE)

        result = task_lifecycle.claim_task(db, task.id, ALICE, 1, acknowledge_blocked=True)
        assert result.ok
        assert result.value.blocked_count == 1
        assert result.value.dependencies[0].task_id == blocker.id

    def test_stale_claim_on_blocked_task_reports_conflict(self, db, make_task):
        """A stale client must refresh before being told about blockers."""
        blocker = make_task("Blocker")
        task = make_task("Blocked")
        dependencies.add_dependency(db, task.id, blocker.id, ALICE)

        result = task_lifecycle.claim_task(db, task.id, ALICE, 7)
        assert result.failure.kind == FailureKind.CONFLICT


class TestReleaseAndComplete:
    """Test release and completion."""

    def test_claim_then_release_is_version_plus_two(self, db, make_task, claimed):
        task = claimed(make_task())
        result = task_lifecycle.release_task(db, task.id, ALICE, task.version)
        assert result.ok
        released = result.value.task
        assert released.status == models.TaskStatus.AVAILABLE
        assert released.claimed_by is None
        assert released.claimed_at is None
        assert released.version == 3

    def test_release_by_other_user_is_forbidden(self, db, make_task, claimed):
        task = claimed(make_task())
        result = task_lifecycle.release_task(db, task.id, BOB, task.version)
        assert result.failure.kind == FailureKind.FORBIDDEN

    def test_complete_only_by_claimant(self, db, make_task, claimed):
        task = claimed(make_task())
        result = task_lifecycle.complete_task(db, task.id, BOB, task.version)
        assert result.failure.kind == FailureKind.FORBIDDEN

        db.expire_all()
        assert db.get(models.Task, task.id).status == models.TaskStatus.CLAIMED

    def test_complete_keeps_claimant(self, db, make_task, claimed):
        task = claimed(make_task())
        result = task_lifecycle.complete_task(db, task.id, ALICE, task.version)
        done = result.value.task
        assert done.status == models.TaskStatus.COMPLETED
        assert done.claimed_by == ALICE
        assert done.completed_at is not None
        assert done.version == 3

    def test_complete_available_task(self, db, make_task):
        task = make_task()
        result = task_lifecycle.complete_task(db, task.id, ALICE, 1)
        assert result.failure.kind == FailureKind.INVALID_STATE
        assert "Claim the task before completing it" in result.failure.message

    def test_completed_task_is_immutable(self, db, make_task, completed):
        task = completed(make_task()).task
        assert task_lifecycle.complete_task(db, task.id, ALICE, task.version).failure.kind == FailureKind.INVALID_STATE
        assert task_lifecycle.release_task(db, task.id, ALICE, task.version).failure.kind == FailureKind.INVALID_STATE

    def test_stale_complete_conflicts(self, db, make_task, claimed):
        task = claimed(make_task())
        result = task_lifecycle.complete_task(db, task.id, ALICE, task.version - 1)
        assert result.failure.kind == FailureKind.CONFLICT

    def test_transitions_are_audited(self, db, make_task, claimed):
        task = claimed(make_task())
        task_lifecycle.release_task(db, task.id, ALICE, task.version)
        events = db.execute(
            select(models.TaskEvent.event_type)
            .where(models.TaskEvent.task_id == task.id)
            .order_by(models.TaskEvent.id)
        ).scalars().all()
        assert events == [
            models.TaskEventType.TASK_CREATED,
            models.TaskEventType.TASK_CLAIMED,
            models.TaskEventType.TASK_RELEASED,
        ]


class TestUpdateTask:
    """Test field edits."""

    def test_claimant_edits_fields(self, db, make_task, claimed):
        task = claimed(make_task("Old"))
        before = task.version
        result = task_lifecycle.update_task(db, task.id, ALICE, task.version, title="New", priority=5)
        assert result.ok
        assert result.value.task.title == "New"
        assert result.value.task.priority == 5
        assert result.value.task.version == before + 1

    def test_omitted_fields_are_kept(self, db, make_task, claimed):
        task = claimed(make_task("Title", description="Body"))
        result = task_lifecycle.update_task(db, task.id, ALICE, task.version, title="Renamed")
        assert result.value.task.description == "Body"

    def test_other_user_cannot_edit(self, db, make_task, claimed):
        task = claimed(make_task())
        result = task_lifecycle.update_task(db, task.id, BOB, task.version, title="Mine")
        assert result.failure.kind == FailureKind.FORBIDDEN

    def test_invalid_priority(self, db, make_task, claimed):
        task = claimed(make_task())
        result = task_lifecycle.update_task(db, task.id, ALICE, task.version, priority=9)
        assert result.failure.kind == FailureKind.INVALID_STATE


class TestReleaseAll:
    """Test bulk release when a user leaves a project."""

    def test_releases_only_that_users_tasks(self, db, make_task, claimed, project):
        mine = [claimed(make_task("A")), claimed(make_task("B"))]
        theirs = claimed(make_task("C"), BOB)

        result = task_lifecycle.release_all_tasks_for_user(db, project.id, ALICE)
        assert result.ok
        assert result.value == [t.id for t in mine]

        db.expire_all()
        for task in mine:
            row = db.get(models.Task, task.id)
            assert row.status == models.TaskStatus.AVAILABLE
            assert row.version == 3
        assert db.get(models.Task, theirs.id).claimed_by == BOB

    def test_nothing_to_release(self, db, project):
        assert task_lifecycle.release_all_tasks_for_user(db, project.id, ALICE).value == []

    def test_actor_is_recorded_on_release_events(self, db, make_task, claimed, project):
        task = claimed(make_task())
        task_lifecycle.release_all_tasks_for_user(db, project.id, ALICE, actor_user_id=BOB)

        event = db.execute(
            select(models.TaskEvent).where(
                models.TaskEvent.task_id == task.id,
                models.TaskEvent.event_type == models.TaskEventType.TASK_RELEASED,
            )
        ).scalar_one()
        assert event.actor_user_id == BOB


class TestWorkSessions:
    """Test work sessions and the ongoing flag."""

    def test_session_needs_claimed_task(self, db, make_task):
        task = make_task()
        assert task_lifecycle.start_session(db, task.id, ALICE).failure.kind == FailureKind.INVALID_STATE

    def test_session_only_for_claimant(self, db, make_task, claimed):
        task = claimed(make_task())
        assert task_lifecycle.start_session(db, task.id, BOB).failure.kind == FailureKind.FORBIDDEN

    def test_start_is_idempotent(self, db, make_task, claimed):
        task = claimed(make_task())
        first = task_lifecycle.start_session(db, task.id, ALICE).value
        second = task_lifecycle.start_session(db, task.id, ALICE).value
        assert first.id == second.id

        open_sessions = db.execute(
            select(func.count(models.WorkSession.id)).where(models.WorkSession.task_id == task.id)
        ).scalar_one()
        assert open_sessions == 1

    def test_view_shows_ongoing(self, db, make_task, claimed):
        task = claimed(make_task())
        task_lifecycle.start_session(db, task.id, ALICE)
        view = task_lifecycle.get_task_view(db, task.id).value
        assert view.is_ongoing
        assert view.ongoing_by_user_id == ALICE

    def test_pause(self, db, make_task, claimed):
        task = claimed(make_task())
        task_lifecycle.start_session(db, task.id, ALICE)
        paused = task_lifecycle.pause_session(db, task.id, ALICE).value
        assert paused.ended_at is not None
        assert paused.ended_reason == models.SessionEndReason.USER_PAUSE

        assert task_lifecycle.pause_session(db, task.id, ALICE).value is None
        assert not task_lifecycle.get_task_view(db, task.id).value.is_ongoing

    def test_complete_closes_open_session(self, db, make_task, claimed):
        task = claimed(make_task())
        session_id = task_lifecycle.start_session(db, task.id, ALICE).value.id
        task_lifecycle.complete_task(db, task.id, ALICE, task.version)

        db.expire_all()
        work_session = db.get(models.WorkSession, session_id)
        assert work_session.ended_reason == models.SessionEndReason.TASK_COMPLETED

    def test_release_closes_open_session(self, db, make_task, claimed):
        task = claimed(make_task())
        session_id = task_lifecycle.start_session(db, task.id, ALICE).value.id
        task_lifecycle.release_task(db, task.id, ALICE, task.version)

        db.expire_all()
        assert db.get(models.WorkSession, session_id).ended_reason == models.SessionEndReason.TASK_RELEASED


def _backdate(db, work_session, started_s_ago, heartbeat_s_ago=None, now=None):
    now = now or models.utcnow()
    work_session.started_at = now - timedelta(seconds=started_s_ago)
    if heartbeat_s_ago is not None:
        work_session.last_heartbeat_at = now - timedelta(seconds=heartbeat_s_ago)
    db.commit()


class TestWorkTime:
    """Test heartbeats, stale sessions and accumulated work time."""

    def test_pause_accumulates_duration(self, db, make_task, claimed):
        task = claimed(make_task())
        _backdate(db, task_lifecycle.start_session(db, task.id, ALICE).value, 120)
        task_lifecycle.pause_session(db, task.id, ALICE)
        assert 120 <= task_lifecycle.get_work_total(db, task.id, ALICE) < 130

    def test_sessions_add_up(self, db, make_task, claimed):
        task = claimed(make_task())
        _backdate(db, task_lifecycle.start_session(db, task.id, ALICE).value, 60)
        task_lifecycle.pause_session(db, task.id, ALICE)
        _backdate(db, task_lifecycle.start_session(db, task.id, ALICE).value, 30)
        task_lifecycle.pause_session(db, task.id, ALICE)

        assert 90 <= task_lifecycle.get_work_total(db, task.id, ALICE) < 100
        assert task_lifecycle.get_work_total(db, task.id, BOB) == 0

    def test_complete_accumulates(self, db, make_task, claimed):
        task = claimed(make_task())
        _backdate(db, task_lifecycle.start_session(db, task.id, ALICE).value, 60)
        assert task_lifecycle.complete_task(db, task.id, ALICE, task.version).ok
        assert 60 <= task_lifecycle.get_work_total(db, task.id, ALICE) < 70

    def test_release_accumulates(self, db, make_task, claimed):
        task = claimed(make_task())
        _backdate(db, task_lifecycle.start_session(db, task.id, ALICE).value, 45)
        assert task_lifecycle.release_task(db, task.id, ALICE, task.version).ok
        assert 45 <= task_lifecycle.get_work_total(db, task.id, ALICE) < 55

    def test_heartbeat_needs_open_session(self, db, make_task, claimed):
        task = claimed(make_task())
        result = task_lifecycle.heartbeat_session(db, task.id, ALICE)
        assert result.failure.kind == FailureKind.NOT_FOUND

    def test_stale_session_ends_at_last_heartbeat(self, db, make_task, claimed):
        task = claimed(make_task())
        work_session = task_lifecycle.start_session(db, task.id, ALICE).value
        now = models.utcnow()
        _backdate(db, work_session, 900, heartbeat_s_ago=600, now=now)

        closed = task_lifecycle.close_stale_sessions(db, timeout_s=300, now=now)
        assert closed == [work_session.id]

        db.expire_all()
        row = db.get(models.WorkSession, work_session.id)
        assert row.ended_reason == models.SessionEndReason.STALE_TIMEOUT
        assert task_lifecycle.get_work_total(db, task.id, ALICE) == 300

        view = task_lifecycle.get_task_view(db, task.id).value
        assert not view.is_ongoing
        assert view.task.status == models.TaskStatus.CLAIMED
        assert task_lifecycle.heartbeat_session(db, task.id, ALICE).failure.kind == FailureKind.NOT_FOUND

    def test_heartbeat_keeps_session_open(self, db, make_task, claimed):
        task = claimed(make_task())
        work_session = task_lifecycle.start_session(db, task.id, ALICE).value
        _backdate(db, work_session, 900, heartbeat_s_ago=600)

        assert task_lifecycle.heartbeat_session(db, task.id, ALICE).ok
        assert task_lifecycle.close_stale_sessions(db, timeout_s=300) == []
        assert task_lifecycle.get_task_view(db, task.id).value.is_ongoing

    def test_stale_sweep_is_idempotent(self, db, make_task, claimed):
        task = claimed(make_task())
        now = models.utcnow()
        _backdate(db, task_lifecycle.start_session(db, task.id, ALICE).value, 400, heartbeat_s_ago=400, now=now)

        assert len(task_lifecycle.close_stale_sessions(db, timeout_s=300, now=now)) == 1
        assert task_lifecycle.close_stale_sessions(db, timeout_s=300, now=now) == []
        assert task_lifecycle.get_work_total(db, task.id, ALICE) == 0
