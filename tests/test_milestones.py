"""Tests for milestone activation, completion tracking and deletion."""
import threading

from sqlalchemy import func, select

from taskrail_core import cards, milestones, models, task_lifecycle, workflows
from taskrail_core.results import FailureKind

ALICE = 1


def _reloaded(db, milestone):
    db.expire_all()
    return db.get(models.Milestone, milestone.id)


class TestCreate:
    def test_positions_follow_creation_order(self, make_milestone):
        first = make_milestone("M1")
        second = make_milestone("M2")
        assert (first.position, second.position) == (0, 1)
        assert first.state == models.MilestoneState.READY
        assert first.version == 1

    def test_unknown_project(self, db):
        result = milestones.create_milestone(db, 999, "M", created_by=ALICE)
        assert result.failure.kind == FailureKind.NOT_FOUND


class TestActivate:
    """Test the single-active-milestone rule."""

    def test_activate(self, db, project, make_milestone, make_card, make_task):
        milestone = make_milestone()
        card = make_card(milestone_id=milestone.id)
        make_task("In card", card_id=card.id)
        make_task("Direct", milestone_id=milestone.id)

        result = milestones.activate_milestone(db, milestone.id, project.id)
        assert result.ok
        activation = result.value
        assert activation.milestone.state == models.MilestoneState.ACTIVE
        assert activation.milestone.activated_at is not None
        assert activation.milestone.version == 2
        assert activation.cards_released == 1
        assert activation.tasks_released == 2

    def test_second_active_milestone_conflicts(self, db, project, make_milestone):
        first = make_milestone("M1")
        second = make_milestone("M2")
        assert milestones.activate_milestone(db, first.id, project.id).ok

        result = milestones.activate_milestone(db, second.id, project.id)
        assert result.failure.kind == FailureKind.MILESTONE_CONFLICT
        assert result.failure.detail["active_milestone_id"] == first.id
        assert _reloaded(db, second).state == models.MilestoneState.READY

    def test_activate_twice(self, db, project, make_milestone):
        milestone = make_milestone()
        milestones.activate_milestone(db, milestone.id, project.id)
        result = milestones.activate_milestone(db, milestone.id, project.id)
        assert result.failure.kind == FailureKind.INVALID_STATE

    def test_wrong_project(self, db, org, make_milestone):
        other = workflows.create_project(db, org.id, "Other")
        milestone = make_milestone()
        result = milestones.activate_milestone(db, milestone.id, other.id)
        assert result.failure.kind == FailureKind.NOT_FOUND

    def test_concurrent_activation_has_one_winner(self, db, session_factory, project, make_milestone):
        first = make_milestone("M1")
        second = make_milestone("M2")
        db.close()

        barrier = threading.Barrier(2)
        results = {}

        def activate(milestone_id):
            session = session_factory()
            try:
                barrier.wait()
                results[milestone_id] = milestones.activate_milestone(session, milestone_id, project.id)
            finally:
                session.close()

        threads = [threading.Thread(target=activate, args=(m.id,)) for m in (first, second)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        outcomes = sorted((r.ok, r.failure.kind if r.failure else None) for r in results.values())
        assert outcomes == [(False, FailureKind.MILESTONE_CONFLICT), (True, None)]

        check = session_factory()
        try:
            active = check.execute(
                select(func.count(models.Milestone.id)).where(
                    models.Milestone.project_id == project.id,
                    models.Milestone.state == models.MilestoneState.ACTIVE,
                )
            ).scalar_one()
            assert active == 1
        finally:
            check.close()


class TestCompletion:
    """Test derived completion of active milestones."""

    def test_complete_and_reopen(self, db, project, make_milestone, make_card, make_task, completed):
        milestone = make_milestone()
        card = make_card(milestone_id=milestone.id)
        in_card = make_task("In card", card_id=card.id)
        direct = make_task("Direct", milestone_id=milestone.id)
        milestones.activate_milestone(db, milestone.id, project.id)

        completed(in_card)
        assert _reloaded(db, milestone).state == models.MilestoneState.ACTIVE

        completed(direct)
        done = _reloaded(db, milestone)
        assert done.state == models.MilestoneState.COMPLETED
        assert done.completed_at is not None

        make_task("Late addition", card_id=card.id)
        reopened = _reloaded(db, milestone)
        assert reopened.state == models.MilestoneState.ACTIVE
        assert reopened.completed_at is None

    def test_ready_milestone_never_completes(self, db, make_milestone, make_task, completed):
        milestone = make_milestone()
        completed(make_task(milestone_id=milestone.id))
        assert _reloaded(db, milestone).state == models.MilestoneState.READY

    def test_empty_active_milestone_stays_active(self, db, project, make_milestone):
        milestone = make_milestone()
        milestones.activate_milestone(db, milestone.id, project.id)
        result = milestones.recompute_milestone(db, milestone.id)
        assert result.value.state == models.MilestoneState.ACTIVE

    def test_recompute_is_idempotent(self, db, project, make_milestone, make_task, completed):
        milestone = make_milestone()
        task = make_task(milestone_id=milestone.id)
        milestones.activate_milestone(db, milestone.id, project.id)
        completed(task)

        version = _reloaded(db, milestone).version
        milestones.recompute_milestone(db, milestone.id)
        milestones.recompute_milestone(db, milestone.id)
        assert _reloaded(db, milestone).version == version

    def test_card_without_tasks_keeps_milestone_open(self, db, project, make_milestone, make_card, make_task, completed):
        milestone = make_milestone()
        make_card("Empty", milestone_id=milestone.id)
        task = make_task(milestone_id=milestone.id)
        milestones.activate_milestone(db, milestone.id, project.id)
        completed(task)
        assert _reloaded(db, milestone).state == models.MilestoneState.ACTIVE

    def test_moving_open_card_in_reopens(self, db, project, make_milestone, make_card, make_task, completed):
        milestone = make_milestone()
        task = make_task(milestone_id=milestone.id)
        milestones.activate_milestone(db, milestone.id, project.id)
        completed(task)
        assert _reloaded(db, milestone).state == models.MilestoneState.COMPLETED

        card = make_card("Loose")
        make_task("Open", card_id=card.id)
        result = cards.update_card(db, card.id, card.version, milestone_id=milestone.id)
        assert result.ok
        assert result.value.version == 2
        assert _reloaded(db, milestone).state == models.MilestoneState.ACTIVE

    def test_new_work_cannot_reopen_while_another_is_active(self, db, project, make_milestone, make_task, completed):
        """A completed milestone stays completed while a later one is active."""
        first = make_milestone("M1")
        second = make_milestone("M2")
        task = make_task(milestone_id=first.id)
        milestones.activate_milestone(db, first.id, project.id)
        completed(task)
        assert milestones.activate_milestone(db, second.id, project.id).ok

        result = task_lifecycle.create_task(
            db, project_id=project.id, type_id=task.type_id, title="Late", created_by=ALICE, milestone_id=first.id,
        )
        assert result.failure.kind == FailureKind.MILESTONE_CONFLICT
        assert result.failure.detail["milestone_id"] == first.id
        assert result.failure.detail["active_milestone_id"] == second.id

        assert db.execute(select(func.count(models.Task.id))).scalar_one() == 1
        assert _reloaded(db, first).state == models.MilestoneState.COMPLETED
        assert _reloaded(db, second).state == models.MilestoneState.ACTIVE

    def test_moving_open_card_in_while_another_is_active(self, db, project, make_milestone, make_card, make_task, completed):
        first = make_milestone("M1")
        second = make_milestone("M2")
        completed(make_task(milestone_id=first.id))
        milestones.activate_milestone(db, first.id, project.id)
        milestones.recompute_milestone(db, first.id)
        assert _reloaded(db, first).state == models.MilestoneState.COMPLETED
        milestones.activate_milestone(db, second.id, project.id)

        card = make_card("Loose")
        make_task("Open", card_id=card.id)
        result = cards.update_card(db, card.id, card.version, milestone_id=first.id)
        assert result.failure.kind == FailureKind.MILESTONE_CONFLICT

        db.expire_all()
        row = db.get(models.Card, card.id)
        assert row.milestone_id is None
        assert row.version == 1
        assert _reloaded(db, first).state == models.MilestoneState.COMPLETED

    def test_recompute_missing(self, db):
        assert milestones.recompute_milestone(db, 999).failure.kind == FailureKind.NOT_FOUND


class TestDelete:
    def test_delete_empty_ready(self, db, make_milestone):
        milestone = make_milestone()
        assert milestones.delete_milestone(db, milestone.id).value == milestone.id
        assert db.get(models.Milestone, milestone.id) is None

    def test_delete_with_card(self, db, make_milestone, make_card):
        milestone = make_milestone()
        make_card(milestone_id=milestone.id)
        result = milestones.delete_milestone(db, milestone.id)
        assert result.failure.kind == FailureKind.INVALID_STATE
        assert result.failure.detail["cards"] == 1

    def test_delete_active(self, db, project, make_milestone):
        milestone = make_milestone()
        milestones.activate_milestone(db, milestone.id, project.id)
        assert milestones.delete_milestone(db, milestone.id).failure.kind == FailureKind.INVALID_STATE
