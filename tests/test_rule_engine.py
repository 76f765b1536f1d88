"""Tests for rule matching and synchronous dispatch."""
import pytest
from sqlalchemy import func, select

from taskrail_core import models, rule_engine, task_lifecycle, workflows
from taskrail_core.models import ExecutionOutcome, ResourceType, SuppressionReason
from taskrail_core.results import FailureKind

ALICE = 1


class TestFindMatchingRules:
    """Test scope, filters and ordering."""

    def test_project_rules_first_then_org_wide(self, db, org, project, make_rule):
        sibling = workflows.create_project(db, org.id, "Sibling")
        other_org = workflows.create_organization(db, "Globex")
        foreign = workflows.create_workflow(db, other_org.id, "Foreign", created_by=ALICE, active=True)
        workflows.create_rule(db, foreign.id, "Foreign", ResourceType.TASK, "completed")

        org_wide = make_rule(name="Org wide")
        make_rule(name="Sibling only", project_id=sibling.id)
        local = make_rule(name="Local", project_id=project.id)

        rules = rule_engine.find_matching_rules(db, ResourceType.TASK, "completed", project.id, org.id)
        assert [r.id for r in rules] == [local.id, org_wide.id]

    def test_org_wide_rule_reaches_sibling_project(self, db, org, project, make_rule):
        """A project rule stays in its project; an org-wide rule covers every project."""
        sibling = workflows.create_project(db, org.id, "Sibling")
        org_wide = make_rule(name="Org wide")
        make_rule(name="Local", project_id=project.id)

        rules = rule_engine.find_matching_rules(db, ResourceType.TASK, "completed", sibling.id, org.id)
        assert [r.id for r in rules] == [org_wide.id]

    def test_ties_ordered_by_rule_id(self, db, org, project, make_rule):
        first = make_rule(name="B")
        second = make_rule(name="A")
        rules = rule_engine.find_matching_rules(db, ResourceType.TASK, "completed", project.id, org.id)
        assert [r.id for r in rules] == [first.id, second.id]

    def test_inactive_workflow_and_rule_are_skipped(self, db, org, project, make_rule):
        paused_workflow = make_rule(name="Paused workflow")
        paused_rule = make_rule(name="Paused rule")
        workflows.set_workflow_active(db, paused_workflow.workflow_id, False)
        workflows.set_rule_active(db, paused_rule.id, False)
        assert rule_engine.find_matching_rules(db, ResourceType.TASK, "completed", project.id, org.id) == []

    def test_state_and_resource_must_match(self, db, org, project, make_rule):
        make_rule(to_state="claimed")
        make_rule(to_state="completed", resource_type=ResourceType.CARD)
        assert rule_engine.find_matching_rules(db, ResourceType.TASK, "completed", project.id, org.id) == []

    def test_task_type_filter(self, db, org, project, task_type, make_rule):
        bug = workflows.create_task_type(db, project.id, "Bug")
        bug_rule = make_rule(task_type_id=bug.id)
        any_rule = make_rule()

        for_feature = rule_engine.find_matching_rules(
            db, ResourceType.TASK, "completed", project.id, org.id, task_type_id=task_type.id
        )
        for_bug = rule_engine.find_matching_rules(
            db, ResourceType.TASK, "completed", project.id, org.id, task_type_id=bug.id
        )
        assert [r.id for r in for_feature] == [any_rule.id]
        assert [r.id for r in for_bug] == [bug_rule.id, any_rule.id]

    def test_card_rules(self, db, org, project, make_rule):
        rule = make_rule(to_state="completed", resource_type=ResourceType.CARD)
        rules = rule_engine.find_matching_rules(db, ResourceType.CARD, "completed", project.id, org.id)
        assert [r.id for r in rules] == [rule.id]


class TestRuleValidation:
    def test_unknown_state(self, make_rule):
        with pytest.raises(ValueError, match="Invalid state"):
            make_rule(to_state="done")

    def test_card_state_on_task_rule(self, make_rule):
        with pytest.raises(ValueError):
            make_rule(to_state="in_progress", resource_type=ResourceType.TASK)

    def test_task_type_filter_on_card_rule(self, make_rule, task_type):
        with pytest.raises(ValueError, match="only apply to task rules"):
            make_rule(to_state="completed", resource_type=ResourceType.CARD, task_type_id=task_type.id)


class TestDispatch:
    """Test transitions flowing from lifecycle operations into the ledger."""

    def test_completion_applies_rule(self, db, make_task, make_rule, completed):
        task = make_task()
        rule = make_rule()
        view = completed(task)

        assert [(o.rule_id, o.outcome) for o in view.rule_executions] == [(rule.id, ExecutionOutcome.APPLIED)]
        row = db.execute(select(models.RuleExecution)).scalar_one()
        assert (row.rule_id, row.origin_type, row.origin_id) == (rule.id, ResourceType.TASK, task.id)
        assert row.user_id == ALICE

    def test_card_completion_is_dispatched(self, db, make_card, make_task, make_rule, completed):
        card = make_card()
        task = make_task(card_id=card.id)
        rule = make_rule(to_state="completed", resource_type=ResourceType.CARD)

        view = completed(task)
        card_outcomes = [o for o in view.rule_executions if o.origin_type == ResourceType.CARD]
        assert [(o.rule_id, o.origin_id) for o in card_outcomes] == [(rule.id, card.id)]

    def test_card_in_progress_on_first_claim(self, db, make_card, make_task, make_rule, claimed):
        card = make_card()
        first = make_task(card_id=card.id)
        second = make_task(card_id=card.id)
        rule = make_rule(to_state="in_progress", resource_type=ResourceType.CARD)

        claimed(first)
        claimed(second)
        rows = db.execute(select(models.RuleExecution)).scalars().all()
        assert [(r.rule_id, r.origin_id) for r in rows] == [(rule.id, card.id)]

    def test_bulk_release_is_not_user_triggered(self, db, project, make_task, make_rule, claimed):
        task = claimed(make_task())
        make_rule(to_state="available")

        task_lifecycle.release_all_tasks_for_user(db, project.id, ALICE)
        row = db.execute(select(models.RuleExecution)).scalar_one()
        assert row.outcome == ExecutionOutcome.SUPPRESSED
        assert row.suppression_reason == SuppressionReason.NOT_USER_TRIGGERED
        assert row.origin_id == task.id

    def test_cascade_depth_is_bounded(self, db, project, task_type, make_rule, make_template, make_task):
        """A rule whose template re-triggers itself stops after the configured depth."""
        rule = make_rule(to_state="available", user_triggered_only=False)
        workflows.attach_template(db, rule.id, make_template("Echo").id)

        make_task("Seed")
        total = db.execute(
            select(func.count(models.Task.id)).where(models.Task.project_id == project.id)
        ).scalar_one()
        ledger_rows = db.execute(select(func.count(models.RuleExecution.id))).scalar_one()
        assert total == 5
        assert ledger_rows == 4


class TestReevaluate:
    """Test re-dispatch from durable state."""

    def test_already_processed_is_idempotent(self, db, make_task, make_rule, completed):
        task = make_task()
        make_rule()
        completed(task)

        result = rule_engine.reevaluate_origin(db, ResourceType.TASK, task.id, ALICE)
        assert result.ok
        [outcome] = result.value
        assert outcome.suppression_reason == SuppressionReason.IDEMPOTENT
        assert outcome.recorded is False
        assert db.execute(select(func.count(models.RuleExecution.id))).scalar_one() == 1

    def test_recovers_missed_transition(self, db, make_task, make_rule, completed):
        task = make_task()
        completed(task)
        rule = make_rule()

        result = rule_engine.reevaluate_origin(db, ResourceType.TASK, task.id, ALICE)
        assert [(o.rule_id, o.outcome) for o in result.value] == [(rule.id, ExecutionOutcome.APPLIED)]

    def test_missing_origin(self, db):
        result = rule_engine.reevaluate_origin(db, ResourceType.CARD, 999)
        assert result.failure.kind == FailureKind.NOT_FOUND
