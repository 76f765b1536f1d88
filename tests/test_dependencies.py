"""Tests for the dependency graph and blocked counts."""
from taskrail_core import dependencies, workflows
from taskrail_core.results import FailureKind

ALICE = 1


class TestAddDependency:
    """Test dependency validation."""

    def test_add_and_block(self, db, make_task):
        blocker = make_task("Schema")
        task = make_task("API")
        result = dependencies.add_dependency(db, task.id, blocker.id, ALICE)
        assert result.ok
        assert result.value.task_id == blocker.id
        assert result.value.title == "Schema"
        assert dependencies.blocked_count(db, task.id) == 1

    def test_completing_dependency_unblocks(self, db, make_task, completed):
        blocker = make_task("Schema")
        task = make_task("API")
        dependencies.add_dependency(db, task.id, blocker.id, ALICE)
        completed(blocker)
        assert dependencies.blocked_count(db, task.id) == 0

    def test_self_dependency(self, db, make_task):
        task = make_task()
        result = dependencies.add_dependency(db, task.id, task.id, ALICE)
        assert result.failure.kind == FailureKind.INVALID_STATE

    def test_direct_cycle(self, db, make_task):
        a = make_task("A")
        b = make_task("B")
        assert dependencies.add_dependency(db, a.id, b.id, ALICE).ok
        result = dependencies.add_dependency(db, b.id, a.id, ALICE)
        assert result.failure.kind == FailureKind.INVALID_STATE
        assert "Circular dependency" in result.failure.message
        assert result.failure.detail["cycle"][0] == b.id

    def test_transitive_cycle(self, db, make_task):
        a, b, c = make_task("A"), make_task("B"), make_task("C")
        dependencies.add_dependency(db, a.id, b.id, ALICE)
        dependencies.add_dependency(db, b.id, c.id, ALICE)
        result = dependencies.add_dependency(db, c.id, a.id, ALICE)
        assert result.failure.kind == FailureKind.INVALID_STATE

    def test_cycle_path_is_reported_in_full(self, db, make_task):
        a, b, c = make_task("A"), make_task("B"), make_task("C")
        dependencies.add_dependency(db, a.id, b.id, ALICE)
        dependencies.add_dependency(db, b.id, c.id, ALICE)
        result = dependencies.add_dependency(db, c.id, a.id, ALICE)
        assert result.failure.detail["cycle"] == [c.id, a.id, b.id, c.id]
        assert f"{c.id} → {a.id} → {b.id} → {c.id}" in result.failure.message

    def test_cycle_through_long_chain(self, db, make_task):
        """Cycles are found however long the chain that closes them."""
        chain = [make_task(f"Step {i}") for i in range(55)]
        for task, next_task in zip(chain, chain[1:]):
            assert dependencies.add_dependency(db, task.id, next_task.id, ALICE).ok

        result = dependencies.add_dependency(db, chain[-1].id, chain[0].id, ALICE)
        assert result.failure.kind == FailureKind.INVALID_STATE
        assert result.failure.detail["cycle"] == [chain[-1].id] + [t.id for t in chain]
        assert len(dependencies.get_transitive_dependencies(db, chain[0].id)) == 55

    def test_diamond_is_not_a_cycle(self, db, make_task):
        a, b, c, d = make_task("A"), make_task("B"), make_task("C"), make_task("D")
        dependencies.add_dependency(db, a.id, b.id, ALICE)
        dependencies.add_dependency(db, a.id, c.id, ALICE)
        dependencies.add_dependency(db, b.id, d.id, ALICE)
        assert dependencies.add_dependency(db, c.id, d.id, ALICE).ok
        assert dependencies.get_transitive_dependencies(db, a.id) == {a.id, b.id, c.id, d.id}

    def test_duplicate(self, db, make_task):
        a = make_task("A")
        b = make_task("B")
        dependencies.add_dependency(db, a.id, b.id, ALICE)
        result = dependencies.add_dependency(db, a.id, b.id, ALICE)
        assert result.failure.kind == FailureKind.INVALID_STATE
        assert dependencies.blocked_count(db, a.id) == 1

    def test_cross_project(self, db, org, make_task):
        other = workflows.create_project(db, org.id, "Other")
        other_type = workflows.create_task_type(db, other.id, "Chore")
        foreign = make_task("Foreign", project_id=other.id, type_id=other_type.id)
        task = make_task("Local")
        result = dependencies.add_dependency(db, task.id, foreign.id, ALICE)
        assert result.failure.kind == FailureKind.INVALID_STATE

    def test_missing_task(self, db, make_task):
        task = make_task()
        result = dependencies.add_dependency(db, task.id, 999, ALICE)
        assert result.failure.kind == FailureKind.NOT_FOUND


class TestQueries:
    """Test listing and removal."""

    def test_list_newest_first(self, db, make_task):
        task = make_task("Root")
        older = make_task("Older")
        newer = make_task("Newer")
        dependencies.add_dependency(db, task.id, older.id, ALICE)
        dependencies.add_dependency(db, task.id, newer.id, ALICE)
        assert [d.task_id for d in dependencies.list_dependencies(db, task.id)] == [newer.id, older.id]

    def test_remove(self, db, make_task):
        blocker = make_task("Blocker")
        task = make_task("Task")
        dependencies.add_dependency(db, task.id, blocker.id, ALICE)

        assert dependencies.remove_dependency(db, task.id, blocker.id).value == blocker.id
        assert dependencies.blocked_count(db, task.id) == 0
        assert dependencies.remove_dependency(db, task.id, blocker.id).failure.kind == FailureKind.NOT_FOUND
