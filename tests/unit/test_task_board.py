"""Unit tests for the task board."""

import pytest

from tandem.lib.errors import InvalidTaskTransition, SessionLocked, UnknownTask
from tandem.models.identity import Identity
from tandem.models.task import TaskStatus
from tandem.models.turn import Turn, TurnDraft
from tandem.services.conversation_log import SessionLock
from tandem.services.task_board import TaskBoard, extract_task_ops


@pytest.fixture
def lock():
    return SessionLock("s1")


@pytest.fixture
def board(lock):
    return TaskBoard("s1", lock)


def agent_turn(sequence: int, intent, author=Identity.CHINGA_BAVA) -> Turn:
    return Turn.from_draft(TurnDraft(author=author, content="update", intent=intent), "s1", sequence)


def apply(board, lock, turn):
    with lock.hold("test") as token:
        return board.apply_turn(turn, token)


class TestExtractTaskOps:
    def test_single_and_list_forms(self):
        assert extract_task_ops({"task": {"op": "propose", "title": "a"}}) == [{"op": "propose", "title": "a"}]
        assert len(extract_task_ops({"tasks": [{"op": "start", "task_id": "T1"}, "junk"]})) == 1
        assert extract_task_ops(None) == []
        assert extract_task_ops({"action": {}}) == []


class TestTaskBoard:
    """Tests for applying task operations from turns."""

    def test_propose_creates_sequential_ids(self, board, lock):
        updates = apply(board, lock, agent_turn(2, {"tasks": [
            {"op": "propose", "title": "Build a login form"},
            {"op": "propose", "title": "Write tests"},
        ]}))

        assert [u.task_id for u in updates] == ["T1", "T2"]
        task = board.get("T1")
        assert task.status == TaskStatus.PROPOSED
        assert task.created_by == "chinga_bava"
        assert task.linked_turns == [2]

    def test_assign_defaults_to_developer(self, board, lock):
        apply(board, lock, agent_turn(2, {"task": {"op": "propose", "title": "Login form"}}))
        apply(board, lock, agent_turn(4, {"task": {"op": "assign", "task_id": "T1"}}))

        task = board.get("T1")
        assert task.status == TaskStatus.ASSIGNED
        assert task.assigned_to == "tanganaka_san"
        assert task.linked_turns == [2, 4]

    def test_complete_with_failed_tests_blocks(self, board, lock):
        apply(board, lock, agent_turn(2, {"tasks": [
            {"op": "propose", "title": "Login form"},
            {"op": "assign", "task_id": "T1"},
        ]}))
        apply(board, lock, agent_turn(3, {"tasks": [
            {"op": "start", "task_id": "T1"},
            {"op": "complete", "task_id": "T1", "build_ok": True, "tests_passed": False},
        ]}, author=Identity.TANGANAKA_SAN))

        assert board.get("T1").status == TaskStatus.BLOCKED

        apply(board, lock, agent_turn(5, {"task": {"op": "complete", "task_id": "T1", "tests_passed": True}},
                                      author=Identity.TANGANAKA_SAN))
        assert board.get("T1").status == TaskStatus.DONE
        assert not board.has_open_tasks()

    def test_complete_requires_a_reported_result(self, board, lock):
        apply(board, lock, agent_turn(2, {"tasks": [
            {"op": "propose", "title": "Login form"},
            {"op": "assign", "task_id": "T1"},
        ]}))

        assert board.validate_ops([{"op": "complete", "task_id": "T1"}]) == [
            "T1: complete requires a build_ok or tests_passed result"
        ]
        with pytest.raises(InvalidTaskTransition):
            apply(board, lock, agent_turn(3, {"task": {"op": "complete", "task_id": "T1"}},
                                          author=Identity.TANGANAKA_SAN))
        assert board.get("T1").status == TaskStatus.ASSIGNED

        apply(board, lock, agent_turn(4, {"task": {"op": "complete", "task_id": "T1", "build_ok": "yes"}},
                                      author=Identity.TANGANAKA_SAN))
        assert board.get("T1").status == TaskStatus.BLOCKED

    def test_operations_apply_all_or_nothing(self, board, lock):
        apply(board, lock, agent_turn(2, {"task": {"op": "propose", "title": "Login form"}}))

        with pytest.raises(InvalidTaskTransition):
            apply(board, lock, agent_turn(3, {"tasks": [
                {"op": "assign", "task_id": "T1"},
                {"op": "propose", "title": "Never created"},
                {"op": "assign", "task_id": "T1"},
            ]}))

        assert board.get("T1").status == TaskStatus.PROPOSED
        assert len(board.list_tasks()) == 1

    def test_unknown_task_raises(self, board, lock):
        with pytest.raises(UnknownTask):
            apply(board, lock, agent_turn(2, {"task": {"op": "start", "task_id": "T9"}}))

    def test_assign_to_user_refused(self, board, lock):
        apply(board, lock, agent_turn(2, {"task": {"op": "propose", "title": "Login form"}}))
        with pytest.raises(InvalidTaskTransition):
            apply(board, lock, agent_turn(3, {"task": {"op": "assign", "task_id": "T1", "assignee": "user"}}))

    def test_user_turns_are_ignored(self, board, lock):
        turn = agent_turn(1, {"task": {"op": "propose", "title": "x"}}, author=Identity.USER)
        assert apply(board, lock, turn) == []
        assert board.list_tasks() == ()

    def test_requires_current_token(self, board, lock):
        stale = lock.acquire("a")
        lock.release(stale)
        with pytest.raises(SessionLocked):
            board.apply_turn(agent_turn(2, {"task": {"op": "propose", "title": "x"}}), stale)

    def test_snapshots_do_not_change_after_update(self, board, lock):
        apply(board, lock, agent_turn(2, {"task": {"op": "propose", "title": "Login form"}}))
        before = board.snapshot()
        apply(board, lock, agent_turn(3, {"task": {"op": "assign", "task_id": "T1"}}))

        assert before["T1"].status == TaskStatus.PROPOSED
        assert board.snapshot()["T1"].status == TaskStatus.ASSIGNED

    def test_validate_ops_follows_earlier_ops_in_same_turn(self, board):
        problems = board.validate_ops([
            {"op": "propose", "title": "Login form"},
            {"op": "assign", "task_id": "T1"},
            {"op": "start", "task_id": "T1"},
        ])
        assert problems == []

        problems = board.validate_ops([{"op": "complete", "task_id": "T1"}, {"op": "dance"}])
        assert len(problems) == 2

    def test_restore_continues_numbering(self, board, lock):
        other = TaskBoard("s1", lock)
        apply(other, lock, agent_turn(2, {"tasks": [
            {"op": "propose", "title": "a"},
            {"op": "propose", "title": "b"},
        ]}))

        board.restore(other.list_tasks())
        updates = apply(board, lock, agent_turn(5, {"task": {"op": "propose", "title": "c"}}))
        assert updates[0].task_id == "T3"
