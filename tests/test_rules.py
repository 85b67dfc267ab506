from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from mdtasks.tasks.errors import AllTasksCompleted, NotFoundError
from mdtasks.tasks.models import (
    AttentionType,
    Choice,
    TaskCategory,
    TaskComplexity,
    TaskPriority,
    TaskStatus,
)
from mdtasks.tasks.rules import (
    apply_status_update,
    auto_update_task_statuses,
    dependency_report,
    detect_circular_dependencies,
    find_next_work,
    get_tasks_needing_attention,
    suggest_next_actions,
)

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Status Rules & Planning"),
]

DONE = TaskStatus.DONE
TODO = TaskStatus.TODO


class TestStatusCascade:
    def test_done_task_completes_open_subtasks_on_a_copy(self, make_task, make_project, now):
        project = make_project(
            make_task(1, "Ship", subtasks=(("build", DONE), ("test", TODO), ("deploy", TODO))),
        )

        update = apply_status_update(project, "Ship", None, DONE, now=now + timedelta(hours=1))

        task = update.project.tasks[0]
        assert task.status == DONE
        assert all(subtask.is_done for subtask in task.subtasks)
        assert update.changes == [
            "Auto-completed subtask 'test'",
            "Auto-completed subtask 'deploy'",
        ]
        assert task.subtasks[1].updated_at == now + timedelta(hours=1)
        assert project.tasks[0].status == TODO
        assert project.tasks[0].subtasks[1].status == TODO

    def test_last_subtask_done_promotes_task(self, make_task, make_project):
        project = make_project(make_task(1, "Ship", subtasks=(("build", DONE), ("test", TODO))))

        update = apply_status_update(project, "Ship", "test", DONE)

        assert update.project.tasks[0].status == DONE
        assert update.changes == ["Auto-completed main task 'Ship' (all subtasks done)"]

    def test_subtask_done_with_others_open_keeps_task_status(self, make_task, make_project):
        project = make_project(
            make_task(
                1,
                "Ship",
                status=TaskStatus.IN_PROGRESS,
                subtasks=(("build", TODO), ("test", TODO)),
            ),
        )

        update = apply_status_update(project, "Ship", "build", DONE)

        task = update.project.tasks[0]
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.subtasks[0].status == DONE
        assert update.changes == []

    def test_non_done_status_does_not_cascade(self, make_task, make_project):
        project = make_project(make_task(1, "Ship", subtasks=(("build", TODO),)))

        update = apply_status_update(project, "Ship", None, TaskStatus.BLOCKED)

        assert update.project.tasks[0].status == TaskStatus.BLOCKED
        assert update.project.tasks[0].subtasks[0].status == TODO
        assert update.changes == []

    def test_unknown_task_and_subtask_are_reported(self, make_task, make_project):
        project = make_project(make_task(1, "Ship", subtasks=(("build", TODO),)))

        with pytest.raises(NotFoundError, match="task 'Nope' not found in project 'demo'"):
            apply_status_update(project, "Nope", None, DONE)
        with pytest.raises(NotFoundError, match="subtask 'nope' not found in task 'Ship'"):
            apply_status_update(project, "Ship", "nope", DONE)


def test_auto_update_promotes_and_drags_in_place(make_task, make_project, now):
    project = make_project(
        make_task(1, "All done subtasks", subtasks=(("a", DONE), ("b", DONE))),
        make_task(2, "Done parent", status=DONE, subtasks=(("c", TODO),)),
        make_task(3, "No subtasks", status=TaskStatus.IN_PROGRESS),
        make_task(4, "Open", subtasks=(("d", DONE), ("e", TODO))),
    )
    later = now + timedelta(minutes=5)

    changes, changed = auto_update_task_statuses(project, now=later)

    assert changed is True
    assert changes == [
        "Auto-completed main task 'All done subtasks' (all subtasks done)",
        "Auto-completed subtask 'c'",
    ]
    assert project.tasks[0].status == DONE
    assert project.tasks[0].updated_at == later
    assert project.tasks[1].subtasks[0].status == DONE
    assert project.tasks[2].status == TaskStatus.IN_PROGRESS
    assert project.tasks[3].status == TODO


def test_auto_update_reports_no_change(make_task, make_project):
    project = make_project(make_task(1, "Open", subtasks=(("a", TODO),)))

    assert auto_update_task_statuses(project) == ([], False)


class TestAttention:
    def test_in_progress_task_past_its_estimate_is_overdue(self, make_task, make_project, now):
        project = make_project(
            make_task(
                1,
                "Late",
                status=TaskStatus.IN_PROGRESS,
                estimated_hours=2,
                updated_at=now - timedelta(hours=3),
            ),
            make_task(
                2,
                "On time",
                status=TaskStatus.IN_PROGRESS,
                estimated_hours=2,
                updated_at=now - timedelta(hours=1),
            ),
        )

        [item] = get_tasks_needing_attention(project, now=now)

        assert item.task_title == "Late"
        assert item.type == AttentionType.OVERDUE
        assert item.severity == 4
        assert "3.0 hours" in item.reason

    def test_overrun_takes_precedence_over_stale(self, make_task, make_project, now):
        project = make_project(
            make_task(
                1,
                "Forgotten",
                status=TaskStatus.IN_PROGRESS,
                estimated_hours=4,
                updated_at=now - timedelta(days=10),
            ),
        )

        [item] = get_tasks_needing_attention(project, now=now)

        assert item.type == AttentionType.OVERDUE

    def test_stale_and_unstarted_tasks(self, make_task, make_project, now):
        project = make_project(
            make_task(
                1,
                "Stale",
                status=TaskStatus.IN_PROGRESS,
                updated_at=now - timedelta(days=8),
            ),
            make_task(2, "Unstarted", created_at=now - timedelta(days=15)),
            make_task(
                3,
                "Broken down",
                created_at=now - timedelta(days=30),
                subtasks=(("a", TODO),),
            ),
            make_task(4, "Parked", status=TaskStatus.BLOCKED, created_at=now - timedelta(days=30)),
            make_task(5, "Recent", created_at=now - timedelta(days=3)),
        )

        items = get_tasks_needing_attention(project, now=now)

        assert [(item.task_title, item.type, item.severity) for item in items] == [
            ("Stale", AttentionType.STALE, 3),
            ("Unstarted", AttentionType.STALE, 2),
        ]
        assert items[0].reason == "In progress with no update for 8 days"

    def test_stale_subtasks_of_open_tasks(self, make_task, make_project, now):
        blocked = make_task(
            1,
            "Blocked parent",
            status=TaskStatus.BLOCKED,
            subtasks=(("wire", TaskStatus.IN_PROGRESS),),
        )
        finished = make_task(
            2,
            "Finished parent",
            status=DONE,
            subtasks=(("polish", TaskStatus.IN_PROGRESS),),
        )
        fresh = make_task(3, "Fresh parent", subtasks=(("draft", TaskStatus.IN_PROGRESS),))
        for task in (blocked, finished):
            task.subtasks[0].updated_at = now - timedelta(days=6)
        project = make_project(blocked, finished, fresh)

        [item] = get_tasks_needing_attention(project, now=now)

        assert item.task_title == "Blocked parent"
        assert item.subtask_title == "wire"
        assert item.severity == 2
        assert item.to_dict()["subtask_status"] == "in_progress"

    def test_scan_does_not_mutate(self, make_task, make_project, now):
        project = make_project(make_task(1, "Unstarted", created_at=now - timedelta(days=20)))
        before = project.tasks[0].updated_at

        get_tasks_needing_attention(project, now=now)

        assert project.tasks[0].updated_at == before


class TestNextWork:
    def test_returns_first_incomplete_task_and_subtask(self, make_task, make_project):
        project = make_project(
            make_task(1, "Done", status=DONE),
            make_task(2, "Working", subtasks=(("a", DONE), ("b", TODO), ("c", TODO))),
            make_task(3, "Later"),
        )

        task, subtask = find_next_work(project)

        assert task.title == "Working"
        assert subtask is not None
        assert subtask.title == "b"

    def test_done_task_with_open_subtask_is_not_finished(self, make_task, make_project):
        project = make_project(make_task(1, "Half", status=DONE, subtasks=(("a", TODO),)))

        task, subtask = find_next_work(project)

        assert task.title == "Half"
        assert subtask is not None

    def test_task_without_subtasks(self, make_task, make_project):
        task, subtask = find_next_work(make_project(make_task(1, "Solo")))

        assert task.title == "Solo"
        assert subtask is None

    @pytest.mark.parametrize("statuses", [(), (DONE,), (DONE, DONE)])
    def test_all_completed(self, make_task, make_project, statuses):
        tasks = [
            make_task(index, f"T{index}", status=status)
            for index, status in enumerate(statuses, start=1)
        ]
        project = make_project(*tasks)

        with pytest.raises(AllTasksCompleted):
            find_next_work(project)


class TestDependencies:
    def test_cycle_members_are_reported_in_document_order(self, make_task):
        tasks = [
            make_task(1, "A", dependencies=[2]),
            make_task(2, "B", dependencies=[3]),
            make_task(3, "C", dependencies=[1]),
            make_task(4, "D", dependencies=[1]),
        ]

        assert detect_circular_dependencies(tasks) == ["A", "B", "C"]

    def test_chain_has_no_cycle(self, make_task):
        tasks = [
            make_task(1, "A"),
            make_task(2, "B", dependencies=[1]),
            make_task(3, "C", dependencies=[2, 1, 99]),
        ]

        assert detect_circular_dependencies(tasks) == []

    def test_self_dependency_and_cycle_reached_from_outside(self, make_task):
        tasks = [
            make_task(1, "Entry", dependencies=[2]),
            make_task(2, "X", dependencies=[3]),
            make_task(3, "Y", dependencies=[2]),
            make_task(4, "Loop", dependencies=[4]),
        ]

        assert detect_circular_dependencies(tasks) == ["X", "Y", "Loop"]

    def test_deep_chains_do_not_exhaust_the_stack(self, make_task):
        depth = 5000
        chain = [
            make_task(index, f"T{index}", dependencies=[index + 1]) for index in range(1, depth)
        ]
        chain.append(make_task(depth, f"T{depth}"))

        assert detect_circular_dependencies(chain) == []

        chain[-1].dependencies = [1]
        cyclic = detect_circular_dependencies(chain)
        assert len(cyclic) == depth
        assert cyclic[:2] == ["T1", "T2"]

    def test_project_report(self, make_task, make_project):
        project = make_project(
            make_task(1, "Base", status=DONE),
            make_task(2, "Build", dependencies=[1, 42]),
            make_task(3, "Release", dependencies=[2]),
        )

        report = dependency_report(project)

        assert report["project"] == "demo"
        assert report["summary"] == {
            "total_tasks": 3,
            "tasks_with_dependencies": 2,
            "circular_dependencies": [],
        }
        assert report["dependencies"][0] == {
            "id": 2,
            "title": "Build",
            "status": "todo",
            "dependencies": [{"id": 1, "title": "Base", "status": "done"}],
        }

    def test_single_task_report_with_dependents(self, make_task, make_project):
        project = make_project(
            make_task(1, "Base"),
            make_task(2, "Build", dependencies=[1]),
            make_task(3, "Docs", dependencies=[1]),
        )

        report = dependency_report(project, "Base", include_dependents=True)

        assert report["task"] == "Base"
        assert report["dependencies"] == []
        assert [ref["title"] for ref in report["dependents"]] == ["Build", "Docs"]
        assert dependency_report(project, "Base")["dependents"] == []


class TestSuggestions:
    def test_ranks_by_score(self, make_task, make_project):
        project = make_project(
            make_task(1, "Foundation", priority=TaskPriority.P3),
            make_task(
                2,
                "Critical",
                priority=TaskPriority.P0,
                category=TaskCategory.MVP,
            ),
            make_task(
                3,
                "Waiting",
                priority=TaskPriority.P1,
                status=TaskStatus.IN_PROGRESS,
                dependencies=[1],
            ),
            make_task(4, "Finished", status=DONE),
        )

        suggestions = suggest_next_actions(project)

        assert [(item["title"], item["score"]) for item in suggestions] == [
            ("Critical", 150),
            ("Waiting", 80),
            ("Foundation", 75),
        ]
        assert suggestions[0]["reason"] == "Critical priority, All dependencies completed"
        assert suggestions[1]["is_ready"] is False
        assert suggestions[1]["reason"] == (
            "High priority, Already in progress, Waiting for dependencies"
        )

    def test_planning_signals_adjust_score(self, make_task, make_project):
        task = make_task(
            1,
            "Research",
            complexity=TaskComplexity.HIGH,
            subtasks=(("read", DONE), ("summarize", TODO)),
        )
        task.choices.append(Choice(id="choice_1", question="Which model?", options=["a", "b"]))
        project = make_project(task)

        [item] = suggest_next_actions(project)

        assert item["score"] == 50 + 50 + 20 - 10 + 10
        assert item["subtasks_total"] == 2
        assert item["subtasks_completed"] == 1
        assert item["next_subtask"] == "summarize"
        assert item["pending_choices"] == ["Which model?"]
        assert "Has pending decisions" in item["reason"]
        assert "High complexity - consider breaking down" in item["reason"]

    def test_filters_and_limits(self, make_task, make_project):
        project = make_project(
            make_task(1, "UI", category=TaskCategory.UX),
            make_task(2, "Infra", category=TaskCategory.INFRA),
            make_task(3, "Stuck", category=TaskCategory.UX, status=TaskStatus.BLOCKED),
        )

        assert [item["title"] for item in suggest_next_actions(project, "UX")] == ["UI"]
        assert [
            item["title"] for item in suggest_next_actions(project, "UX", include_blocked=True)
        ] == ["UI", "Stuck"]
        assert len(suggest_next_actions(project, max_suggestions=1)) == 1
        assert suggest_next_actions(project, "AI") == []
