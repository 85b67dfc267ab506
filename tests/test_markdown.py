from __future__ import annotations

import string
from datetime import UTC, datetime

import allure
import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from mdtasks.tasks.errors import CorruptDocumentError
from mdtasks.tasks.markdown import decode_project, encode_project, task_heading
from mdtasks.tasks.models import (
    Choice,
    Project,
    Subtask,
    Task,
    TaskCategory,
    TaskComplexity,
    TaskPriority,
    TaskStatus,
)

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Markdown Documents"),
]

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

_LEGACY_DOCUMENT = """# Project Tasks

## Categories
- [MVP] Core functionality tasks
- [AI] AI-related features

## Priority Levels
- P0: Blocker/Critical
- P1: High Priority

## Task 1: [MVP] Set up database (P1)

First line.
Second line.

### Dependencies:
- Task 2

### Complexity: high
Estimated hours: 8

### Choices:
**Choice:** Which database?
Options:
- [ ] sqlite
- [x] postgres
Reasoning: Needs concurrent writers.

### Subtasks:

- [x] one
- [ ] two

---

## Task 2: Write docs (P3) [in_progress]

Docs.

---
"""

# No brackets or parentheses: those are covered by the heading tests below.
_TEXT_ALPHABET = string.ascii_letters + string.digits + " #-*:.!?'\"<>\\/_"


def _line(alphabet: str = _TEXT_ALPHABET, max_size: int = 30) -> st.SearchStrategy[str]:
    return (
        st.text(alphabet=alphabet, min_size=1, max_size=max_size)
        .map(str.strip)
        .filter(bool)
    )


_datetimes = st.datetimes(
    min_value=datetime(2000, 1, 1),
    max_value=datetime(2100, 1, 1),
    timezones=st.just(UTC),
)
_blank_lines = st.text(alphabet=" \t", max_size=3)
_indented_lines = st.tuples(_blank_lines, _line(max_size=40)).map("".join)
_descriptions = st.lists(
    _line(max_size=40) | _indented_lines | _blank_lines,
    max_size=5,
).map("\n".join)


@st.composite
def _choices(draw) -> Choice:
    options = draw(st.lists(_line(), min_size=2, max_size=4, unique=True))
    selected = draw(st.none() | st.sampled_from(options))
    return Choice(
        id=draw(st.from_regex(r"choice_[0-9]{1,19}", fullmatch=True)),
        question=draw(_line()),
        options=options,
        selected=selected,
        reasoning=draw(st.just("") | _line() | st.text(max_size=40)),
        created_at=draw(_datetimes),
        resolved_at=draw(_datetimes) if selected is not None else None,
    )


@st.composite
def _subtasks(draw) -> Subtask:
    return Subtask(
        title=draw(_line()),
        description=draw(st.text(max_size=40)),
        status=draw(st.sampled_from(TaskStatus)),
        estimated_hours=draw(st.integers(min_value=0, max_value=1000)),
        complexity=draw(st.none() | st.sampled_from(TaskComplexity)),
        choices=draw(st.lists(_choices(), max_size=2)),
        created_at=draw(_datetimes),
        updated_at=draw(_datetimes),
    )


@st.composite
def _tasks(draw, task_id: int) -> Task:
    return Task(
        id=task_id,
        title=draw(_line()),
        description=draw(_descriptions),
        category=draw(st.none() | st.sampled_from(TaskCategory)),
        priority=draw(st.sampled_from(TaskPriority)),
        status=draw(st.sampled_from(TaskStatus)),
        complexity=draw(st.none() | st.sampled_from(TaskComplexity)),
        estimated_hours=draw(st.integers(min_value=0, max_value=1000)),
        dependencies=draw(st.lists(st.integers(min_value=1, max_value=20), max_size=3)),
        subtasks=draw(st.lists(_subtasks(), max_size=3)),
        choices=draw(st.lists(_choices(), max_size=2)),
        created_at=draw(_datetimes),
        updated_at=draw(_datetimes),
    )


@st.composite
def _projects(draw) -> Project:
    count = draw(st.integers(min_value=0, max_value=4))
    return Project(
        name=draw(_line(string.ascii_letters + string.digits + " -_.")),
        description=draw(_descriptions),
        tasks=[draw(_tasks(task_id)) for task_id in range(1, count + 1)],
        created_at=draw(_datetimes),
        updated_at=draw(_datetimes),
    )


@settings(max_examples=150, deadline=None, suppress_health_check=[HealthCheck.too_slow])
@given(project=_projects())
def test_decode_inverts_encode(project: Project) -> None:
    assert decode_project(encode_project(project), now=NOW) == project


@settings(max_examples=50, deadline=None, suppress_health_check=[HealthCheck.too_slow])
@given(project=_projects())
def test_encoding_is_stable_across_round_trips(project: Project) -> None:
    text = encode_project(project)

    assert encode_project(decode_project(text, now=NOW)) == text


def test_encode_renders_readable_layout() -> None:
    project = Project(
        name="demo",
        description="Demo project.",
        tasks=[
            Task(
                id=1,
                title="Write spec",
                description="Outline the scope.",
                category=TaskCategory.MVP,
                priority=TaskPriority.P1,
                status=TaskStatus.IN_PROGRESS,
                dependencies=[3],
                subtasks=[
                    Subtask(title="draft", status=TaskStatus.DONE),
                    Subtask(title="review"),
                ],
            ),
        ],
    )

    lines = encode_project(project).splitlines()

    assert lines[0] == "# Project: demo"
    assert "Demo project." in lines
    assert "## Categories" in lines
    assert "- [MVP] Core functionality tasks" in lines
    assert "## Priority Levels" in lines
    assert "- P0: Blocker/Critical" in lines
    assert "## Task 1: [MVP] Write spec (P1) [in_progress]" in lines
    assert "- Task 3" in lines
    assert "- [x] draft" in lines
    assert "- [ ] review" in lines
    assert lines.index("### Subtasks:") < lines.index("---")


def test_decode_reads_documents_without_metadata() -> None:
    project = decode_project(_LEGACY_DOCUMENT, now=NOW)

    assert project.name == ""
    assert project.created_at == NOW
    assert [task.id for task in project.tasks] == [1, 2]

    first = project.tasks[0]
    assert first.title == "Set up database"
    assert first.category == TaskCategory.MVP
    assert first.priority == TaskPriority.P1
    assert first.status == TaskStatus.TODO
    assert first.description == "First line.\nSecond line."
    assert first.dependencies == [2]
    assert first.complexity == TaskComplexity.HIGH
    assert first.estimated_hours == 8
    assert first.created_at == NOW

    [choice] = first.choices
    assert choice.question == "Which database?"
    assert choice.options == ["sqlite", "postgres"]
    assert choice.selected == "postgres"
    assert choice.reasoning == "Needs concurrent writers."
    assert choice.resolved_at == NOW
    assert choice.id.startswith("choice_")

    assert [(subtask.title, subtask.status) for subtask in first.subtasks] == [
        ("one", TaskStatus.DONE),
        ("two", TaskStatus.TODO),
    ]

    second = project.tasks[1]
    assert second.category is None
    assert second.priority == TaskPriority.P3
    assert second.status == TaskStatus.IN_PROGRESS
    assert second.description == "Docs."


def test_decode_rejects_non_numeric_task_id() -> None:
    document = "# Project: demo\n\n## Task abc: Broken (P1)\n\nBody.\n\n---\n"

    with pytest.raises(CorruptDocumentError, match="line 3: invalid task ID: abc"):
        decode_project(document, now=NOW)


def test_decode_falls_back_to_defaults_for_unknown_values() -> None:
    document = (
        "# Project: demo\n\n"
        "## Task 4: [OPS] Rotate keys (P9) [paused]\n\n"
        "### Complexity: extreme\n"
        "Estimated hours: lots\n\n"
        "---\n"
    )

    [task] = decode_project(document, now=NOW).tasks

    assert task.id == 4
    assert task.category is None
    assert task.priority == TaskPriority.P2
    assert task.status == TaskStatus.TODO
    assert task.complexity is None
    assert task.estimated_hours == 0


def test_unchecked_box_wins_over_done_status_in_metadata() -> None:
    document = (
        "# Project: demo\n\n"
        "## Task 1: Ship (P1) [todo]\n\n"
        "### Subtasks:\n\n"
        '- [ ] build\n  <!-- subtask: {"status": "done"} -->\n'
        '- [x] test\n  <!-- subtask: {"status": "in_progress"} -->\n'
        '- [ ] deploy\n  <!-- subtask: {"status": "blocked"} -->\n\n'
        "---\n"
    )

    [task] = decode_project(document, now=NOW).tasks

    assert [subtask.status for subtask in task.subtasks] == [
        TaskStatus.TODO,
        TaskStatus.DONE,
        TaskStatus.BLOCKED,
    ]


def test_structural_description_lines_survive_round_trip() -> None:
    description = "\n".join(
        [
            "## Task 9: Not a task (P0)",
            "---",
            "- Task 2",
            "### Subtasks:",
            "Estimated hours: 12",
            "**Choice:** not a choice",
            "<!-- task: {} -->",
            "\\already escaped",
        ],
    )
    project = Project(
        name="demo",
        description=description,
        tasks=[Task(id=1, title="Only task", description=description)],
        created_at=NOW,
        updated_at=NOW,
    )
    project.tasks[0].created_at = NOW
    project.tasks[0].updated_at = NOW

    decoded = decode_project(encode_project(project), now=NOW)

    assert decoded == project
    assert decoded.tasks[0].dependencies == []
    assert decoded.tasks[0].estimated_hours == 0


@pytest.mark.parametrize(
    ("task", "expected"),
    [
        (
            Task(id=2, title="Plain", priority=TaskPriority.P0),
            "## Task 2: Plain (P0) [todo]",
        ),
        (
            Task(id=3, title="Tagged", category=TaskCategory.UX, status=TaskStatus.BLOCKED),
            "## Task 3: [UX] Tagged (P2) [blocked]",
        ),
        (
            Task(id=4, title="[AI] looks tagged"),
            "## Task 4: [GENERAL] [AI] looks tagged (P2) [todo]",
        ),
    ],
)
def test_task_heading(task: Task, expected: str) -> None:
    assert task_heading(task) == expected


@pytest.mark.parametrize(
    "title",
    ["[AI] looks tagged", "call (maybe) later", "ends with (note)", "odd (paren", "x [y] z"],
)
def test_titles_with_brackets_round_trip(title: str) -> None:
    task = Task(id=1, title=title, created_at=NOW, updated_at=NOW)
    project = Project(name="demo", tasks=[task], created_at=NOW, updated_at=NOW)

    [decoded] = decode_project(encode_project(project), now=NOW).tasks

    assert decoded.title == title
    assert decoded.category is None


def test_subtask_choice_stays_with_its_subtask() -> None:
    choice = Choice(
        id="choice_1",
        question="Which runner?",
        options=["pytest", "unittest"],
        created_at=NOW,
    )
    task = Task(
        id=1,
        title="Test",
        subtasks=[
            Subtask(title="pick runner", choices=[choice], created_at=NOW, updated_at=NOW),
            Subtask(title="write tests", created_at=NOW, updated_at=NOW),
        ],
        created_at=NOW,
        updated_at=NOW,
    )
    project = Project(name="demo", tasks=[task], created_at=NOW, updated_at=NOW)

    [decoded] = decode_project(encode_project(project), now=NOW).tasks

    assert decoded.choices == []
    assert decoded.subtasks[0].choices == [choice]
    assert decoded.subtasks[1].choices == []
    assert decoded.pending_choice_count() == 1


@pytest.mark.parametrize(
    "description",
    ["a\n   \nb", "\n\nstarts after blanks", "ends with blanks\n\n", "\t", "one\n\n\n\ntwo"],
)
def test_blank_and_whitespace_description_lines_round_trip(description: str) -> None:
    task = Task(id=1, title="Spacing", description=description, created_at=NOW, updated_at=NOW)
    project = Project(name="demo", tasks=[task], created_at=NOW, updated_at=NOW)

    [decoded] = decode_project(encode_project(project), now=NOW).tasks

    assert decoded.description == description


def test_multi_line_reasoning_is_kept_in_choice_metadata() -> None:
    choice = Choice(
        id="choice_7",
        question="Which queue?",
        options=["redis", "sqs"],
        selected="sqs",
        reasoning="Managed service.\n\n- no ops burden\n- at-least-once is fine",
        created_at=NOW,
        resolved_at=NOW,
    )
    task = Task(id=1, title="Queue", choices=[choice], created_at=NOW, updated_at=NOW)
    project = Project(name="demo", tasks=[task], created_at=NOW, updated_at=NOW)

    document = encode_project(project)
    [decoded] = decode_project(document, now=NOW).tasks

    assert decoded.choices == [choice]
    assert "Reasoning: Managed service. - no ops burden - at-least-once is fine" in document


def test_hand_edited_single_line_reasoning_is_read_from_the_visible_line() -> None:
    document = (
        "# Project: demo\n\n"
        "## Task 1: Queue (P1) [todo]\n\n"
        "### Choices:\n"
        "**Choice:** Which queue?\n"
        '<!-- choice: {"id": "choice_7"} -->\n'
        "Options:\n"
        "- [ ] redis\n"
        "- [x] sqs\n"
        "Reasoning: Rewritten by hand.\n\n"
        "---\n"
    )

    [task] = decode_project(document, now=NOW).tasks

    assert task.choices[0].id == "choice_7"
    assert task.choices[0].reasoning == "Rewritten by hand."
