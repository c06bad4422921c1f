import random

import pytest

from conductor.errors import InvalidTransition, MalformedPlan, WorkItemNotFound
from conductor.plan.document import parse_plan
from conductor.plan.model import OPEN_STATUSES, ItemKind, Status

PLAN = """# Implementation Plan

Some intro text that is never interpreted.

# [~] Track: Add login flow

## [x] Phase 1: Setup [checkpoint: 1a2b3c4]
- [x] Task: Create schema [abc1234, def5678]
- [x] Task: Wire routes [see notes]
    - [x] Add handler

## [ ] Phase 2: Polish
- [ ] Task: Write docs
  * [ ] Review wording

```markdown
- [?] not a task
## [ ] Phase not real
```
"""


def test_parse_builds_positional_tree() -> None:
    document = parse_plan(PLAN, "login")

    track = document.track
    assert track is not None
    assert track.id == "login"
    assert track.kind == ItemKind.TRACK
    assert track.status == Status.IN_PROGRESS
    assert [phase.id for phase in track.children] == ["login:1", "login:2"]

    phase = document.get("login:1")
    assert phase.title == "Phase 1: Setup"
    assert phase.checkpoint_ref == "1a2b3c4"
    assert document.get("login:1.1").commit_refs == ["abc1234", "def5678"]
    assert document.get("login:1.2").commit_refs == []
    assert document.get("login:1.2.1").kind == ItemKind.SUBTASK
    assert document.get("login:2.1.1").title == "Review wording"
    assert len(list(document.items())) == 8


def test_unchanged_document_renders_byte_identical() -> None:
    text = PLAN.replace("\n", "\r\n")
    document = parse_plan(text, "login")

    assert document.render() == text


def test_mutation_only_rewrites_touched_line() -> None:
    document = parse_plan(PLAN, "login")
    document.set_status("login:2.1.1", Status.IN_PROGRESS)

    before = PLAN.splitlines()
    after = document.render().splitlines()
    changed = [index for index, (old, new) in enumerate(zip(before, after)) if old != new]
    assert len(changed) == 1
    assert after[changed[0]] == "  * [~] Review wording"


def test_opaque_trailer_is_preserved_when_refs_added() -> None:
    document = parse_plan(PLAN, "login")
    assert document.add_commit_ref("login:1.2", "0123abcd") is True
    assert document.add_commit_ref("login:1.2", "0123abc") is False

    assert "- [x] Task: Wire routes [see notes] [0123abcd]" in document.render()


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("# [ ] Track: A\n## [done] Phase 1\n", "Ambiguous status marker"),
        ("# [ ] Track: A\n## [ ] Phase 1\n- [?] Task\n", "Ambiguous status marker"),
        ("# [ ] Track: A\n- [ ] Task\n", "before any phase"),
        ("## [ ] Phase 1\n# [ ] Track: A\n", "before the track heading"),
        ("# [ ] Track: A\n# [ ] Track: B\n", "more than one track"),
        ("# Track: A\n", "missing its status marker"),
        ("# [ ] Track: A\n## Phase 1\n", "missing its status marker"),
        ("Just prose\n", "no track heading"),
    ],
)
def test_malformed_plans_are_rejected(text: str, message: str) -> None:
    with pytest.raises(MalformedPlan) as excinfo:
        parse_plan(text, "t")

    assert message in str(excinfo.value)


def test_complete_parent_with_open_child_is_rejected() -> None:
    document = parse_plan(PLAN, "login")

    with pytest.raises(InvalidTransition):
        document.set_status("login:2", Status.COMPLETE)


def test_reopening_child_under_complete_parent_is_rejected() -> None:
    document = parse_plan(PLAN, "login")

    with pytest.raises(InvalidTransition):
        document.set_status("login:1.1", Status.PENDING)


def test_blocked_needs_explicit_unblock() -> None:
    document = parse_plan(PLAN, "login")
    document.set_status("login:2.1.1", Status.BLOCKED)

    with pytest.raises(InvalidTransition):
        document.set_status("login:2.1.1", Status.IN_PROGRESS)

    document.set_status("login:2.1.1", Status.IN_PROGRESS, unblock=True)
    assert document.get("login:2.1.1").status == Status.IN_PROGRESS


def test_reopen_cascades_and_demotes_ancestors() -> None:
    document = parse_plan(PLAN, "login")
    document.set_status("login", Status.IN_PROGRESS)
    touched = {item.id for item in document.reopen("login:1")}

    phase = document.get("login:1")
    assert phase.status == Status.PENDING
    assert phase.checkpoint_ref is None
    assert all(item.status == Status.PENDING for item in phase.walk())
    assert document.get("login:1.1").commit_refs == []
    assert {"login:1", "login:1.1", "login:1.2", "login:1.2.1"} <= touched
    rendered = document.render()
    assert "## [ ] Phase 1: Setup\n" in rendered
    assert "- [ ] Task: Create schema\n" in rendered
    assert "- [ ] Task: Wire routes [see notes]\n" in rendered


def test_unknown_item_raises() -> None:
    document = parse_plan(PLAN, "login")

    with pytest.raises(WorkItemNotFound):
        document.get("login:9")


def _random_plan(rng: random.Random) -> str:
    lines = ["# [ ] Track: Random"]
    for phase in range(rng.randint(1, 3)):
        lines.append(f"## [ ] Phase {phase + 1}")
        for task in range(rng.randint(0, 3)):
            lines.append(f"- [ ] Task {phase + 1}.{task + 1}")
            for sub in range(rng.randint(0, 2)):
                lines.append(f"    - [ ] Sub {phase + 1}.{task + 1}.{sub + 1}")
    return "\n".join(lines) + "\n"


@pytest.mark.parametrize("seed", range(25))
def test_random_transitions_never_leave_complete_parent_with_open_child(seed: int) -> None:
    rng = random.Random(seed)
    document = parse_plan(_random_plan(rng), "random")
    items = list(document.items())
    statuses = list(Status)

    for _ in range(200):
        item = rng.choice(items)
        status = rng.choice(statuses)
        try:
            document.set_status(item.id, status, unblock=rng.random() < 0.5)
        except InvalidTransition:
            pass

        for node in document.items():
            if node.status == Status.COMPLETE:
                assert all(child.status not in OPEN_STATUSES for child in node.children)

    reparsed = parse_plan(document.render(), "random")
    assert [node.status for node in reparsed.items()] == [node.status for node in items]
