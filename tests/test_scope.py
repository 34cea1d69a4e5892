from __future__ import annotations

import allure
import pytest

from taskpilot.orchestrator.models import FileChange, ScopeAction, ScopeMode, TaskScope
from taskpilot.orchestrator.scope import (
    ScopeGuard,
    check_file_change,
    glob_match,
    matches_pattern,
    normalize_path,
)

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Scope Enforcement"),
]

SCOPE = TaskScope(
    allowed=("src/**", "tests/**/*.py"),
    forbidden=(".env", "src/secrets/**"),
    ask_before=("src/config.py",),
)


@pytest.mark.parametrize(
    ("path", "pattern", "expected"),
    [
        ("src/app.py", "src/**", True),
        ("src/deep/nested/app.py", "src/**", True),
        ("src/app.ts", "src/**/*.ts", True),
        ("src/ui/app.ts", "src/**/*.ts", True),
        ("src/ui/app.js", "src/**/*.ts", False),
        ("src/app.py", "src/*.py", True),
        ("src/ui/app.py", "src/*.py", False),
        ("vite.config.js", "*.config.{js,ts}", True),
        ("file1.txt", "file?.txt", True),
    ],
)
def test_glob_match_segments(path: str, pattern: str, expected: bool) -> None:
    assert glob_match(path, pattern) is expected


def test_matches_pattern_treats_plain_entries_as_directories() -> None:
    assert matches_pattern("./docs/guide/intro.md", ["docs"])
    assert matches_pattern("src/api", ["src/api/**"])
    assert not matches_pattern("srcx/app.py", ["src"])
    assert not matches_pattern("docs/guide.txt", ["docs/*.md"])
    assert normalize_path(".\\src\\app.py") == "src/app.py"


def test_forbidden_wins_over_allowed() -> None:
    decision = check_file_change("src/secrets/key.pem", SCOPE, ScopeMode.PERMISSIVE)

    assert decision.action is ScopeAction.BLOCK
    assert decision.files == ("src/secrets/key.pem",)


@pytest.mark.parametrize(
    ("mode", "action"),
    [
        (ScopeMode.STRICT, ScopeAction.BLOCK),
        (ScopeMode.ASK, ScopeAction.ASK_USER),
        (ScopeMode.PERMISSIVE, ScopeAction.ALLOW),
    ],
)
def test_outside_allowed_depends_on_mode(mode: ScopeMode, action: ScopeAction) -> None:
    assert check_file_change("README.md", SCOPE, mode).action is action


def test_permissive_mode_warns_about_outside_files() -> None:
    decision = check_file_change("README.md", SCOPE, ScopeMode.PERMISSIVE)

    assert decision.warnings == ("README.md is outside allowed scope (permissive mode)",)


def test_ask_before_asks_unless_permissive() -> None:
    assert check_file_change("src/config.py", SCOPE, ScopeMode.STRICT).action is (
        ScopeAction.ASK_USER
    )
    assert check_file_change("src/config.py", SCOPE, ScopeMode.PERMISSIVE).action is (
        ScopeAction.ALLOW
    )


def test_empty_allowed_list_allows_everything_not_forbidden() -> None:
    scope = TaskScope(forbidden=(".env",))

    assert check_file_change("anything/at/all.py", scope, ScopeMode.STRICT).action is (
        ScopeAction.ALLOW
    )


def test_guard_batch_block_wins_over_ask() -> None:
    guard = ScopeGuard(SCOPE, ScopeMode.ASK)

    decision = guard.validate(
        [FileChange("src/app.py"), FileChange("README.md"), FileChange(".env")],
    )

    assert decision.action is ScopeAction.BLOCK
    assert decision.files == (".env",)


def test_guard_collects_files_needing_approval() -> None:
    guard = ScopeGuard(SCOPE, ScopeMode.ASK)

    decision = guard.validate([FileChange("README.md"), FileChange("src/config.py")])

    assert decision.action is ScopeAction.ASK_USER
    assert decision.files == ("README.md", "src/config.py")
    assert decision.reason == "2 file(s) require approval"


def test_guard_approval_is_idempotent_and_sticky() -> None:
    guard = ScopeGuard(SCOPE, ScopeMode.ASK)

    guard.approve(["README.md"])
    guard.approve(["./README.md"])

    assert guard.is_approved("README.md")
    assert guard.validate([FileChange("README.md")]).action is ScopeAction.ALLOW
    assert guard.validate([FileChange("CHANGELOG.md")]).action is ScopeAction.ASK_USER


def test_changes_to_revert_lists_only_blocked_files() -> None:
    guard = ScopeGuard(SCOPE, ScopeMode.STRICT)
    changes = [FileChange("src/app.py"), FileChange("README.md"), FileChange(".env", "added")]

    assert guard.changes_to_revert(changes) == [
        FileChange("README.md"),
        FileChange(".env", "added"),
    ]


def test_violation_report_lists_violations_and_scope() -> None:
    guard = ScopeGuard(SCOPE, ScopeMode.STRICT)

    report = guard.violation_report([FileChange("src/app.py"), FileChange(".env", "added")])

    assert report.startswith("## Scope Violations Detected")
    assert "- **.env** (added)" in report
    assert "  - Action: BLOCK" in report
    assert "- Forbidden: .env, src/secrets/**" in report
    assert "- Mode: strict" in report
    assert "src/app.py" not in report.split("### Scope Configuration")[0]
    assert guard.violation_report([FileChange("src/app.py")]) == ""
