"""Scope guard classifying agent file changes against a task's path patterns."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from functools import lru_cache

from taskpilot.orchestrator.models import (
    FileChange,
    ScopeAction,
    ScopeDecision,
    ScopeMode,
    TaskScope,
)

logger = logging.getLogger(__name__)

_REASON_FORBIDDEN = "File is in forbidden scope"
_REASON_ASK_BEFORE = "File requires approval before modification"
_REASON_OUTSIDE = "File is outside allowed scope"


def normalize_path(value: str) -> str:
    """Strip a leading ``./`` and normalize separators."""

    normalized = value.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


@lru_cache(maxsize=512)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    """Translate a path glob where ``*`` stays inside one segment and ``**`` spans many."""

    parts: list[str] = []
    index = 0
    length = len(pattern)
    while index < length:
        char = pattern[index]
        if char == "*":
            if pattern.startswith("**", index):
                index += 2
                if pattern.startswith("/", index):
                    index += 1
                    parts.append("(?:.*/)?")
                else:
                    parts.append(".*")
                continue
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        elif char == "[":
            closing = pattern.find("]", index + 1)
            if closing == -1:
                parts.append(re.escape(char))
            else:
                body = pattern[index + 1 : closing]
                if body.startswith("!"):
                    body = "^" + body[1:]
                parts.append(f"[{body}]")
                index = closing
        elif char == "{":
            closing = pattern.find("}", index + 1)
            if closing == -1:
                parts.append(re.escape(char))
            else:
                options = pattern[index + 1 : closing].split(",")
                parts.append("(?:" + "|".join(re.escape(option) for option in options) + ")")
                index = closing
        else:
            parts.append(re.escape(char))
        index += 1
    return re.compile("".join(parts) + r"\Z")


def glob_match(path: str, pattern: str) -> bool:
    return _compile_glob(pattern).match(path) is not None


def matches_pattern(file_path: str, patterns: Iterable[str]) -> bool:
    """Return True when the path matches any pattern, directory patterns included."""

    path = normalize_path(file_path)
    for raw_pattern in patterns:
        pattern = normalize_path(raw_pattern)
        if not pattern:
            continue
        if glob_match(path, pattern):
            return True
        if ("*" not in pattern or pattern.endswith("**")) and glob_match(path, f"{pattern}/**"):
            return True
        base_dir = re.sub(r"/?\*\*.*$", "", pattern)
        if (
            base_dir
            and "*." not in pattern
            and (path == base_dir or path.startswith(f"{base_dir}/"))
        ):
            return True
    return False


def check_file_change(path: str, scope: TaskScope, mode: ScopeMode) -> ScopeDecision:
    """Classify a single file change."""

    if scope.forbidden and matches_pattern(path, scope.forbidden):
        return ScopeDecision(action=ScopeAction.BLOCK, reason=_REASON_FORBIDDEN, files=(path,))

    if scope.ask_before and matches_pattern(path, scope.ask_before):
        if mode is ScopeMode.PERMISSIVE:
            return ScopeDecision(action=ScopeAction.ALLOW)
        return ScopeDecision(action=ScopeAction.ASK_USER, reason=_REASON_ASK_BEFORE, files=(path,))

    if scope.allowed and not matches_pattern(path, scope.allowed):
        if mode is ScopeMode.STRICT:
            return ScopeDecision(action=ScopeAction.BLOCK, reason=_REASON_OUTSIDE, files=(path,))
        if mode is ScopeMode.ASK:
            return ScopeDecision(
                action=ScopeAction.ASK_USER,
                reason=_REASON_OUTSIDE,
                files=(path,),
            )
        return ScopeDecision(
            action=ScopeAction.ALLOW,
            reason=_REASON_OUTSIDE,
            warnings=(f"{path} is outside allowed scope (permissive mode)",),
        )

    return ScopeDecision(action=ScopeAction.ALLOW)


class ScopeGuard:
    """Batch scope checks with a per-run approval whitelist."""

    def __init__(self, scope: TaskScope, mode: ScopeMode) -> None:
        self.scope = scope
        self.mode = mode
        self._approved: set[str] = set()

    def validate(self, changes: Iterable[FileChange]) -> ScopeDecision:
        """Return one decision for the whole batch; any BLOCK wins over ASK_USER."""

        blocked: list[str] = []
        needs_approval: list[str] = []
        warnings: list[str] = []
        for change in changes:
            if self.is_approved(change.path):
                continue
            decision = check_file_change(change.path, self.scope, self.mode)
            warnings.extend(decision.warnings)
            if decision.action is ScopeAction.BLOCK:
                blocked.extend(decision.files)
            elif decision.action is ScopeAction.ASK_USER:
                needs_approval.extend(decision.files)

        for warning in warnings:
            logger.warning("Scope warning: %s", warning)

        if blocked:
            return ScopeDecision(
                action=ScopeAction.BLOCK,
                reason=f"{len(blocked)} file(s) in forbidden or outside allowed scope",
                files=tuple(blocked),
                warnings=tuple(warnings),
            )
        if needs_approval:
            return ScopeDecision(
                action=ScopeAction.ASK_USER,
                reason=f"{len(needs_approval)} file(s) require approval",
                files=tuple(needs_approval),
                warnings=tuple(warnings),
            )
        return ScopeDecision(action=ScopeAction.ALLOW, warnings=tuple(warnings))

    def approve(self, files: Iterable[str]) -> None:
        self._approved.update(normalize_path(path) for path in files)

    def is_approved(self, path: str) -> bool:
        return normalize_path(path) in self._approved

    def changes_to_revert(self, changes: Iterable[FileChange]) -> list[FileChange]:
        return [
            change
            for change in changes
            if not self.is_approved(change.path)
            and check_file_change(change.path, self.scope, self.mode).action is ScopeAction.BLOCK
        ]

    def violation_report(self, changes: Iterable[FileChange]) -> str:
        """Render a markdown report of changes that are not plainly allowed."""

        lines: list[str] = []
        for change in changes:
            decision = check_file_change(change.path, self.scope, self.mode)
            if decision.action is ScopeAction.ALLOW:
                continue
            lines.append(f"- **{change.path}** ({change.change_type})")
            lines.append(f"  - Action: {decision.action.value}")
            lines.append(f"  - Reason: {decision.reason}")
        if not lines:
            return ""

        report = ["## Scope Violations Detected", "", *lines, "", "### Scope Configuration"]
        report.append(f"- Allowed: {', '.join(self.scope.allowed) or 'none'}")
        report.append(f"- Forbidden: {', '.join(self.scope.forbidden) or 'none'}")
        if self.scope.ask_before:
            report.append(f"- Ask Before: {', '.join(self.scope.ask_before)}")
        report.append(f"- Mode: {self.mode.value}")
        return "\n".join(report) + "\n"
