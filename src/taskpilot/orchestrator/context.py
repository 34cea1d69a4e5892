"""Load project, role, task, plan and skill context from a `.ai` directory."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from taskpilot.orchestrator.models import BlockedStatus, ContextBreakdown, ResumeAttempt, TaskScope

logger = logging.getLogger(__name__)

AI_DIR_NAME = ".ai"
DEFAULT_ROLE = "developer"
TASK_TYPES = ("component", "refactor", "test", "docs", "architecture", "bugfix")
CHARS_PER_TOKEN = 4

_STATUS_BLOCKED = re.compile(
    r"## Status:\s*BLOCKED\n(.*?)(?=\n## [^#]|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_EXECUTION_LOG = re.compile(r"### Execution Log\n(.*?)(?=\n### |\Z)", re.IGNORECASE | re.DOTALL)
_ITERATIONS = re.compile(r"\*\*Iterations:\*\*\s*(\d+)", re.IGNORECASE)
_STARTED = re.compile(r"\*\*Started:\*\*\s*(.+)", re.IGNORECASE)
_BLOCKED_AT = re.compile(r"\*\*Blocked at:\*\*\s*(.+)", re.IGNORECASE)
_BLOCKING_ISSUE = re.compile(r"### Blocking Issue\n```\n?(.*?)```", re.IGNORECASE | re.DOTALL)
_FILES_MODIFIED = re.compile(
    r"### Files Modified\n(.*?)(?=\n---|\n### |\Z)",
    re.IGNORECASE | re.DOTALL,
)
_FILE_ENTRY = re.compile(r"-\s*`([^`]+)`")
_RESUME_HISTORY = re.compile(
    r"### Resume Attempt History\n(.*?)(?=\n### |\Z)",
    re.IGNORECASE | re.DOTALL,
)
_RESUMED_AT = re.compile(r"\*\*Resumed at:\*\*\s*(.+)", re.IGNORECASE)
_ATTEMPT_STATUS = re.compile(r"\*\*Status:\*\*\s*(.+)", re.IGNORECASE)
_ATTEMPT_ITERATIONS = re.compile(r"\*\*Iterations in this attempt:\*\*\s*(\d+)", re.IGNORECASE)
_ATTEMPT_COMPLETED = re.compile(r"\*\*Completed at:\*\*\s*(.+)", re.IGNORECASE)
_FRONTMATTER = re.compile(r"^---\n(.*?)\n---\n(.*)\Z", re.DOTALL)


class ContextLoadError(RuntimeError):
    """Raised when a required context file is missing or unreadable."""


@dataclass(slots=True)
class ParsedTask:
    file_path: Path
    goal: str
    task_type: str
    suggested_roles: list[str]
    scope: TaskScope
    requirements: str
    definition_of_done: list[str]
    raw: str
    notes: str | None = None
    blocked_status: BlockedStatus | None = None


@dataclass(slots=True)
class ParsedRole:
    name: str
    identity: str
    expertise: list[str]
    constraints: list[str]
    raw: str


@dataclass(slots=True)
class LoadedSkill:
    name: str
    description: str
    path: Path
    content: str
    tags: tuple[str, ...] = ()

    @property
    def body(self) -> str:
        match = _FRONTMATTER.match(self.content)
        return match.group(2).strip() if match else self.content


@dataclass(slots=True)
class LoadedContext:
    """Everything the prompt builders need for one task."""

    agents: str
    role: ParsedRole
    task: ParsedTask
    plan: str | None = None
    skills: list[LoadedSkill] = field(default_factory=list)


def find_project_root(start: Path) -> Path | None:
    """Walk up from ``start`` to the first directory holding ``.ai/AGENTS.md``."""

    current = start.resolve()
    if current.is_file():
        current = current.parent
    for candidate in (current, *current.parents):
        if (candidate / AI_DIR_NAME / "AGENTS.md").is_file():
            return candidate
    return None


class ContextLoader:
    """Read and parse the markdown files under a project's `.ai` directory."""

    def __init__(self, project_root: Path, *, load_skills: bool = True) -> None:
        self.project_root = project_root
        self.ai_dir = project_root / AI_DIR_NAME
        self.load_skills = load_skills

    def load_context(self, task_path: Path) -> LoadedContext:
        task = self.parse_task(task_path)
        role_name = task.suggested_roles[0] if task.suggested_roles else DEFAULT_ROLE
        return LoadedContext(
            agents=self.read_agents(),
            role=self.parse_role(role_name),
            task=task,
            plan=self.load_plan(),
            skills=self.discover_skills() if self.load_skills else [],
        )

    def parse_task(self, task_path: Path) -> ParsedTask:
        if not task_path.is_file():
            raise ContextLoadError(f"Task file not found: {task_path}")
        content = _read_markdown(task_path)
        return ParsedTask(
            file_path=task_path,
            goal=extract_section(content, "Goal"),
            task_type=_extract_task_type(content),
            suggested_roles=extract_list(content, "Suggested Roles"),
            scope=extract_scope(content),
            requirements=extract_section(content, "Requirements"),
            definition_of_done=_extract_checklist(content, "Definition of Done"),
            raw=content,
            notes=extract_section(content, "Notes") or None,
            blocked_status=parse_blocked_status(content),
        )

    def parse_role(self, role_name: str) -> ParsedRole:
        role_path = self.ai_dir / "roles" / f"{role_name}.md"
        if not role_path.is_file():
            raise ContextLoadError(
                f"Role file not found: {role_path}. "
                f"Available roles are in {self.ai_dir / 'roles'}",
            )
        content = _read_markdown(role_path)
        return ParsedRole(
            name=role_name,
            identity=extract_section(content, "Identity"),
            expertise=extract_list(content, "Expertise"),
            constraints=extract_list(content, "Constraints"),
            raw=content,
        )

    def read_agents(self) -> str:
        agents_path = self.ai_dir / "AGENTS.md"
        if not agents_path.is_file():
            raise ContextLoadError(f"AGENTS.md not found at {agents_path}")
        return _read_markdown(agents_path)

    def load_plan(self) -> str | None:
        plan_path = self.ai_dir / "IMPLEMENTATION_PLAN.md"
        if not plan_path.is_file():
            return None
        return _read_markdown(plan_path)

    def discover_skills(self) -> list[LoadedSkill]:
        skills_dir = self.ai_dir / "skills"
        if not skills_dir.is_dir():
            return []
        skills: list[LoadedSkill] = []
        for skill_path in sorted(skills_dir.glob("*/SKILL.md")):
            content = _read_markdown(skill_path)
            metadata = _parse_frontmatter(content, skill_path)
            tags = metadata.get("tags") or ()
            skills.append(
                LoadedSkill(
                    name=str(metadata.get("name") or skill_path.parent.name),
                    description=str(metadata.get("description") or ""),
                    path=skill_path,
                    content=content,
                    tags=tuple(str(tag) for tag in tags),
                ),
            )
        return skills


def load_context(task_path: Path, *, load_skills: bool = True) -> LoadedContext:
    """Locate the project root from the task path (or cwd) and load its context."""

    project_root = find_project_root(task_path.parent) or find_project_root(Path.cwd())
    if project_root is None:
        raise ContextLoadError(f"No {AI_DIR_NAME}/AGENTS.md found above {task_path}")
    return ContextLoader(project_root, load_skills=load_skills).load_context(task_path)


def estimate_context_size(context: LoadedContext) -> ContextBreakdown:
    """Rough token estimate per context part at four characters per token."""

    return ContextBreakdown(
        agents=_tokens(context.agents),
        role=_tokens(context.role.raw),
        task=_tokens(context.task.raw),
        plan=_tokens(context.plan or ""),
        skills=sum(_tokens(skill.content) for skill in context.skills),
    )


def parse_blocked_status(content: str) -> BlockedStatus | None:
    """Parse a persisted BLOCKED section; return None when the task is not blocked."""

    status_match = _STATUS_BLOCKED.search(content)
    if status_match is None:
        return None
    section = status_match.group(1)

    log_match = _EXECUTION_LOG.search(section)
    if log_match is None:
        return None
    execution_log = log_match.group(1)

    iterations = _ITERATIONS.search(execution_log)
    started = _STARTED.search(execution_log)
    blocked_at = _BLOCKED_AT.search(execution_log)
    issue = _BLOCKING_ISSUE.search(section)

    files: list[str] = []
    files_match = _FILES_MODIFIED.search(section)
    if files_match is not None:
        for line in files_match.group(1).splitlines():
            entry = _FILE_ENTRY.search(line)
            if entry is not None:
                files.append(entry.group(1))

    history: list[ResumeAttempt] = []
    history_match = _RESUME_HISTORY.search(section)
    if history_match is not None:
        history.extend(_parse_attempts(history_match.group(1)))

    return BlockedStatus(
        previous_iteration=int(iterations.group(1)) if iterations else 0,
        files_modified=tuple(files),
        blocking_issue=issue.group(1).strip() if issue else "",
        started_at=started.group(1).strip() if started else "",
        blocked_at=blocked_at.group(1).strip() if blocked_at else "",
        attempt_history=tuple(history),
    )


def _parse_attempts(history: str) -> list[ResumeAttempt]:
    """Split the history into entries, each starting at its "Resumed at" line."""

    starts = list(_RESUMED_AT.finditer(history))
    attempts: list[ResumeAttempt] = []
    for index, resumed in enumerate(starts):
        end = starts[index + 1].start() if index + 1 < len(starts) else len(history)
        entry = history[resumed.end() : end]
        status = _ATTEMPT_STATUS.search(entry)
        iterations = _ATTEMPT_ITERATIONS.search(entry)
        completed = _ATTEMPT_COMPLETED.search(entry)
        attempts.append(
            ResumeAttempt(
                resumed_at=resumed.group(1).strip(),
                status=status.group(1).strip() if status else "resumed",
                iterations=int(iterations.group(1)) if iterations else 0,
                completed_at=completed.group(1).strip() if completed else None,
            ),
        )
    return attempts


def extract_section(content: str, name: str) -> str:
    pattern = re.compile(rf"## {re.escape(name)}\n(.*?)(?=\n## |\Z)", re.IGNORECASE | re.DOTALL)
    match = pattern.search(content)
    return match.group(1).strip() if match else ""


def extract_list(content: str, name: str) -> list[str]:
    return _list_items(extract_section(content, name))


def extract_scope(content: str) -> TaskScope:
    section = extract_section(content, "Scope")

    def paths(subsection: str) -> tuple[str, ...]:
        pattern = re.compile(
            rf"### {subsection}\n(.*?)(?=\n### |\Z)",
            re.IGNORECASE | re.DOTALL,
        )
        match = pattern.search(section)
        if match is None:
            return ()
        return tuple(item.replace("`", "").strip() for item in _list_items(match.group(1)))

    return TaskScope(
        allowed=paths("Allowed"),
        forbidden=paths("Forbidden"),
        ask_before=paths("Ask Before"),
    )


def _list_items(text: str) -> list[str]:
    return [
        re.sub(r"^-\s*", "", line.strip()).strip()
        for line in text.splitlines()
        if line.strip().startswith("-")
    ]


def _extract_checklist(content: str, name: str) -> list[str]:
    checklist = re.compile(r"^-\s*\[[ x]\]\s*", re.IGNORECASE)
    return [
        checklist.sub("", line.strip()).strip()
        for line in extract_section(content, name).splitlines()
        if checklist.match(line.strip())
    ]


def _extract_task_type(content: str) -> str:
    value = extract_section(content, "Task Type").strip().lower()
    return value if value in TASK_TYPES else "component"


def _parse_frontmatter(content: str, path: Path) -> dict[str, object]:
    match = _FRONTMATTER.match(content)
    if match is None:
        return {}
    try:
        parsed = yaml.safe_load(match.group(1))
    except yaml.YAMLError as error:
        logger.warning("Ignoring malformed skill frontmatter in %s: %s", path, error)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _read_markdown(path: Path) -> str:
    return path.read_text("utf-8").replace("\r\n", "\n")


def _tokens(text: str) -> int:
    return len(text) // CHARS_PER_TOKEN
