"""Markdown context briefs injected into goal and task turns."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from agent_bridge.models import TaskView, WorkStatus
from agent_bridge.repository import StateRepository

TASK_OUTPUT_INSTRUCTIONS = """
## Output Format (REQUIRED)

When you complete this task, you MUST include the following in your final message:

### SUMMARY
Provide a clear summary of what you accomplished:
```
SUMMARY: [2-5 sentences describing:
- What was implemented/changed
- Key files created or modified
- Any important decisions made
- Gotchas or things to note]
```

### INSIGHTS
Record any decisions, discoveries, or context that future tasks should know:
```
INSIGHT: key = value
```

### Examples of Good Output

SUMMARY: Implemented user authentication using Clerk. Created auth middleware
in src/middleware.ts that protects /api/* and /dashboard/* routes. Added
sign-in page at /login using Clerk's pre-built components. Note: Clerk
webhook endpoint needs to be configured in the Clerk dashboard for user sync.

INSIGHT: auth_provider = Clerk
INSIGHT: protected_routes = /api/*, /dashboard/*
INSIGHT: auth_middleware = src/middleware.ts
INSIGHT: requires_setup = Clerk webhook configuration

### Examples of Bad Output (DON'T DO THIS)

❌ "Done"
❌ "Finished the task"
❌ "Auth is working now"
❌ Summary without specific details
❌ No INSIGHT entries when decisions were made
"""

_RESULT_PREVIEW_CHARS = 150
_MIN_SUMMARY_CHARS = 50

_TASK_SUMMARY_INSIGHT = re.compile(r"INSIGHT:\s*\w+\s*=\s*.+")
_GOAL_SUMMARY_INSIGHT = re.compile(r"INSIGHT:.*$", re.MULTILINE)
_SUMMARY_LABEL = re.compile(r"SUMMARY:\s*")
_VALIDATE_SUMMARY = re.compile(r"SUMMARY:\s*([\s\S]+?)(?=\n\n|INSIGHT:|\Z)", re.IGNORECASE)
_LOW_EFFORT = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"done\.?",
        r"finished\.?",
        r"completed\.?",
        r"finished the task\.?",
        r"task completed\.?",
        r"it'?s? working\.?",
        r"working now\.?",
    )
)


@dataclass(slots=True)
class OutputValidation:
    valid: bool
    issues: list[str] = field(default_factory=list)


def status_icon(status: WorkStatus) -> str:
    if status is WorkStatus.DONE:
        return "✅"
    if status in (WorkStatus.IN_PROGRESS, WorkStatus.ONGOING):
        return "🔄"
    return "⬜"


def build_task_brief(reader: StateRepository, task_id: str) -> str:
    """Brief for one task: its goal, siblings, prior results and insights.

    Raises TaskNotFoundError/GoalNotFoundError, or LookupError when the task
    is not attached to a goal.
    """

    task = reader.require_task(task_id)
    if not task.goal_id:
        raise LookupError(f"Task {task_id} has no associated goal")
    goal = reader.require_goal(task.goal_id)
    goal_tasks = reader.list_tasks(goal_id=goal.goal_id)
    memories = reader.list_memories(goal.goal_id)

    done_count = sum(1 for item in goal_tasks if item.status is WorkStatus.DONE)
    total = len(goal_tasks)

    parts: list[str] = [f"## Goal: {goal.name}", goal.description, ""]
    if goal.context:
        parts.extend([f"User notes: {goal.context}", ""])

    parts.extend([f"## Your Current Task: {task.title}", task.description, ""])
    if task.relevant_files:
        parts.append("### Relevant Files for This Task")
        parts.extend(f"- {path}" for path in task.relevant_files)
        parts.append("")

    parts.append(f"## All Tasks in This Goal ({done_count}/{total} done)")
    for index, item in enumerate(goal_tasks, start=1):
        current = item.task_id == task_id
        marker = "→ " if current else "  "
        here = " ← YOU ARE HERE" if current else ""
        parts.append(f"{marker}{index}. {status_icon(item.status)} {item.title}{here}")
    parts.append("")

    parts.extend([f"## Progress: {done_count}/{total} tasks done", ""])

    parts.append("## Completed Work")
    completed = [item for item in goal_tasks if item.status is WorkStatus.DONE and item.summary]
    if completed:
        parts.extend(f"- {item.title}: {_clean_task_summary(item)}" for item in completed)
    else:
        parts.append("No tasks completed yet.")
    parts.append("")

    parts.append("## What We Know (Insights)")
    if memories:
        parts.extend(f"- {memory.key}: {memory.value}" for memory in memories)
    else:
        parts.append("No insights recorded yet.")
    parts.append("")

    parts.extend(
        [
            "## Understanding Your Task",
            "",
            "You are working on ONE task within a larger goal. Keep in mind:",
            "- Your work may be used by subsequent tasks",
            "- Previous tasks may have set up things you can use",
            "- Record any decisions that future tasks need to know",
            "",
            "## Output Instructions",
            "When you complete this task:",
            "",
            "1. Summarize what you did:",
            "SUMMARY: [2-5 sentences describing what was accomplished]",
            "",
            "2. Record any decisions or insights (IMPORTANT for future tasks):",
            "INSIGHT: key = value",
            "",
            "Examples:",
            "INSIGHT: auth_provider = Clerk",
            "INSIGHT: database = PostgreSQL with Drizzle",
            "INSIGHT: api_pattern = REST with /api/v1 prefix",
            "INSIGHT: test_framework = Vitest",
        ],
    )
    return "\n".join(parts)


def build_goal_brief(reader: StateRepository, goal_id: str) -> str:
    """Orchestration brief: the agent plans and runs every remaining task."""

    goal = reader.require_goal(goal_id)
    goal_tasks = reader.list_tasks(goal_id=goal_id)
    memories = reader.list_memories(goal_id)

    todo_count = sum(1 for item in goal_tasks if item.status is WorkStatus.TODO)
    done_count = sum(1 for item in goal_tasks if item.status is WorkStatus.DONE)

    parts: list[str] = [f"# Goal: {goal.name}", "", goal.description, ""]
    if goal.context:
        parts.extend(["## User Context", goal.context, ""])
    if goal.workspace_path:
        parts.extend(["## Workspace", f"Working directory: {goal.workspace_path}", ""])
    if goal.relevant_files:
        parts.extend(["## Relevant Files", "These files are important for this goal:"])
        parts.extend(f"- {path}" for path in goal.relevant_files)
        parts.append("")

    parts.extend([f"## Tasks Overview ({done_count}/{len(goal_tasks)} complete)", ""])
    for index, item in enumerate(goal_tasks, start=1):
        parts.append(
            f"{index}. {status_icon(item.status)} **{item.title}** [{item.status.value}]",
        )
        parts.append(f"   {item.description}")
        if item.status is WorkStatus.DONE and item.summary:
            clean = _SUMMARY_LABEL.sub("", _GOAL_SUMMARY_INSIGHT.sub("", item.summary)).strip()
            ellipsis = "..." if len(clean) > _RESULT_PREVIEW_CHARS else ""
            parts.append(f"   → Result: {clean[:_RESULT_PREVIEW_CHARS]}{ellipsis}")
        parts.append("")

    if memories:
        parts.append("## Insights (from completed work)")
        parts.extend(f"- **{memory.key}**: {memory.value}" for memory in memories)
        parts.append("")

    parts.extend(
        [
            "## Your Job: Execute This Goal",
            "",
            "You are the orchestrator. Analyze all tasks and execute them efficiently.",
            "",
            "### Execution Strategy",
            "",
            "1. **Analyze dependencies**: Which tasks depend on others? Which are independent?",
            "",
            "2. **Sequential tasks**: If task B needs task A's output → do A first, then B.",
            "",
            "3. **Parallel tasks**: If tasks are independent (don't share files, no dependencies):",
            "   - Use the `task` tool to spawn sub-agents",
            "   - Maximum 3 parallel tasks at once",
            "   - Each runs in isolation, reports back when done",
            "",
            "4. **After each task completes**, report:",
            "   ```",
            "   TASK_DONE: <task number>",
            "   SUMMARY: <what was accomplished>",
            "   INSIGHT: <key> = <value>  (any decisions/learnings)",
            "   ```",
            "",
            "### Conflict Check (before parallelizing)",
            "- Do tasks touch the same files? → Sequential",
            "- Does one need output from another? → Sequential",
            "- Completely independent? → Can parallelize",
            "",
            "### Begin",
            "",
            f"Analyze the {todo_count} remaining tasks. "
            "State your execution plan, then start working.",
        ],
    )
    return "\n".join(parts)


def wrap_prompt_with_instructions(task_prompt: str) -> str:
    return f"{task_prompt}\n\n{TASK_OUTPUT_INSTRUCTIONS}"


def validate_output(output: str) -> OutputValidation:
    """Check that agent output carries a substantive SUMMARY block."""

    issues: list[str] = []
    match = _VALIDATE_SUMMARY.search(output)
    if match is None:
        issues.append("Missing SUMMARY block")
    else:
        content = match.group(1).strip()
        if len(content) <= _MIN_SUMMARY_CHARS:
            issues.append(f"SUMMARY too short ({len(content)} chars, need >50)")
        if any(pattern.fullmatch(content) for pattern in _LOW_EFFORT):
            issues.append("SUMMARY contains low-effort content without specific details")
    return OutputValidation(valid=not issues, issues=issues)


def _clean_task_summary(task: TaskView) -> str:
    text = _SUMMARY_LABEL.sub("", _TASK_SUMMARY_INSIGHT.sub("", task.summary or "")).strip()
    return text or "Completed"
