"""Parse SUMMARY/INSIGHT blocks from agent output and record task completion."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from agent_bridge.models import InsightSource, TaskCompletionWrite, TaskView
from agent_bridge.repository import StateRepository

logger = logging.getLogger(__name__)

_SUMMARY_BLOCK = re.compile(
    r"(?i:SUMMARY):[ \t]*(.*?)(?=^[A-Z][A-Z_]*:|\Z)",
    re.DOTALL | re.MULTILINE,
)
_INSIGHT = re.compile(
    r"INSIGHT:\s*([^=\n]+?)\s*=\s*(.+?)(?=INSIGHT:|$)",
    re.MULTILINE | re.IGNORECASE,
)
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_MIN_FALLBACK_CHARS = 50


@dataclass(slots=True)
class ParsedOutput:
    summary: str
    insights: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CompletionResult:
    """Recorded completion and whether it closed the parent goal."""

    task: TaskView
    summary: str
    insights: dict[str, str]
    goal_completed: bool


def extract_summary(text: str) -> str:
    """SUMMARY block up to the next all-caps label line, else the last long paragraph."""

    match = _SUMMARY_BLOCK.search(text)
    if match is not None:
        summary = match.group(1).strip()
        if summary:
            return summary
    paragraphs = [
        paragraph.strip()
        for paragraph in _PARAGRAPH_BREAK.split(text)
        if len(paragraph.strip()) > _MIN_FALLBACK_CHARS
        and not paragraph.strip().startswith("INSIGHT:")
    ]
    return paragraphs[-1] if paragraphs else ""


def extract_insights(text: str) -> dict[str, str]:
    """Every `INSIGHT: key = value` in order; a repeated key keeps the last value."""

    insights: dict[str, str] = {}
    for match in _INSIGHT.finditer(text):
        key = match.group(1).strip()
        value = match.group(2).strip()
        if key and value:
            insights[key] = value
    return insights


def parse_agent_output(text: str) -> ParsedOutput:
    return ParsedOutput(summary=extract_summary(text), insights=extract_insights(text))


class CompletionRecorder:
    """Turns a finished task turn's output into persisted task/goal state."""

    def __init__(self, repository: StateRepository) -> None:
        self.repository = repository

    def record(
        self,
        task_id: str,
        output: str,
        *,
        source: InsightSource = InsightSource.AGENT,
    ) -> CompletionResult:
        parsed = parse_agent_output(output)
        outcome = self.repository.complete_task(
            TaskCompletionWrite(
                task_id=task_id,
                summary=parsed.summary or None,
                insights=parsed.insights,
                source=source,
            ),
        )
        logger.info(
            "Task %s completed with %d insight(s); goal completed: %s",
            task_id,
            len(parsed.insights),
            outcome.goal_completed,
        )
        return CompletionResult(
            task=outcome.task,
            summary=parsed.summary,
            insights=parsed.insights,
            goal_completed=outcome.goal_completed,
        )
