"""Keyword-based task classification.

Maps a free-text prompt to a TaskType, and a TaskType to the capability
tags a model must carry to serve it. Rules are checked in order; the first
matching rule wins.
"""

from __future__ import annotations

import re
from enum import StrEnum

LONG_CONTEXT_THRESHOLD = 100_000


class TaskType(StrEnum):
    """Kinds of task the router knows how to place."""

    CODING = "coding"
    DEBUGGING = "debugging"
    ANALYSIS = "analysis"
    CREATIVE = "creative"
    MATHEMATICAL = "mathematical"
    REASONING = "reasoning"
    VISION = "vision"
    GENERAL = "general"


_RULES: list[tuple[TaskType, re.Pattern[str]]] = [
    (TaskType.DEBUGGING, re.compile(r"\b(debug\w*|stack ?trace|traceback|exception|bug)\b")),
    (TaskType.CODING, re.compile(r"\b(code|coding|function|refactor|implement\w*|class|api)\b")),
    (TaskType.VISION, re.compile(r"\b(image|screenshot|diagram|photo|picture)\b")),
    (TaskType.MATHEMATICAL, re.compile(r"\b(math\w*|calculate|equation|solve|integral|proof)\b")),
    (TaskType.ANALYSIS, re.compile(r"\b(analy[sz]\w*|research|compare|evaluate)\b")),
    (TaskType.CREATIVE, re.compile(r"\b(creative|story|poem|write|essay)\b")),
    (TaskType.REASONING, re.compile(r"\b(why|reason\w*|explain|plan)\b")),
]

_TASK_CAPABILITIES: dict[TaskType, frozenset[str]] = {
    TaskType.CODING: frozenset({"coding"}),
    TaskType.DEBUGGING: frozenset({"coding"}),
    TaskType.VISION: frozenset({"vision"}),
    TaskType.MATHEMATICAL: frozenset({"reasoning"}),
    TaskType.REASONING: frozenset({"reasoning"}),
}


def classify_task(prompt: str) -> TaskType:
    """Classify a prompt by keyword heuristics.

    Args:
        prompt: Free-text request

    Returns:
        The first TaskType whose keywords appear, else GENERAL
    """
    lower = prompt.lower()
    for task_type, pattern in _RULES:
        if pattern.search(lower):
            return task_type
    return TaskType.GENERAL


def required_capabilities(task_type: TaskType | str, context_length: int = 0) -> frozenset[str]:
    """Capability tags implied by a task type.

    Analysis over very long inputs additionally needs a long-context model.
    """
    task_type = TaskType(task_type)
    caps = _TASK_CAPABILITIES.get(task_type, frozenset())
    if task_type == TaskType.ANALYSIS and context_length > LONG_CONTEXT_THRESHOLD:
        caps = caps | {"long-context"}
    return caps
