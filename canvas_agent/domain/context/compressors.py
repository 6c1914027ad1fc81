"""Category-aware compression for context chunks.

Each category knows what matters in its own content: domain state keeps
counts, history keeps the latest operations, skills keep their headers.
Anything unknown falls back to plain truncation at ``summary`` and a token
marker at ``minimal``. ``count_only`` is the floor shared by every category.
"""

import re
from typing import Callable, Dict, List

from .tokens import estimate_tokens


SUMMARY_DOMAIN_LINES = 8
SUMMARY_WORKING_SET_LINES = 10
SUMMARY_HISTORY_OPERATIONS = 5
MINIMAL_SKILL_NAMES = 3

_COUNT_PATTERN = re.compile(r"(\d+)\s+(elements?|items?|nodes?|objects?)", re.IGNORECASE)
_OPEN_TASK_PATTERN = re.compile(r"\[(pending|in_progress|blocked)\]", re.IGNORECASE)


def _lines(content: str) -> List[str]:
    return [line for line in content.splitlines() if line.strip()]


def _is_header(line: str) -> bool:
    return line.lstrip().startswith("#")


def _is_item(line: str) -> bool:
    return line.lstrip().startswith(("-", "*"))


# Summary level

def _summarize_domain_state(content: str) -> str:
    lines = _lines(content)
    if len(lines) <= SUMMARY_DOMAIN_LINES:
        return "\n".join(lines)
    return "\n".join(lines[:SUMMARY_DOMAIN_LINES]) + f"\n... ({len(lines) - SUMMARY_DOMAIN_LINES} more lines)"


def _summarize_working_set(content: str) -> str:
    lines = _lines(content)
    if len(lines) <= SUMMARY_WORKING_SET_LINES:
        return "\n".join(lines)
    hidden = len(lines) - SUMMARY_WORKING_SET_LINES
    return "\n".join(lines[:SUMMARY_WORKING_SET_LINES]) + f"\n... ({hidden} more)"


def _summarize_history(content: str) -> str:
    operations = [line for line in _lines(content) if not _is_header(line)]
    recent = operations[-SUMMARY_HISTORY_OPERATIONS:]
    return "Recent operations:\n" + "\n".join(recent)


def _summarize_skills(content: str) -> str:
    headers = [line.strip() for line in _lines(content) if _is_header(line)]
    return "\n".join(headers) if headers else content[: len(content) // 2] + "..."


def _summarize_task(content: str) -> str:
    kept = [line for line in _lines(content) if not _is_item(line) or _OPEN_TASK_PATTERN.search(line)]
    return "\n".join(kept)


def _summarize_corrections(content: str) -> str:
    bullets = [line for line in _lines(content) if _is_item(line)]
    return "Corrections:\n" + "\n".join(bullets)


def _summarize_default(content: str) -> str:
    return content[: len(content) // 2] + "..."


# Minimal level

def _minimize_domain_state(content: str) -> str:
    counts = _COUNT_PATTERN.findall(content)
    if counts:
        total = sum(int(number) for number, _ in counts)
        return f"Domain state: {total} elements"
    return f"Domain state: {len(_lines(content))} lines summarized"


def _minimize_working_set(content: str) -> str:
    items = [line for line in _lines(content) if _is_item(line)]
    return f"Working set: {len(items) or len(_lines(content))} items"


def _minimize_history(content: str) -> str:
    operations = [line for line in _lines(content) if not _is_header(line)]
    return f"History: {len(operations)} recent operations"


def _minimize_skills(content: str) -> str:
    names = [line.lstrip("#").strip() for line in _lines(content) if _is_header(line)]
    if not names:
        return "Skills: available on request"
    return "Skills: " + ", ".join(names[:MINIMAL_SKILL_NAMES])


def _minimize_task(content: str) -> str:
    items = [line for line in _lines(content) if _is_item(line)]
    open_items = [line for line in items if _OPEN_TASK_PATTERN.search(line)]
    return f"Tasks: {len(open_items)} open of {len(items)}"


def _minimize_corrections(content: str) -> str:
    bullets = [line for line in _lines(content) if _is_item(line)]
    return f"Corrections: {len(bullets)} pending"


SUMMARIZERS: Dict[str, Callable[[str], str]] = {
    "domain_state": _summarize_domain_state,
    "working_set": _summarize_working_set,
    "history": _summarize_history,
    "skills": _summarize_skills,
    "task": _summarize_task,
    "corrections": _summarize_corrections,
}

MINIMIZERS: Dict[str, Callable[[str], str]] = {
    "domain_state": _minimize_domain_state,
    "working_set": _minimize_working_set,
    "history": _minimize_history,
    "skills": _minimize_skills,
    "task": _minimize_task,
    "corrections": _minimize_corrections,
}


def summarize(category: str, content: str) -> str:
    """Compress content to the summary level for its category"""
    return SUMMARIZERS.get(category, _summarize_default)(content)


def minimize(category: str, content: str) -> str:
    """Compress content to the minimal level for its category"""
    minimizer = MINIMIZERS.get(category)
    if minimizer is None:
        return f"[{category}: {estimate_tokens(content)} tokens compressed]"
    return minimizer(content)


def count_only(category: str, original_tokens: int) -> str:
    """Placeholder naming the category and the size of what it replaced"""
    return f"[{category}: {original_tokens} tokens available on request]"
