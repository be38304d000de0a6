# triggers.py
from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable, List, Optional

from .model import Event, Trigger, Workflow

MANUAL_EVENTS = ("workflow_dispatch", "manual")


def _class_end(pattern: str, start: int) -> int:
    """Index of the `]` closing the class opened at `start`, or -1."""
    j = start + 1
    if j < len(pattern) and pattern[j] == "!":
        j += 1
    if j < len(pattern) and pattern[j] == "]":
        j += 1
    return pattern.find("]", j)


@lru_cache(maxsize=512)
def _glob_regex(pattern: str) -> re.Pattern:
    """
    Translate a path/branch glob into a regex.

      **   any characters, including /
      *    any characters except /
      ?    one character except /
      [..] one character from the set, [!..] negated
    """
    out = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif c == "*":
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "[" and _class_end(pattern, i) > 0:
            end = _class_end(pattern, i)
            body = pattern[i + 1:end].replace("\\", "\\\\").replace("[", "\\[")
            if body.startswith("!"):
                body = "^" + body[1:]
            elif body.startswith("^"):
                body = "\\" + body
            out.append("[" + body + "]")
            i = end + 1
        else:
            out.append(re.escape(c))
            i += 1
    return re.compile("".join(out) + r"\Z")


def glob_match(value: str, pattern: str) -> bool:
    return _glob_regex(pattern).match(value) is not None


def match_patterns(value: str, patterns: Iterable[str]) -> bool:
    """
    True if `value` is selected by `patterns`.

    Patterns are applied in order; a leading `!` un-selects, so
    ["release/**", "!release/old"] selects release branches except one.
    """
    selected = False
    for p in patterns:
        if p.startswith("!"):
            if selected and glob_match(value, p[1:]):
                selected = False
        elif glob_match(value, p):
            selected = True
    return selected


def _paths_match(trigger: Trigger, changed: Optional[List[str]]) -> bool:
    if not trigger.paths:
        return True
    if changed is None:
        # nothing to compare against (not a git checkout, or diff disabled)
        return True
    return any(match_patterns(f, trigger.paths) for f in changed)


def trigger_matches(trigger: Trigger, event: Event) -> bool:
    if trigger.event != event.name:
        return False
    if trigger.event in MANUAL_EVENTS:
        return True

    if event.tag is not None:
        if trigger.tags:
            return match_patterns(event.tag, trigger.tags) and _paths_match(trigger, event.changed_files)
        # a trigger with only branch filters does not fire for tags
        if trigger.branches or trigger.branches_ignore:
            return False
    elif trigger.tags and not trigger.branches:
        # tag-only trigger, branch event
        return False

    branch = event.branch or ""
    if trigger.branches and not match_patterns(branch, trigger.branches):
        return False
    if trigger.branches_ignore and match_patterns(branch, trigger.branches_ignore):
        return False

    return _paths_match(trigger, event.changed_files)


def matches(workflow: Workflow, event: Event) -> bool:
    """Does `event` trigger `workflow`? Workflows without `on:` always run."""
    if not workflow.triggers:
        return True
    return any(trigger_matches(t, event) for t in workflow.triggers)


def describe(workflow: Workflow) -> List[str]:
    lines = []
    for t in workflow.triggers:
        parts = [t.event]
        if t.branches:
            parts.append(f"branches={t.branches}")
        if t.branches_ignore:
            parts.append(f"branches-ignore={t.branches_ignore}")
        if t.tags:
            parts.append(f"tags={t.tags}")
        if t.paths:
            parts.append(f"paths={t.paths}")
        lines.append(" ".join(parts))
    return lines
