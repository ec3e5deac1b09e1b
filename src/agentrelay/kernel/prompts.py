"""Prompt text handed to the agent backend.

The relay never parses agent output beyond `@@relay:<name> <arg>` marker
lines, so every prompt spells out which markers it may emit.
"""
from __future__ import annotations

from typing import List, Sequence

from ..contracts.v1 import Dispatch, Message, Task

MARKER_HELP = (
    "Control lines (each on its own line, optional):\n"
    "  @@relay:send_file <path>   send a file you wrote to the operator\n"
)


def chat_turn_prompt(messages: Sequence[Message], *, project: str) -> str:
    parts: List[str] = [f"You are working in {project}.", "Operator messages, oldest first:"]
    for m in messages:
        parts.append(f"- [{m.ts}] {m.text}")
    parts.append("")
    parts.append("Reply to the operator in plain text on stdout.")
    parts.append(MARKER_HELP)
    return "\n".join(parts)


def planning_prompt(request: str, messages: Sequence[Message], *, project: str, tasks_file: str) -> str:
    parts: List[str] = [
        f"PLANNING MODE for project {project}. Do NOT modify source code:",
        "any code file you create or change will be reverted after this turn.",
        "Only documentation files (.md, .txt) are kept.",
        "",
    ]
    if request:
        parts.append(f"Feature request: {request}")
    if messages:
        parts.append("Operator notes, oldest first:")
        for m in messages:
            parts.append(f"- {m.text}")
    parts += [
        "",
        f"Write or update the task list in {tasks_file}, one line per task:",
        "  - [ ] <category>/<topic> | <description> | <difficulty 1-10>/10 [| deps: 1,2] [| parallel] [| scope: <paths>]",
        "Task ids are the line numbers of the list, starting at 1.",
        "Mark tasks that touch disjoint files as parallel.",
        "When the list is ready, print: @@relay:plan_ready " + tasks_file,
        MARKER_HELP,
    ]
    return "\n".join(parts)


def task_prompt(task: Task, dispatch: Dispatch) -> str:
    parts: List[str] = [f"Task {task.id}: {task.description}"]
    if task.category:
        parts.append(f"Category: {task.category}")
    if dispatch.spec_path:
        parts.append(f"Follow the plan/spec in {dispatch.spec_path}.")
    if task.scope_boundary:
        parts.append(f"SCOPE BOUNDARY: only change files within {task.scope_boundary}. Touch nothing else.")
    else:
        parts.append("SCOPE BOUNDARY: change only what this task requires.")
    parts.append("Do not start other tasks from the plan. Print a one-paragraph summary when done.")
    return "\n".join(parts)


def diagnosis_prompt(component: str, restarts: int, log_tails: Sequence[str]) -> str:
    parts: List[str] = [
        f"The relay component '{component}' crashed and was restarted {restarts} times in the last hour.",
        "Diagnose the failure from the log tails below. This is READ-ONLY: do NOT modify any files.",
        "Report the root cause, whether it is a code bug, a configuration problem or an external",
        "failure, and a proposed fix. End with exactly these two lines:",
        "@@relay:severity <CRITICAL|HIGH|MEDIUM|LOW>",
        "@@relay:category <code_bug|config|external>",
        "",
    ]
    parts.extend(log_tails)
    return "\n".join(parts)


def fix_prompt(summary: str, branch: str) -> str:
    return "\n".join(
        [
            f"You are on branch {branch}. Fix the defect described below with the smallest change.",
            "Do not switch branches, commit, merge or push; the relay does that.",
            "",
            summary,
        ]
    )
