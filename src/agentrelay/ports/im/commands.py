"""
Operator command parser for the chat bridge.

Parses commands from chat messages:
- /plan, /review, /approve, /override, /default, /replan
- /stop, /continue, /retry, /resolve
- /restart, /kill, /clear_lock
- /watchdog, /diagnose, /autofix, /apply_fix, /discard_fix
- /status, /version, /project, /add, /list, /backend, /model
- /help

Anything else is a regular message for the agent.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class CommandType(str, Enum):
    # Planning
    PLAN = "plan"
    REVIEW = "review"
    APPROVE = "approve"
    OVERRIDE = "override"
    DEFAULT = "default"
    REPLAN = "replan"

    # Dispatch control
    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"
    RESOLVE = "resolve"

    # Process control
    RESTART = "restart"
    KILL = "kill"
    CLEAR_LOCK = "clear_lock"

    # Watchdog
    WATCHDOG = "watchdog"
    DIAGNOSE = "diagnose"
    AUTOFIX = "autofix"
    APPLY_FIX = "apply_fix"
    DISCARD_FIX = "discard_fix"

    # Status and selection
    STATUS = "status"
    PROJECT = "project"
    ADD = "add"
    LIST = "list"
    BACKEND = "backend"
    MODEL = "model"
    VERSION = "version"

    # Help
    HELP = "help"

    # Not a command - regular message
    MESSAGE = "message"


@dataclass
class ParsedCommand:
    """Result of parsing a chat message."""

    type: CommandType
    text: str  # Original or remaining text
    args: List[str]  # Command arguments


# Supports "@BotName /command" (Telegram group privacy mode) and "/command@BotName".
_COMMAND_RE = re.compile(r"^(?:@\S+\s+)?/(\w+)(?:@\S+)?(?:\s+(.*))?$", re.IGNORECASE | re.DOTALL)


def parse_message(text: str) -> ParsedCommand:
    """
    Parse a chat message into a command or regular message.

    Commands start with / and are case-insensitive.

    Examples:
        "/approve auto" -> CommandType.APPROVE, args=["auto"]
        "/s" -> CommandType.STATUS
        "fix the login page" -> CommandType.MESSAGE
    """
    text = (text or "").strip()
    if not text:
        return ParsedCommand(type=CommandType.MESSAGE, text="", args=[])

    m = _COMMAND_RE.match(text)
    if m:
        cmd_name = m.group(1).lower()
        cmd_args_str = (m.group(2) or "").strip()
        cmd_args = cmd_args_str.split() if cmd_args_str else []
        return ParsedCommand(type=_map_command(cmd_name), text=cmd_args_str, args=cmd_args)

    return ParsedCommand(type=CommandType.MESSAGE, text=text, args=[])


def _map_command(cmd_name: str) -> CommandType:
    """Map command name to CommandType."""
    mapping = {
        "plan": CommandType.PLAN,
        "review": CommandType.REVIEW,
        "approve": CommandType.APPROVE,
        "go": CommandType.APPROVE,  # Alias
        "override": CommandType.OVERRIDE,
        "default": CommandType.DEFAULT,
        "replan": CommandType.REPLAN,
        "stop": CommandType.STOP,
        "continue": CommandType.CONTINUE,
        "c": CommandType.CONTINUE,
        "next": CommandType.CONTINUE,  # Alias
        "retry": CommandType.RETRY,
        "resolve": CommandType.RESOLVE,
        "restart": CommandType.RESTART,
        "kill": CommandType.KILL,
        "clear_lock": CommandType.CLEAR_LOCK,
        "unlock": CommandType.CLEAR_LOCK,  # Alias
        "watchdog": CommandType.WATCHDOG,
        "wd": CommandType.WATCHDOG,
        "diagnose": CommandType.DIAGNOSE,
        "autofix": CommandType.AUTOFIX,
        "apply_fix": CommandType.APPLY_FIX,
        "discard_fix": CommandType.DISCARD_FIX,
        "status": CommandType.STATUS,
        "s": CommandType.STATUS,
        "project": CommandType.PROJECT,
        "add": CommandType.ADD,
        "list": CommandType.LIST,
        "ls": CommandType.LIST,
        "backend": CommandType.BACKEND,
        "model": CommandType.MODEL,
        "version": CommandType.VERSION,
        "v": CommandType.VERSION,
        "help": CommandType.HELP,
        "h": CommandType.HELP,
        "start": CommandType.HELP,  # Telegram sends /start on first contact
    }
    return mapping.get(cmd_name, CommandType.MESSAGE)


def _arg(args: List[str], i: int) -> str:
    return args[i] if len(args) > i else ""


def to_op(parsed: ParsedCommand) -> Optional[Tuple[str, Dict[str, Any]]]:
    """Operator op name and args for a command; None for HELP and MESSAGE."""
    a = parsed.args
    t = parsed.type
    if t == CommandType.PLAN:
        return "plan_start", {"request": parsed.text}
    if t == CommandType.REVIEW:
        return "plan_review", {}
    if t == CommandType.APPROVE:
        return "plan_approve", {"mode": _arg(a, 0) or "step"}
    if t == CommandType.OVERRIDE:
        return "plan_override", {"task_id": _arg(a, 0), "platform": _arg(a, 1), "model": _arg(a, 2)}
    if t == CommandType.DEFAULT:
        return "plan_default", {"platform": _arg(a, 0), "model": _arg(a, 1)}
    if t == CommandType.REPLAN:
        return "plan_replan", {}
    if t == CommandType.STOP:
        return "plan_stop", {}
    if t == CommandType.CONTINUE:
        return "plan_continue", {}
    if t == CommandType.RETRY:
        return "task_retry", {"task_id": _arg(a, 0)}
    if t == CommandType.RESOLVE:
        return "task_resolve", {"task_id": _arg(a, 0)}
    if t == CommandType.AUTOFIX:
        return "autofix", {"enabled": _arg(a, 0) or None}
    if t == CommandType.DIAGNOSE:
        return "diagnose", {"component": _arg(a, 0) or "controller"}
    if t == CommandType.PROJECT:
        return "project_use", {"name": _arg(a, 0)}
    if t == CommandType.ADD:
        return "project_add", {"name": _arg(a, 0), "path": " ".join(a[1:])}
    if t == CommandType.LIST:
        return "project_list", {}
    if t == CommandType.BACKEND:
        return "backend", {"backend": _arg(a, 0)}
    if t == CommandType.MODEL:
        return "model", {"model": _arg(a, 0)}
    simple = {
        CommandType.RESTART: "restart",
        CommandType.KILL: "kill",
        CommandType.CLEAR_LOCK: "clear_lock",
        CommandType.WATCHDOG: "watchdog_status",
        CommandType.APPLY_FIX: "apply_fix",
        CommandType.DISCARD_FIX: "discard_fix",
        CommandType.STATUS: "status",
        CommandType.VERSION: "version",
    }
    if t in simple:
        return simple[t], {}
    return None


def format_help() -> str:
    """Generate help text for operator commands."""
    return """agentrelay commands:

📝 Planning:
  /plan <request> - draft a plan (plan mode: documents only)
  /review - route tasks and show the plan for confirmation
  /override <task> <platform> [model] - route one task
  /default <platform> [model] - route every other task
  /approve [step|auto] - freeze the plan and start the dispatch
  /replan - discard the plan and draft again

🚦 Dispatch:
  /continue - run the next step (step mode)
  /stop - stop before the next task
  /retry <task> - run a failed task again
  /resolve <task> - mark a failed task done after a manual fix

🔧 Processes:
  /status - show plan, dispatch and process status
  /version - version, backend and model
  /kill - force-stop the running agent
  /clear_lock - drop the session lock
  /restart - restart the controller

🐕 Watchdog:
  /watchdog - restarts, diagnosis, pending fix
  /diagnose [controller|bridge] - queue a diagnosis
  /autofix [on|off] - toggle guarded auto-fix
  /apply_fix, /discard_fix - decide on a parked fix branch

📁 Projects:
  /project [name] - show or switch the active project
  /add <name> <path> - register a project
  /list - list projects
  /backend [id], /model [id] - agent selection

Anything else is sent to the agent."""
