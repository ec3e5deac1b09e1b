"""Crash diagnosis and the guarded auto-fix gate.

Callers hold the session lock around `diagnose` and `attempt_fix`.

A fix attempt never merges anything. It creates `<prefix>/auto-<digits>`
(validated before git ever sees it), lets the agent work there, runs the test
command and commits. A passing branch is parked as `pending_fix_branch` for
the operator to /apply_fix or /discard_fix; a failing one is deleted.
"""
from __future__ import annotations

import logging
import re
import subprocess
import time
from pathlib import Path
from typing import Any, List, Optional, Tuple

from ..contracts.v1 import Diagnosis, text_payload
from ..kernel import git
from ..kernel.mailbox import Mailbox
from ..kernel.plan_guard import PlanGuard
from ..kernel.prompts import diagnosis_prompt, fix_prompt
from ..kernel.routing import build_argv, platform_table, resolve_route
from ..kernel.settings import RelayConfig
from ..kernel.state import load_state
from ..kernel.tokens import InvalidTokenError, fix_branch_name, validate_fix_branch
from ..kernel.watchdog_state import edit_watchdog_state, load_watchdog_state
from ..paths import RelayPaths
from ..runners.agent import AgentResult, InvokeFn
from ..util.fs import read_last_lines

logger = logging.getLogger("agentrelay.autofix")

SEVERITIES = ("CRITICAL", "HIGH", "MEDIUM", "LOW")
FIXABLE_SEVERITIES = frozenset({"CRITICAL", "HIGH"})
FIX_BUTTONS = [[["✅ Apply fix", "/apply_fix"], ["🗑 Discard fix", "/discard_fix"]]]

_SEVERITY_RE = re.compile(r"\bseverity\b\W{0,3}(CRITICAL|HIGH|MEDIUM|LOW)\b", re.IGNORECASE)


def parse_diagnosis(result: AgentResult, component: str) -> Diagnosis:
    severity = (result.marker("severity") or "").strip().upper()
    if severity not in SEVERITIES:
        m = _SEVERITY_RE.search(result.output or "")
        severity = m.group(1).upper() if m else ""
    category = (result.marker("category") or "").strip().lower().replace("-", "_").replace(" ", "_")
    return Diagnosis(
        component=component,
        severity=severity,
        category=category,
        summary=result.reply,
        ts=time.time(),
    )


def is_fixable(diag: Diagnosis) -> bool:
    return diag.severity in FIXABLE_SEVERITIES and diag.category == "code_bug"


def default_repo() -> Optional[Path]:
    """The repository this relay runs from, when installed from a checkout."""
    return git.git_root(Path(__file__).resolve().parent)


class Remediator:
    def __init__(self, paths: RelayPaths, config: RelayConfig, *, invoke: InvokeFn, mailbox: Optional[Mailbox] = None):
        self.paths = paths
        self.config = config
        self.invoke = invoke
        self.mailbox = mailbox or Mailbox(paths)

    def _notify(self, text: str, **kw: Any) -> None:
        self.mailbox.enqueue("out", text_payload(text, **kw))

    def repo(self) -> Optional[Path]:
        if self.config.autofix.repo_path:
            return Path(self.config.autofix.repo_path).expanduser().resolve()
        return default_repo()

    def _argv(self, tier: str, prompt: str) -> List[str]:
        table = platform_table(self.config.platforms)
        backend = load_state(self.paths).backend
        platform, model = resolve_route(tier, backend, table)
        return build_argv(table[platform], model=model, prompt=prompt)

    def log_tails(self) -> List[str]:
        n = self.config.watchdog.log_tail_lines
        out: List[str] = []
        for name in (*self.config.watchdog.components, "agent"):
            lines = read_last_lines(self.paths.log_path(name), n)
            out.append(f"--- last {len(lines)} lines of {name}.log ---")
            out.extend(lines or ["(empty)"])
        return out

    def diagnose(self, component: str, restarts: int) -> Optional[Diagnosis]:
        """One read-only diagnosis on the free tier. None if the agent could not run."""
        prompt = diagnosis_prompt(component, restarts, self.log_tails())
        try:
            argv = self._argv("free", prompt)
        except InvalidTokenError as e:
            logger.error("cannot build diagnosis command: %s", e)
            return None
        cwd = self.repo() or self.paths.workspace
        cwd.mkdir(parents=True, exist_ok=True)
        # Read-only: an empty allow-list reverts every file change.
        with PlanGuard(cwd, allowed_extensions=()) as guard:
            result = self.invoke(argv, cwd, float(self.config.watchdog.diagnosis_timeout_seconds), "diagnosis")
        if guard.report.changed:
            logger.warning("diagnosis modified files; reverted")
        if not result.ok and not result.reply:
            self._notify(f"🩺 Diagnosis of {component} failed: {result.describe_failure()}")
            return None
        diag = parse_diagnosis(result, component)
        self._notify(
            f"🩺 Diagnosis for {component} ({restarts} restarts in the last hour)\n"
            f"Severity: {diag.severity or 'unknown'} | Category: {diag.category or 'unknown'}\n\n{diag.summary}"
        )
        return diag

    def run_tests(self, repo: Path) -> Tuple[bool, str]:
        cmd = list(self.config.autofix.test_command)
        try:
            p = subprocess.run(
                cmd,
                cwd=str(repo),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                timeout=self.config.autofix.test_timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return False, "tests timed out"
        except OSError as e:
            return False, str(e)
        tail = "\n".join((p.stdout or "").strip().splitlines()[-5:])
        return p.returncode == 0, tail

    def attempt_fix(self, diag: Diagnosis) -> str:
        """Try a fix on a fresh branch. Returns the parked branch name, or ""."""
        repo = self.repo()
        if repo is None or not git.is_git_repo(repo):
            self._notify("🔧 Auto-fix skipped: no git repository configured (autofix.repo_path).")
            return ""
        if load_watchdog_state(self.paths).pending_fix_branch:
            return ""
        if not git.is_clean(repo):
            self._notify("🔧 Auto-fix skipped: the repository has uncommitted changes.")
            return ""
        try:
            branch = fix_branch_name(self.config.autofix.branch_prefix, int(time.time()))
            argv = self._argv("top", fix_prompt(diag.summary, branch))
        except InvalidTokenError as e:
            logger.error("auto-fix refused: %s", e)
            return ""

        base = git.current_branch(repo)
        git.create_branch(repo, branch)
        logger.info("auto-fix attempt", extra={"branch": branch})
        passed, changed, detail = False, False, ""
        try:
            result = self.invoke(argv, repo, float(self.config.autofix.fix_timeout_seconds), "autofix")
            # Commit whatever the agent left so switching back to base is clean.
            changed = git.commit_all(repo, f"auto-fix: {diag.component} {diag.severity}")
            if not result.ok:
                detail = result.describe_failure()
            elif changed:
                passed, detail = self.run_tests(repo)
                if not passed:
                    detail = "tests failed: " + detail
        except git.GitError as e:
            detail = str(e)
        finally:
            stuck = self._return_to(repo, base)

        if stuck:
            self._notify(
                f"🔧 Auto-fix aborted: could not switch back to {base} ({stuck}). "
                f"The repository is still on {branch}; clean it up by hand."
            )
            return ""

        if passed and changed:
            with edit_watchdog_state(self.paths) as st:
                st.pending_fix_branch = branch
                st.fix_base_branch = base
            self._notify(f"🔧 Fix ready on {branch}; tests pass.\n{detail}", buttons=FIX_BUTTONS)
            return branch

        git.delete_branch(repo, branch, force=True)
        reason = detail or "the agent made no changes"
        self._notify(f"🔧 Auto-fix discarded ({reason}).")
        return ""

    def _return_to(self, repo: Path, base: str) -> str:
        """Drop anything the agent left uncommitted and check out `base`. Returns an error, or ""."""
        # The tree was clean before the fix branch was cut, so leftovers are the agent's.
        try:
            git.discard_changes(repo)
            git.checkout(repo, base)
        except git.GitError as e:
            logger.error("cannot return to %s after auto-fix: %s", base, e)
            return str(e)
        return ""

    def apply_fix(self) -> Tuple[bool, str]:
        st = load_watchdog_state(self.paths)
        repo = self.repo()
        if not st.pending_fix_branch:
            return False, "no pending fix"
        if repo is None:
            return False, "no repository configured"
        try:
            branch = validate_fix_branch(st.pending_fix_branch, prefix=self.config.autofix.branch_prefix)
            git.checkout(repo, st.fix_base_branch or self.config.autofix.base_branch)
            if not git.merge_branch(repo, branch):
                return False, f"merge of {branch} failed; branch kept"
            git.delete_branch(repo, branch)
        except (InvalidTokenError, git.GitError) as e:
            return False, str(e)
        with edit_watchdog_state(self.paths) as cur:
            cur.pending_fix_branch = ""
            cur.fix_base_branch = ""
        logger.info("auto-fix merged", extra={"branch": branch})
        return True, branch

    def discard_fix(self) -> Tuple[bool, str]:
        st = load_watchdog_state(self.paths)
        repo = self.repo()
        if not st.pending_fix_branch:
            return False, "no pending fix"
        branch = st.pending_fix_branch
        try:
            validate_fix_branch(branch)
            if repo is not None:
                git.delete_branch(repo, branch, force=True)
        except InvalidTokenError as e:
            logger.error("refusing to delete %r: %s", branch, e)
        with edit_watchdog_state(self.paths) as cur:
            cur.pending_fix_branch = ""
            cur.fix_base_branch = ""
        return True, branch
