"""Dispatch engine: turns the approved snapshot into agent invocations.

Each `step()` advances the dispatch by at most one task, or one parallel
batch, under the session lock. Between steps it observes the stop signal and,
in step mode, waits for the continue flag; both are polled, never blocked on.

Parallel batches run in throwaway git worktrees branched from the same HEAD
and are folded back one by one, lowest task id first. A fold that conflicts
is aborted and only that task is marked error; its branch is kept for manual
resolution. Projects that are not git repositories run tasks one at a time in
place.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..contracts.v1 import Dispatch, Task, text_payload
from ..kernel import git
from ..kernel.dispatch import clear_stop, consume_continue, edit_dispatch, load_dispatch, stop_requested
from ..kernel.mailbox import Mailbox
from ..kernel.plan import PlanTransitionError, clear_plan_mode, finish, mark_executing, plan_mode_active
from ..kernel.prompts import task_prompt
from ..kernel.routing import PlatformSpec, build_argv, platform_table, task_route
from ..kernel.scheduler import blockers, is_complete, parallel_batch
from ..kernel.session_lock import SessionLock
from ..kernel.settings import RelayConfig
from ..kernel.state import load_state
from ..kernel.tokens import InvalidTokenError, task_branch_name
from ..paths import RelayPaths
from ..runners.agent import InvokeFn

logger = logging.getLogger("agentrelay.dispatch")

Outcome = Tuple[str, str]  # (task status, error or summary)

CONTINUE_BUTTONS = [[["▶️ Continue", "/continue"], ["⏹ Stop", "/stop"]]]


def _summary(text: str, limit: int = 300) -> str:
    s = " ".join((text or "").split())
    return s if len(s) <= limit else s[: limit - 1] + "…"


class DispatchEngine:
    def __init__(
        self,
        paths: RelayPaths,
        config: RelayConfig,
        *,
        invoke: InvokeFn,
        mailbox: Optional[Mailbox] = None,
        lock: Optional[SessionLock] = None,
    ):
        self.paths = paths
        self.config = config
        self.invoke = invoke
        self.mailbox = mailbox or Mailbox(paths)
        self.lock = lock or SessionLock(paths)

    @property
    def table(self) -> Dict[str, PlatformSpec]:
        return platform_table(self.config.platforms)

    def _notify(self, text: str, **kw) -> None:
        self.mailbox.enqueue("out", text_payload(text, **kw))

    def step(self) -> bool:
        """Advance the current dispatch. Returns False when there is none to run."""
        d = load_dispatch(self.paths)
        if d is None or d.status not in ("approved", "executing"):
            return False

        # Approval alone authorizes execution; a leftover marker must not outlive it.
        if plan_mode_active(self.paths):
            clear_plan_mode(self.paths)

        if stop_requested(self.paths):
            self._close(d, "stopped")
            clear_stop(self.paths)
            return True

        if d.awaiting_continue:
            if not consume_continue(self.paths):
                return True
            with edit_dispatch(self.paths) as cur:
                if cur is not None:
                    cur.awaiting_continue = False
            d.awaiting_continue = False

        if is_complete(d.tasks):
            self._close(d, "done")
            return True

        batch = parallel_batch(d.tasks, self.config.controller.max_parallel)
        if not batch:
            self._report_blocked(d)
            return True

        if not self.lock.acquire():
            logger.debug("session busy; dispatch waits", extra={"dispatch_id": d.id})
            return True
        try:
            # /replan or /stop may have run in another process before the lock was ours.
            cur = self._reload(d)
            if cur is None:
                return True
            d = cur
            batch = parallel_batch(d.tasks, self.config.controller.max_parallel)
            if not batch:
                return True
            if d.status == "approved" and not self._mark_executing(d):
                return True
            project = Path(d.project_path)
            if len(batch) > 1 and git.is_git_repo(project):
                outcomes = self._run_parallel(d, batch)
            else:
                task = batch[0]
                outcomes = {task.id: self._run_serial(d, task, project)}
            snapshot = self._record(d, outcomes)
        finally:
            self.lock.release()

        if snapshot is None:
            return True
        self._report(snapshot, outcomes)
        if is_complete(snapshot.tasks):
            self._close(snapshot, "done")
        return True

    # Execution

    def _invoke_task(self, d: Dispatch, task: Task, cwd: Path) -> Outcome:
        backend = load_state(self.paths).backend
        try:
            spec, model = task_route(task, backend, self.table)
            argv = build_argv(spec, model=model, prompt=task_prompt(task, d))
        except InvalidTokenError as e:
            return "error", str(e)
        logger.info("running task %s on %s/%s", task.id, spec.name, model, extra={"dispatch_id": d.id, "task_id": task.id})
        result = self.invoke(argv, cwd, float(self.config.controller.task_timeout_seconds), f"task-{d.id}-{task.id}")
        if result.ok:
            return "done", _summary(result.reply)
        return "error", result.describe_failure()

    def _run_serial(self, d: Dispatch, task: Task, project: Path) -> Outcome:
        if not project.is_dir():
            return "error", f"project path {project} does not exist"
        status, note = self._invoke_task(d, task, project)
        if status == "done" and git.is_git_repo(project):
            # Commit so later parallel worktrees branch from this result.
            try:
                git.commit_all(project, f"relay task {task.id}: {_summary(task.description, 60)}")
            except git.GitError as e:
                return "error", str(e)
        return status, note

    def _run_parallel(self, d: Dispatch, batch: List[Task]) -> Dict[int, Outcome]:
        repo = Path(d.project_path)
        outcomes: Dict[int, Outcome] = {}
        slots: Dict[int, Tuple[str, Path]] = {}
        for t in batch:
            path = self.paths.worktree_dir / d.id / f"task-{t.id}"
            try:
                branch = task_branch_name(d.id, t.id)
                if path.exists():
                    git.worktree_remove(repo, path)
                if git.branch_exists(repo, branch):
                    git.delete_branch(repo, branch, force=True)
                git.worktree_add(repo, path, branch)
            except (git.GitError, InvalidTokenError) as e:
                outcomes[t.id] = ("error", f"worktree setup failed: {e}")
                continue
            slots[t.id] = (branch, path)

        by_id = {t.id: t for t in batch}
        logger.info("running %d tasks in parallel", len(slots), extra={"dispatch_id": d.id})
        with ThreadPoolExecutor(max_workers=max(1, len(slots)), thread_name_prefix="relay-task") as pool:
            futures = {tid: pool.submit(self._invoke_task, d, by_id[tid], path) for tid, (_, path) in slots.items()}
            results = {tid: f.result() for tid, f in futures.items()}

        for tid in sorted(slots):
            branch, path = slots[tid]
            status, note = results[tid]
            keep_branch = False
            if status == "done":
                try:
                    git.commit_all(path, f"relay task {tid}: {_summary(by_id[tid].description, 60)}")
                    if not git.merge_branch(repo, branch, message=f"relay: merge task {tid}"):
                        status, note = "error", f"merge conflict; branch {branch} kept for manual resolution"
                        keep_branch = True
                except git.GitError as e:
                    status, note = "error", str(e)
            git.worktree_remove(repo, path)
            if not keep_branch:
                git.delete_branch(repo, branch, force=True)
            outcomes[tid] = (status, note)
        return outcomes

    # Bookkeeping

    def _reload(self, d: Dispatch) -> Optional[Dispatch]:
        cur = load_dispatch(self.paths)
        if cur is None or cur.id != d.id or cur.status not in ("approved", "executing"):
            logger.warning("dispatch discarded or closed before its next task; not running it", extra={"dispatch_id": d.id})
            return None
        if stop_requested(self.paths):
            return None
        return cur

    def _mark_executing(self, d: Dispatch) -> bool:
        """Move plan and dispatch to executing. False means the dispatch must not start.

        The plan moves first: once it is executing, replan refuses, so a
        dispatch that survives this check can no longer be discarded under us.
        """
        try:
            mark_executing(self.paths)
        except PlanTransitionError as e:
            logger.warning("plan no longer approved (%s); not starting dispatch", e, extra={"dispatch_id": d.id})
            return False
        with edit_dispatch(self.paths) as cur:
            matched = cur is not None and cur.id == d.id
            if matched:
                cur.status = "executing"
        if not matched:
            logger.warning("dispatch vanished while starting; stopping plan", extra={"dispatch_id": d.id})
            finish(self.paths, "stopped")
            return False
        d.status = "executing"
        return True

    def _record(self, d: Dispatch, outcomes: Dict[int, Outcome]) -> Optional[Dispatch]:
        with edit_dispatch(self.paths) as cur:
            if cur is None or cur.id != d.id:
                logger.warning("dispatch replaced while tasks ran; dropping results", extra={"dispatch_id": d.id})
                return None
            for tid, (status, note) in outcomes.items():
                t = cur.task(tid)
                if t is None:
                    continue
                t.status = status  # type: ignore[assignment]
                if status == "done":
                    t.summary, t.error = note, ""
                else:
                    t.error = note
            cur.blocked_reported = False
            if cur.mode == "step" and not is_complete(cur.tasks):
                cur.awaiting_continue = True
            return cur.model_copy(deep=True)

    def _report(self, d: Dispatch, outcomes: Dict[int, Outcome]) -> None:
        lines = []
        for tid in sorted(outcomes):
            status, note = outcomes[tid]
            icon = "✅" if status == "done" else "❌"
            lines.append(f"{icon} Task {tid}: {note}" if note else f"{icon} Task {tid}")
        done = sum(1 for t in d.tasks if t.status == "done")
        lines.append(f"Progress: {done}/{len(d.tasks)} done")
        if d.awaiting_continue:
            self._notify("\n".join(lines + ["Paused (step mode)."]), buttons=CONTINUE_BUTTONS)
        else:
            self._notify("\n".join(lines))

    def _report_blocked(self, d: Dispatch) -> None:
        if d.blocked_reported:
            return
        waiting = blockers(d.tasks)
        detail = "; ".join(f"task {tid} waits on {', '.join(str(x) for x in deps)}" for tid, deps in sorted(waiting.items()))
        logger.warning("dispatch blocked: %s", detail, extra={"dispatch_id": d.id})
        self._notify(f"⛔ Dispatch blocked: {detail}\nUse /retry <id> or /resolve <id>, or /stop.")
        with edit_dispatch(self.paths) as cur:
            if cur is not None and cur.id == d.id:
                cur.blocked_reported = True

    def _close(self, d: Dispatch, status: str) -> None:
        with edit_dispatch(self.paths) as cur:
            if cur is not None and cur.id == d.id:
                cur.status = status  # type: ignore[assignment]
                cur.awaiting_continue = False
        consume_continue(self.paths)
        try:
            if status == "done":
                mark_executing(self.paths)
            finish(self.paths, status)  # type: ignore[arg-type]
        except PlanTransitionError as e:
            logger.warning("plan status out of step with dispatch: %s", e, extra={"dispatch_id": d.id})
        errors = [t.id for t in d.tasks if t.status == "error"]
        done = sum(1 for t in d.tasks if t.status == "done")
        if status == "stopped":
            self._notify(f"⏹ Dispatch {d.id} stopped ({done}/{len(d.tasks)} done).")
        else:
            extra = f", errors in {errors}" if errors else ""
            self._notify(f"🏁 Dispatch {d.id} finished: {done}/{len(d.tasks)} done{extra}.")
        logger.info("dispatch %s", status, extra={"dispatch_id": d.id})
