import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

TASKS_MD = """# Tasks

- [ ] api/auth | Add token refresh endpoint | 7/10 | scope: src/api only
- [ ] docs/readme | Document refresh flow | 2/10 | deps: 1 | tier: free
"""


class FakeAgent:
    def __init__(self, output="", effect=None, exit_code=0):
        self.calls = []
        self.output = output
        self.effect = effect
        self.exit_code = exit_code

    def __call__(self, argv, cwd, timeout, label):
        from agentrelay.runners.agent import AgentResult

        self.calls.append({"argv": list(argv), "cwd": Path(cwd), "label": label})
        if self.effect is not None:
            self.effect(Path(cwd))
        return AgentResult(exit_code=self.exit_code, output=self.output)


class TestController(unittest.TestCase):
    def setUp(self) -> None:
        td = tempfile.TemporaryDirectory()
        self.addCleanup(td.cleanup)
        self.root = Path(td.name)
        env = patch.dict(os.environ, {"AGENTRELAY_HOME": str(self.root / "home")})
        env.start()
        self.addCleanup(env.stop)

        from agentrelay.kernel.state import add_project
        from agentrelay.paths import default_paths

        self.paths = default_paths()
        self.project = self.root / "proj"
        self.project.mkdir()
        (self.project / "app.py").write_text("print('v1')\n", encoding="utf-8")
        add_project(self.paths, "proj", self.project)
        self.project = self.project.resolve()

    def _controller(self, agent, **settings):
        from agentrelay.controller.loop import Controller
        from agentrelay.kernel.settings import load_config

        return Controller(self.paths, config=load_config(self.paths, settings=settings), invoke=agent)

    def _outbox(self):
        from agentrelay.kernel.mailbox import Mailbox

        return Mailbox(self.paths).pending("out")

    def _send(self, text):
        from agentrelay.controller.ops import handle_op

        self.assertTrue(handle_op("send", {"text": text}, paths=self.paths).ok)

    @staticmethod
    def _draft_effect(cwd):
        (cwd / "app.py").write_text("print('hacked')\n", encoding="utf-8")
        (cwd / "helper.py").write_text("x = 1\n", encoding="utf-8")
        (cwd / "agentrelay_tasks.md").write_text(TASKS_MD, encoding="utf-8")

    def test_planning_turn_keeps_documents_and_reverts_code(self) -> None:
        from agentrelay.controller.loop import REVIEW_BUTTONS
        from agentrelay.controller.ops import handle_op
        from agentrelay.kernel.plan import current_plan

        handle_op("plan_start", {"request": "add token refresh"}, paths=self.paths)
        agent = FakeAgent(output="Drafted two tasks.\n@@relay:plan_ready agentrelay_tasks.md\n", effect=self._draft_effect)
        self.assertTrue(self._controller(agent).process_inbound())

        self.assertEqual(len(agent.calls), 1)
        self.assertEqual(agent.calls[0]["label"], "plan-turn")
        self.assertEqual(agent.calls[0]["cwd"], self.project)
        self.assertIn("add token refresh", agent.calls[0]["argv"][-1])

        self.assertEqual((self.project / "app.py").read_text(encoding="utf-8"), "print('v1')\n")
        self.assertFalse((self.project / "helper.py").exists())
        self.assertTrue((self.project / "agentrelay_tasks.md").exists())

        plan = current_plan(self.paths)
        self.assertEqual(plan.status, "pending_review")
        self.assertEqual([t.description for t in plan.tasks], ["Add token refresh endpoint", "Document refresh flow"])
        self.assertEqual(plan.tasks[0].tier, "top")
        self.assertEqual(plan.tasks[1].deps, {1})
        self.assertEqual(plan.spec_path, str(self.project / "agentrelay_tasks.md"))

        out = self._outbox()
        texts = [m.text for m in out]
        self.assertTrue(any(t.startswith("🛡 Plan mode reverted") and "app.py" in t and "helper.py" in t for t in texts))
        self.assertIn("Drafted two tasks.", texts)
        draft = [m for m in out if "Draft plan ready" in m.text]
        self.assertEqual(len(draft), 1)
        self.assertEqual(draft[0].payload["buttons"], REVIEW_BUTTONS)

    def test_auto_review_moves_straight_to_confirmation(self) -> None:
        from agentrelay.controller.loop import CONFIRM_BUTTONS
        from agentrelay.controller.ops import handle_op
        from agentrelay.kernel.plan import current_plan

        handle_op("plan_start", {"request": "add token refresh"}, paths=self.paths)
        agent = FakeAgent(output="@@relay:plan_ready\n", effect=self._draft_effect)
        self._controller(agent, controller={"auto_review": True}).process_inbound()

        plan = current_plan(self.paths)
        self.assertEqual(plan.status, "confirming")
        self.assertTrue(all(t.platform and t.model for t in plan.tasks))
        self.assertTrue(any(m.payload.get("buttons") == CONFIRM_BUTTONS for m in self._outbox()))

    def test_task_list_changes_are_ignored_while_confirming(self) -> None:
        from agentrelay.controller.ops import handle_op
        from agentrelay.kernel.plan import current_plan

        handle_op("plan_start", {"request": "add token refresh"}, paths=self.paths)
        agent = FakeAgent(output="@@relay:plan_ready\n", effect=self._draft_effect)
        controller = self._controller(agent)
        controller.process_inbound()
        self.assertTrue(handle_op("plan_review", {}, paths=self.paths).ok)

        self._send("actually split task 1")
        controller.process_inbound()
        self.assertEqual(current_plan(self.paths).status, "confirming")
        self.assertTrue(any("awaiting confirmation" in m.text for m in self._outbox()))

    def test_chat_turn_combines_waiting_messages(self) -> None:
        self._send("first")
        self._send("second")

        def write_code(cwd):
            (cwd / "feature.py").write_text("pass\n", encoding="utf-8")

        agent = FakeAgent(output="All done.", effect=write_code)
        controller = self._controller(agent)
        self.assertTrue(controller.process_inbound())
        self.assertFalse(controller.process_inbound())

        self.assertEqual(len(agent.calls), 1)
        call = agent.calls[0]
        self.assertEqual(call["label"], "chat-turn")
        self.assertIn("first", call["argv"][-1])
        self.assertIn("second", call["argv"][-1])
        # Outside plan mode code changes stay.
        self.assertTrue((self.project / "feature.py").exists())
        self.assertEqual([m.text for m in self._outbox()], ["All done."])

    def test_busy_session_leaves_mail_queued(self) -> None:
        from agentrelay.kernel.mailbox import Mailbox
        from agentrelay.kernel.session_lock import SessionLock

        self._send("hello")
        SessionLock(self.paths).acquire(pid=os.getppid())
        agent = FakeAgent(output="hi")
        self.assertFalse(self._controller(agent).process_inbound())
        self.assertEqual(agent.calls, [])
        self.assertEqual(len(Mailbox(self.paths).pending("in")), 1)

    def test_failed_turn_is_reported(self) -> None:
        self._send("hello")
        self._controller(FakeAgent(output="stack trace here", exit_code=3)).process_inbound()
        texts = [m.text for m in self._outbox()]
        self.assertTrue(texts[0].startswith("⚠️ Agent turn failed (exit code 3"))
        self.assertEqual(texts[1], "stack trace here")

    def test_send_file_marker_attaches_documents(self) -> None:
        (self.project / "report.md").write_text("# r\n", encoding="utf-8")
        self._send("make a report")
        agent = FakeAgent(output="Here it is.\n@@relay:send_file report.md\n@@relay:send_file missing.md\n")
        self._controller(agent).process_inbound()

        out = self._outbox()
        self.assertEqual([m.text for m in out if m.kind == "text"], ["Here it is."])
        docs = [m.payload for m in out if m.kind == "document"]
        self.assertEqual(docs, [{"kind": "document", "file_path": str(self.project / "report.md"), "caption": "report.md"}])

    def test_unknown_backend_is_reported_without_running(self) -> None:
        from agentrelay.kernel.state import edit_state

        with edit_state(self.paths) as st:
            st.backend = "nonexistent"
        self._send("hello")
        agent = FakeAgent()
        self._controller(agent).process_inbound()
        self.assertEqual(agent.calls, [])
        self.assertTrue(self._outbox()[0].text.startswith("⚠️ Cannot run agent"))

    def test_run_once_writes_heartbeat(self) -> None:
        from agentrelay.util.time import age_seconds

        self._controller(FakeAgent()).run_once()

        ts = (self.paths.run_dir / "controller.heartbeat").read_text(encoding="utf-8").strip()
        self.assertLess(age_seconds(ts), 60)


if __name__ == "__main__":
    unittest.main()
