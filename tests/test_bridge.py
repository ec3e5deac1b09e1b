import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch


class FakeAdapter:
    platform = "fake"

    def __init__(self, inbound=None):
        self.inbound = list(inbound or [])
        self.sent = []
        self.documents = []

    def connect(self):
        return True

    def disconnect(self):
        pass

    def poll(self):
        out, self.inbound = self.inbound, []
        return out

    def send_message(self, chat_id, text, buttons=None):
        self.sent.append((chat_id, text, buttons))
        return True

    def send_document(self, chat_id, *, file_path, filename="", caption=""):
        self.documents.append((chat_id, Path(file_path), filename, caption))
        return True


class FlakyAdapter(FakeAdapter):
    """Rejects the first `failures` sends (optionally only to one chat)."""

    def __init__(self, failures, failing_chat=None):
        super().__init__()
        self.failures = failures
        self.failing_chat = failing_chat

    def send_message(self, chat_id, text, buttons=None):
        if self.failures > 0 and self.failing_chat in (None, chat_id):
            self.failures -= 1
            return False
        return super().send_message(chat_id, text, buttons=buttons)


def _msg(text, chat_id="100"):
    return {"kind": "message", "chat_id": chat_id, "text": text, "from_user": "op"}


class TestBridge(unittest.TestCase):
    def setUp(self) -> None:
        td = tempfile.TemporaryDirectory()
        self.addCleanup(td.cleanup)
        self.root = Path(td.name)
        env = patch.dict(
            os.environ,
            {
                "AGENTRELAY_HOME": str(self.root / "home"),
                "AGENTRELAY_ALLOWED_CHAT_IDS": "100",
                "AGENTRELAY_TELEGRAM_TOKEN": "",
            },
        )
        env.start()
        self.addCleanup(env.stop)

        from agentrelay.paths import default_paths

        self.paths = default_paths()

    def _bridge(self, adapter, **settings):
        from agentrelay.kernel.settings import load_config
        from agentrelay.ports.im.bridge import IMBridge

        return IMBridge(self.paths, adapter, load_config(self.paths, settings=settings))

    def test_chats_outside_the_allowlist_are_ignored(self) -> None:
        from agentrelay.kernel.mailbox import Mailbox

        adapter = FakeAdapter([_msg("/kill", chat_id="999"), _msg("hello", chat_id="999")])
        with patch("agentrelay.controller.ops.AgentRunner.kill_all") as kill_all:
            handled = self._bridge(adapter).process_inbound()
        self.assertEqual(handled, 0)
        kill_all.assert_not_called()
        self.assertEqual(adapter.sent, [])
        self.assertEqual(Mailbox(self.paths).pending("in"), [])

    def test_plain_text_goes_to_the_inbox(self) -> None:
        from agentrelay.kernel.mailbox import Mailbox

        adapter = FakeAdapter([_msg("please add tests")])
        self.assertEqual(self._bridge(adapter).process_inbound(), 1)
        self.assertEqual([m.text for m in Mailbox(self.paths).pending("in")], ["please add tests"])
        self.assertEqual(adapter.sent, [])

    def test_command_runs_its_op_and_replies(self) -> None:
        adapter = FakeAdapter([_msg("/autofix on")])
        self._bridge(adapter).process_inbound()
        self.assertEqual(len(adapter.sent), 1)
        chat_id, text, buttons = adapter.sent[0]
        self.assertEqual(chat_id, "100")
        self.assertIn("Auto-fix enabled", text)
        self.assertIsNone(buttons)

    def test_version_command_replies(self) -> None:
        from agentrelay import __version__

        adapter = FakeAdapter([_msg("/version")])
        self._bridge(adapter).process_inbound()
        self.assertIn(f"Version: {__version__}", adapter.sent[0][1])
        self.assertIn("Backend: gemini", adapter.sent[0][1])

    def test_failed_op_replies_with_error(self) -> None:
        adapter = FakeAdapter([_msg("/project nowhere")])
        self._bridge(adapter).process_inbound()
        self.assertTrue(adapter.sent[0][1].startswith("❌"))
        self.assertIn("unknown project", adapter.sent[0][1])

    def test_unknown_slash_command_is_not_forwarded(self) -> None:
        from agentrelay.kernel.mailbox import Mailbox

        adapter = FakeAdapter([_msg("/frobnicate")])
        self._bridge(adapter).process_inbound()
        self.assertIn("Unknown command", adapter.sent[0][1])
        self.assertEqual(Mailbox(self.paths).pending("in"), [])

    def test_help(self) -> None:
        adapter = FakeAdapter([_msg("/help")])
        self._bridge(adapter).process_inbound()
        self.assertIn("/approve", adapter.sent[0][1])

    def test_review_reply_carries_confirm_buttons(self) -> None:
        from agentrelay.contracts.v1 import Task
        from agentrelay.controller.loop import CONFIRM_BUTTONS
        from agentrelay.controller.ops import handle_op
        from agentrelay.kernel import plan as plans

        handle_op("plan_start", {"request": "x"}, paths=self.paths)
        plans.load_draft(self.paths, [Task(id=1, description="a")])
        adapter = FakeAdapter([{"kind": "button", "chat_id": "100", "text": "/review"}])
        self._bridge(adapter).process_inbound()
        self.assertEqual(adapter.sent[0][2], CONFIRM_BUTTONS)

    def test_outbound_is_delivered_once_to_every_chat(self) -> None:
        from agentrelay.contracts.v1 import text_payload
        from agentrelay.kernel.mailbox import Mailbox

        Mailbox(self.paths).enqueue("out", text_payload("done", buttons=[[["Go", "/continue"]]]))
        adapter = FakeAdapter()
        with patch.dict(os.environ, {"AGENTRELAY_ALLOWED_CHAT_IDS": "100,200"}):
            bridge = self._bridge(adapter)
        self.assertEqual(bridge.process_outbound(), 2)
        self.assertEqual(bridge.process_outbound(), 0)
        self.assertEqual(
            adapter.sent,
            [("100", "done", [[["Go", "/continue"]]]), ("200", "done", [[["Go", "/continue"]]])],
        )

    def test_failed_send_is_retried_on_next_poll(self) -> None:
        from agentrelay.contracts.v1 import text_payload
        from agentrelay.kernel.mailbox import Mailbox

        box = Mailbox(self.paths)
        box.enqueue("out", text_payload("important"))
        box.enqueue("out", text_payload("later"))
        adapter = FlakyAdapter(failures=1)
        bridge = self._bridge(adapter)

        self.assertEqual(bridge.process_outbound(), 0)
        self.assertEqual(adapter.sent, [])
        self.assertEqual([m.text for m in box.pending("out")], ["important", "later"])

        self.assertEqual(bridge.process_outbound(), 2)
        self.assertEqual([t for _, t, _ in adapter.sent], ["important", "later"])
        self.assertEqual(box.pending("out"), [])
        self.assertEqual(bridge.process_outbound(), 0)

    def test_retry_skips_chats_already_reached(self) -> None:
        from agentrelay.contracts.v1 import text_payload
        from agentrelay.kernel.mailbox import Mailbox

        Mailbox(self.paths).enqueue("out", text_payload("hello"))
        adapter = FlakyAdapter(failures=1, failing_chat="200")
        with patch.dict(os.environ, {"AGENTRELAY_ALLOWED_CHAT_IDS": "100,200"}):
            bridge = self._bridge(adapter)

        self.assertEqual(bridge.process_outbound(), 1)
        self.assertEqual(len(Mailbox(self.paths).pending("out")), 1)
        self.assertEqual(bridge.process_outbound(), 1)
        self.assertEqual([c for c, _, _ in adapter.sent], ["100", "200"])
        self.assertEqual(Mailbox(self.paths).pending("out"), [])

    def test_outbound_waits_without_an_allowlist(self) -> None:
        from agentrelay.contracts.v1 import text_payload
        from agentrelay.kernel.mailbox import Mailbox

        Mailbox(self.paths).enqueue("out", text_payload("held"))
        with patch.dict(os.environ, {"AGENTRELAY_ALLOWED_CHAT_IDS": ""}):
            bridge = self._bridge(FakeAdapter())
        self.assertEqual(bridge.process_outbound(), 0)
        self.assertEqual(len(Mailbox(self.paths).pending("out")), 1)

    def test_long_reply_is_sent_as_a_document(self) -> None:
        from agentrelay.contracts.v1 import text_payload
        from agentrelay.kernel.mailbox import Mailbox

        long_text = "line of output\n" * 50
        msg = Mailbox(self.paths).enqueue("out", text_payload(long_text))
        adapter = FakeAdapter()
        self._bridge(adapter, bridge={"max_message_chars": 100}).process_outbound()

        self.assertEqual(adapter.sent, [])
        chat_id, path, filename, caption = adapter.documents[0]
        self.assertEqual(chat_id, "100")
        self.assertEqual(filename, f"reply-{msg.id}.txt")
        self.assertEqual(path.read_text(encoding="utf-8"), long_text)
        self.assertTrue(caption.startswith("line of output"))
        self.assertLessEqual(len(caption), 201)

    def test_document_payload(self) -> None:
        from agentrelay.contracts.v1 import document_payload
        from agentrelay.kernel.mailbox import Mailbox

        report = self.root / "report.md"
        report.write_text("# Report\n", encoding="utf-8")
        Mailbox(self.paths).enqueue("out", document_payload(str(report), caption="spec"))
        Mailbox(self.paths).enqueue("out", document_payload(str(self.root / "missing.md")))
        adapter = FakeAdapter()
        self._bridge(adapter).process_outbound()

        self.assertEqual(adapter.documents, [("100", report, "report.md", "spec")])
        self.assertIn("File not found", adapter.sent[0][1])


class TestInlineKeyboard(unittest.TestCase):
    def test_rows_and_callback_limit(self) -> None:
        from agentrelay.ports.im.adapters.telegram import inline_keyboard

        markup = inline_keyboard([[["Approve", "/approve step"], ["Too long", "/" + "x" * 80]], [["bad"]]])
        self.assertEqual(markup, {"inline_keyboard": [[{"text": "Approve", "callback_data": "/approve step"}]]})


if __name__ == "__main__":
    unittest.main()
