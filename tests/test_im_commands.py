import unittest


class TestParseMessage(unittest.TestCase):
    def test_commands_and_args(self) -> None:
        from agentrelay.ports.im.commands import CommandType, parse_message

        p = parse_message("/approve auto")
        self.assertEqual(p.type, CommandType.APPROVE)
        self.assertEqual(p.args, ["auto"])

        p = parse_message("/plan  add a login page\nwith OAuth")
        self.assertEqual(p.type, CommandType.PLAN)
        self.assertEqual(p.text, "add a login page\nwith OAuth")

        self.assertEqual(parse_message("/STATUS").type, CommandType.STATUS)

    def test_aliases(self) -> None:
        from agentrelay.ports.im.commands import CommandType, parse_message

        cases = {
            "/go": CommandType.APPROVE,
            "/c": CommandType.CONTINUE,
            "/next": CommandType.CONTINUE,
            "/unlock": CommandType.CLEAR_LOCK,
            "/wd": CommandType.WATCHDOG,
            "/s": CommandType.STATUS,
            "/ls": CommandType.LIST,
            "/h": CommandType.HELP,
            "/start": CommandType.HELP,
        }
        for text, expected in cases.items():
            with self.subTest(text=text):
                self.assertEqual(parse_message(text).type, expected)

    def test_bot_mentions(self) -> None:
        from agentrelay.ports.im.commands import CommandType, parse_message

        self.assertEqual(parse_message("/retry@RelayBot 3").args, ["3"])
        p = parse_message("@RelayBot /resolve 4")
        self.assertEqual(p.type, CommandType.RESOLVE)
        self.assertEqual(p.args, ["4"])

    def test_plain_text_and_unknown_commands_are_messages(self) -> None:
        from agentrelay.ports.im.commands import CommandType, parse_message

        self.assertEqual(parse_message("fix the login page").type, CommandType.MESSAGE)
        self.assertEqual(parse_message("/frobnicate now").type, CommandType.MESSAGE)
        self.assertEqual(parse_message("   ").text, "")


class TestToOp(unittest.TestCase):
    def _op(self, text):
        from agentrelay.ports.im.commands import parse_message, to_op

        return to_op(parse_message(text))

    def test_planning_ops(self) -> None:
        self.assertEqual(self._op("/plan build it"), ("plan_start", {"request": "build it"}))
        self.assertEqual(self._op("/approve"), ("plan_approve", {"mode": "step"}))
        self.assertEqual(self._op("/go auto"), ("plan_approve", {"mode": "auto"}))
        self.assertEqual(
            self._op("/override 2 kilo openrouter/z-ai/glm-5"),
            ("plan_override", {"task_id": "2", "platform": "kilo", "model": "openrouter/z-ai/glm-5"}),
        )
        self.assertEqual(self._op("/default gemini"), ("plan_default", {"platform": "gemini", "model": ""}))

    def test_recovery_and_selection_ops(self) -> None:
        self.assertEqual(self._op("/retry 3"), ("task_retry", {"task_id": "3"}))
        self.assertEqual(self._op("/resolve"), ("task_resolve", {"task_id": ""}))
        self.assertEqual(self._op("/add site ~/code/my site"), ("project_add", {"name": "site", "path": "~/code/my site"}))
        self.assertEqual(self._op("/project"), ("project_use", {"name": ""}))
        self.assertEqual(self._op("/autofix"), ("autofix", {"enabled": None}))
        self.assertEqual(self._op("/autofix off"), ("autofix", {"enabled": "off"}))
        self.assertEqual(self._op("/diagnose"), ("diagnose", {"component": "controller"}))
        self.assertEqual(self._op("/wd"), ("watchdog_status", {}))
        self.assertEqual(self._op("/unlock"), ("clear_lock", {}))
        self.assertEqual(self._op("/version"), ("version", {}))
        self.assertEqual(self._op("/v"), ("version", {}))

    def test_help_and_messages_have_no_op(self) -> None:
        self.assertIsNone(self._op("/help"))
        self.assertIsNone(self._op("hello"))

    def test_every_op_exists(self) -> None:
        from agentrelay.controller.ops import OPS
        from agentrelay.ports.im.commands import CommandType, ParsedCommand, to_op

        for t in CommandType:
            op = to_op(ParsedCommand(type=t, text="", args=[]))
            if op is not None:
                with self.subTest(command=t.value):
                    self.assertIn(op[0], OPS)

    def test_help_lists_commands(self) -> None:
        from agentrelay.ports.im.commands import format_help

        text = format_help()
        for cmd in ("/plan", "/approve", "/continue", "/retry", "/clear_lock", "/apply_fix", "/project", "/version"):
            self.assertIn(cmd, text)


if __name__ == "__main__":
    unittest.main()
