import unittest


class TestTokens(unittest.TestCase):
    def test_fix_branch_accepts_only_the_closed_pattern(self) -> None:
        from agentrelay.kernel.tokens import InvalidTokenError, fix_branch_name, validate_fix_branch

        self.assertEqual(validate_fix_branch("hotfix/auto-123"), "hotfix/auto-123")
        self.assertEqual(fix_branch_name("hotfix", 42), "hotfix/auto-42")
        for bad in (
            "hotfix/auto-123; rm -rf /",
            "hotfix/auto-",
            "Hotfix/auto-1",
            "hotfix/auto-1\n",
            "-x/auto-1",
            "hotfix/manual-1",
            "",
        ):
            with self.subTest(branch=bad):
                with self.assertRaises(InvalidTokenError):
                    validate_fix_branch(bad)
        with self.assertRaises(InvalidTokenError):
            validate_fix_branch("other/auto-1", prefix="hotfix")
        with self.assertRaises(InvalidTokenError):
            fix_branch_name("bad prefix", 1)

    def test_task_branch(self) -> None:
        from agentrelay.kernel.tokens import InvalidTokenError, task_branch_name

        self.assertEqual(task_branch_name("ab12cd34", 7), "relay/task-ab12cd34-7")
        with self.assertRaises(InvalidTokenError):
            task_branch_name("../x", 1)

    def test_model_id(self) -> None:
        from agentrelay.kernel.tokens import InvalidTokenError, validate_model_id

        self.assertEqual(validate_model_id("openrouter/z-ai/glm-5"), "openrouter/z-ai/glm-5")
        self.assertEqual(validate_model_id("gemini-2.5-pro"), "gemini-2.5-pro")
        for bad in ("../../etc/passwd", "-rf", "model name", "a;b", ""):
            with self.subTest(model=bad):
                with self.assertRaises(InvalidTokenError):
                    validate_model_id(bad)

    def test_invalid_token_is_a_value_error(self) -> None:
        from agentrelay.kernel.errors import RelayError
        from agentrelay.kernel.tokens import InvalidTokenError

        self.assertTrue(issubclass(InvalidTokenError, ValueError))
        self.assertTrue(issubclass(InvalidTokenError, RelayError))


class TestRouting(unittest.TestCase):
    def test_build_argv_substitutes_per_element(self) -> None:
        from agentrelay.kernel.routing import platform_table, build_argv

        spec = platform_table()["gemini"]
        prompt = "fix it; rm -rf / && echo {model}"
        argv = build_argv(spec, model="gemini-2.5-pro", prompt=prompt)
        self.assertEqual(argv[0], "gemini")
        self.assertIn("gemini-2.5-pro", argv)
        # The prompt is one argv element, never split or re-substituted.
        self.assertEqual(argv[-1], prompt)
        self.assertEqual(len(argv), len(spec.argv))

    def test_build_argv_rejects_bad_model(self) -> None:
        from agentrelay.kernel.routing import build_argv, platform_table
        from agentrelay.kernel.tokens import InvalidTokenError

        with self.assertRaises(InvalidTokenError):
            build_argv(platform_table()["gemini"], model="x; reboot", prompt="hi")

    def test_resolve_route(self) -> None:
        from agentrelay.kernel.routing import platform_table, resolve_route
        from agentrelay.kernel.tokens import InvalidTokenError

        table = platform_table()
        self.assertEqual(resolve_route("top", "gemini", table), ("gemini", "gemini-2.5-pro"))
        self.assertEqual(resolve_route("free", "kilo", table), ("kilo", "openrouter/z-ai/glm-5"))
        with self.assertRaises(InvalidTokenError):
            resolve_route("top", "nope", table)

    def test_check_route_defaults_to_mid_tier(self) -> None:
        from agentrelay.kernel.routing import check_route, platform_table
        from agentrelay.kernel.tokens import InvalidTokenError

        table = platform_table()
        self.assertEqual(check_route("gemini", "", table), ("gemini", "gemini-2.5-flash"))
        self.assertEqual(check_route("kilo", "openrouter/z-ai/glm-5", table), ("kilo", "openrouter/z-ai/glm-5"))
        with self.assertRaises(InvalidTokenError):
            check_route("Gemini", "", table)
        with self.assertRaises(InvalidTokenError):
            check_route("gemini", "a b", table)

    def test_settings_extend_the_platform_table(self) -> None:
        from agentrelay.kernel.routing import platform_table

        table = platform_table({
            "gemini": {"tiers": {"top": "gemini-3-pro-preview"}},
            "local": {"argv": ["llm", "-m", "{model}", "{prompt}"], "tiers": {"mid": "qwen"}},
            "Bad Name": {"argv": ["x"]},
        })
        self.assertEqual(table["gemini"].tiers["top"], "gemini-3-pro-preview")
        self.assertEqual(table["gemini"].argv[0], "gemini")
        self.assertEqual(table["local"].tiers["mid"], "qwen")
        self.assertNotIn("Bad Name", table)

    def test_task_route_prefers_task_choice(self) -> None:
        from agentrelay.contracts.v1 import Task
        from agentrelay.kernel.routing import platform_table, task_route

        table = platform_table()
        spec, model = task_route(Task(id=1, description="x", tier="free"), "gemini", table)
        self.assertEqual((spec.name, model), ("gemini", "gemini-2.0-flash-lite"))
        spec, model = task_route(
            Task(id=2, description="y", platform="kilo", model="openrouter/z-ai/glm-4.7-flash"), "gemini", table
        )
        self.assertEqual((spec.name, model), ("kilo", "openrouter/z-ai/glm-4.7-flash"))


if __name__ == "__main__":
    unittest.main()
