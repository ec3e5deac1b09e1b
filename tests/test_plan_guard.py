import tempfile
import unittest
from pathlib import Path


class TestPlanGuard(unittest.TestCase):
    def setUp(self) -> None:
        td = tempfile.TemporaryDirectory()
        self.addCleanup(td.cleanup)
        self.root = Path(td.name)
        (self.root / "src").mkdir()
        (self.root / "src" / "app.py").write_text("print('v1')\n", encoding="utf-8")
        (self.root / "src" / "util.py").write_text("X = 1\n", encoding="utf-8")
        (self.root / "README.md").write_text("# readme\n", encoding="utf-8")

    def test_code_changes_are_reverted_documents_kept(self) -> None:
        from agentrelay.kernel.plan_guard import PlanGuard

        with PlanGuard(self.root) as guard:
            (self.root / "src" / "app.py").write_text("print('v2')\n", encoding="utf-8")
            (self.root / "src" / "util.py").unlink()
            (self.root / "src" / "new.py").write_text("evil = True\n", encoding="utf-8")
            (self.root / "README.md").write_text("# updated\n", encoding="utf-8")
            (self.root / "SPEC.md").write_text("# plan\n", encoding="utf-8")

        self.assertEqual((self.root / "src" / "app.py").read_text(encoding="utf-8"), "print('v1')\n")
        self.assertEqual((self.root / "src" / "util.py").read_text(encoding="utf-8"), "X = 1\n")
        self.assertFalse((self.root / "src" / "new.py").exists())
        self.assertEqual((self.root / "README.md").read_text(encoding="utf-8"), "# updated\n")
        self.assertTrue((self.root / "SPEC.md").exists())
        self.assertEqual(sorted(guard.report.restored), ["src/app.py", "src/util.py"])
        self.assertEqual(guard.report.removed, ["src/new.py"])

    def test_untouched_tree_reports_nothing(self) -> None:
        from agentrelay.kernel.plan_guard import PlanGuard

        with PlanGuard(self.root) as guard:
            pass
        self.assertFalse(guard.report.changed)

    def test_empty_allow_list_reverts_documents_too(self) -> None:
        from agentrelay.kernel.plan_guard import PlanGuard

        with PlanGuard(self.root, allowed_extensions=()) as guard:
            (self.root / "README.md").write_text("# changed\n", encoding="utf-8")
        self.assertEqual((self.root / "README.md").read_text(encoding="utf-8"), "# readme\n")
        self.assertEqual(guard.report.restored, ["README.md"])

    def test_git_directory_is_ignored(self) -> None:
        from agentrelay.kernel.plan_guard import PlanGuard

        (self.root / ".git").mkdir()
        with PlanGuard(self.root) as guard:
            (self.root / ".git" / "index").write_text("x", encoding="utf-8")
        self.assertTrue((self.root / ".git" / "index").exists())
        self.assertFalse(guard.report.changed)


if __name__ == "__main__":
    unittest.main()
