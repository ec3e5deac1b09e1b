import tempfile
import unittest
from pathlib import Path

SAMPLE = """# Tasks

Some intro text the parser ignores.

- [ ] db/schema | Create the users table | 7/10 | scope: migrations only
- [ ] api/auth | Add login endpoint | 5/10 | deps: 1
- [ ] docs/readme | Document login | 2/10 | deps: 2 | parallel | tier: free
- [x] done/already | Finished earlier | 3/10
- [ ] ui/form | Login form | 4/10 | parallel | deps: 1, 2 | platform: kilo | model: openrouter/z-ai/glm-5
"""


class TestTasksFile(unittest.TestCase):
    def test_parse_fields(self) -> None:
        from agentrelay.kernel.plan_file import parse_tasks

        tasks = parse_tasks(SAMPLE)
        self.assertEqual([t.id for t in tasks], [1, 2, 3, 4])

        t1, t2, t3, t4 = tasks
        self.assertEqual(t1.tier, "top")
        self.assertEqual(t1.category, "db/schema")
        self.assertEqual(t1.difficulty, 7)
        self.assertEqual(t1.scope_boundary, "migrations only")
        self.assertEqual(t1.deps, set())

        self.assertEqual(t2.tier, "mid")
        self.assertEqual(t2.deps, {1})
        self.assertFalse(t2.parallel)

        self.assertEqual(t3.tier, "free")
        self.assertTrue(t3.parallel)

        self.assertEqual(t4.deps, {1, 2})
        self.assertEqual((t4.platform, t4.model), ("kilo", "openrouter/z-ai/glm-5"))

    def test_self_dependency_is_dropped(self) -> None:
        from agentrelay.kernel.plan_file import parse_tasks

        tasks = parse_tasks("- [ ] a/b | loop | 3/10 | deps: 1\n")
        self.assertEqual(tasks[0].deps, set())

    def test_read_missing_or_empty_file(self) -> None:
        from agentrelay.kernel.plan_file import read_tasks_file

        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "agentrelay_tasks.md"
            self.assertIsNone(read_tasks_file(p))
            p.write_text("no tasks here\n", encoding="utf-8")
            self.assertIsNone(read_tasks_file(p))
            p.write_text(SAMPLE, encoding="utf-8")
            self.assertEqual(len(read_tasks_file(p)), 4)


if __name__ == "__main__":
    unittest.main()
