import unittest


def _task(tid, *, deps=(), status="pending", parallel=False):
    from agentrelay.contracts.v1 import Task

    return Task(id=tid, description=f"task {tid}", deps=set(deps), status=status, parallel=parallel)


class TestScheduler(unittest.TestCase):
    def test_lowest_eligible_id_first(self) -> None:
        from agentrelay.kernel.scheduler import next_task

        tasks = [_task(3), _task(2, deps=[1]), _task(1)]
        self.assertEqual(next_task(tasks).id, 1)

    def test_failed_dependency_blocks_only_its_branch(self) -> None:
        from agentrelay.kernel.scheduler import blockers, is_blocked, is_complete, next_task

        # A fails; B is independent; C needs A.
        a = _task(1, status="error")
        b = _task(2)
        c = _task(3, deps=[1])
        tasks = [a, b, c]

        self.assertEqual(next_task(tasks).id, 2)
        b.status = "done"
        self.assertIsNone(next_task(tasks))
        self.assertTrue(is_blocked(tasks))
        self.assertFalse(is_complete(tasks))
        self.assertEqual(blockers(tasks), {3: [1]})

    def test_parallel_batch_caps_and_skips_serial(self) -> None:
        from agentrelay.kernel.scheduler import parallel_batch

        tasks = [_task(i, parallel=True) for i in range(1, 6)] + [_task(6)]
        self.assertEqual([t.id for t in parallel_batch(tasks, 3)], [1, 2, 3])
        self.assertEqual([t.id for t in parallel_batch(tasks, 1)], [1])

    def test_serial_head_runs_alone(self) -> None:
        from agentrelay.kernel.scheduler import parallel_batch

        tasks = [_task(1), _task(2, parallel=True), _task(3, parallel=True)]
        self.assertEqual([t.id for t in parallel_batch(tasks, 3)], [1])

    def test_complete_when_nothing_pending(self) -> None:
        from agentrelay.kernel.scheduler import is_blocked, is_complete, parallel_batch

        tasks = [_task(1, status="done"), _task(2, status="error")]
        self.assertTrue(is_complete(tasks))
        self.assertFalse(is_blocked(tasks))
        self.assertEqual(parallel_batch(tasks, 3), [])


if __name__ == "__main__":
    unittest.main()
