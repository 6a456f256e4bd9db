import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from django.test import SimpleTestCase, override_settings, tag

from sandboxes.exceptions import (
    GracePeriodExceedsTimeLimit,
    SandboxReconcileError,
    SandboxValidationError,
)
from sandboxes.services.kubernetes_api import KubernetesApiError, sandbox_path
from sandboxes.services.reconciler import ReconcileResult
from sandboxes.tasks import reconcile_sandbox_task
from sandboxes.tasks.sandbox_reconcile import extended_time_limits, grace_wait_budget
from tests.mocks.fake_kubernetes import FakeKubernetesApi, pod_item_path
from tests.mocks.fake_redis import FakeRedis, FakeRedlock

FINALIZER = "kubepark.sinoa.jp/sandbox-finalizer"
LOCK_KEY = "sandbox-reconcile:team-a/dev"
PENDING_KEY = "sandbox-reconcile:pending:team-a/dev"


class _TaskTestCase(SimpleTestCase):
    def setUp(self):
        self.redis = FakeRedis()
        FakeRedlock.reset()
        for target, value in (
            ("sandboxes.tasks.sandbox_reconcile.get_redis_client", MagicMock(return_value=self.redis)),
            ("sandboxes.tasks.sandbox_reconcile.Redlock", FakeRedlock),
        ):
            patcher = patch(target, value)
            patcher.start()
            self.addCleanup(patcher.stop)
        # Re-enqueues go through the module-level task reference
        requeue_patcher = patch("sandboxes.tasks.sandbox_reconcile.reconcile_sandbox_task")
        self.apply_async = requeue_patcher.start().apply_async
        self.addCleanup(requeue_patcher.stop)


@tag("batch_sandbox_controller")
class ReconcileSandboxTaskTests(_TaskTestCase):
    @patch("sandboxes.tasks.sandbox_reconcile.reconcile_sandbox")
    def test_task_reports_reconcile_outcome(self, reconcile_mock):
        reconcile_mock.return_value = ReconcileResult(credentials="created", workload="created", status_updated=True)

        result = reconcile_sandbox_task("team-a", "dev")

        reconcile_mock.assert_called_once_with("team-a", "dev", max_grace_wait_seconds=None)
        self.assertEqual(
            result,
            {
                "namespace": "team-a",
                "name": "dev",
                "credentials": "created",
                "workload": "created",
                "status_updated": True,
                "finalized": False,
            },
        )
        self.apply_async.assert_not_called()

    @patch("sandboxes.tasks.sandbox_reconcile.reconcile_sandbox")
    def test_reconcile_errors_propagate_and_release_lock(self, reconcile_mock):
        reconcile_mock.side_effect = SandboxValidationError("SSH public key is required")

        with self.assertRaises(SandboxValidationError):
            reconcile_sandbox_task("team-a", "dev")

        self.assertTrue(FakeRedlock(LOCK_KEY).acquire(blocking=False))

    def test_task_retries_controller_errors(self):
        self.assertEqual(reconcile_sandbox_task.name, "sandboxes.tasks.reconcile_sandbox")
        self.assertIn(KubernetesApiError, reconcile_sandbox_task.autoretry_for)
        self.assertIn(SandboxReconcileError, reconcile_sandbox_task.autoretry_for)
        self.assertNotIn(GracePeriodExceedsTimeLimit, reconcile_sandbox_task.autoretry_for)
        self.assertTrue(reconcile_sandbox_task.retry_backoff)


@tag("batch_sandbox_controller")
class ReconcileSandboxLockTests(_TaskTestCase):
    @patch("sandboxes.tasks.sandbox_reconcile.reconcile_sandbox")
    def test_held_lock_skips_and_flags_pending(self, reconcile_mock):
        holder = FakeRedlock(LOCK_KEY)
        holder.acquire()
        self.addCleanup(holder.release)

        result = reconcile_sandbox_task("team-a", "dev")

        self.assertTrue(result["skipped"])
        reconcile_mock.assert_not_called()
        self.assertEqual(self.redis.get(PENDING_KEY), "1")

    @override_settings(SANDBOX_RECONCILE_DEBOUNCE_SEC=3)
    @patch("sandboxes.tasks.sandbox_reconcile.reconcile_sandbox")
    def test_pending_flag_schedules_one_follow_up(self, reconcile_mock):
        reconcile_mock.return_value = ReconcileResult()
        self.redis.set(PENDING_KEY, "1")

        reconcile_sandbox_task("team-a", "dev")

        self.apply_async.assert_called_once_with(args=("team-a", "dev"), countdown=3)
        self.assertIsNone(self.redis.get(PENDING_KEY))

    @patch("sandboxes.services.reconciler.get_kubernetes_client")
    def test_concurrent_deletions_wait_once(self, get_client_mock):
        fake = FakeKubernetesApi()
        get_client_mock.return_value = fake
        fake.add_sandbox(
            "team-a",
            "dev",
            {"ssh": {"publicKey": "ssh-ed25519 AAA dev"}, "terminationGracePeriodSeconds": 2},
            finalizers=[FINALIZER],
        )
        fake.request_json("DELETE", sandbox_path("team-a", "dev"))

        results, errors = [], []

        def _run():
            try:
                results.append(reconcile_sandbox_task("team-a", "dev"))
            except Exception as exc:  # collected for the assertion below
                errors.append(exc)

        workers = [threading.Thread(target=_run) for _ in range(2)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=10)

        self.assertEqual(errors, [])
        self.assertEqual(sorted(bool(r.get("finalized")) for r in results), [False, True])
        self.assertEqual(sum(1 for r in results if r.get("skipped")), 1)
        self.assertEqual(fake.calls.count(("DELETE", pod_item_path("team-a", "sandbox-dev"))), 1)
        self.assertIsNone(fake.get(sandbox_path("team-a", "dev")))
        # The skipped trigger is replayed once by the lock holder
        self.apply_async.assert_called_once()


@tag("batch_sandbox_controller")
class ReconcileSandboxTimeLimitTests(_TaskTestCase):
    @override_settings(SANDBOX_FINALIZE_TIME_MARGIN_SECONDS=60)
    @patch("sandboxes.tasks.sandbox_reconcile.reconcile_sandbox")
    def test_long_grace_period_re_enqueues_with_wider_limits(self, reconcile_mock):
        reconcile_mock.side_effect = GracePeriodExceedsTimeLimit(900, 780)

        result = reconcile_sandbox_task("team-a", "dev")

        self.assertEqual(result["extended_time_limit"], 960)
        self.apply_async.assert_called_once_with(
            args=("team-a", "dev"),
            soft_time_limit=960,
            time_limit=1020,
        )
        self.assertTrue(FakeRedlock(LOCK_KEY).acquire(blocking=False))

    @override_settings(CELERY_TASK_SOFT_TIME_LIMIT=840, SANDBOX_FINALIZE_TIME_MARGIN_SECONDS=60)
    def test_grace_wait_budget_follows_invocation_limits(self):
        worker_default = SimpleNamespace(called_directly=False, is_eager=False, timelimit=(None, None))
        extended = SimpleNamespace(called_directly=False, is_eager=False, timelimit=(1020, 960))
        eager = SimpleNamespace(called_directly=False, is_eager=True, timelimit=None)

        self.assertEqual(grace_wait_budget(worker_default), 780)
        self.assertEqual(grace_wait_budget(extended), 900)
        self.assertIsNone(grace_wait_budget(eager))

    @override_settings(SANDBOX_FINALIZE_TIME_MARGIN_SECONDS=60)
    def test_extended_limits_cover_the_grace_period(self):
        soft, hard = extended_time_limits(900)

        self.assertGreaterEqual(soft - 60, 900)
        self.assertGreater(hard, soft)
