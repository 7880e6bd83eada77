import time
import unittest

from cloud_deployer.errors import ErrorKind, PlanValidationError, StageError
from cloud_deployer.orchestrator import (
    DeploymentPlan,
    DeploymentState,
    Output,
    RetryPolicy,
    Stage,
    StageContext,
    StageStatus,
)


def noop(ctx):
    return None


class DeploymentPlanTests(unittest.TestCase):
    def test_topological_order_breaks_ties_by_declaration(self) -> None:
        plan = DeploymentPlan([
            Stage("verify", noop, depends_on=("web", "worker")),
            Stage("provision", noop),
            Stage("worker", noop, depends_on=("provision",)),
            Stage("web", noop, depends_on=("provision",)),
        ])
        names = [stage.name for stage in plan.topological_order()]
        self.assertEqual(names, ["provision", "worker", "web", "verify"])

    def test_every_stage_after_its_dependencies(self) -> None:
        plan = DeploymentPlan([
            Stage("d", noop, depends_on=("b", "c")),
            Stage("c", noop, depends_on=("a",)),
            Stage("b", noop, depends_on=("a",)),
            Stage("a", noop),
            Stage("e", noop),
        ])
        order = [stage.name for stage in plan.topological_order()]
        for stage in plan.stages:
            for dep in stage.depends_on:
                self.assertLess(order.index(dep), order.index(stage.name))

    def test_cycle_is_rejected(self) -> None:
        with self.assertRaises(PlanValidationError) as ctx:
            DeploymentPlan([
                Stage("a", noop, depends_on=("c",)),
                Stage("b", noop, depends_on=("a",)),
                Stage("c", noop, depends_on=("b",)),
            ])
        self.assertIn("cycle", str(ctx.exception))

    def test_unknown_dependency_is_rejected(self) -> None:
        with self.assertRaises(PlanValidationError):
            DeploymentPlan([Stage("a", noop, depends_on=("missing",))])

    def test_duplicate_names_are_rejected(self) -> None:
        with self.assertRaises(PlanValidationError):
            DeploymentPlan([Stage("a", noop), Stage("a", noop)])

    def test_downstream_lists_transitive_dependents_in_order(self) -> None:
        plan = DeploymentPlan([
            Stage("provision", noop),
            Stage("configure", noop, depends_on=("provision",)),
            Stage("start", noop, depends_on=("configure",)),
            Stage("dns", noop, depends_on=("provision",)),
            Stage("verify", noop, depends_on=("start", "dns")),
        ])
        self.assertEqual(plan.downstream("configure"), ["configure", "start", "verify"])
        self.assertEqual(plan.downstream("verify"), ["verify"])


class RetryPolicyTests(unittest.TestCase):
    def test_backoff_is_exponential_and_capped(self) -> None:
        policy = RetryPolicy(max_attempts=6, base_delay=5.0, max_delay=60.0, jitter=0.0)
        delays = [policy.delay_for(n) for n in range(1, 6)]
        self.assertEqual(delays, [5.0, 10.0, 20.0, 40.0, 60.0])

    def test_jittered_delays_never_decrease(self) -> None:
        policy = RetryPolicy(max_attempts=8, base_delay=1.0, max_delay=1000.0, jitter=1.0)
        # 最坏情况：前一次抖动取上限、后一次取下限
        for n in range(1, 7):
            high = policy.delay_for(n, rng=lambda: 0.999)
            low_next = policy.delay_for(n + 1, rng=lambda: 0.0)
            self.assertLessEqual(high, low_next)

    def test_explicit_schedule_repeats_last_entry(self) -> None:
        policy = RetryPolicy(max_attempts=5, schedule=[1, 2])
        self.assertEqual([policy.delay_for(n) for n in range(1, 5)], [1.0, 2.0, 2.0, 2.0])

    def test_invalid_values(self) -> None:
        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=0)
        with self.assertRaises(ValueError):
            RetryPolicy(jitter=1.5)


class OutputTests(unittest.TestCase):
    def test_sensitive_value_is_masked_and_redacted(self) -> None:
        output = Output("s3cret", sensitive=True, stage="provision")
        self.assertNotIn("s3cret", repr(output))
        payload = output.to_dict()
        self.assertIsNone(payload["value"])
        self.assertTrue(payload["redacted"])

    def test_coerce_infers_kind(self) -> None:
        self.assertEqual(Output.coerce(3).kind, "number")
        self.assertEqual(Output.coerce({"a": 1}).kind, "map")
        self.assertEqual(Output.coerce(["a"]).kind, "list")
        self.assertEqual(Output.coerce(True).kind, "bool")
        self.assertEqual(Output.coerce("x", stage="s").stage, "s")

    def test_outputs_owned_by_another_stage_are_refused(self) -> None:
        state = DeploymentState(run_id="r")
        state.record_outputs("provision", {"ip": "1.2.3.4"})
        with self.assertRaises(StageError) as ctx:
            state.record_outputs("configure", {"ip": "5.6.7.8"})
        self.assertEqual(ctx.exception.kind, ErrorKind.FATAL)
        self.assertEqual(state.outputs["ip"].value, "1.2.3.4")

    def test_state_round_trip(self) -> None:
        state = DeploymentState(run_id="r", metadata={"project_id": "p"})
        state.record_outputs("provision", {"ip": "1.2.3.4", "pw": Output("x", sensitive=True)})
        state.result("provision").status = StageStatus.SUCCEEDED
        restored = DeploymentState.from_dict(state.to_dict())
        self.assertEqual(restored.outputs["ip"].value, "1.2.3.4")
        self.assertIsNone(restored.outputs["pw"].value)
        self.assertTrue(restored.outputs["pw"].redacted)
        self.assertEqual(restored.redacted_keys("provision"), ["pw"])
        self.assertEqual(restored.results["provision"].status, StageStatus.SUCCEEDED)
        self.assertEqual(restored.metadata, {"project_id": "p"})


class StageContextTests(unittest.TestCase):
    def test_outputs_are_read_only(self) -> None:
        ctx = StageContext("r", "s", 1, {"ip": "1.2.3.4"})
        with self.assertRaises(TypeError):
            ctx.outputs["ip"] = "x"  # type: ignore[index]

    def test_require_missing_output_is_fatal(self) -> None:
        ctx = StageContext("r", "s", 1, {})
        with self.assertRaises(StageError) as err:
            ctx.require("instance_external_ip")
        self.assertEqual(err.exception.kind, ErrorKind.FATAL)
        self.assertEqual(ctx.get("absent", "fallback"), "fallback")

    def test_abort_wakes_waiters_and_marks_cancelled(self) -> None:
        ctx = StageContext("r", "s", 1, {})
        self.assertFalse(ctx.wait(0.01))
        ctx.abort()
        self.assertTrue(ctx.cancelled)
        self.assertTrue(ctx.wait(60))

    def test_remaining_is_capped_by_default(self) -> None:
        self.assertEqual(StageContext("r", "s", 1, {}).remaining(30), 30)
        self.assertIsNone(StageContext("r", "s", 1, {}).remaining())
        ctx = StageContext("r", "s", 1, {}, deadline=time.monotonic() + 10)
        self.assertLessEqual(ctx.remaining(600), 10)
        self.assertEqual(ctx.remaining(5), 5)


if __name__ == "__main__":
    unittest.main()
