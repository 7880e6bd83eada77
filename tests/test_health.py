import unittest

import requests

from cloud_deployer.errors import AuthenticationError, StageError
from cloud_deployer.health import HealthCheckSpec, HealthProber, ProbeStatus
from cloud_deployer.ssh import SSHCommandResult, SSHCredentials


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code: int, text: str = "") -> None:
        self.status_code = status_code
        self.text = text


class FakeHTTP:
    """Returns scripted responses; an exception instance is raised instead."""

    def __init__(self, script) -> None:
        self.script = list(script)
        self.calls = 0

    def get(self, url, timeout=None, verify=True):
        self.calls += 1
        item = self.script[min(self.calls, len(self.script)) - 1]
        if isinstance(item, Exception):
            raise item
        return item


class HealthProberTests(unittest.TestCase):
    def _prober(self, http=None, executor=None) -> HealthProber:
        self.clock = FakeClock()
        return HealthProber(
            executor=executor,
            http_session=http,  # type: ignore[arg-type]
            clock=self.clock,
            sleep=self.clock.sleep,
        )

    def test_healthy_on_kth_poll(self) -> None:
        http = FakeHTTP([FakeResponse(503), FakeResponse(503), FakeResponse(200)])
        prober = self._prober(http)
        result = prober.wait_for(HealthCheckSpec.http("http://x/health", interval=10, deadline=300))
        self.assertTrue(result.ok)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(result.elapsed, 20.0)

    def test_timeout_exactly_at_deadline(self) -> None:
        http = FakeHTTP([FakeResponse(500)])
        prober = self._prober(http)
        result = prober.wait_for(HealthCheckSpec.http("http://x/health", interval=10, deadline=30))
        self.assertEqual(result.status, ProbeStatus.TIMEOUT)
        # 0, 10, 20 and the final poll at 30
        self.assertEqual(result.attempts, 4)
        self.assertEqual(result.elapsed, 30.0)
        self.assertEqual(sum(self.clock.sleeps), 30.0)

    def test_never_sleeps_past_deadline(self) -> None:
        http = FakeHTTP([FakeResponse(500)])
        prober = self._prober(http)
        result = prober.wait_for(HealthCheckSpec.http("http://x", interval=10, deadline=25))
        self.assertEqual(result.status, ProbeStatus.TIMEOUT)
        self.assertEqual(self.clock.sleeps, [10, 10, 5])
        self.assertEqual(result.elapsed, 25.0)

    def test_transport_errors_count_as_not_yet_healthy(self) -> None:
        http = FakeHTTP([
            requests.ConnectionError("refused"),
            requests.Timeout("slow"),
            FakeResponse(200),
        ])
        prober = self._prober(http)
        result = prober.wait_for(HealthCheckSpec.http("http://x", interval=5, deadline=60, failure_threshold=1))
        self.assertTrue(result.ok)
        self.assertEqual(result.attempts, 3)

    def test_failure_threshold_short_circuits(self) -> None:
        http = FakeHTTP([FakeResponse(500)])
        prober = self._prober(http)
        result = prober.wait_for(HealthCheckSpec.http("http://x", interval=5, deadline=300, failure_threshold=2))
        self.assertEqual(result.status, ProbeStatus.FAILED)
        self.assertEqual(result.attempts, 2)
        self.assertEqual(result.last_value, 500)

    def test_expected_content_must_match(self) -> None:
        http = FakeHTTP([FakeResponse(200, "starting"), FakeResponse(200, "healthy")])
        prober = self._prober(http)
        result = prober.wait_for(
            HealthCheckSpec.http("http://x", expected_content="healthy", interval=1, deadline=10)
        )
        self.assertTrue(result.ok)
        self.assertEqual(result.attempts, 2)

    def test_command_check_uses_executor(self) -> None:
        class Executor:
            def __init__(self) -> None:
                self.calls = 0

            def run(self, host, command, timeout=None):
                self.calls += 1
                status = 0 if self.calls >= 2 else 1
                return SSHCommandResult(command, "", "", status)

        executor = Executor()
        prober = self._prober(executor=executor)
        host = SSHCredentials(host="h", username="u")
        result = prober.wait_for(HealthCheckSpec.command(host, "nc -z localhost 5432", interval=5, deadline=30))
        self.assertTrue(result.ok)
        self.assertEqual(executor.calls, 2)

    def test_command_check_propagates_fatal_errors(self) -> None:
        class Executor:
            def run(self, host, command, timeout=None):
                raise AuthenticationError("rejected")

        prober = self._prober(executor=Executor())
        host = SSHCredentials(host="h", username="u")
        with self.assertRaises(StageError):
            prober.wait_for(HealthCheckSpec.command(host, "true", interval=5, deadline=30))


if __name__ == "__main__":
    unittest.main()
