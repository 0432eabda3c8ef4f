import asyncio

import pytest

from conftest import SERVER_ERROR, TIMED_OUT, FakeClock, FakeHealthProbe, FakeInstaller
from deploy_orchestrator.application.ports import HealthProbe, ProbeObservation
from deploy_orchestrator.errors import HealthCheckFailure
from deploy_orchestrator.health import HealthChecker
from deploy_orchestrator.models import HealthCheckConfig, Target

TARGET = Target(id="web-1", address="10.0.0.1", current_version="v1")


def make_checker():
    clock = FakeClock()
    installer = FakeInstaller({"web-1": "v1"})
    probe = FakeHealthProbe(installer, clock)
    return HealthChecker(probe, clock), probe, clock


@pytest.mark.asyncio
async def test_healthy_on_first_matching_status():
    checker, probe, clock = make_checker()

    result = await checker.check(TARGET, HealthCheckConfig())

    assert result.status == "healthy"
    assert result.healthy
    assert result.attempts == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_debounce_requires_consecutive_successes():
    checker, probe, clock = make_checker()
    ok = ProbeObservation(status_code=200)
    probe.script("web-1", "v1", ok, SERVER_ERROR, ok, ok, ok)
    config = HealthCheckConfig(max_attempts=5, healthy_threshold=3, backoff_seconds=2)

    result = await checker.check(TARGET, config)

    assert result.status == "healthy"
    assert result.attempts == 5
    assert clock.sleeps == [2, 2, 2, 2]


@pytest.mark.asyncio
async def test_unhealthy_when_any_definitive_negative():
    checker, probe, _ = make_checker()
    probe.script("web-1", "v1", TIMED_OUT, SERVER_ERROR, TIMED_OUT)

    result = await checker.check(TARGET, HealthCheckConfig(max_attempts=3))

    assert result.status == "unhealthy"
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_timeout_when_nothing_answers():
    checker, probe, clock = make_checker()
    probe.script("web-1", "v1", TIMED_OUT)
    config = HealthCheckConfig(max_attempts=2, timeout_seconds=5, backoff_seconds=1)

    result = await checker.check(TARGET, config)

    assert result.status == "timeout"
    assert not result.healthy
    assert clock.elapsed == 11


@pytest.mark.asyncio
async def test_exponential_backoff_is_capped():
    checker, probe, clock = make_checker()
    probe.script("web-1", "v1", SERVER_ERROR)
    config = HealthCheckConfig(
        max_attempts=5, backoff="exponential", backoff_seconds=1, max_backoff_seconds=4
    )

    await checker.check(TARGET, config)

    assert clock.sleeps == [1, 2, 4, 4]


@pytest.mark.asyncio
async def test_probe_errors_never_escape():
    class ExplodingProbe(HealthProbe):
        async def probe(self, target, config):
            raise ConnectionError("connection refused")

    clock = FakeClock()
    checker = HealthChecker(ExplodingProbe(), clock)

    result = await checker.check(TARGET, HealthCheckConfig(max_attempts=2))

    assert result.status == "unhealthy"
    assert "connection refused" in result.detail


@pytest.mark.asyncio
async def test_probe_that_never_answers_is_cut_off_at_timeout():
    class SilentProbe(HealthProbe):
        async def probe(self, target, config):
            await asyncio.Event().wait()

    checker = HealthChecker(SilentProbe(), FakeClock())
    config = HealthCheckConfig(max_attempts=2, timeout_seconds=0.05, backoff_seconds=0)

    result = await asyncio.wait_for(checker.check(TARGET, config), 5)

    assert result.status == "timeout"
    assert result.attempts == 2
    assert "0.05s" in result.detail


def test_threshold_cannot_exceed_attempts():
    with pytest.raises(ValueError):
        HealthCheckConfig(max_attempts=2, healthy_threshold=3)


@pytest.mark.asyncio
async def test_ensure_healthy_raises_health_check_failure():
    checker, probe, _ = make_checker()
    probe.script("web-1", "v1", SERVER_ERROR)

    with pytest.raises(HealthCheckFailure) as excinfo:
        await checker.ensure_healthy(TARGET, HealthCheckConfig(max_attempts=1))

    assert excinfo.value.target_id == "web-1"
    assert excinfo.value.message.startswith("unhealthy")
