import pytest

from deploy_orchestrator.application.strategies.canary import canary_size
from deploy_orchestrator.errors import ValidationError
from deploy_orchestrator.models import CanaryConfig

FLEET = [f"t{index:02d}" for index in range(1, 11)]


def test_canary_size():
    assert canary_size(CanaryConfig(fraction=0.1), 10) == 1
    assert canary_size(CanaryConfig(fraction=0.1), 5) == 1
    assert canary_size(CanaryConfig(fraction=0.25), 20) == 5
    assert canary_size(CanaryConfig(count=3), 20) == 3


@pytest.mark.asyncio
async def test_breach_at_seventh_sample_rolls_back_canary_only(harness):
    harness.add_targets(*FLEET)
    harness.metrics.rates = [0.01] * 6 + [0.08]
    orchestrator = harness.orchestrator()
    request = harness.request(
        "canary",
        FLEET,
        canary={
            "fraction": 0.1,
            "weight_schedule": [10.0],
            "observation_samples": 10,
            "sample_interval_seconds": 30,
            "error_rate_threshold": 0.05,
        },
    )

    outcome = await orchestrator.submit(request)

    per_target = {t.target_id: t for t in outcome.per_target}
    assert outcome.status == "rolled_back"
    assert "sample 7" in outcome.error_detail
    assert len(harness.metrics.calls) == 7
    assert harness.metrics.calls[0] == (("t01",), 300)
    assert harness.installer.targets_given("v2") == {"t01"}
    assert per_target["t01"].rolled_back
    assert per_target["t01"].final_version == "v1"
    for target_id in FLEET[1:]:
        assert per_target[target_id].outcome == "untouched"
        assert per_target[target_id].final_version == "v1"
        assert harness.store.list_records(target_id) == []
    assert harness.backend.weights == {target_id: 10.0 for target_id in FLEET}


@pytest.mark.asyncio
async def test_weight_drops_to_zero_before_canary_is_reinstalled(harness):
    harness.add_targets(*FLEET)
    harness.metrics.rates = [0.5]
    orchestrator = harness.orchestrator()

    await orchestrator.submit(harness.request("canary", FLEET))

    calls = harness.backend.calls
    observed = next(
        index
        for index, call in enumerate(calls)
        if call[0] == "weights" and call[1]["t01"] == 10.0
    )
    rollback_drain = calls.index(("remove", "t01"), observed)
    assert any(
        call[0] == "weights" and call[1]["t01"] == 0.0
        for call in calls[observed:rollback_drain]
    )


@pytest.mark.asyncio
async def test_clean_observation_window_promotes_to_whole_fleet(harness):
    harness.add_targets(*FLEET)
    harness.metrics.rates = [0.01]
    orchestrator = harness.orchestrator()
    request = harness.request(
        "canary",
        FLEET,
        batch_size=3,
        canary={
            "count": 2,
            "weight_schedule": [10.0, 40.0],
            "observation_samples": 3,
            "sample_interval_seconds": 10,
        },
    )

    outcome = await orchestrator.submit(request)

    assert outcome.status == "succeeded"
    assert all(t.final_version == "v2" for t in outcome.per_target)
    assert all(t.outcome == "success" for t in outcome.per_target)
    assert len(harness.metrics.calls) == 6
    assert harness.clock.sleeps.count(10) == 4
    assert harness.backend.weights == {target_id: 10.0 for target_id in FLEET}


@pytest.mark.asyncio
async def test_unreadable_metrics_feed_counts_as_breach(harness):
    harness.add_targets(*FLEET)
    harness.metrics.error = RuntimeError("metrics backend down")
    orchestrator = harness.orchestrator()

    outcome = await orchestrator.submit(harness.request("canary", FLEET))

    assert outcome.status == "rolled_back"
    assert harness.registry.get_version("t01") == "v1"
    assert harness.installer.targets_given("v2") == {"t01"}


@pytest.mark.asyncio
async def test_canary_install_failure_never_reaches_fleet(harness):
    harness.add_targets(*FLEET)
    harness.installer.failing.add(("t01", "v2"))
    orchestrator = harness.orchestrator()

    outcome = await orchestrator.submit(harness.request("canary", FLEET))

    assert outcome.status == "rolled_back"
    assert harness.metrics.calls == []
    assert {t.target_id for t in outcome.per_target if t.outcome != "untouched"} == {"t01"}


@pytest.mark.asyncio
async def test_canary_group_must_be_a_minority(harness):
    targets = harness.add_targets("t1", "t2", "t3", "t4")
    orchestrator = harness.orchestrator()

    with pytest.raises(ValidationError):
        await orchestrator.submit(harness.request("canary", targets, canary={"count": 2}))


@pytest.mark.asyncio
async def test_canary_targets_must_be_serving(harness):
    harness.add_targets(*FLEET[:9])
    harness.add_targets(FLEET[9], routing_state="drained")
    orchestrator = harness.orchestrator()

    with pytest.raises(ValidationError):
        await orchestrator.submit(harness.request("canary", FLEET))
