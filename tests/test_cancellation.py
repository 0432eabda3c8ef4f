import pytest

from conftest import FakeClock
from deploy_orchestrator.application.cancellation import CancellationToken
from deploy_orchestrator.errors import DeploymentCancelled, DeploymentTimeoutError


def test_deadline_checked_at_checkpoints():
    clock = FakeClock()
    token = CancellationToken(clock, timeout_seconds=600)
    token.checkpoint()

    clock.elapsed = 599.5
    assert token.remaining() == pytest.approx(0.5)
    token.checkpoint()

    clock.elapsed = 600
    with pytest.raises(DeploymentTimeoutError):
        token.checkpoint()


def test_cancel_wins_over_deadline_and_keeps_first_reason():
    clock = FakeClock()
    token = CancellationToken(clock, timeout_seconds=1)
    token.cancel("operator abort")
    token.cancel("second request")
    clock.elapsed = 5

    with pytest.raises(DeploymentCancelled) as excinfo:
        token.checkpoint()
    assert excinfo.value.reason == "operator abort"


def test_no_deadline():
    token = CancellationToken(FakeClock())

    assert token.remaining() is None
    assert not token.expired()
    token.checkpoint()
