import asyncio

import pytest

from deploy_orchestrator.errors import ValidationError
from deploy_orchestrator.models import Target
from deploy_orchestrator.registry import TargetRegistry


def make_registry():
    return TargetRegistry(
        [
            Target(id="web-1", address="10.0.0.1", group="web", current_version="v1"),
            Target(id="web-2", address="10.0.0.2", group="web", current_version="v1"),
            Target(id="db-1", address="10.0.1.1", group="db"),
        ]
    )


def test_list_filters_by_group():
    registry = make_registry()

    assert [t.id for t in registry.list("web")] == ["web-1", "web-2"]
    assert len(registry.list()) == 3


def test_duplicate_registration_rejected_until_retired():
    registry = make_registry()
    with pytest.raises(ValidationError):
        registry.register(Target(id="web-1", address="10.0.0.9"))

    registry.retire("web-1")
    replacement = registry.register(Target(id="web-1", address="10.0.0.9"))

    assert replacement.address == "10.0.0.9"
    assert not registry.get("web-1").retired


def test_get_returns_a_copy():
    registry = make_registry()
    target = registry.get("web-1")
    target.current_version = "tampered"

    assert registry.get_version("web-1") == "v1"


def test_unknown_target():
    registry = make_registry()
    with pytest.raises(ValidationError):
        registry.get_version("nope")


@pytest.mark.asyncio
async def test_cannot_return_to_rotation_with_unresolved_attempt():
    registry = make_registry()
    await registry.mark_routing_state("web-1", "drained")
    await registry.begin_attempt("web-1")

    with pytest.raises(RuntimeError):
        await registry.mark_routing_state("web-1", "in_rotation")

    await registry.set_version("web-1", "v2")
    await registry.resolve_attempt("web-1")
    await registry.mark_routing_state("web-1", "in_rotation")

    target = registry.get("web-1")
    assert target.routing_state == "in_rotation"
    assert target.current_version == "v2"


@pytest.mark.asyncio
async def test_same_target_mutations_are_serialized():
    registry = make_registry()
    order: list[str] = []

    async def hold_lock():
        async with registry.lock("web-1"):
            order.append("held")
            await asyncio.sleep(0.01)
            order.append("released")

    async def set_version():
        await asyncio.sleep(0)
        await registry.set_version("web-1", "v3")
        order.append("set")

    async def other_target():
        await asyncio.sleep(0)
        await registry.set_version("web-2", "v3")
        order.append("other")

    await asyncio.gather(hold_lock(), set_version(), other_target())

    assert order.index("set") > order.index("released")
    assert order.index("other") < order.index("released")
    assert registry.lock("web-1") is registry.lock("web-1")
