"""Shared fixtures for automation tests — no real browser is launched."""

from __future__ import annotations

import asyncio

import pytest

from keysmith.automation.actions import ActionRegistry
from keysmith.automation.scheduler import JobScheduler


@pytest.fixture
def gate() -> asyncio.Event:
    return asyncio.Event()


@pytest.fixture
def registry(gate) -> ActionRegistry:
    reg = ActionRegistry(builtins=False)

    async def echo(ctx):
        return {"params": ctx.params, "job": ctx.job_id}

    async def boom(ctx):
        raise RuntimeError("selector not found")

    async def hang(ctx):
        await gate.wait()
        return "late"

    reg.register("test", "echo", echo)
    reg.register("test", "boom", boom)
    reg.register("test", "hang", hang)
    return reg


@pytest.fixture
async def scheduler(keysmith_config, pool, registry, clock):
    sched = JobScheduler(keysmith_config.automation, pool=pool, registry=registry, clock=clock)
    yield sched
    await sched.stop()
