"""Tests for detached background tasks and context logging."""

import asyncio
import logging

import pytest

from app.core.background import drain, pending_tasks, spawn_detached
from app.core.logging import StructuredFormatter, get_logger, log_with_context


@pytest.mark.asyncio
async def test_detached_task_runs_to_completion():
    done = asyncio.Event()

    async def work():
        await asyncio.sleep(0.01)
        done.set()
        return "ok"

    before = pending_tasks()
    task = spawn_detached(work(), name="work", conversation_id="c1")
    assert pending_tasks() == before + 1

    await asyncio.wait_for(done.wait(), timeout=1)
    await task
    await asyncio.sleep(0)

    assert task.result() == "ok"
    assert pending_tasks() == before


@pytest.mark.asyncio
async def test_failure_is_logged_with_context(caplog):
    async def boom():
        raise RuntimeError("store unavailable")

    with caplog.at_level(logging.ERROR, logger="app.core.background"):
        task = spawn_detached(boom(), name="persist-exchange-g1", conversation_id="c1", generation_id="g1")
        await asyncio.wait({task})
        await asyncio.sleep(0)

    record = next(r for r in caplog.records if "persist-exchange-g1" in r.getMessage())
    assert record.conversation_id == "c1"
    assert record.generation_id == "g1"
    assert record.exc_info is not None


@pytest.mark.asyncio
async def test_drain_waits_for_in_flight_tasks():
    finished = []

    async def slow_write():
        await asyncio.sleep(0.05)
        finished.append(True)

    spawn_detached(slow_write(), name="slow-write")

    assert await drain(timeout=1.0) == 0
    assert finished == [True]


@pytest.mark.asyncio
async def test_drain_gives_up_after_timeout():
    task = spawn_detached(asyncio.sleep(1), name="stuck-write")

    assert await drain(timeout=0.01) >= 1
    assert not task.cancelled()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


def test_structured_formatter_promotes_ids():
    logger = get_logger("tests.formatter")
    record = logger.makeRecord(
        logger.name,
        logging.INFO,
        __file__,
        1,
        "Exchange persisted",
        None,
        None,
        extra={"conversation_id": "c1", "extra_data": {"citations": 2}},
    )

    line = StructuredFormatter().format(record)

    assert "conversation_id=c1" in line
    assert "citations=2" in line
    assert "message=Exchange persisted" in line


def test_log_with_context_splits_ids_and_extras(caplog):
    logger = get_logger("tests.context")

    with caplog.at_level(logging.INFO, logger="tests.context"):
        log_with_context(logger, logging.INFO, "hello", message_id="m1", chunks=3)

    record = caplog.records[-1]
    assert record.message_id == "m1"
    assert record.extra_data == {"chunks": 3}
