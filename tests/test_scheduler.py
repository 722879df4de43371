import logging

import pytest

from wallet.scheduler import _wrap_job


@pytest.mark.asyncio
async def test_wrapped_job_logs_and_swallows_failures(caplog) -> None:
    async def broken() -> None:
        raise RuntimeError("github down")

    wrapped = _wrap_job(broken, name="promo_reconcile", logger=logging.getLogger("scheduler"))

    with caplog.at_level(logging.INFO, logger="scheduler"):
        assert await wrapped() is None

    assert any(record.message == "job failed" and record.job == "promo_reconcile" for record in caplog.records)


@pytest.mark.asyncio
async def test_wrapped_job_returns_result(engine) -> None:
    wrapped = _wrap_job(engine.reconcile, name="promo_reconcile", logger=logging.getLogger("scheduler"))
    report = await wrapped()
    assert report.as_dict()["completed"] == []
