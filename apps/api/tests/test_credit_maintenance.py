from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from conftest import current_balance, new_request_id, seed_account
from services.credit_accounts import utc_now
from services.credit_ledger import commit, reserve
from services.credit_maintenance import SWEEP_REASON, sweep_stale_reservations
from services.credit_transactions import get_request_state
from services.ledger_queue import LEDGER_QUEUE_NAME, enqueue_stale_reservation_sweep


USER_ID = "sweep-user"
OTHER_USER_ID = "sweep-other-user"


@pytest.mark.asyncio
async def test_sweep_releases_only_stale_outstanding_reservations(db):
    await seed_account(db, USER_ID)
    stale_id, committed_id = new_request_id(), new_request_id()
    await reserve(USER_ID, db, amount=2, request_id=stale_id, feature="frame")
    await reserve(USER_ID, db, amount=1, request_id=committed_id, feature="frame")
    await commit(USER_ID, db, request_id=committed_id)

    result = await sweep_stale_reservations(db, older_than_minutes=60, now=utc_now() + timedelta(hours=2))
    assert result["scanned"] == 1
    assert result["released"] == 1
    assert result["failed"] == 0

    state = await get_request_state(USER_ID, stale_id, db)
    assert state.status == "released"
    assert state.release.description == SWEEP_REASON
    assert state.release.metadata["extra"]["older_than_minutes"] == 60
    assert state.release.details.released_by == "stale_sweep"

    late_commit = await commit(USER_ID, db, request_id=stale_id)
    assert late_commit["reason"] == "missing_reservation"
    assert late_commit["released_by"] == "stale_sweep"

    balance = await current_balance(db, USER_ID)
    assert balance.reserved_monthly == 0
    assert balance.monthly_credits_used == 1


@pytest.mark.asyncio
async def test_sweep_ignores_recent_reservations(db):
    await seed_account(db, USER_ID)
    request_id = new_request_id()
    await reserve(USER_ID, db, amount=2, request_id=request_id, feature="frame")

    result = await sweep_stale_reservations(db, older_than_minutes=60)
    assert result["scanned"] == 0
    assert (await get_request_state(USER_ID, request_id, db)).status == "reserved"


@pytest.mark.asyncio
async def test_sweep_can_be_scoped_to_one_user(db):
    await seed_account(db, USER_ID)
    await seed_account(db, OTHER_USER_ID)
    mine, theirs = new_request_id(), new_request_id()
    await reserve(USER_ID, db, amount=1, request_id=mine, feature="frame")
    await reserve(OTHER_USER_ID, db, amount=1, request_id=theirs, feature="frame")

    result = await sweep_stale_reservations(
        db,
        older_than_minutes=5,
        user_id=USER_ID,
        now=utc_now() + timedelta(hours=1),
    )
    assert result["released"] == 1
    assert (await get_request_state(USER_ID, mine, db)).status == "released"
    assert (await get_request_state(OTHER_USER_ID, theirs, db)).status == "reserved"


def test_enqueue_sweep_uses_one_job_per_scope():
    queue = MagicMock()
    queue.enqueue.return_value = MagicMock(id="credit_sweep:all")

    with patch("services.ledger_queue.get_ledger_queue", return_value=queue):
        job = enqueue_stale_reservation_sweep(30)

    assert job.id == "credit_sweep:all"
    args, kwargs = queue.enqueue.call_args
    assert args == ("services.credit_maintenance.sweep_stale_reservations_job", 30, None)
    assert kwargs["job_id"] == "credit_sweep:all"
    assert kwargs["retry"].max == 3


def test_ledger_queue_name_is_shared_with_worker():
    import worker

    with patch.object(worker, "get_redis_connection") as get_conn, patch.object(worker, "Worker") as worker_cls:
        worker.main()

    worker_cls.assert_called_once_with([LEDGER_QUEUE_NAME], connection=get_conn.return_value)
    worker_cls.return_value.work.assert_called_once_with(with_scheduler=True)
