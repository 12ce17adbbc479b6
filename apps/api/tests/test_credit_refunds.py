from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import current_balance, new_request_id, seed_account
from services import credit_ledger, credit_transactions
from services.credit_errors import InvalidLedgerRequest
from services.credit_ledger import commit, release, reserve
from services.credit_refunds import reconcile, reconcile_many, record_failure, refund
from services.credit_transactions import get_request_state, list_transactions


USER_ID = "refund-user"


def _store_down(*args, **kwargs):
    raise OperationalError("SELECT credit_transactions", {}, ConnectionRefusedError("connection refused"))


async def _committed_request(db, amount=1):
    request_id = new_request_id()
    await reserve(USER_ID, db, amount=amount, request_id=request_id, feature="frame")
    await commit(USER_ID, db, request_id=request_id)
    return request_id


async def _reserved_request(db, amount=1):
    request_id = new_request_id()
    await reserve(USER_ID, db, amount=amount, request_id=request_id, feature="frame")
    return request_id


@pytest.mark.asyncio
async def test_refund_reverses_commit_exactly_once(db):
    before = await seed_account(db, USER_ID, bonus_credits_total=4)
    request_id = await _committed_request(db, amount=7)

    first = await refund(USER_ID, db, request_id=request_id, reason="render failed after commit")
    assert first["refunded"] is True
    assert first["refunded_monthly"] == 5
    assert first["refunded_bonus"] == 2
    after_first = await current_balance(db, USER_ID)
    assert after_first.remaining_total == before.remaining_total

    second = await refund(USER_ID, db, request_id=request_id)
    assert second["ok"] is True
    assert second["refunded"] is False
    assert second["reason"] == "already_refunded"
    assert (await current_balance(db, USER_ID)) == after_first

    state = await get_request_state(USER_ID, request_id, db)
    assert state.status == "refunded"
    assert state.refund.metadata["original_cost"] == 7
    assert state.refund.amount == 7


@pytest.mark.asyncio
async def test_refund_without_commit_is_a_successful_no_op(db):
    await seed_account(db, USER_ID)
    reserved_id = await _reserved_request(db, amount=2)

    result = await refund(USER_ID, db, request_id=reserved_id)
    assert result["ok"] is True
    assert result["refunded"] is False
    assert result["reason"] == "nothing_to_refund"
    assert result["status"] == "reserved"

    balance = await current_balance(db, USER_ID)
    assert balance.reserved_monthly == 2
    assert await list_transactions(USER_ID, db, transaction_type="refund") == []


@pytest.mark.asyncio
async def test_reconcile_refunds_committed_request(db):
    await seed_account(db, USER_ID)
    request_id = await _committed_request(db, amount=2)

    result = await reconcile(USER_ID, db, request_id=request_id, reason="upscaler crashed")
    assert result["ok"] is True
    assert result["action"] == "refund"
    assert result["result"]["refunded_monthly"] == 2

    balance = await current_balance(db, USER_ID)
    assert balance.monthly_credits_used == 0
    assert balance.remaining_monthly == 5


@pytest.mark.asyncio
async def test_reconcile_releases_outstanding_reservation(db):
    await seed_account(db, USER_ID)
    request_id = await _reserved_request(db, amount=3)

    result = await reconcile(USER_ID, db, request_id=request_id, reason="model timeout", metadata={"stage": "render"})
    assert result["ok"] is True
    assert result["action"] == "release"

    state = await get_request_state(USER_ID, request_id, db)
    assert state.status == "released"
    assert state.release.description == "model timeout"
    assert state.release.metadata["extra"]["stage"] == "render"
    assert state.release.metadata["extra"]["failure_reason"] == "model timeout"
    assert (await current_balance(db, USER_ID)).reserved_monthly == 0


@pytest.mark.asyncio
async def test_reconcile_records_failure_when_nothing_was_reserved(db):
    await seed_account(db, USER_ID)
    request_id = new_request_id()

    first = await reconcile(USER_ID, db, request_id=request_id, reason="prompt rejected", metadata={"stage": "validation"})
    assert first["ok"] is True
    assert first["action"] == "failure_recorded"
    assert first["result"]["recorded"] is True

    second = await reconcile(USER_ID, db, request_id=request_id, reason="prompt rejected")
    assert second["action"] == "failure_recorded"
    assert second["result"]["recorded"] is False

    failures = await list_transactions(USER_ID, db, transaction_type="failure")
    assert len(failures) == 1
    assert failures[0]["amount"] == 0
    assert failures[0]["metadata"]["stage"] == "validation"
    assert (await current_balance(db, USER_ID)).remaining_monthly == 5


@pytest.mark.asyncio
async def test_reconcile_leaves_terminal_requests_alone(db):
    await seed_account(db, USER_ID)
    request_id = await _reserved_request(db)
    await release(USER_ID, db, request_id=request_id)

    result = await reconcile(USER_ID, db, request_id=request_id, reason="late failure report")
    assert result == {"ok": True, "action": "none", "request_id": request_id, "status": "released"}


@pytest.mark.asyncio
async def test_reconcile_follows_a_commit_that_lands_mid_release(db):
    await seed_account(db, USER_ID)
    request_id = await _reserved_request(db, amount=2)
    real_release = credit_ledger.release

    async def commit_then_release(user_id, session, **kwargs):
        await commit(user_id, session, request_id=kwargs["request_id"])
        return await real_release(user_id, session, **kwargs)

    with patch("services.credit_refunds.release", side_effect=commit_then_release):
        result = await reconcile(USER_ID, db, request_id=request_id, reason="worker crashed")

    assert result["ok"] is True
    assert result["action"] == "refund"
    state = await get_request_state(USER_ID, request_id, db)
    assert state.status == "refunded"
    assert (await current_balance(db, USER_ID)).remaining_monthly == 5


@pytest.mark.asyncio
async def test_reconcile_falls_back_to_refund_and_release_when_state_lookup_fails(db):
    await seed_account(db, USER_ID)
    request_id = await _reserved_request(db, amount=2)
    real_get_request_state = credit_transactions.get_request_state
    calls = {"count": 0}

    async def flaky_lookup(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            _store_down()
        return await real_get_request_state(*args, **kwargs)

    with patch("services.credit_refunds.get_request_state", side_effect=flaky_lookup):
        result = await reconcile(USER_ID, db, request_id=request_id, reason="gpu preempted")

    assert result["ok"] is True
    assert result["action"] == "refund_and_release"
    assert result["refund"]["reason"] == "nothing_to_refund"
    assert result["release"]["ok"] is True
    assert "failed_operations" not in result
    assert (await current_balance(db, USER_ID)).reserved_monthly == 0


@pytest.mark.asyncio
async def test_dual_fallback_does_not_mask_a_dead_store(db):
    await seed_account(db, USER_ID)
    request_id = await _reserved_request(db)

    with patch("services.credit_refunds.get_request_state", side_effect=_store_down), patch(
        "services.credit_ledger.get_request_state", side_effect=_store_down
    ):
        result = await reconcile(USER_ID, db, request_id=request_id, reason="gpu preempted")

    assert result["ok"] is False
    assert result["reason"] == "configuration_error"
    assert result["failed_operations"] == ["refund", "release"]
    assert (await current_balance(db, USER_ID)).reserved_monthly == 1


@pytest.mark.asyncio
async def test_reconcile_reports_store_failure_instead_of_raising(db):
    await seed_account(db, USER_ID)
    request_id = await _committed_request(db)
    real_get_request_state = credit_transactions.get_request_state
    calls = {"count": 0}

    async def fail_after_lookup(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] > 1:
            _store_down()
        return await real_get_request_state(*args, **kwargs)

    with patch("services.credit_refunds.get_request_state", side_effect=fail_after_lookup):
        result = await reconcile(USER_ID, db, request_id=request_id, reason="encoder failed")

    assert result["ok"] is False
    assert result["reason"] == "configuration_error"
    assert result["request_id"] == request_id


@pytest.mark.asyncio
async def test_reconcile_many_handles_each_request_of_an_aborted_batch(db):
    await seed_account(db, USER_ID)
    committed_id = await _committed_request(db)
    reserved_id = await _reserved_request(db, amount=2)
    unknown_id = new_request_id()

    result = await reconcile_many(
        USER_ID,
        db,
        request_ids=[committed_id, reserved_id, unknown_id, reserved_id.upper()],
        reason="batch cancelled",
    )

    assert result["ok"] is True
    assert result["count"] == 3
    assert result["results"][committed_id]["action"] == "refund"
    assert result["results"][reserved_id]["action"] == "release"
    assert result["results"][unknown_id]["action"] == "failure_recorded"

    balance = await current_balance(db, USER_ID)
    assert balance.monthly_credits_used == 0
    assert balance.reserved_monthly == 0


@pytest.mark.asyncio
async def test_reconcile_many_requires_request_ids(db):
    with pytest.raises(InvalidLedgerRequest):
        await reconcile_many(USER_ID, db, request_ids=[], reason="batch cancelled")


@pytest.mark.asyncio
async def test_record_failure_is_logged_once(db):
    await seed_account(db, USER_ID)
    request_id = new_request_id()

    first = await record_failure(USER_ID, db, request_id=request_id, reason="nsfw filter", stage="prompt")
    second = await record_failure(USER_ID, db, request_id=request_id, reason="nsfw filter", stage="prompt")
    assert first["recorded"] is True
    assert second["recorded"] is False

    state = await get_request_state(USER_ID, request_id, db)
    assert state.status == "none"
    assert state.entries["failure"].metadata["reason"] == "nsfw filter"
