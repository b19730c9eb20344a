import asyncio

import pytest

from storefront import ledger


@pytest.mark.asyncio
async def test_credit_then_debit_tracks_running_balance(session_factory, customer):
    async with session_factory() as s:
        first = await ledger.credit(s, customer.id, 5_000, "Refund", "op-1")
        second = await ledger.debit(s, customer.id, 1_200, "Purchase", "op-2", order_id="ORD-1")

    assert first.balance_cents == 5_000
    assert second.balance_cents == 3_800
    assert second.transaction.balance_after_cents == 3_800
    assert second.transaction.order_id == "ORD-1"

    async with session_factory() as s:
        wallet = await ledger.get_wallet(s, customer.id)
        txns = await ledger.list_transactions(s, customer.id)
    assert wallet.balance_cents == 3_800
    assert [t.operation_id for t in txns] == ["op-2", "op-1"]


@pytest.mark.asyncio
async def test_get_wallet_creates_empty_wallet_once(session_factory, customer):
    async with session_factory() as s:
        first = await ledger.get_wallet(s, customer.id)
        again = await ledger.get_wallet(s, customer.id)
    assert first.id == again.id
    assert again.balance_cents == 0


@pytest.mark.asyncio
async def test_debit_rejects_overdraft_and_leaves_balance(session_factory, customer):
    async with session_factory() as s:
        await ledger.credit(s, customer.id, 1_000, "Seed", "seed")
        with pytest.raises(ledger.InsufficientFunds):
            await ledger.debit(s, customer.id, 1_001, "Too much", "overdraft")

    async with session_factory() as s:
        assert (await ledger.get_wallet(s, customer.id)).balance_cents == 1_000
        assert await ledger.find_operation(s, customer.id, "overdraft") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, 10.5, True])
async def test_invalid_amounts_are_rejected(session_factory, customer, amount):
    async with session_factory() as s:
        with pytest.raises(ledger.InvalidAmount):
            await ledger.credit(s, customer.id, amount, "Bad", "bad-amount")


@pytest.mark.asyncio
async def test_missing_operation_id_is_rejected(session_factory, customer):
    async with session_factory() as s:
        with pytest.raises(ledger.LedgerError):
            await ledger.credit(s, customer.id, 100, "No op", "  ")


@pytest.mark.asyncio
async def test_replayed_operation_applies_once(session_factory, customer):
    async with session_factory() as s:
        original = await ledger.credit(s, customer.id, 2_500, "Refund", "refund:cancel:abc")
        replay = await ledger.credit(s, customer.id, 2_500, "Refund", "refund:cancel:abc")

    assert not original.replayed
    assert replay.replayed
    assert replay.transaction.id == original.transaction.id
    assert replay.balance_cents == 2_500


@pytest.mark.asyncio
async def test_reused_operation_with_different_amount_conflicts(session_factory, customer):
    async with session_factory() as s:
        await ledger.credit(s, customer.id, 2_500, "Refund", "op-x")
        with pytest.raises(ledger.IdempotencyConflict):
            await ledger.credit(s, customer.id, 3_000, "Refund", "op-x")
        with pytest.raises(ledger.IdempotencyConflict):
            await ledger.debit(s, customer.id, 2_500, "Refund", "op-x")


@pytest.mark.asyncio
async def test_operation_ids_are_scoped_per_user(session_factory, user_factory):
    a = await user_factory()
    b = await user_factory()
    async with session_factory() as s:
        await ledger.credit(s, a.id, 100, "Gift", "same-op")
        res = await ledger.credit(s, b.id, 200, "Gift", "same-op")
    assert not res.replayed
    assert res.balance_cents == 200


@pytest.mark.asyncio
async def test_post_entry_is_discarded_with_its_unit_of_work(session_factory, customer):
    async with session_factory() as s:
        await ledger.post_entry(
            s, user_id=customer.id, kind=ledger.CREDIT, amount_cents=700, description="Pending", operation_id="uow-1"
        )
        await s.rollback()

    async with session_factory() as s:
        assert (await ledger.get_wallet(s, customer.id)).balance_cents == 0
        assert await ledger.find_operation(s, customer.id, "uow-1") is None


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(session_factory, customer):
    async with session_factory() as s:
        await ledger.credit(s, customer.id, 1_000, "Seed", "seed")

    async def attempt(i):
        async with session_factory() as s:
            try:
                await ledger.debit(s, customer.id, 300, "Spend", f"spend-{i}")
                return True
            except ledger.InsufficientFunds:
                return False

    results = await asyncio.gather(*(attempt(i) for i in range(6)))
    assert sum(results) == 3

    async with session_factory() as s:
        report = await ledger.audit_wallet(s, customer.id)
    assert report["balance_cents"] == 100
    assert report["consistent"] and report["chain_ok"]
    assert report["transactions"] == 4


@pytest.mark.asyncio
async def test_concurrent_retries_of_one_refund_credit_once(session_factory, customer):
    async def attempt():
        async with session_factory() as s:
            return await ledger.credit(s, customer.id, 4_200, "Refund", "refund:order:ORD-9:cancel")

    results = await asyncio.gather(*(attempt() for _ in range(5)))
    assert len({r.transaction.id for r in results}) == 1
    assert sum(1 for r in results if not r.replayed) == 1

    async with session_factory() as s:
        report = await ledger.audit_wallet(s, customer.id)
    assert report["balance_cents"] == 4_200
    assert report["consistent"]


@pytest.mark.asyncio
async def test_concurrent_mixed_postings_match_sum_of_history(session_factory, customer):
    async with session_factory() as s:
        await ledger.credit(s, customer.id, 500, "Seed", "seed")

    async def post(i):
        async with session_factory() as s:
            try:
                if i % 2:
                    await ledger.debit(s, customer.id, 250, "Spend", f"d-{i}")
                else:
                    await ledger.credit(s, customer.id, 100, "Cashback", f"c-{i}")
            except ledger.InsufficientFunds:
                pass

    await asyncio.gather(*(post(i) for i in range(10)))

    async with session_factory() as s:
        report = await ledger.audit_wallet(s, customer.id)
    assert report["consistent"]
    assert report["balance_cents"] == report["credits_cents"] - report["debits_cents"]
    assert report["balance_cents"] >= 0
