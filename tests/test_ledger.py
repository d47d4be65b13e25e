"""
Unit tests for the earnings ledger.
"""
import pytest
from sqlalchemy import select

from deferred_payouts.core.errors import DuplicateEventIgnored, SellerNotFound
from deferred_payouts.core.ledger import EarningsLedger
from deferred_payouts.core.provisioning import AccountProvisioner
from deferred_payouts.database.connection import Database
from deferred_payouts.database.models import LedgerEntry


async def _record(db: Database, ledger: EarningsLedger, seller_id: str, net_cents: int, key: str):
    async with db.unit_of_work() as session:
        return await ledger.record_sale(session, seller_id, net_cents, key)


async def _state(db: Database, ledger: EarningsLedger, seller_id: str):
    async with db.unit_of_work() as session:
        return await ledger.get_state(session, seller_id)


class TestRecordSale:
    """Test suite for EarningsLedger.record_sale."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_new_seller_has_empty_ledger(
        self, database: Database, ledger: EarningsLedger, seller: str
    ) -> None:
        state = await _state(database, ledger, seller)
        assert state.pending_balance_cents == 0
        assert state.sale_count == 0
        assert state.notification_sent is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_threshold_flips_once(
        self, database: Database, ledger: EarningsLedger, seller: str
    ) -> None:
        """Three held sales of 40.00, 30.00 and 57.50 notify exactly once."""
        crossed = []
        for key, net in [("cs_1", 4000), ("cs_2", 3000), ("cs_3", 5750)]:
            state = await _record(database, ledger, seller, net, key)
            crossed.append(state.threshold_crossed)

        assert crossed == [False, False, True]
        assert state.pending_balance_cents == 12750
        assert state.sale_count == 3
        assert state.notification_sent is True
        assert state.last_notification_at is not None

        state = await _record(database, ledger, seller, 1000, "cs_4")
        assert state.threshold_crossed is False
        assert state.notification_sent is True
        assert state.sale_count == 4

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_correlation_key_applies_once(
        self, database: Database, ledger: EarningsLedger, seller: str
    ) -> None:
        await _record(database, ledger, seller, 3600, "cs_dup")

        with pytest.raises(DuplicateEventIgnored) as exc_info:
            await _record(database, ledger, seller, 3600, "cs_dup")
        assert exc_info.value.correlation_key == "cs_dup"

        state = await _state(database, ledger, seller)
        assert state.pending_balance_cents == 3600
        assert state.sale_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_arrival_order_does_not_matter(
        self,
        database: Database,
        ledger: EarningsLedger,
        provisioner: AccountProvisioner,
        seller: str,
    ) -> None:
        await provisioner.register_seller("user_seller_2", "seller2@example.com")
        amounts = [("a", 1250), ("b", 999), ("c", 40000), ("d", 1)]

        for key, net in amounts:
            await _record(database, ledger, seller, net, f"s1_{key}")
        for key, net in reversed(amounts):
            await _record(database, ledger, "user_seller_2", net, f"s2_{key}")

        first = await _state(database, ledger, seller)
        second = await _state(database, ledger, "user_seller_2")
        assert first.pending_balance_cents == second.pending_balance_cents == 42250
        assert first.sale_count == second.sale_count == 4

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_writes_ledger_entry(
        self, database: Database, ledger: EarningsLedger, seller: str
    ) -> None:
        await _record(database, ledger, seller, 3600, "cs_entry")
        await _record(database, ledger, seller, 2700, "cs_entry_2")

        async with database.unit_of_work() as session:
            entries = (
                await session.execute(
                    select(LedgerEntry).order_by(LedgerEntry.balance_after_cents)
                )
            ).scalars().all()

        assert [e.correlation_key for e in entries] == ["cs_entry", "cs_entry_2"]
        assert [e.balance_after_cents for e in entries] == [3600, 6300]
        assert all(e.entry_type == "sale_held" for e in entries)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_seller(self, database: Database, ledger: EarningsLedger) -> None:
        with pytest.raises(SellerNotFound):
            await _record(database, ledger, "nobody", 100, "cs_x")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_negative_amount_rejected(
        self, database: Database, ledger: EarningsLedger, seller: str
    ) -> None:
        with pytest.raises(ValueError):
            await _record(database, ledger, seller, -1, "cs_neg")


class TestClear:
    """Test suite for EarningsLedger.clear."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clear_all(self, database: Database, ledger: EarningsLedger, seller: str) -> None:
        await _record(database, ledger, seller, 4000, "cs_1")
        await _record(database, ledger, seller, 3000, "cs_2")

        async with database.unit_of_work() as session:
            previous = await ledger.clear(session, seller)

        state = await _state(database, ledger, seller)
        assert previous == 7000
        assert state.pending_balance_cents == 0
        # The count is history, not a liability.
        assert state.sale_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clear_settled_amount_keeps_later_sale(
        self, database: Database, ledger: EarningsLedger, seller: str
    ) -> None:
        await _record(database, ledger, seller, 4000, "cs_1")
        await _record(database, ledger, seller, 1500, "cs_late")

        async with database.unit_of_work() as session:
            await ledger.clear(
                session, seller, settled_cents=4000, correlation_key="settlement:x:1"
            )

        state = await _state(database, ledger, seller)
        assert state.pending_balance_cents == 1500

        async with database.unit_of_work() as session:
            entry = (
                await session.execute(
                    select(LedgerEntry).where(LedgerEntry.correlation_key == "settlement:x:1")
                )
            ).scalar_one()
        assert entry.entry_type == "settlement"
        assert entry.amount_cents == -4000
        assert entry.balance_after_cents == 1500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clear_more_than_owed_rejected(
        self, database: Database, ledger: EarningsLedger, seller: str
    ) -> None:
        await _record(database, ledger, seller, 1000, "cs_1")

        with pytest.raises(ValueError, match="Cannot clear"):
            async with database.unit_of_work() as session:
                await ledger.clear(session, seller, settled_cents=1001)

        state = await _state(database, ledger, seller)
        assert state.pending_balance_cents == 1000
