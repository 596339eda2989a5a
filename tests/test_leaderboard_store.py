"""Tests for transactional submissions and subscriptions on LeaderboardStore."""

import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from topscores.data_models.leaderboard import ScoreEntry, SubmitStatus
from topscores.database.database import Database
from topscores.database.models import LeaderboardNode
from topscores.services.leaderboard_store import LeaderboardStore
from topscores.utils.leaderboard_exceptions import (
    CorruptDataError,
    InvalidInputError,
    StoreClosedError,
    TransactionError,
)


async def _raw_node(db: Database, path: str = "Leaders") -> tuple:
    async with db.get_session() as session:
        result = await session.execute(
            select(LeaderboardNode.value, LeaderboardNode.version).where(LeaderboardNode.path == path)
        )
        return tuple(result.one())


async def _next(subscription, timeout: float = 2.0):
    return await asyncio.wait_for(subscription.__anext__(), timeout)


class TestSubmitScore:
    """Score submissions as optimistic transactions."""

    @pytest.mark.asyncio
    async def test_two_slot_scenario(self, store: LeaderboardStore) -> None:
        """Fill, reject a low score, then replace the minimum."""
        first = await store.submit_score("a@x.com", 10)
        assert first.status == SubmitStatus.COMMITTED
        assert first.leaderboard.entries == (ScoreEntry("a@x.com", 10),)

        second = await store.submit_score("b@x.com", 5)
        assert second.committed
        assert second.leaderboard.entries == (ScoreEntry("a@x.com", 10), ScoreEntry("b@x.com", 5))

        third = await store.submit_score("c@x.com", 3)
        assert third.aborted
        assert third.error is None
        assert third.leaderboard.entries == (ScoreEntry("a@x.com", 10), ScoreEntry("b@x.com", 5))

        fourth = await store.submit_score("d@x.com", 20)
        assert fourth.committed
        assert fourth.leaderboard.entries == (ScoreEntry("d@x.com", 20), ScoreEntry("a@x.com", 10))

    @pytest.mark.asyncio
    async def test_abort_leaves_stored_value_untouched(self, store: LeaderboardStore, database: Database) -> None:
        await store.submit_score("a@x.com", 10)
        await store.submit_score("b@x.com", 5)
        before = await _raw_node(database)

        result = await store.submit_score("c@x.com", 3)

        assert result.aborted
        assert await _raw_node(database) == before
        assert result.leaderboard.version == before[1]

    @pytest.mark.asyncio
    async def test_below_capacity_grows_by_one(self, store: LeaderboardStore) -> None:
        await store.submit_score("a@x.com", 100)

        result = await store.submit_score("b@x.com", -7)

        assert result.committed
        assert result.leaderboard.size() == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("identity", "score"),
        [
            pytest.param("a@x.com", 0, id="zero_score"),
            pytest.param("", 10, id="empty_identity"),
            pytest.param("   ", 10, id="blank_identity"),
            pytest.param("a@x.com", "10", id="string_score"),
            pytest.param("a@x.com", True, id="bool_score"),
        ],
    )
    async def test_invalid_input_never_reaches_store(
        self, store: LeaderboardStore, database: Database, identity, score
    ) -> None:
        with patch.object(database, "run_transaction") as run_transaction:
            with pytest.raises(InvalidInputError):
                store.submit_score(identity, score)

        run_transaction.assert_not_called()
        assert await database.read_value("Leaders") == (None, 0)

    @pytest.mark.asyncio
    async def test_closed_store_rejects_submissions(self, database: Database) -> None:
        closed = LeaderboardStore(database)

        with pytest.raises(StoreClosedError):
            closed.submit_score("a@x.com", 10)

    @pytest.mark.asyncio
    async def test_concurrent_writers_keep_top_n(self, database: Database) -> None:
        """Many simultaneous submissions settle on the true top three."""
        async with LeaderboardStore(database, max_entries=3, max_retries=25) as busy_store:
            results = await asyncio.gather(
                *(busy_store.submit_score(f"p{score}@x.com", score) for score in range(1, 11))
            )
            board = await busy_store.get_leaderboard()

        assert not any(result.failed for result in results)
        assert [entry.score for entry in board] == [10, 9, 8]

    @pytest.mark.asyncio
    async def test_conflict_reruns_transaction_on_latest_value(
        self, store: LeaderboardStore, database: Database, write_raw, records
    ) -> None:
        """A concurrent commit between read and write forces a re-run against the new value."""
        await store.submit_score("a@x.com", 10)
        real_compare_and_set = database._compare_and_set
        calls = []

        async def racing_compare_and_set(path, expected_version, value):
            calls.append(value)
            if len(calls) == 1:
                # Another process commits first
                await write_raw(database, path, records(("a@x.com", 10), ("z@x.com", 50)), version=expected_version + 1)
            return await real_compare_and_set(path, expected_version, value)

        with patch.object(database, "_compare_and_set", side_effect=racing_compare_and_set):
            result = await store.submit_score("b@x.com", 30)

        assert result.committed
        assert len(calls) == 2
        assert calls[0] == records(("a@x.com", 10), ("b@x.com", 30))
        assert calls[1] == records(("z@x.com", 50), ("b@x.com", 30))
        assert [entry.score for entry in result.leaderboard] == [50, 30]

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail(self, store: LeaderboardStore, database: Database) -> None:
        async def always_conflict(path, expected_version, value):
            return False

        with patch.object(database, "_compare_and_set", side_effect=always_conflict):
            result = await store.submit_score("a@x.com", 10)

        assert result.status == SubmitStatus.FAILED
        assert isinstance(result.error, TransactionError)
        assert result.error.attempts == store.max_retries
        assert await database.read_value("Leaders") == (None, 0)

    @pytest.mark.asyncio
    async def test_database_errors_fail_with_cause(self, store: LeaderboardStore, database: Database) -> None:
        error = OperationalError("SELECT", {}, Exception("disk I/O error"))

        with patch.object(database, "read_value", side_effect=error):
            result = await store.submit_score("a@x.com", 10)

        assert result.failed
        assert result.error.cause is error

    @pytest.mark.asyncio
    async def test_undecodable_value_fails_without_write(
        self, store: LeaderboardStore, database: Database, write_raw
    ) -> None:
        await write_raw(database, "Leaders", "{not json")

        result = await store.submit_score("a@x.com", 10)

        assert result.failed
        assert isinstance(result.error.cause, CorruptDataError)
        assert await _raw_node(database) == ("{not json", 1)

    @pytest.mark.asyncio
    async def test_close_waits_for_in_flight_submissions(self, database: Database) -> None:
        leaderboard_store = LeaderboardStore(database, max_entries=2)
        await leaderboard_store.open()
        task = leaderboard_store.submit_score("a@x.com", 10)

        await leaderboard_store.close()

        assert task.done()
        assert task.result().committed


class TestSubscribe:
    """Snapshots pushed to subscribers."""

    @pytest.mark.asyncio
    async def test_initial_event_is_current_state(self, store: LeaderboardStore) -> None:
        await store.submit_score("a@x.com", 10)

        async with await store.subscribe() as subscription:
            event = await _next(subscription)

        assert event.error is None
        assert event.snapshot.entries == (ScoreEntry("a@x.com", 10),)

    @pytest.mark.asyncio
    async def test_empty_store_yields_empty_board(self, store: LeaderboardStore) -> None:
        async with await store.subscribe() as subscription:
            event = await _next(subscription)

        assert event.snapshot.size() == 0

    @pytest.mark.asyncio
    async def test_commit_is_pushed(self, store: LeaderboardStore) -> None:
        async with await store.subscribe() as subscription:
            await _next(subscription)
            await store.submit_score("a@x.com", 10)

            event = await _next(subscription)

        assert event.snapshot.entries == (ScoreEntry("a@x.com", 10),)

    @pytest.mark.asyncio
    async def test_abort_is_not_pushed(self, store: LeaderboardStore) -> None:
        await store.submit_score("a@x.com", 10)
        await store.submit_score("b@x.com", 5)

        async with await store.subscribe() as subscription:
            await _next(subscription)
            await store.submit_score("c@x.com", 1)

            with pytest.raises(asyncio.TimeoutError):
                await _next(subscription, timeout=0.2)

    @pytest.mark.asyncio
    async def test_rapid_changes_collapse_to_latest(self, store: LeaderboardStore) -> None:
        async with await store.subscribe() as subscription:
            await _next(subscription)
            for identity, score in [("a@x.com", 10), ("b@x.com", 5), ("d@x.com", 20)]:
                await store.submit_score(identity, score)

            event = await _next(subscription)
            with pytest.raises(asyncio.TimeoutError):
                await _next(subscription, timeout=0.2)

        assert [entry.score for entry in event.snapshot] == [20, 10]
        assert event.snapshot.version == 3

    @pytest.mark.asyncio
    async def test_every_subscriber_is_notified(self, store: LeaderboardStore) -> None:
        first = await store.subscribe()
        second = await store.subscribe(order_by="identity")
        await _next(first)
        await _next(second)

        await store.submit_score("b@x.com", 10)
        await store.submit_score("a@x.com", 5)

        by_score = await _next(first)
        by_identity = await _next(second)
        assert [entry.identity for entry in by_score.snapshot] == ["b@x.com", "a@x.com"]
        assert [entry.identity for entry in by_identity.snapshot] == ["a@x.com", "b@x.com"]

    @pytest.mark.asyncio
    async def test_malformed_entry_reported_alongside_good_ones(
        self, store: LeaderboardStore, database: Database, write_raw
    ) -> None:
        async with await store.subscribe() as subscription:
            await _next(subscription)
            await write_raw(database, "Leaders", [{"email": "a@x.com", "score": 10}, {"email": "b@x.com"}])
            await database.refresh("Leaders")

            event = await _next(subscription)

        assert event.snapshot.entries == (ScoreEntry("a@x.com", 10),)
        assert [record.reason for record in event.snapshot.corrupt_records] == ["missing score"]

    @pytest.mark.asyncio
    async def test_errors_do_not_end_subscription(
        self, store: LeaderboardStore, database: Database, write_raw, records
    ) -> None:
        async with await store.subscribe() as subscription:
            await _next(subscription)
            await write_raw(database, "Leaders", "{not json")
            await database.refresh("Leaders")

            error_event = await _next(subscription)
            assert isinstance(error_event.error, CorruptDataError)

            await write_raw(database, "Leaders", records(("a@x.com", 10)), version=2)
            await database.refresh("Leaders")
            event = await _next(subscription)

        assert event.snapshot.entries == (ScoreEntry("a@x.com", 10),)

    @pytest.mark.asyncio
    async def test_stale_versions_are_dropped(self, store: LeaderboardStore) -> None:
        await store.submit_score("a@x.com", 10)
        await store.submit_score("b@x.com", 5)

        async with await store.subscribe() as subscription:
            await _next(subscription)
            subscription.push_value([{"email": "a@x.com", "score": 10}], 1)

            with pytest.raises(asyncio.TimeoutError):
                await _next(subscription, timeout=0.2)

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self, store: LeaderboardStore) -> None:
        subscription = await store.subscribe()
        await _next(subscription)

        subscription.close()

        assert [event async for event in subscription] == []

    @pytest.mark.asyncio
    async def test_store_close_ends_subscriptions(self, database: Database) -> None:
        leaderboard_store = LeaderboardStore(database)
        await leaderboard_store.open()
        subscription = await leaderboard_store.subscribe()
        await _next(subscription)

        await leaderboard_store.close()

        assert subscription.closed
        with pytest.raises(StopAsyncIteration):
            await _next(subscription)

    @pytest.mark.asyncio
    async def test_unknown_order_key_rejected(self, store: LeaderboardStore) -> None:
        with pytest.raises(ValueError):
            await store.subscribe(order_by="email")

    @pytest.mark.asyncio
    async def test_oversized_stored_board_is_cut_to_capacity(
        self, store: LeaderboardStore, database: Database, write_raw, records
    ) -> None:
        """A board written with a larger capacity reads back as the top two."""
        await write_raw(database, "Leaders", records(("a@x.com", 10), ("b@x.com", 40), ("c@x.com", 5), ("d@x.com", 20)))
        expected = (ScoreEntry("b@x.com", 40), ScoreEntry("d@x.com", 20))

        board = await store.get_leaderboard()
        subscription = await store.subscribe()
        event = await _next(subscription)

        assert board.entries == expected
        assert event.snapshot.entries == expected
        assert event.snapshot.size() <= store.max_entries
