"""Tests for the pipeline store: creation, ordering, reorder atomicity and reminders hooks."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError

from quoteboard.db.connection import get_session, init_db
from quoteboard.db.models import Customer, Quote, Stage
from quoteboard.errors import ConflictError, NotFoundError, StorageError, ValidationError
from quoteboard.pipeline import PipelineStore
from quoteboard.schemas import QuoteCreate


async def _make(store, title, stage=None, **fields):
    data = {"title": title, "client_name": fields.pop("client_name", "Acme"), **fields}
    if stage:
        data["stage"] = stage
    return await store.create(data)


def _column(quotes, stage):
    return [(q.title, q.position) for q in quotes if q.stage == stage]


# ============================================================
# 1. CREATE
# ============================================================


class TestCreate:
    @pytest.mark.asyncio
    async def test_defaults_to_new_at_position_one(self, store):
        quote = await _make(store, "Roof survey")
        assert quote.stage == Stage.NEW
        assert quote.position == 1
        assert quote.id.startswith("q_")
        assert quote.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_appends_to_stage_end(self, store):
        for title in ("A", "B", "C"):
            await _make(store, title)
        fourth = await _make(store, "D", stage="new")
        assert fourth.position == 4

    @pytest.mark.asyncio
    async def test_positions_are_per_stage(self, store):
        await _make(store, "A")
        await _make(store, "B")
        won = await _make(store, "C", stage="won")
        assert won.position == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["title", "client_name"])
    async def test_requires_title_and_client(self, store, field):
        data = {"title": "Roof survey", "client_name": "Acme", field: "   "}
        with pytest.raises(ValidationError):
            await store.create(data)
        assert await store.list_all() == []

    @pytest.mark.asyncio
    async def test_unknown_stage_rejected(self, store):
        with pytest.raises(ValidationError):
            await _make(store, "A", stage="archived")

    @pytest.mark.asyncio
    async def test_legacy_stage_key_is_mapped(self, store):
        quote = await _make(store, "A", stage="negotiation")
        assert quote.stage == Stage.TENDER

    @pytest.mark.asyncio
    async def test_customer_found_or_created_case_insensitively(self, store):
        first = await _make(store, "A", customer_name="Acme Ltd")
        second = await _make(store, "B", customer_name="ACME LTD")
        assert first.customer_id is not None
        assert first.customer_id == second.customer_id
        assert second.customer_name == "Acme Ltd"

        async with get_session() as session:
            customers = (await session.scalars(select(Customer))).all()
        assert len(customers) == 1

    @pytest.mark.asyncio
    async def test_unknown_customer_id_rejected(self, store):
        with pytest.raises(ValidationError):
            await _make(store, "A", customer_id="nope")

    @pytest.mark.asyncio
    async def test_duplicate_id_conflicts(self, store):
        await _make(store, "A", id="q_fixed")
        with pytest.raises(ConflictError):
            await _make(store, "B", id="q_fixed")


# ============================================================
# 2. UPDATE & MOVE
# ============================================================


class TestUpdateFields:
    @pytest.mark.asyncio
    async def test_merges_patch(self, store):
        quote = await _make(store, "A", value=1200)
        updated = await store.update_fields(quote.id, {"notes": "call back", "value": 1500})
        assert updated.notes == "call back"
        assert updated.value == 1500
        assert updated.title == "A"
        assert updated.updated_at >= quote.updated_at

    @pytest.mark.asyncio
    async def test_value_is_exact_decimal(self, store):
        body = QuoteCreate.model_validate(
            {"title": "Tender pack", "clientName": "Acme", "value": "1234567890.12"}
        )
        quote = await store.create(body)

        stored = await store.get_by_id(quote.id)
        assert isinstance(stored.value, Decimal)
        assert stored.value == Decimal("1234567890.12")
        assert stored.model_dump(mode="json", by_alias=True)["value"] == 1234567890.12

    @pytest.mark.asyncio
    async def test_unknown_id(self, store):
        with pytest.raises(NotFoundError):
            await store.update_fields("q_missing", {"notes": "x"})

    @pytest.mark.asyncio
    async def test_blank_title_rejected(self, store):
        quote = await _make(store, "A")
        with pytest.raises(ValidationError):
            await store.update_fields(quote.id, {"title": ""})
        assert (await store.get_by_id(quote.id)).title == "A"

    @pytest.mark.asyncio
    async def test_stage_patch_renumbers(self, store):
        a = await _make(store, "A")
        await _make(store, "B")
        await _make(store, "C")
        await store.update_fields(a.id, {"stage": "won"})

        board = await store.list_all()
        assert _column(board, Stage.NEW) == [("B", 1), ("C", 2)]
        assert _column(board, Stage.WON) == [("A", 1)]


class TestMove:
    @pytest.mark.asyncio
    async def test_move_to_end_renumbers_source(self, store):
        a = await _make(store, "A")
        await _make(store, "B")
        await _make(store, "X", stage="tender")

        moved = await store.move(a.id, "tender")
        assert moved.stage == Stage.TENDER
        assert moved.position == 2

        board = await store.list_all()
        assert _column(board, Stage.NEW) == [("B", 1)]
        assert _column(board, Stage.TENDER) == [("X", 1), ("A", 2)]

    @pytest.mark.asyncio
    async def test_move_to_position_shifts_target(self, store):
        a = await _make(store, "A")
        await _make(store, "X", stage="tender")
        await _make(store, "Y", stage="tender")

        await store.move(a.id, Stage.TENDER, position=1)
        board = await store.list_all()
        assert _column(board, Stage.TENDER) == [("A", 1), ("X", 2), ("Y", 3)]

    @pytest.mark.asyncio
    async def test_move_within_stage(self, store):
        await _make(store, "A")
        await _make(store, "B")
        c = await _make(store, "C")

        await store.move(c.id, "new", position=1)
        assert _column(await store.list_all(), Stage.NEW) == [("C", 1), ("A", 2), ("B", 3)]

    @pytest.mark.asyncio
    async def test_position_is_clamped(self, store):
        a = await _make(store, "A")
        await _make(store, "X", stage="won")
        moved = await store.move(a.id, "won", position=99)
        assert moved.position == 2

    @pytest.mark.asyncio
    async def test_unknown_id(self, store):
        with pytest.raises(NotFoundError):
            await store.move("q_missing", "won")


# ============================================================
# 3. REORDER (bulk, caller-computed positions)
# ============================================================


class TestReorder:
    @pytest.mark.asyncio
    async def test_example_scenario_order(self, store):
        a = await _make(store, "Roof survey", client_name="Acme")
        b = await _make(store, "Gutter repair", client_name="Acme")
        assert (a.stage, a.position, b.position) == (Stage.NEW, 1, 2)

        board = await store.reorder([
            {"id": b.id, "stage": "new", "position": 1},
            {"id": a.id, "stage": "new", "position": 2},
        ])
        assert [q.id for q in board if q.stage == Stage.NEW] == [b.id, a.id]
        assert [q.id for q in await store.list_all()] == [b.id, a.id]

    @pytest.mark.asyncio
    async def test_cross_stage_move(self, store):
        a = await _make(store, "A")
        b = await _make(store, "B")
        x = await _make(store, "X", stage="won")

        await store.reorder([
            {"id": b.id, "stage": "new", "position": 1},
            {"id": a.id, "stage": "won", "position": 1},
            {"id": x.id, "stage": "won", "position": 2},
        ])
        board = await store.list_all()
        assert _column(board, Stage.NEW) == [("B", 1)]
        assert _column(board, Stage.WON) == [("A", 1), ("X", 2)]

    @pytest.mark.asyncio
    async def test_positions_unique_after_success(self, store):
        quotes = [await _make(store, t) for t in "ABCDE"]
        moves = [
            {"id": q.id, "stage": "new", "position": i}
            for i, q in enumerate(reversed(quotes), start=1)
        ]
        board = await store.reorder(moves)
        positions = [q.position for q in board if q.stage == Stage.NEW]
        assert positions == sorted(set(positions))

    @pytest.mark.asyncio
    async def test_duplicate_position_rolls_back_every_move(self, store):
        a = await _make(store, "A")
        b = await _make(store, "B")
        await _make(store, "C")
        d = await _make(store, "D")
        before = [(q.id, q.stage, q.position) for q in await store.list_all()]

        with pytest.raises(ValidationError):
            await store.reorder([
                {"id": d.id, "stage": "won", "position": 1},
                {"id": a.id, "stage": "new", "position": 3},  # C already holds 3
                {"id": b.id, "stage": "tender", "position": 1},
            ])

        after = [(q.id, q.stage, q.position) for q in await store.list_all()]
        assert after == before

    @pytest.mark.asyncio
    async def test_unknown_id_rolls_back(self, store):
        a = await _make(store, "A")
        b = await _make(store, "B")
        with pytest.raises(NotFoundError):
            await store.reorder([
                {"id": b.id, "stage": "new", "position": 1},
                {"id": "q_missing", "stage": "new", "position": 2},
                {"id": a.id, "stage": "new", "position": 2},
            ])
        assert [q.id for q in await store.list_all()] == [a.id, b.id]

    @pytest.mark.asyncio
    async def test_empty_moves_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.reorder([])

    @pytest.mark.asyncio
    async def test_same_quote_twice_rejected(self, store):
        a = await _make(store, "A")
        with pytest.raises(ValidationError):
            await store.reorder([
                {"id": a.id, "stage": "new", "position": 1},
                {"id": a.id, "stage": "won", "position": 1},
            ])


# ============================================================
# 4. RESEQUENCE (store-assigned ranks)
# ============================================================


class TestResequence:
    @pytest.mark.asyncio
    async def test_assigns_contiguous_ranks(self, store):
        a = await _make(store, "A")
        b = await _make(store, "B")
        c = await _make(store, "C")

        board = await store.resequence({"new": [c.id, a.id, b.id]})
        assert _column(board, Stage.NEW) == [("C", 1), ("A", 2), ("B", 3)]

    @pytest.mark.asyncio
    async def test_unlisted_members_follow_and_source_is_renumbered(self, store):
        a = await _make(store, "A")
        b = await _make(store, "B")
        c = await _make(store, "C")
        x = await _make(store, "X", stage="won")
        y = await _make(store, "Y", stage="won")

        board = await store.resequence({Stage.WON: [b.id, y.id]})
        assert _column(board, Stage.WON) == [("B", 1), ("Y", 2), ("X", 3)]
        assert _column(board, Stage.NEW) == [("A", 1), ("C", 2)]
        assert {a.id, c.id, x.id} <= {q.id for q in board}

    @pytest.mark.asyncio
    async def test_duplicate_ids_rejected(self, store):
        a = await _make(store, "A")
        with pytest.raises(ValidationError):
            await store.resequence({"new": [a.id], "won": [a.id]})

    @pytest.mark.asyncio
    async def test_unknown_id(self, store):
        with pytest.raises(NotFoundError):
            await store.resequence({"new": ["q_missing"]})


# ============================================================
# 5. LISTING
# ============================================================


class TestListing:
    @pytest.mark.asyncio
    async def test_stage_rank_orders_columns(self, store):
        await _make(store, "Lost one", stage="lost")
        await _make(store, "Won one", stage="won")
        await _make(store, "Follow", stage="follow_up")
        await _make(store, "Fresh")

        stages = [q.stage for q in await store.list_all()]
        assert stages == [Stage.NEW, Stage.FOLLOW_UP, Stage.WON, Stage.LOST]

    @pytest.mark.asyncio
    async def test_list_all_is_idempotent(self, store):
        for title, stage in [("A", "new"), ("B", "tender"), ("C", "new"), ("D", "won")]:
            await _make(store, title, stage=stage)
        first = [q.id for q in await store.list_all()]
        second = [q.id for q in await store.list_all()]
        assert first == second

    @pytest.mark.asyncio
    async def test_list_by_customer(self, store):
        a = await _make(store, "A", customer_name="Acme")
        b = await _make(store, "B", customer_name="Acme")
        await _make(store, "C", customer_name="Other")

        quotes = await store.list_by_customer(a.customer_id)
        assert {q.id for q in quotes} == {a.id, b.id}

    @pytest.mark.asyncio
    async def test_get_by_id_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.get_by_id("q_missing")

    @pytest.mark.asyncio
    async def test_set_attachment(self, store):
        quote = await _make(store, "A")
        updated = await store.set_attachment(quote.id, "/uploads/abc.pdf")
        assert updated.attachment_url == "/uploads/abc.pdf"


# ============================================================
# 6. REMINDER HOOKS
# ============================================================


class TestReminderHooks:
    @pytest.mark.asyncio
    async def test_due_reminders_filters(self, store, now, minute):
        due = await _make(store, "Due", reminder_email="a@x.com", next_chase_at=now - minute)
        await _make(store, "Future", reminder_email="a@x.com", next_chase_at=now + minute)
        await _make(store, "No email", next_chase_at=now - minute)
        await _make(store, "No date", reminder_email="a@x.com")

        assert [q.id for q in await store.due_reminders(now)] == [due.id]

    @pytest.mark.asyncio
    async def test_mark_sent_clears_due_state(self, store, now, minute):
        quote = await _make(store, "Due", reminder_email="a@x.com", next_chase_at=now - minute)
        assert await store.mark_reminder_sent(quote.id, now, due_at=quote.next_chase_at)

        stored = await store.get_by_id(quote.id)
        assert stored.next_chase_at is None
        assert stored.last_chased_at == now

    @pytest.mark.asyncio
    async def test_mark_sent_keeps_reschedule(self, store, now, minute):
        quote = await _make(store, "Due", reminder_email="a@x.com", next_chase_at=now - minute)
        await store.update_fields(quote.id, {"next_chase_at": now + 60 * minute})

        assert not await store.mark_reminder_sent(quote.id, now, due_at=quote.next_chase_at)
        stored = await store.get_by_id(quote.id)
        assert stored.next_chase_at == now + 60 * minute
        assert stored.last_chased_at == now


# ============================================================
# 7. SCHEMA & LEGACY DATA
# ============================================================


class TestLegacyData:
    @pytest.mark.asyncio
    async def test_init_db_migrates_legacy_stages(self, store):
        async with get_session() as session:
            session.add(Quote(id="q_old", title="Old", client_name="Acme", stage="sent", position=1))
        await init_db()
        assert (await store.get_by_id("q_old")).stage == Stage.NEW

    @pytest.mark.asyncio
    async def test_repair_positions(self, store):
        async with get_session() as session:
            for i in range(3):
                session.add(Quote(id=f"q_{i}", title=f"T{i}", client_name="Acme", stage="new", position=0))
        assert await store.repair_positions() == 1
        positions = [q.position for q in await store.list_all()]
        assert positions == [1, 2, 3]
        assert await store.repair_positions() == 0


# ============================================================
# 8. FAILURES & CONCURRENCY
# ============================================================


class _SlowSession:
    """Session stand-in whose connect step never finishes in time."""

    async def __aenter__(self):
        await asyncio.sleep(5)

    async def __aexit__(self, *exc):
        return False


class TestStoreFailures:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("error_type", [OperationalError, InterfaceError])
    async def test_unreachable_database_is_retryable(self, error_type):
        def broken_factory():
            raise error_type("SELECT 1", {}, Exception("unable to open database file"))

        store = PipelineStore(session_factory=broken_factory, timeout_seconds=5)
        with pytest.raises(StorageError) as exc_info:
            await store.get_by_id("q_1")

        err = exc_info.value
        assert err.kind == "connection"
        assert err.retryable
        assert err.operation == "get_by_id"
        assert err.ids == ["q_1"]

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        store = PipelineStore(session_factory=_SlowSession, timeout_seconds=0.01)
        with pytest.raises(StorageError) as exc_info:
            await store.list_all()

        err = exc_info.value
        assert err.retryable
        assert err.operation == "list_all"
        assert err.message == "Database operation timed out"

    @pytest.mark.asyncio
    async def test_domain_errors_pass_through(self, store):
        with pytest.raises(NotFoundError):
            await store.get_by_id("q_missing")


class TestConcurrentWrites:
    @pytest.mark.asyncio
    async def test_parallel_creates_get_distinct_positions(self, store):
        created = await asyncio.gather(*(_make(store, f"Q{i}") for i in range(10)))

        assert sorted(q.position for q in created) == list(range(1, 11))
        board = await store.list_all()
        assert [q.position for q in board] == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_parallel_moves_and_creates_stay_dense(self, store):
        movers = [await _make(store, f"T{i}", stage="tender") for i in range(4)]

        await asyncio.gather(
            *(store.move(q.id, "new") for q in movers),
            *(_make(store, f"N{i}") for i in range(4)),
        )

        board = await store.list_all()
        assert [q.position for q in board if q.stage == Stage.NEW] == list(range(1, 9))
        assert [q for q in board if q.stage == Stage.TENDER] == []
