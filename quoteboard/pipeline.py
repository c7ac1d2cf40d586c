"""Pipeline store: quotes, their stage and their position within the stage.

Every public operation runs in exactly one transaction, bounded by the
configured operation timeout. Operations that change ordering are also
serialized in-process so ``max(position) + 1`` allocation and renumbering
never interleave.

Ordering rules:
    - positions are 1-based per stage
    - ``move`` and ``resequence`` renumber every touched stage to 1..N
    - ``reorder`` writes caller-computed positions verbatim, but refuses a
      result with duplicate positions inside a touched stage

Usage:
    store = PipelineStore()
    quote = await store.create({"title": "Roof survey", "client_name": "Acme"})
    board = await store.reorder([{"id": quote.id, "stage": "won", "position": 1}])
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, TypeVar, Union

from pydantic import BaseModel
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quoteboard.config import get_config
from quoteboard.crm import find_or_create_customer
from quoteboard.db.connection import get_session_factory
from quoteboard.db.models import STAGE_ORDER, Customer, Quote, Stage, new_quote_id, utcnow
from quoteboard.errors import (
    ConflictError,
    NotFoundError,
    QuoteboardError,
    StorageError,
    ValidationError,
)
from quoteboard.schemas import PositionUpdate, QuoteRead, normalize_stage

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields a PUT may touch; stage/position are routed through ``move``
UPDATABLE_FIELDS = {
    "title",
    "client_name",
    "customer_id",
    "value",
    "so_number",
    "last_chased_at",
    "next_chase_at",
    "reminder_email",
    "attachment_url",
    "status",
    "notes",
}

_STAGE_RANK = case(
    {stage.value: stage.rank for stage in STAGE_ORDER},
    value=Quote.stage,
    else_=len(STAGE_ORDER),
)

# Card order inside a column; also the tie-break for legacy duplicate positions
_WITHIN_STAGE_ORDER = (
    Quote.position.asc(),
    Quote.next_chase_at.is_(None),
    Quote.next_chase_at.asc(),
    Quote.created_at.desc(),
    Quote.id.asc(),
)

BOARD_ORDER = (_STAGE_RANK, *_WITHIN_STAGE_ORDER)


def to_stage(value: Any) -> Stage:
    try:
        return Stage(normalize_stage(value.value if isinstance(value, Stage) else value))
    except ValueError:
        raise ValidationError(
            f"Unknown stage '{value}'. Expected one of: "
            f"{', '.join(s.value for s in STAGE_ORDER)}"
        )


def _as_dict(data: Union[BaseModel, Mapping[str, Any]]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump(exclude_unset=True)
    return dict(data)


def _required_text(data: Mapping[str, Any], key: str, label: str) -> str:
    value = data.get(key)
    if value is None or not str(value).strip():
        raise ValidationError(f"{label} is required")
    return str(value).strip()


class PipelineStore:
    """Owns quotes and guarantees consistent per-stage ordering."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self._session_factory = session_factory or get_session_factory()
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else get_config().database.operation_timeout_seconds
        )
        self._ordering_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    async def _transaction(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self._session_factory() as session:
            async with session.begin():
                return await fn(session)

    async def _run(
        self,
        operation: str,
        fn: Callable[[AsyncSession], Awaitable[T]],
        ids: Iterable[str] = (),
        ordering: bool = False,
    ) -> T:
        """Run ``fn`` in one transaction and translate persistence failures."""

        async def _guarded() -> T:
            if ordering:
                async with self._ordering_lock:
                    return await self._transaction(fn)
            return await self._transaction(fn)

        ids = list(ids)
        try:
            return await asyncio.wait_for(_guarded(), timeout=self.timeout_seconds)
        except QuoteboardError:
            raise
        except asyncio.TimeoutError as e:
            raise self._storage_error(operation, ids, "connection", "Database operation timed out", e)
        except IntegrityError as e:
            raise self._storage_error(operation, ids, "constraint", "Constraint violated", e)
        except (OperationalError, InterfaceError) as e:
            raise self._storage_error(operation, ids, "connection", "Database unavailable", e)
        except DBAPIError as e:
            kind = "connection" if e.connection_invalidated else "query"
            raise self._storage_error(operation, ids, kind, "Database error", e)
        except SQLAlchemyError as e:
            raise self._storage_error(operation, ids, "query", "Database error", e)
        except OSError as e:
            raise self._storage_error(operation, ids, "connection", "Database unavailable", e)

    @staticmethod
    def _storage_error(
        operation: str, ids: list[str], kind: str, message: str, cause: BaseException
    ) -> StorageError:
        logger.error(
            f"Store operation '{operation}' failed ({kind}) ids={ids}: {cause!r}"
        )
        err = StorageError(message, kind=kind, operation=operation, ids=ids)
        err.__cause__ = cause
        return err

    # ------------------------------------------------------------------
    # Query helpers (run inside a transaction)
    # ------------------------------------------------------------------

    @staticmethod
    async def _read(session: AsyncSession, quote_id: str) -> QuoteRead:
        row = (
            await session.scalars(
                select(Quote)
                .where(Quote.id == quote_id)
                .execution_options(populate_existing=True)
            )
        ).one()
        return QuoteRead.model_validate(row)

    @staticmethod
    async def _get_row(session: AsyncSession, quote_id: str) -> Quote:
        row = await session.get(Quote, quote_id)
        if row is None:
            raise NotFoundError("Quote", quote_id)
        return row

    @staticmethod
    async def _stage_rows(session: AsyncSession, stage: str) -> list[Quote]:
        result = await session.scalars(
            select(Quote).where(Quote.stage == stage).order_by(*_WITHIN_STAGE_ORDER)
        )
        return list(result.all())

    @staticmethod
    async def _board(session: AsyncSession) -> list[QuoteRead]:
        result = await session.scalars(
            select(Quote)
            .order_by(*BOARD_ORDER)
            .execution_options(populate_existing=True)
        )
        return [QuoteRead.model_validate(row) for row in result.all()]

    @staticmethod
    async def _next_position(session: AsyncSession, stage: Stage) -> int:
        current = await session.scalar(
            select(func.coalesce(func.max(Quote.position), 0)).where(
                Quote.stage == stage.value
            )
        )
        return int(current or 0) + 1

    @staticmethod
    async def _check_customer(session: AsyncSession, customer_id: Optional[str]) -> None:
        if customer_id and await session.get(Customer, customer_id) is None:
            raise ValidationError(f"Unknown customer '{customer_id}'")

    @staticmethod
    def _renumber(rows: list[Quote], now: datetime) -> None:
        for index, row in enumerate(rows, start=1):
            if row.position != index:
                row.position = index
                row.updated_at = now

    async def _place(
        self,
        session: AsyncSession,
        row: Quote,
        target: Stage,
        position: Optional[int],
        now: datetime,
    ) -> None:
        """Insert ``row`` into ``target`` at 1-based ``position`` (None → end)."""
        source = row.stage
        siblings = [q for q in await self._stage_rows(session, target.value) if q.id != row.id]
        if position is None:
            index = len(siblings)
        else:
            index = max(0, min(position - 1, len(siblings)))
        siblings.insert(index, row)

        row.stage = target.value
        row.updated_at = now
        self._renumber(siblings, now)

        if source != target.value:
            remaining = [q for q in await self._stage_rows(session, source) if q.id != row.id]
            self._renumber(remaining, now)

    @staticmethod
    async def _check_unique_positions(session: AsyncSession, stages: set[str]) -> None:
        clashes = (
            await session.execute(
                select(Quote.stage, Quote.position, func.count(Quote.id))
                .where(Quote.stage.in_(stages))
                .group_by(Quote.stage, Quote.position)
                .having(func.count(Quote.id) > 1)
            )
        ).all()
        if clashes:
            stage, position, count = clashes[0]
            raise ValidationError(
                f"Position {position} in stage '{stage}' would be held by {count} quotes"
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_all(self) -> list[QuoteRead]:
        """All quotes in board order: stage rank, position, next chase, newest."""
        return await self._run("list_all", self._board)

    async def get_by_id(self, quote_id: str) -> QuoteRead:
        async def _op(session: AsyncSession) -> QuoteRead:
            await self._get_row(session, quote_id)
            return await self._read(session, quote_id)

        return await self._run("get_by_id", _op, ids=[quote_id])

    async def list_by_customer(self, customer_id: str) -> list[QuoteRead]:
        async def _op(session: AsyncSession) -> list[QuoteRead]:
            result = await session.scalars(
                select(Quote)
                .where(Quote.customer_id == customer_id)
                .order_by(Quote.created_at.desc(), Quote.id.asc())
            )
            return [QuoteRead.model_validate(row) for row in result.all()]

        return await self._run("list_by_customer", _op, ids=[customer_id])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self,
        fields: Union[BaseModel, Mapping[str, Any]],
        created_by: Optional[str] = None,
    ) -> QuoteRead:
        """Create a quote at the end of its stage (default stage: new)."""
        data = _as_dict(fields)
        title = _required_text(data, "title", "Title")
        client_name = _required_text(data, "client_name", "Client name")
        stage = to_stage(data.get("stage") or Stage.NEW)
        quote_id = data.get("id") or new_quote_id()

        async def _op(session: AsyncSession) -> QuoteRead:
            if await session.get(Quote, quote_id) is not None:
                raise ConflictError(f"Quote '{quote_id}' already exists")

            customer_id = data.get("customer_id")
            customer_name = (data.get("customer_name") or "").strip()
            if customer_name and not customer_id:
                customer = await find_or_create_customer(session, customer_name)
                customer_id = customer.id
            else:
                await self._check_customer(session, customer_id)

            now = utcnow()
            row = Quote(
                id=quote_id,
                title=title,
                client_name=client_name,
                customer_id=customer_id,
                value=data.get("value"),
                stage=stage.value,
                position=await self._next_position(session, stage),
                so_number=data.get("so_number"),
                last_chased_at=data.get("last_chased_at"),
                next_chase_at=data.get("next_chase_at"),
                reminder_email=data.get("reminder_email"),
                attachment_url=data.get("attachment_url"),
                status=data.get("status"),
                notes=data.get("notes"),
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            await session.flush()
            logger.info(
                f"Created quote {row.id} '{title}' in {stage.value} at position {row.position}"
            )
            return await self._read(session, row.id)

        return await self._run("create", _op, ids=[quote_id], ordering=True)

    async def update_fields(
        self,
        quote_id: str,
        patch: Union[BaseModel, Mapping[str, Any]],
    ) -> QuoteRead:
        """Merge ``patch`` onto the quote. Stage/position changes renumber siblings."""
        data = _as_dict(patch)
        for key, label in (("title", "Title"), ("client_name", "Client name")):
            if key in data:
                data[key] = _required_text(data, key, label)

        stage = data.pop("stage", None)
        position = data.pop("position", None)
        target = to_stage(stage) if stage is not None else None
        changes = {k: v for k, v in data.items() if k in UPDATABLE_FIELDS}
        repositions = target is not None or position is not None

        async def _op(session: AsyncSession) -> QuoteRead:
            row = await self._get_row(session, quote_id)
            if "customer_id" in changes:
                await self._check_customer(session, changes["customer_id"])
            for key, value in changes.items():
                setattr(row, key, value)
            now = utcnow()
            row.updated_at = now
            if repositions:
                await self._place(
                    session,
                    row,
                    target or to_stage(row.stage),
                    max(position, 1) if position is not None else None,
                    now,
                )
            await session.flush()
            return await self._read(session, quote_id)

        return await self._run("update_fields", _op, ids=[quote_id], ordering=repositions)

    async def move(
        self,
        quote_id: str,
        stage: Union[Stage, str],
        position: Optional[int] = None,
    ) -> QuoteRead:
        """Move one quote to ``stage`` at ``position`` (1-based, default: end).

        Source and target stages are renumbered 1..N.
        """
        target = to_stage(stage)
        if position is not None and position < 1:
            raise ValidationError("Position must be 1 or greater")

        async def _op(session: AsyncSession) -> QuoteRead:
            row = await self._get_row(session, quote_id)
            source = row.stage
            await self._place(session, row, target, position, utcnow())
            await session.flush()
            logger.info(
                f"Moved quote {quote_id} {source} → {target.value} at position {row.position}"
            )
            return await self._read(session, quote_id)

        return await self._run("move", _op, ids=[quote_id], ordering=True)

    async def reorder(
        self,
        moves: Iterable[Union[PositionUpdate, Mapping[str, Any]]],
    ) -> list[QuoteRead]:
        """Apply caller-computed ``{id, stage, position}`` moves atomically.

        Returns the whole board, freshly loaded. Unknown ids or a resulting
        position clash roll back every move.
        """
        parsed: list[tuple[str, Stage, int]] = []
        for move in moves:
            data = _as_dict(move)
            quote_id = data.get("id")
            position = data.get("position")
            if not quote_id:
                raise ValidationError("Every update needs an id")
            if not isinstance(position, int) or isinstance(position, bool) or position < 0:
                raise ValidationError(f"Invalid position for quote '{quote_id}'")
            parsed.append((quote_id, to_stage(data.get("stage")), position))

        if not parsed:
            raise ValidationError("Updates array is required")
        ids = [quote_id for quote_id, _, _ in parsed]
        if len(set(ids)) != len(ids):
            raise ValidationError("Each quote may appear only once per reorder")

        async def _op(session: AsyncSession) -> list[QuoteRead]:
            rows = {
                row.id: row
                for row in (
                    await session.scalars(select(Quote).where(Quote.id.in_(ids)))
                ).all()
            }
            missing = [quote_id for quote_id in ids if quote_id not in rows]
            if missing:
                raise NotFoundError("Quote", missing[0])

            now = utcnow()
            touched: set[str] = set()
            for quote_id, stage, position in parsed:
                row = rows[quote_id]
                touched.update((row.stage, stage.value))
                row.stage = stage.value
                row.position = position
                row.updated_at = now

            await session.flush()
            await self._check_unique_positions(session, touched)
            logger.info(f"Reordered {len(parsed)} quotes across stages {sorted(touched)}")
            return await self._board(session)

        return await self._run("reorder", _op, ids=ids, ordering=True)

    async def resequence(
        self,
        order: Mapping[Union[Stage, str], Iterable[str]],
    ) -> list[QuoteRead]:
        """Store-authoritative reorder from the final id order per column.

        Listed ids get ranks 1..N in list order; members of a listed column
        that are not in its list keep their relative order after them.
        Columns that lost members are renumbered too.
        """
        plan: dict[Stage, list[str]] = {}
        for stage, ids in order.items():
            plan[to_stage(stage)] = list(ids)
        all_ids = [quote_id for ids in plan.values() for quote_id in ids]
        if not plan:
            raise ValidationError("At least one stage order is required")
        if len(set(all_ids)) != len(all_ids):
            raise ValidationError("Each quote may appear only once per reorder")
        listed = set(all_ids)

        async def _op(session: AsyncSession) -> list[QuoteRead]:
            rows = {
                row.id: row
                for row in (
                    await session.scalars(select(Quote).where(Quote.id.in_(all_ids)))
                ).all()
            } if all_ids else {}
            missing = [quote_id for quote_id in all_ids if quote_id not in rows]
            if missing:
                raise NotFoundError("Quote", missing[0])

            now = utcnow()
            sources = {rows[quote_id].stage for quote_id in all_ids}
            for stage, ids in plan.items():
                rest = [
                    q for q in await self._stage_rows(session, stage.value)
                    if q.id not in listed
                ]
                ordered = [rows[quote_id] for quote_id in ids]
                for row in ordered:
                    if row.stage != stage.value:
                        row.stage = stage.value
                        row.updated_at = now
                self._renumber(ordered + rest, now)
                await session.flush()

            for source in sources - {stage.value for stage in plan}:
                remaining = [
                    q for q in await self._stage_rows(session, source) if q.id not in listed
                ]
                self._renumber(remaining, now)

            await session.flush()
            logger.info(
                f"Resequenced stages {[s.value for s in plan]} ({len(all_ids)} listed quotes)"
            )
            return await self._board(session)

        return await self._run("resequence", _op, ids=all_ids, ordering=True)

    async def set_attachment(self, quote_id: str, attachment_url: str) -> QuoteRead:
        return await self.update_fields(quote_id, {"attachment_url": attachment_url})

    async def repair_positions(self) -> int:
        """Renumber stages that hold duplicate positions (legacy data). Returns stages fixed."""

        async def _op(session: AsyncSession) -> int:
            dupes = (
                await session.execute(
                    select(Quote.stage)
                    .group_by(Quote.stage, Quote.position)
                    .having(func.count(Quote.id) > 1)
                )
            ).scalars().all()
            stages = sorted(set(dupes))
            now = utcnow()
            for stage in stages:
                self._renumber(await self._stage_rows(session, stage), now)
            if stages:
                logger.warning(f"Repaired duplicate positions in stages {stages}")
            return len(stages)

        return await self._run("repair_positions", _op, ordering=True)

    # ------------------------------------------------------------------
    # Reminder hooks
    # ------------------------------------------------------------------

    async def due_reminders(self, now: Optional[datetime] = None) -> list[QuoteRead]:
        """Quotes with a reminder address whose next chase time has passed."""
        now = now or utcnow()

        async def _op(session: AsyncSession) -> list[QuoteRead]:
            result = await session.scalars(
                select(Quote)
                .where(
                    Quote.reminder_email.is_not(None),
                    Quote.reminder_email != "",
                    Quote.next_chase_at.is_not(None),
                    Quote.next_chase_at <= now,
                )
                .order_by(Quote.next_chase_at.asc(), Quote.id.asc())
            )
            return [QuoteRead.model_validate(row) for row in result.all()]

        return await self._run("due_reminders", _op)

    async def mark_reminder_sent(
        self,
        quote_id: str,
        at: datetime,
        due_at: Optional[datetime] = None,
    ) -> bool:
        """Record a dispatched reminder and clear the due state.

        ``last_chased_at`` is always set. With ``due_at``, ``next_chase_at`` is
        only cleared while it still holds that value, so a reschedule made
        during the send survives. Returns False when the due state was kept.
        """

        async def _op(session: AsyncSession) -> bool:
            stmt = update(Quote).where(Quote.id == quote_id)
            if due_at is not None:
                stmt = stmt.where(Quote.next_chase_at == due_at)
            stmt = stmt.values(
                last_chased_at=at, next_chase_at=None, updated_at=utcnow()
            ).execution_options(synchronize_session=False)
            result = await session.execute(stmt)
            if result.rowcount > 0 or due_at is None:
                return result.rowcount > 0

            # Rescheduled mid-send: the email still went out
            await session.execute(
                update(Quote)
                .where(Quote.id == quote_id)
                .values(last_chased_at=at, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return False

        return await self._run("mark_reminder_sent", _op, ids=[quote_id])
