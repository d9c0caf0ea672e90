"""
Async Postgres: orders (aggregate row) + order_status_history (audit trail) + order_attachments
+ order_activities (activity log) + staff.
Stage changes are written in a single transaction: lock the order row, check the history
position, insert the entry, update the order.
"""
import json
from decimal import Decimal

import asyncpg

from fulfillment.activities import Activity, ActivityType
from fulfillment.config import settings
from fulfillment.models import Attachment, Customer, LineItem, Order, ShippingInfo, StageHistoryEntry
from fulfillment.stages import ImageType, StageId
from fulfillment.stores import OrderFilter, StaffRef

_pool: asyncpg.Pool | None = None


class StaleOrderError(Exception):
    """Raised when the stored history moved on since the order was loaded. Transaction will roll back."""
    def __init__(self, order_id: str, expected_position: int, stored_position: int):
        self.order_id = order_id
        self.expected_position = expected_position
        self.stored_position = stored_position
        super().__init__(f"order {order_id}: expected history position {expected_position}, found {stored_position}")


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id VARCHAR(64) PRIMARY KEY,
                order_number VARCHAR(64) NOT NULL UNIQUE,
                customer JSONB NOT NULL,
                line_items JSONB NOT NULL DEFAULT '[]',
                shipping_fee NUMERIC(14, 2) NOT NULL DEFAULT 0,
                other_fees NUMERIC(14, 2) NOT NULL DEFAULT 0,
                current_stage VARCHAR(50) NOT NULL,
                assigned_staff JSONB NOT NULL DEFAULT '[]',
                deadline TIMESTAMPTZ,
                notes TEXT,
                payment_method VARCHAR(20),
                shipping_info JSONB,
                delivery_time TIMESTAMPTZ,
                failure_reason TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_status_history (
                order_id VARCHAR(64) NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
                position INT NOT NULL,
                stage VARCHAR(50) NOT NULL,
                entered_at TIMESTAMPTZ NOT NULL,
                entered_by VARCHAR(64),
                note TEXT,
                PRIMARY KEY (order_id, position)
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_attachments (
                id VARCHAR(64) PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
                image_type VARCHAR(20) NOT NULL,
                blob_ref TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_current_stage
            ON orders(current_stage);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_activities (
                seq BIGSERIAL,
                id VARCHAR(64) PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
                activity_type VARCHAR(30) NOT NULL,
                description TEXT NOT NULL,
                occurred_at TIMESTAMPTZ NOT NULL,
                actor VARCHAR(64),
                old_value TEXT,
                new_value TEXT,
                metadata JSONB NOT NULL DEFAULT '{}'
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_order_activities_order
            ON order_activities(order_id, occurred_at);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS staff (
                id VARCHAR(64) PRIMARY KEY,
                display_name VARCHAR(255) NOT NULL,
                role VARCHAR(20)
            );
        """)


def _order_from_rows(row: asyncpg.Record, history: list[asyncpg.Record], attachments: list[asyncpg.Record]) -> Order:
    customer = json.loads(row["customer"])
    shipping = json.loads(row["shipping_info"]) if row["shipping_info"] else None
    return Order(
        id=row["id"],
        order_number=row["order_number"],
        customer=Customer(**customer),
        created_at=row["created_at"],
        line_items=[LineItem.from_dict(item) for item in json.loads(row["line_items"])],
        shipping_fee=Decimal(row["shipping_fee"]),
        other_fees=Decimal(row["other_fees"]),
        current_stage=StageId(row["current_stage"]),
        stage_history=[
            StageHistoryEntry(StageId(h["stage"]), h["entered_at"], h["entered_by"], h["note"])
            for h in history
        ],
        assigned_staff=json.loads(row["assigned_staff"]),
        attachments=[
            Attachment(a["id"], ImageType(a["image_type"]), a["blob_ref"], a["created_at"])
            for a in attachments
        ],
        deadline=row["deadline"],
        notes=row["notes"],
        payment_method=row["payment_method"],
        shipping_info=ShippingInfo(**shipping) if shipping else None,
        delivery_time=row["delivery_time"],
        failure_reason=row["failure_reason"],
    )


async def _fetch_order(conn: asyncpg.Connection, row: asyncpg.Record) -> Order:
    history = await conn.fetch(
        "SELECT * FROM order_status_history WHERE order_id = $1 ORDER BY position ASC;",
        row["id"],
    )
    attachments = await conn.fetch(
        "SELECT * FROM order_attachments WHERE order_id = $1 ORDER BY created_at ASC;",
        row["id"],
    )
    return _order_from_rows(row, history, attachments)


async def _upsert_order(conn: asyncpg.Connection, order: Order) -> None:
    await conn.execute(
        """
        INSERT INTO orders (id, order_number, customer, line_items, shipping_fee, other_fees, current_stage,
                            assigned_staff, deadline, notes, payment_method, shipping_info, delivery_time,
                            failure_reason, created_at, updated_at)
        VALUES ($1, $2, $3::jsonb, $4::jsonb, $5, $6, $7, $8::jsonb, $9, $10, $11, $12::jsonb, $13, $14, $15, NOW())
        ON CONFLICT (id) DO UPDATE SET
            customer = EXCLUDED.customer,
            line_items = EXCLUDED.line_items,
            shipping_fee = EXCLUDED.shipping_fee,
            other_fees = EXCLUDED.other_fees,
            current_stage = EXCLUDED.current_stage,
            assigned_staff = EXCLUDED.assigned_staff,
            deadline = EXCLUDED.deadline,
            notes = EXCLUDED.notes,
            payment_method = EXCLUDED.payment_method,
            shipping_info = EXCLUDED.shipping_info,
            delivery_time = EXCLUDED.delivery_time,
            failure_reason = EXCLUDED.failure_reason,
            updated_at = NOW();
        """,
        order.id,
        order.order_number,
        json.dumps(order.customer.to_dict()),
        json.dumps([item.to_dict() for item in order.line_items]),
        order.shipping_fee,
        order.other_fees,
        order.current_stage.value,
        json.dumps(order.assigned_staff),
        order.deadline,
        order.notes,
        order.payment_method,
        json.dumps(order.shipping_info.to_dict()) if order.shipping_info else None,
        order.delivery_time,
        order.failure_reason,
        order.created_at,
    )
    ids = [a.id for a in order.attachments]
    await conn.execute(
        "DELETE FROM order_attachments WHERE order_id = $1 AND NOT (id = ANY($2::varchar[]));",
        order.id,
        ids,
    )
    await conn.executemany(
        """
        INSERT INTO order_attachments (id, order_id, image_type, blob_ref, created_at)
        VALUES ($1, $2, $3, $4, $5)
        ON CONFLICT (id) DO NOTHING;
        """,
        [(a.id, order.id, a.image_type.value, a.blob_ref, a.created_at) for a in order.attachments],
    )


async def _insert_history(conn: asyncpg.Connection, order_id: str, position: int, entry: StageHistoryEntry) -> None:
    await conn.execute(
        """
        INSERT INTO order_status_history (order_id, position, stage, entered_at, entered_by, note)
        VALUES ($1, $2, $3, $4, $5, $6);
        """,
        order_id,
        position,
        entry.stage.value,
        entry.entered_at,
        entry.entered_by,
        entry.note,
    )


class PostgresOrderStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def load(self, order_id: str) -> Order | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1;", order_id)
            if row is None:
                return None
            return await _fetch_order(conn, row)

    async def save(self, order: Order) -> None:
        """Upsert the order row, its attachments, and any history entries not yet stored."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await _upsert_order(conn, order)
                stored = await conn.fetchval(
                    "SELECT COUNT(*) FROM order_status_history WHERE order_id = $1;",
                    order.id,
                )
                for position in range(stored, len(order.stage_history)):
                    await _insert_history(conn, order.id, position, order.stage_history[position])

    async def append_history(self, order: Order, entry: StageHistoryEntry) -> None:
        """Insert entry as the next history position and save the order, atomically."""
        position = len(order.stage_history) - 1
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.fetchrow("SELECT id FROM orders WHERE id = $1 FOR UPDATE;", order.id)
                stored = await conn.fetchval(
                    "SELECT COUNT(*) FROM order_status_history WHERE order_id = $1;",
                    order.id,
                )
                if stored != position:
                    raise StaleOrderError(order.id, position, stored)
                await _insert_history(conn, order.id, position, entry)
                await _upsert_order(conn, order)

    async def list_orders(self, filters: OrderFilter | None = None) -> list[Order]:
        filters = filters or OrderFilter()
        clauses: list[str] = []
        args: list = []

        def arg(value) -> str:
            args.append(value)
            return f"${len(args)}"

        if filters.stage is not None:
            clauses.append(f"current_stage = {arg(filters.stage.value)}")
        if filters.assigned_to is not None:
            clauses.append(f"assigned_staff ? {arg(filters.assigned_to)}")
        if filters.created_from is not None:
            clauses.append(f"created_at >= {arg(filters.created_from)}")
        if filters.created_to is not None:
            clauses.append(f"created_at < {arg(filters.created_to)}")
        if filters.search and filters.search.strip():
            pattern = arg(f"%{filters.search.strip()}%")
            clauses.append(
                f"(order_number ILIKE {pattern} OR customer->>'name' ILIKE {pattern} OR customer->>'phone' ILIKE {pattern})"
            )
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"SELECT * FROM orders {where}ORDER BY created_at DESC;", *args)
            return [await _fetch_order(conn, row) for row in rows]


class PostgresActivityStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def append(self, activity: Activity) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO order_activities (id, order_id, activity_type, description, occurred_at, actor,
                                              old_value, new_value, metadata)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
                ON CONFLICT (id) DO NOTHING;
                """,
                activity.id,
                activity.order_id,
                activity.activity_type.value,
                activity.description,
                activity.occurred_at,
                activity.actor,
                activity.old_value,
                activity.new_value,
                json.dumps(activity.metadata),
            )

    async def list_for_order(self, order_id: str) -> list[Activity]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM order_activities WHERE order_id = $1 ORDER BY occurred_at ASC, seq ASC;",
                order_id,
            )
        return [
            Activity(
                id=row["id"],
                order_id=row["order_id"],
                activity_type=ActivityType(row["activity_type"]),
                description=row["description"],
                occurred_at=row["occurred_at"],
                actor=row["actor"],
                old_value=row["old_value"],
                new_value=row["new_value"],
                metadata=json.loads(row["metadata"]),
            )
            for row in rows
        ]


class PostgresStaffDirectory:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def resolve(self, staff_id: str) -> StaffRef | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT id, display_name, role FROM staff WHERE id = $1;", staff_id)
        if row is None:
            return None
        return StaffRef(row["id"], row["display_name"], row["role"])
