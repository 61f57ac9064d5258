"""Postgres-backed stores for the user's budget, expenses and preferences.

Budget deltas are applied in single statements (``current_spent + $n``) so
concurrent expense writes for the same user never lose an update.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

import structlog

from expense_assistant.database import get_pool
from expense_assistant.models.finance import Budget, Expense, ExpenseFilters

logger = structlog.get_logger(__name__)

EXPENSE_COLUMNS = "id, user_id, item, amount, category, description, tags, date"
UPDATABLE_EXPENSE_FIELDS = ("item", "amount", "category", "description", "tags", "date")


def _row_to_expense(row) -> Expense:
    return Expense(
        id=row["id"],
        user_id=row["user_id"],
        item=row["item"],
        amount=float(row["amount"]),
        category=row["category"],
        description=row["description"] or "",
        tags=list(row["tags"] or []),
        date=row["date"],
    )


def _row_to_budget(row) -> Budget:
    return Budget(
        user_id=row["user_id"],
        monthly_limit=float(row["monthly_limit"]),
        current_spent=float(row["current_spent"]),
    )


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so the keyword matches literally (ESCAPE '\\')."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _build_expense_filter(user_id: str, filters: ExpenseFilters) -> tuple[str, list]:
    """WHERE clause and positional params for the given filters."""
    conditions = ["user_id = $1"]
    params: list = [user_id]

    def add(condition: str, value) -> None:
        params.append(value)
        conditions.append(condition.format(idx=len(params)))

    if filters.start is not None:
        add("date >= ${idx}", filters.start)
    if filters.end is not None:
        add("date < ${idx}", filters.end)
    if filters.min_amount is not None:
        add("amount >= ${idx}", filters.min_amount)
    if filters.max_amount is not None:
        add("amount <= ${idx}", filters.max_amount)
    if filters.category is not None:
        add("category = ${idx}", filters.category.value)
    if filters.keyword:
        add(
            "(item ILIKE ${idx} ESCAPE '\\' OR description ILIKE ${idx} ESCAPE '\\')",
            f"%{escape_like(filters.keyword)}%",
        )

    return " AND ".join(conditions), params


class BudgetStore:
    """One budget row per user."""

    async def get(self, user_id: str) -> Optional[Budget]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT user_id, monthly_limit, current_spent FROM budgets WHERE user_id = $1",
                user_id,
            )
        return _row_to_budget(row) if row else None

    async def set_limit(self, user_id: str, monthly_limit: float) -> Budget:
        """Upsert the limit; spent starts at 0 only when the row is created."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO budgets (user_id, monthly_limit, current_spent, remaining_budget)
                VALUES ($1, $2, 0, $2)
                ON CONFLICT (user_id) DO UPDATE
                SET monthly_limit = EXCLUDED.monthly_limit,
                    remaining_budget = EXCLUDED.monthly_limit - budgets.current_spent,
                    updated_at = NOW()
                RETURNING user_id, monthly_limit, current_spent
                """,
                user_id,
                monthly_limit,
            )
        return _row_to_budget(row)

    async def increment_spent(self, user_id: str, delta: float, upsert: bool = True) -> None:
        """Atomically add ``delta`` to current_spent, creating the row if asked."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            if upsert:
                await conn.execute(
                    """
                    INSERT INTO budgets (user_id, monthly_limit, current_spent, remaining_budget)
                    VALUES ($1, 0, $2, -$2)
                    ON CONFLICT (user_id) DO UPDATE
                    SET current_spent = budgets.current_spent + $2,
                        remaining_budget = budgets.monthly_limit - (budgets.current_spent + $2),
                        updated_at = NOW()
                    """,
                    user_id,
                    delta,
                )
            else:
                await conn.execute(
                    """
                    UPDATE budgets
                    SET current_spent = current_spent + $2,
                        remaining_budget = monthly_limit - (current_spent + $2),
                        updated_at = NOW()
                    WHERE user_id = $1
                    """,
                    user_id,
                    delta,
                )


class ExpenseStore:
    """User-scoped expense rows."""

    async def create(
        self,
        user_id: str,
        item: str,
        amount: float,
        category: str,
        description: str = "",
        tags: Optional[list[str]] = None,
        date: Optional[datetime] = None,
    ) -> Expense:
        expense_id = uuid4()
        date = date or datetime.now(timezone.utc)
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO expenses (id, user_id, item, amount, category, description, tags, date)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING {EXPENSE_COLUMNS}
                """,
                expense_id,
                user_id,
                item,
                amount,
                category,
                description,
                tags or [],
                date,
            )
        return _row_to_expense(row)

    async def get(self, user_id: str, expense_id: UUID) -> Optional[Expense]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {EXPENSE_COLUMNS} FROM expenses WHERE id = $1 AND user_id = $2",
                expense_id,
                user_id,
            )
        return _row_to_expense(row) if row else None

    async def update(self, user_id: str, expense_id: UUID, updates: dict) -> Optional[Expense]:
        """Overwrite the given columns. Last write wins for concurrent edits."""
        fields = {k: v for k, v in updates.items() if k in UPDATABLE_EXPENSE_FIELDS}
        if not fields:
            return await self.get(user_id, expense_id)

        assignments = []
        params: list = [expense_id, user_id]
        for name, value in fields.items():
            params.append(value.value if hasattr(value, "value") else value)
            assignments.append(f"{name} = ${len(params)}")

        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE expenses
                SET {", ".join(assignments)}, updated_at = NOW()
                WHERE id = $1 AND user_id = $2
                RETURNING {EXPENSE_COLUMNS}
                """,
                *params,
            )
        return _row_to_expense(row) if row else None

    async def delete(self, user_id: str, expense_id: UUID) -> Optional[Expense]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"DELETE FROM expenses WHERE id = $1 AND user_id = $2 RETURNING {EXPENSE_COLUMNS}",
                expense_id,
                user_id,
            )
        return _row_to_expense(row) if row else None

    async def find(
        self,
        user_id: str,
        filters: Optional[ExpenseFilters] = None,
        limit: Optional[int] = None,
    ) -> list[Expense]:
        """Matching expenses, newest first."""
        where_clause, params = _build_expense_filter(user_id, filters or ExpenseFilters())
        query = f"SELECT {EXPENSE_COLUMNS} FROM expenses WHERE {where_clause} ORDER BY date DESC"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"

        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [_row_to_expense(row) for row in rows]

    async def count(self, user_id: str, filters: Optional[ExpenseFilters] = None) -> int:
        where_clause, params = _build_expense_filter(user_id, filters or ExpenseFilters())
        pool = await get_pool()
        async with pool.acquire() as conn:
            total = await conn.fetchval(
                f"SELECT COUNT(*) FROM expenses WHERE {where_clause}",
                *params,
            )
        return int(total or 0)


class PreferenceStore:
    """Per-user assistant preferences."""

    async def get_assistant_name(self, user_id: str) -> Optional[str]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT assistant_name FROM user_preferences WHERE user_id = $1",
                user_id,
            )

    async def set_assistant_name(self, user_id: str, name: str) -> None:
        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_preferences (user_id, assistant_name, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT (user_id) DO UPDATE
                SET assistant_name = EXCLUDED.assistant_name, updated_at = NOW()
                """,
                user_id,
                name,
            )
        logger.info("assistant_name_saved", user_id=user_id)
