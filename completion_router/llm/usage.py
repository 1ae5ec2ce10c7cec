"""
Usage Recorder — token and cost accounting after every provider call.

Each non-cached completion produces one immutable UsageRecord in an
append-only ledger, and increments the per-provider UsageSummary.

Pricing types:
- free          → 0
- flat          → total_tokens / 1000 * cost_per_1k
- input_output  → prompt / 1000 * input_cost_per_1k
                  + completion / 1000 * output_cost_per_1k
                  (per-model overrides win when present)

When a provider reports no usage, tokens are estimated as len(text) / 4
and the record is flagged `estimated`.

Recording is best-effort: a failing store is logged, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import math
import sqlite3
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from completion_router.config.schema import PricingDescriptor, PricingType
from completion_router.llm.models import (
    CompletionRequest,
    CompletionResponse,
    Provider,
    TokenUsage,
)

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CostBreakdown:
    input_cost: float = 0.0
    output_cost: float = 0.0

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost


@dataclass(frozen=True)
class UsageRecord:
    """Immutable ledger row. Never updated once written."""

    provider_key: str
    model_id: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    input_cost: float
    output_cost: float
    total_cost: float
    requestor: Optional[str] = None   # None for test requests
    request_type: str = "generate"
    estimated: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class UsageSummary:
    """Cumulative counters for one provider."""

    provider_key: str
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_tokens: int = 0
    total_input_cost: float = 0.0
    total_output_cost: float = 0.0
    total_cost: float = 0.0
    request_count: int = 0
    updated_at: Optional[datetime] = None
    last_reset_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_key": self.provider_key,
            "total_prompt_tokens": self.total_prompt_tokens,
            "total_completion_tokens": self.total_completion_tokens,
            "total_tokens": self.total_tokens,
            "total_input_cost": self.total_input_cost,
            "total_output_cost": self.total_output_cost,
            "total_cost": self.total_cost,
            "request_count": self.request_count,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "last_reset_at": self.last_reset_at.isoformat() if self.last_reset_at else None,
        }


# ---------------------------------------------------------------------------
# Cost math
# ---------------------------------------------------------------------------

def calculate_cost(
    usage: TokenUsage,
    pricing: PricingDescriptor,
    model_id: str = "",
) -> CostBreakdown:
    """Compute input/output cost for a usage under a pricing descriptor."""
    if pricing.type == PricingType.FREE:
        return CostBreakdown()

    override = pricing.model_pricing.get(model_id) if model_id else None

    if pricing.type == PricingType.FLAT:
        rate = pricing.cost_per_1k
        if override is not None and override.cost_per_1k:
            rate = override.cost_per_1k
        return CostBreakdown(input_cost=usage.total_tokens / 1000 * rate)

    input_rate = pricing.input_cost_per_1k
    output_rate = pricing.output_cost_per_1k
    if override is not None:
        input_rate = override.input_cost_per_1k or input_rate
        output_rate = override.output_cost_per_1k or output_rate

    return CostBreakdown(
        input_cost=usage.prompt_tokens / 1000 * input_rate,
        output_cost=usage.completion_tokens / 1000 * output_rate,
    )


def estimate_usage(prompt: str, content: str) -> TokenUsage:
    """Approximate token counts from text length (~4 chars per token)."""
    return TokenUsage.of(
        math.ceil(len(prompt) / CHARS_PER_TOKEN),
        math.ceil(len(content) / CHARS_PER_TOKEN),
        estimated=True,
    )


def effective_usage(request: CompletionRequest, response: CompletionResponse) -> TokenUsage:
    """Provider-reported usage, or an estimate when none (or all-zero) was given."""
    if response.usage is not None and not response.usage.is_empty:
        return response.usage
    return estimate_usage(request.prompt, response.content)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class UsageStore(Protocol):
    """Persistence for the usage ledger and per-provider summaries."""

    def append(self, record: UsageRecord) -> None: ...

    def get_summary(self, provider_key: str) -> Optional[UsageSummary]: ...

    def get_all_summaries(self) -> list[UsageSummary]: ...

    def get_history(
        self,
        provider_key: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[UsageRecord]: ...

    def reset_summary(self, provider_key: str) -> None: ...


class InMemoryUsageStore:
    """Process-local store for tests and ephemeral deployments."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[UsageRecord] = []
        self._summaries: dict[str, UsageSummary] = {}

    def append(self, record: UsageRecord) -> None:
        with self._lock:
            self._records.append(record)
            summary = self._summaries.setdefault(
                record.provider_key, UsageSummary(provider_key=record.provider_key)
            )
            summary.total_prompt_tokens += record.prompt_tokens
            summary.total_completion_tokens += record.completion_tokens
            summary.total_tokens += record.total_tokens
            summary.total_input_cost += record.input_cost
            summary.total_output_cost += record.output_cost
            summary.total_cost += record.total_cost
            summary.request_count += 1
            summary.updated_at = record.timestamp

    def get_summary(self, provider_key: str) -> Optional[UsageSummary]:
        with self._lock:
            summary = self._summaries.get(provider_key)
            return replace(summary) if summary else None

    def get_all_summaries(self) -> list[UsageSummary]:
        with self._lock:
            summaries = [replace(s) for s in self._summaries.values()]
        return sorted(summaries, key=lambda s: s.total_cost, reverse=True)

    def get_history(
        self,
        provider_key: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[UsageRecord]:
        with self._lock:
            records = [
                r for r in reversed(self._records)
                if (provider_key is None or r.provider_key == provider_key)
                and (user_id is None or r.requestor == user_id)
            ]
        return records[:limit]

    def reset_summary(self, provider_key: str) -> None:
        now = datetime.now(timezone.utc)
        with self._lock:
            self._summaries[provider_key] = UsageSummary(
                provider_key=provider_key, updated_at=now, last_reset_at=now
            )


class SqliteUsageStore:
    """
    SQLite-backed ledger.

    `llm_usage` is append-only: rows are inserted, never updated or deleted.
    `llm_usage_summary` is upserted with increments on every insert.
    """

    def __init__(self, db_path: str | Path):
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(db_path)
        self.initialize_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS llm_usage (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    provider_key TEXT NOT NULL,
                    model TEXT NOT NULL,
                    prompt_tokens INTEGER NOT NULL,
                    completion_tokens INTEGER NOT NULL,
                    total_tokens INTEGER NOT NULL,
                    input_cost REAL NOT NULL,
                    output_cost REAL NOT NULL,
                    total_cost REAL NOT NULL,
                    user_id TEXT,
                    request_type TEXT NOT NULL,
                    estimated INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS llm_usage_summary (
                    provider_key TEXT PRIMARY KEY,
                    total_prompt_tokens INTEGER NOT NULL DEFAULT 0,
                    total_completion_tokens INTEGER NOT NULL DEFAULT 0,
                    total_tokens INTEGER NOT NULL DEFAULT 0,
                    total_input_cost REAL NOT NULL DEFAULT 0,
                    total_output_cost REAL NOT NULL DEFAULT 0,
                    total_cost REAL NOT NULL DEFAULT 0,
                    request_count INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT,
                    last_reset_at TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_llm_usage_provider ON llm_usage(provider_key)"
            )
            conn.commit()
        finally:
            conn.close()

    def append(self, record: UsageRecord) -> None:
        """Insert the ledger row and bump the summary in one transaction."""
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO llm_usage
                (timestamp, provider_key, model, prompt_tokens, completion_tokens,
                 total_tokens, input_cost, output_cost, total_cost, user_id,
                 request_type, estimated)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.timestamp.isoformat(),
                record.provider_key,
                record.model_id,
                record.prompt_tokens,
                record.completion_tokens,
                record.total_tokens,
                record.input_cost,
                record.output_cost,
                record.total_cost,
                record.requestor,
                record.request_type,
                int(record.estimated),
            ))
            conn.execute("""
                INSERT INTO llm_usage_summary
                (provider_key, total_prompt_tokens, total_completion_tokens,
                 total_tokens, total_input_cost, total_output_cost, total_cost,
                 request_count, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?)
                ON CONFLICT(provider_key) DO UPDATE SET
                    total_prompt_tokens = total_prompt_tokens + excluded.total_prompt_tokens,
                    total_completion_tokens = total_completion_tokens + excluded.total_completion_tokens,
                    total_tokens = total_tokens + excluded.total_tokens,
                    total_input_cost = total_input_cost + excluded.total_input_cost,
                    total_output_cost = total_output_cost + excluded.total_output_cost,
                    total_cost = total_cost + excluded.total_cost,
                    request_count = request_count + 1,
                    updated_at = excluded.updated_at
            """, (
                record.provider_key,
                record.prompt_tokens,
                record.completion_tokens,
                record.total_tokens,
                record.input_cost,
                record.output_cost,
                record.total_cost,
                record.timestamp.isoformat(),
            ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_summary(self, provider_key: str) -> Optional[UsageSummary]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM llm_usage_summary WHERE provider_key = ?",
                (provider_key,),
            ).fetchone()
            return self._row_to_summary(row) if row else None
        finally:
            conn.close()

    def get_all_summaries(self) -> list[UsageSummary]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM llm_usage_summary ORDER BY total_cost DESC"
            ).fetchall()
            return [self._row_to_summary(row) for row in rows]
        finally:
            conn.close()

    def get_history(
        self,
        provider_key: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[UsageRecord]:
        conn = self._connect()
        try:
            query = "SELECT * FROM llm_usage"
            conditions = []
            params: list[Any] = []
            if provider_key:
                conditions.append("provider_key = ?")
                params.append(provider_key)
            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)
            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)

            return [
                UsageRecord(
                    provider_key=row["provider_key"],
                    model_id=row["model"],
                    prompt_tokens=row["prompt_tokens"],
                    completion_tokens=row["completion_tokens"],
                    total_tokens=row["total_tokens"],
                    input_cost=row["input_cost"],
                    output_cost=row["output_cost"],
                    total_cost=row["total_cost"],
                    requestor=row["user_id"],
                    request_type=row["request_type"],
                    estimated=bool(row["estimated"]),
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()

    def reset_summary(self, provider_key: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO llm_usage_summary (provider_key, updated_at, last_reset_at)
                VALUES (?, ?, ?)
                ON CONFLICT(provider_key) DO UPDATE SET
                    total_prompt_tokens = 0,
                    total_completion_tokens = 0,
                    total_tokens = 0,
                    total_input_cost = 0,
                    total_output_cost = 0,
                    total_cost = 0,
                    request_count = 0,
                    updated_at = excluded.updated_at,
                    last_reset_at = excluded.last_reset_at
            """, (provider_key, now, now))
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_summary(row: sqlite3.Row) -> UsageSummary:
        return UsageSummary(
            provider_key=row["provider_key"],
            total_prompt_tokens=row["total_prompt_tokens"],
            total_completion_tokens=row["total_completion_tokens"],
            total_tokens=row["total_tokens"],
            total_input_cost=row["total_input_cost"],
            total_output_cost=row["total_output_cost"],
            total_cost=row["total_cost"],
            request_count=row["request_count"],
            updated_at=datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else None,
            last_reset_at=datetime.fromisoformat(row["last_reset_at"]) if row["last_reset_at"] else None,
        )


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------

class UsageRecorder:
    """Computes cost for a completed call and writes it to the store."""

    def __init__(self, store: Optional[UsageStore] = None):
        self._store: UsageStore = store or InMemoryUsageStore()

    @property
    def store(self) -> UsageStore:
        return self._store

    def build_record(
        self,
        provider: Provider,
        request: CompletionRequest,
        response: CompletionResponse,
    ) -> UsageRecord:
        usage = effective_usage(request, response)
        model_id = response.model_id or provider.model_id
        cost = calculate_cost(usage, provider.pricing, model_id)
        return UsageRecord(
            provider_key=provider.key,
            model_id=model_id,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            input_cost=cost.input_cost,
            output_cost=cost.output_cost,
            total_cost=cost.total_cost,
            requestor=None if request.is_test else request.user_id,
            request_type=request.request_type,
            estimated=usage.estimated,
        )

    async def record(
        self,
        provider: Provider,
        request: CompletionRequest,
        response: CompletionResponse,
    ) -> Optional[UsageRecord]:
        """Persist usage for one call. Returns None if recording failed."""
        try:
            record = self.build_record(provider, request, response)
            await asyncio.to_thread(self._store.append, record)
        except Exception as e:
            logger.error(
                "usage_record_failed",
                extra={"provider": provider.key, "error": str(e)[:200]},
            )
            return None

        logger.info(
            "usage_recorded",
            extra={
                "provider": record.provider_key,
                "model": record.model_id,
                "tokens": record.total_tokens,
                "cost": f"${record.total_cost:.6f}",
                "estimated": record.estimated,
            },
        )
        return record

    # --- Read side ---

    async def get_summary(self, provider_key: str) -> Optional[UsageSummary]:
        return await asyncio.to_thread(self._store.get_summary, provider_key)

    async def get_all_summaries(self) -> list[UsageSummary]:
        return await asyncio.to_thread(self._store.get_all_summaries)

    async def get_history(
        self,
        provider_key: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[UsageRecord]:
        return await asyncio.to_thread(
            self._store.get_history, provider_key, user_id, limit
        )

    async def reset_summary(self, provider_key: str) -> None:
        await asyncio.to_thread(self._store.reset_summary, provider_key)
        logger.info("usage_summary_reset", extra={"provider": provider_key})

    async def get_total_stats(self) -> dict[str, Any]:
        summaries = await self.get_all_summaries()
        return {
            "total_providers": len(summaries),
            "total_requests": sum(s.request_count for s in summaries),
            "total_tokens": sum(s.total_tokens for s in summaries),
            "total_cost": sum(s.total_cost for s in summaries),
            "providers": [s.to_dict() for s in summaries],
        }
