"""
Persistence collaborator: store interface, PostgreSQL pool and in-memory store
"""
import os
import asyncio
import threading
import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor, Json
from typing import List, Dict, Any, Optional, Protocol, Set, Tuple
from contextlib import contextmanager
import logging
from urllib.parse import urlparse

from chatwarden.models.content import ModerationRecord, SecurityEvent, utcnow
from chatwarden.models.enums import Severity
from chatwarden.models.policy import TenantPolicy
from chatwarden.models.user import Actor, WarningRecord

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """A store read or write failed."""


class ModerationStore(Protocol):
    """Durable state the engine reads and writes. Every call may raise."""

    async def get_or_create_actor(self, actor_id: str, account_created_at=None) -> Actor:
        ...

    async def set_verified(self, actor_id: str, verified: bool = True) -> None:
        ...

    async def update_average_risk_score(self, actor_id: str, average: float) -> None:
        ...

    async def get_tenant_policy(self, tenant_id: str) -> Optional[TenantPolicy]:
        ...

    async def update_tenant_policy(self, tenant_id: str, policy: TenantPolicy) -> None:
        ...

    async def record_moderation_decision(self, record: ModerationRecord) -> None:
        ...

    async def record_security_event(self, event: SecurityEvent) -> None:
        ...

    async def add_warning(self, warning: WarningRecord) -> int:
        """Store a warning and return the actor's open-warning count in that tenant."""
        ...

    async def get_warnings(self, tenant_id: str, actor_id: str) -> List[WarningRecord]:
        ...

    async def clear_warnings(self, tenant_id: str, actor_id: str) -> int:
        ...

    async def is_allow_listed(self, tenant_id: str, actor_id: str) -> bool:
        ...

    async def add_trusted_actor(self, tenant_id: str, actor_id: str) -> None:
        ...

    async def remove_trusted_actor(self, tenant_id: str, actor_id: str) -> None:
        ...


SCHEMA = """
CREATE TABLE IF NOT EXISTS actors (
    actor_id TEXT PRIMARY KEY,
    account_created_at TIMESTAMPTZ,
    first_seen_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    verified BOOLEAN NOT NULL DEFAULT FALSE,
    average_risk_score REAL NOT NULL DEFAULT 0,
    total_warnings INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS tenant_policies (
    tenant_id TEXT PRIMARY KEY,
    policy JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS moderation_decisions (
    id UUID PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    content TEXT,
    risk_score INTEGER NOT NULL,
    risk_level TEXT NOT NULL,
    recommended_action TEXT NOT NULL,
    applied_action TEXT,
    source TEXT NOT NULL,
    detected_categories TEXT[] NOT NULL DEFAULT '{}',
    reasoning TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS security_events (
    id UUID PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    severity INTEGER NOT NULL,
    action_kind TEXT NOT NULL,
    count INTEGER NOT NULL DEFAULT 0,
    limit_in_force INTEGER,
    night_mode BOOLEAN NOT NULL DEFAULT FALSE,
    escalated BOOLEAN NOT NULL DEFAULT FALSE,
    details JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS actor_warnings (
    id UUID PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    reason TEXT NOT NULL,
    severity INTEGER NOT NULL,
    issued_by TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_actor_warnings_actor ON actor_warnings (tenant_id, actor_id);

CREATE TABLE IF NOT EXISTS trusted_actors (
    tenant_id TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    PRIMARY KEY (tenant_id, actor_id)
);
"""


class DatabaseConnection:
    """Threaded psycopg2 pool shared by the store's worker threads"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.getenv("DATABASE_URL")
        self.connection_pool = None
        self._initialize_pool()

    def _initialize_pool(self):
        """Open the pool from DATABASE_URL or the DB_* variables"""
        try:
            if self.database_url:
                parsed = urlparse(self.database_url)
                # DATABASE_URL takes precedence over DB_HOST and friends
                host = parsed.hostname or "localhost"
                port = parsed.port or 5432
                database = (parsed.path or "/").lstrip("/") or "chatwarden"
                user = parsed.username or "postgres"
                password = parsed.password or "postgres"
            else:
                host = os.getenv('DB_HOST', 'localhost')
                port = int(os.getenv('DB_PORT', '5432'))
                database = os.getenv('DB_NAME', 'chatwarden')
                user = os.getenv('DB_USER', 'postgres')
                password = os.getenv('DB_PASSWORD', 'postgres')

            self.connection_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=20,
                host=host,
                port=int(port),
                database=database,
                user=user,
                password=password
            )
            logger.info(f"Postgres pool ready ({host}:{port}/{database})")
        except Exception as e:
            logger.error(f"Could not open Postgres pool: {e}")
            raise

    @contextmanager
    def get_cursor(self, cursor_factory=RealDictCursor):
        """Yield a cursor; commits on success, rolls back and re-raises on error"""
        conn = self.connection_pool.getconn()
        cursor = None
        try:
            cursor = conn.cursor(cursor_factory=cursor_factory)
            yield cursor
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Postgres query failed: {e}")
            raise
        finally:
            if cursor is not None:
                cursor.close()
            self.connection_pool.putconn(conn)

    def ensure_schema(self):
        """Create tables if they do not exist"""
        with self.get_cursor() as cursor:
            cursor.execute(SCHEMA)

    def upsert_actor(self, actor_id: str, account_created_at=None) -> Dict[str, Any]:
        """Ensure an actor row exists and return it."""
        with self.get_cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO actors (actor_id, account_created_at)
                VALUES (%s, %s)
                ON CONFLICT (actor_id) DO UPDATE SET
                    account_created_at = COALESCE(actors.account_created_at, EXCLUDED.account_created_at)
                RETURNING *
                """,
                (actor_id, account_created_at),
            )
            return cursor.fetchone()

    def set_verified(self, actor_id: str, verified: bool):
        with self.get_cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO actors (actor_id, verified) VALUES (%s, %s)
                ON CONFLICT (actor_id) DO UPDATE SET verified = EXCLUDED.verified
                """,
                (actor_id, verified),
            )

    def update_average_risk_score(self, actor_id: str, average: float):
        with self.get_cursor() as cursor:
            cursor.execute(
                "UPDATE actors SET average_risk_score = %s WHERE actor_id = %s",
                (float(average), actor_id),
            )

    def get_tenant_policy(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        with self.get_cursor() as cursor:
            cursor.execute("SELECT policy FROM tenant_policies WHERE tenant_id = %s", (tenant_id,))
            row = cursor.fetchone()
            return row["policy"] if row else None

    def upsert_tenant_policy(self, tenant_id: str, policy: Dict[str, Any]):
        with self.get_cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO tenant_policies (tenant_id, policy)
                VALUES (%s, %s)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    policy = EXCLUDED.policy,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (tenant_id, Json(policy)),
            )

    def insert_moderation_decision(self, record: Dict[str, Any]):
        """Insert a message decision audit row"""
        decision = record["decision"]
        with self.get_cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO moderation_decisions (
                    id, tenant_id, channel_id, message_id, actor_id, content,
                    risk_score, risk_level, recommended_action, applied_action,
                    source, detected_categories, reasoning, created_at
                )
                VALUES (
                    %(id)s, %(tenant_id)s, %(channel_id)s, %(message_id)s, %(actor_id)s, %(content)s,
                    %(risk_score)s, %(risk_level)s, %(recommended_action)s, %(applied_action)s,
                    %(source)s, %(detected_categories)s, %(reasoning)s, %(created_at)s
                )
                ON CONFLICT (id) DO NOTHING
                """,
                {
                    "id": str(record["id"]),
                    "tenant_id": record["tenant_id"],
                    "channel_id": record["channel_id"],
                    "message_id": record["message_id"],
                    "actor_id": record["actor_id"],
                    "content": record["content"],
                    "risk_score": int(decision["risk_score"]),
                    "risk_level": decision["risk_level"],
                    "recommended_action": decision["recommended_action"],
                    "applied_action": record.get("applied_action"),
                    "source": decision["source"],
                    "detected_categories": decision.get("detected_categories") or [],
                    "reasoning": decision.get("reasoning"),
                    "created_at": record["created_at"],
                },
            )

    def insert_security_event(self, event: Dict[str, Any]):
        """Insert an administrative abuse audit row"""
        with self.get_cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO security_events (
                    id, tenant_id, actor_id, event_type, severity, action_kind,
                    count, limit_in_force, night_mode, escalated, details, created_at
                )
                VALUES (
                    %(id)s, %(tenant_id)s, %(actor_id)s, %(event_type)s, %(severity)s, %(action_kind)s,
                    %(count)s, %(limit)s, %(night_mode)s, %(escalated)s, %(details)s, %(created_at)s
                )
                ON CONFLICT (id) DO NOTHING
                """,
                {**event, "id": str(event["id"]), "details": Json(event.get("details") or {})},
            )

    def insert_warning(self, warning: Dict[str, Any]) -> int:
        """Insert a warning and return the open count for that actor in that tenant"""
        with self.get_cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO actor_warnings (id, tenant_id, actor_id, reason, severity, issued_by, created_at)
                VALUES (%(id)s, %(tenant_id)s, %(actor_id)s, %(reason)s, %(severity)s, %(issued_by)s, %(created_at)s)
                """,
                {**warning, "id": str(warning["id"]), "severity": int(warning["severity"])},
            )
            cursor.execute(
                "UPDATE actors SET total_warnings = total_warnings + 1 WHERE actor_id = %s",
                (warning["actor_id"],),
            )
            cursor.execute(
                "SELECT COUNT(*) AS open_count FROM actor_warnings WHERE tenant_id = %s AND actor_id = %s",
                (warning["tenant_id"], warning["actor_id"]),
            )
            return int(cursor.fetchone()["open_count"])

    def get_warnings(self, tenant_id: str, actor_id: str) -> List[Dict[str, Any]]:
        with self.get_cursor() as cursor:
            cursor.execute(
                """
                SELECT id, tenant_id, actor_id, reason, severity, issued_by, created_at
                FROM actor_warnings
                WHERE tenant_id = %s AND actor_id = %s
                ORDER BY created_at ASC
                """,
                (tenant_id, actor_id),
            )
            return cursor.fetchall()

    def delete_warnings(self, tenant_id: str, actor_id: str) -> int:
        with self.get_cursor() as cursor:
            cursor.execute(
                "DELETE FROM actor_warnings WHERE tenant_id = %s AND actor_id = %s",
                (tenant_id, actor_id),
            )
            return cursor.rowcount

    def is_trusted(self, tenant_id: str, actor_id: str) -> bool:
        with self.get_cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM trusted_actors WHERE tenant_id = %s AND actor_id = %s",
                (tenant_id, actor_id),
            )
            return cursor.fetchone() is not None

    def set_trusted(self, tenant_id: str, actor_id: str, trusted: bool):
        with self.get_cursor() as cursor:
            if trusted:
                cursor.execute(
                    "INSERT INTO trusted_actors (tenant_id, actor_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                    (tenant_id, actor_id),
                )
            else:
                cursor.execute(
                    "DELETE FROM trusted_actors WHERE tenant_id = %s AND actor_id = %s",
                    (tenant_id, actor_id),
                )

    def close(self):
        """Close all connections"""
        if self.connection_pool:
            self.connection_pool.closeall()
            logger.info("Database connections closed")


class PostgresStore:
    """
    ModerationStore over PostgreSQL.
    Blocking psycopg2 calls run in worker threads so the event loop stays free.
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except psycopg2.Error as e:
            raise PersistenceError(str(e)) from e

    async def get_or_create_actor(self, actor_id: str, account_created_at=None) -> Actor:
        row = await self._run(self.db.upsert_actor, actor_id, account_created_at)
        return Actor(**row)

    async def set_verified(self, actor_id: str, verified: bool = True) -> None:
        await self._run(self.db.set_verified, actor_id, verified)

    async def update_average_risk_score(self, actor_id: str, average: float) -> None:
        await self._run(self.db.update_average_risk_score, actor_id, average)

    async def get_tenant_policy(self, tenant_id: str) -> Optional[TenantPolicy]:
        raw = await self._run(self.db.get_tenant_policy, tenant_id)
        return TenantPolicy.model_validate(raw) if raw else None

    async def update_tenant_policy(self, tenant_id: str, policy: TenantPolicy) -> None:
        await self._run(self.db.upsert_tenant_policy, tenant_id, policy.model_dump(mode="json"))

    async def record_moderation_decision(self, record: ModerationRecord) -> None:
        await self._run(self.db.insert_moderation_decision, record.model_dump(mode="json"))

    async def record_security_event(self, event: SecurityEvent) -> None:
        payload = event.model_dump(mode="json")
        payload["severity"] = int(event.severity)
        await self._run(self.db.insert_security_event, payload)

    async def add_warning(self, warning: WarningRecord) -> int:
        return await self._run(self.db.insert_warning, warning.model_dump())

    async def get_warnings(self, tenant_id: str, actor_id: str) -> List[WarningRecord]:
        rows = await self._run(self.db.get_warnings, tenant_id, actor_id)
        return [WarningRecord(**{**row, "severity": Severity(row["severity"])}) for row in rows]

    async def clear_warnings(self, tenant_id: str, actor_id: str) -> int:
        return await self._run(self.db.delete_warnings, tenant_id, actor_id)

    async def is_allow_listed(self, tenant_id: str, actor_id: str) -> bool:
        return await self._run(self.db.is_trusted, tenant_id, actor_id)

    async def add_trusted_actor(self, tenant_id: str, actor_id: str) -> None:
        await self._run(self.db.set_trusted, tenant_id, actor_id, True)

    async def remove_trusted_actor(self, tenant_id: str, actor_id: str) -> None:
        await self._run(self.db.set_trusted, tenant_id, actor_id, False)

    def close(self):
        self.db.close()


class InMemoryStore:
    """
    ModerationStore kept in process memory.
    Used when no database is configured, and in tests.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.actors: Dict[str, Actor] = {}
        self.policies: Dict[str, TenantPolicy] = {}
        self.decisions: List[ModerationRecord] = []
        self.security_events: List[SecurityEvent] = []
        self.warnings: Dict[Tuple[str, str], List[WarningRecord]] = {}
        self.trusted: Set[Tuple[str, str]] = set()

    async def get_or_create_actor(self, actor_id: str, account_created_at=None) -> Actor:
        with self._lock:
            actor = self.actors.get(actor_id)
            if actor is None:
                actor = self.actors[actor_id] = Actor(
                    actor_id=actor_id,
                    account_created_at=account_created_at,
                    first_seen_at=utcnow(),
                )
            return actor

    async def set_verified(self, actor_id: str, verified: bool = True) -> None:
        actor = await self.get_or_create_actor(actor_id)
        with self._lock:
            actor.verified = verified

    async def update_average_risk_score(self, actor_id: str, average: float) -> None:
        actor = await self.get_or_create_actor(actor_id)
        with self._lock:
            actor.average_risk_score = float(average)

    async def get_tenant_policy(self, tenant_id: str) -> Optional[TenantPolicy]:
        with self._lock:
            return self.policies.get(tenant_id)

    async def update_tenant_policy(self, tenant_id: str, policy: TenantPolicy) -> None:
        with self._lock:
            self.policies[tenant_id] = policy

    async def record_moderation_decision(self, record: ModerationRecord) -> None:
        with self._lock:
            self.decisions.append(record)

    async def record_security_event(self, event: SecurityEvent) -> None:
        with self._lock:
            self.security_events.append(event)

    async def add_warning(self, warning: WarningRecord) -> int:
        actor = await self.get_or_create_actor(warning.actor_id)
        with self._lock:
            actor.total_warnings += 1
            records = self.warnings.setdefault((warning.tenant_id, warning.actor_id), [])
            records.append(warning)
            return len(records)

    async def get_warnings(self, tenant_id: str, actor_id: str) -> List[WarningRecord]:
        with self._lock:
            return list(self.warnings.get((tenant_id, actor_id), []))

    async def clear_warnings(self, tenant_id: str, actor_id: str) -> int:
        with self._lock:
            return len(self.warnings.pop((tenant_id, actor_id), []))

    async def is_allow_listed(self, tenant_id: str, actor_id: str) -> bool:
        with self._lock:
            return (tenant_id, actor_id) in self.trusted

    async def add_trusted_actor(self, tenant_id: str, actor_id: str) -> None:
        with self._lock:
            self.trusted.add((tenant_id, actor_id))

    async def remove_trusted_actor(self, tenant_id: str, actor_id: str) -> None:
        with self._lock:
            self.trusted.discard((tenant_id, actor_id))

    def close(self):
        pass
