# friction_pipeline/data_access/postgres_client.py
"""
PostgreSQL client for the friction store.
"""

from datetime import date, datetime
from typing import List, Optional, Set
import logging

import psycopg2
from psycopg2.extras import Json, RealDictCursor, execute_values

from friction_pipeline.config.settings import Settings
from friction_pipeline.errors import PersistenceError
from friction_pipeline.models.schemas import (
    Account,
    AccountSnapshot,
    Alert,
    FrictionCard,
    Portfolio,
    RawInput,
    Theme,
)

logger = logging.getLogger(__name__)


def case_created_at_sql(alias: Optional[str] = None) -> str:
    """When the CRM case behind a raw input was opened, falling back to ingest time."""
    prefix = f"{alias}." if alias else ""
    return f"COALESCE(({prefix}metadata->>'created_date')::timestamptz, {prefix}created_at)"


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS raw_inputs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID,
    account_id UUID NOT NULL,
    source_type VARCHAR(50) NOT NULL,
    source_id VARCHAR(255) NOT NULL,
    source_url TEXT,
    text_content TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    processed BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT raw_inputs_source_key UNIQUE (account_id, source_type, source_id)
);

CREATE INDEX IF NOT EXISTS raw_inputs_unprocessed_idx ON raw_inputs(account_id) WHERE NOT processed;

CREATE TABLE IF NOT EXISTS friction_cards (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID,
    account_id UUID NOT NULL,
    raw_input_id UUID NOT NULL REFERENCES raw_inputs(id) UNIQUE,
    summary TEXT NOT NULL,
    theme_key VARCHAR(100) NOT NULL,
    severity SMALLINT NOT NULL CHECK (severity BETWEEN 1 AND 5),
    sentiment VARCHAR(50),
    root_cause_hypothesis TEXT,
    is_friction BOOLEAN NOT NULL DEFAULT TRUE,
    confidence_score REAL NOT NULL CHECK (confidence_score BETWEEN 0 AND 1),
    evidence_snippets JSONB NOT NULL DEFAULT '[]'::jsonb,
    reasoning TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS friction_cards_account_idx ON friction_cards(account_id, is_friction);

CREATE TABLE IF NOT EXISTS account_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    account_id UUID NOT NULL,
    snapshot_date DATE NOT NULL,
    ofi_score SMALLINT NOT NULL CHECK (ofi_score BETWEEN 0 AND 100),
    friction_card_count INTEGER NOT NULL DEFAULT 0,
    high_severity_count INTEGER NOT NULL DEFAULT 0,
    case_volume INTEGER NOT NULL DEFAULT 0,
    top_themes JSONB NOT NULL DEFAULT '[]'::jsonb,
    score_breakdown JSONB NOT NULL DEFAULT '{}'::jsonb,
    trend_vs_prior_period INTEGER,
    trend_direction VARCHAR(20) NOT NULL DEFAULT 'stable',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT account_snapshots_day_key UNIQUE (account_id, snapshot_date)
);

CREATE TABLE IF NOT EXISTS alerts (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID,
    account_id UUID NOT NULL,
    alert_type VARCHAR(50) NOT NULL,
    severity VARCHAR(20) NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    evidence JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    expires_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS alerts_expires_idx ON alerts(expires_at);
"""


class PostgresClient:
    """PostgreSQL client for accounts, raw inputs, friction cards, snapshots and alerts."""

    def __init__(self, config: Settings):
        self.config = config
        self.conn = None

    def connect(self) -> None:
        """Establish database connection."""
        self.conn = psycopg2.connect(
            host=self.config.postgres_host,
            port=self.config.postgres_port,
            database=self.config.postgres_database,
            user=self.config.postgres_username,
            password=self.config.postgres_password,
            sslmode=self.config.postgres_sslmode
        )

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def _fetchall(self, query: str, params=None) -> List[dict]:
        if not self.conn:
            self.connect()

        try:
            with self.conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(query, params)
                return cursor.fetchall()
        except psycopg2.Error as e:
            # a failed statement aborts the open transaction for every later read
            self.conn.rollback()
            raise PersistenceError(str(e).strip()) from e

    def _fetchone(self, query: str, params=None) -> Optional[dict]:
        rows = self._fetchall(query, params)
        return rows[0] if rows else None

    def _write(self, query: str, params=None, values=None, fetch: bool = False):
        """Run one write statement in its own transaction."""
        if not self.conn:
            self.connect()

        try:
            with self.conn.cursor(cursor_factory=RealDictCursor) as cursor:
                if values is not None:
                    rows = execute_values(cursor, query, values, fetch=fetch)
                else:
                    cursor.execute(query, params)
                    rows = cursor.fetchall() if fetch else None
                rowcount = cursor.rowcount
            self.conn.commit()
        except psycopg2.Error as e:
            self.conn.rollback()
            raise PersistenceError(str(e).strip()) from e

        return rows if fetch else rowcount

    def initialize_schema(self) -> None:
        """Create the pipeline-owned tables if they don't exist."""
        self._write(SCHEMA_SQL)
        logger.info("Friction store schema initialized")

    # Reference data

    def get_portfolios(self, portfolio_types: List[str]) -> List[Portfolio]:
        rows = self._fetchall(
            """
            SELECT user_id, account_ids, portfolio_type
            FROM portfolios
            WHERE portfolio_type = ANY(%s)
            ORDER BY created_at
            """,
            (list(portfolio_types),)
        )
        return [
            Portfolio(
                user_id=str(row["user_id"]),
                account_ids=[str(a) for a in row["account_ids"] or []],
                portfolio_type=row["portfolio_type"],
            )
            for row in rows
        ]

    def get_account(self, account_id: str) -> Optional[Account]:
        row = self._fetchone(
            """
            SELECT id, user_id, salesforce_id, name, arr, vertical, status
            FROM accounts
            WHERE id = %s
            """,
            (account_id,)
        )
        if not row:
            return None
        return Account(
            id=str(row["id"]),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            salesforce_id=row["salesforce_id"],
            name=row["name"],
            arr=row.get("arr"),
            vertical=row.get("vertical"),
            status=row.get("status") or "active",
        )

    def get_themes(self) -> List[Theme]:
        rows = self._fetchall("SELECT theme_key, label FROM themes WHERE is_active ORDER BY theme_key")
        return [Theme(theme_key=row["theme_key"], label=row["label"]) for row in rows]

    def get_integration(self, user_id: str, integration_type: str) -> Optional[dict]:
        return self._fetchone(
            """
            SELECT id, instance_url
            FROM integrations
            WHERE user_id = %s AND integration_type = %s
            LIMIT 1
            """,
            (user_id, integration_type)
        )

    def get_oauth_tokens(self, integration_id: str) -> Optional[dict]:
        return self._fetchone(
            "SELECT id, access_token, refresh_token FROM oauth_tokens WHERE integration_id = %s LIMIT 1",
            (integration_id,)
        )

    def update_access_token(self, token_id: str, access_token: str) -> None:
        self._write(
            """
            UPDATE oauth_tokens
            SET access_token = %s, expires_at = now() + interval '2 hours'
            WHERE id = %s
            """,
            (access_token, token_id)
        )

    # Raw inputs

    def get_existing_source_ids(self, account_id: str, source_type: str) -> Set[str]:
        """Source-system ids already ingested for an account."""
        rows = self._fetchall(
            "SELECT source_id FROM raw_inputs WHERE account_id = %s AND source_type = %s",
            (account_id, source_type)
        )
        return {row["source_id"] for row in rows}

    def insert_raw_inputs(self, inputs: List[RawInput]) -> List[RawInput]:
        """
        Insert raw inputs, ignoring any already present.

        Returns:
            The rows actually inserted, with their generated ids
        """
        if not inputs:
            return []

        values = [
            (r.user_id, r.account_id, r.source_type, r.source_id, r.source_url,
             r.text_content, Json(r.metadata), r.processed)
            for r in inputs
        ]
        rows = self._write(
            """
            INSERT INTO raw_inputs (user_id, account_id, source_type, source_id, source_url,
                                    text_content, metadata, processed)
            VALUES %s
            ON CONFLICT (account_id, source_type, source_id) DO NOTHING
            RETURNING id, user_id, account_id, source_type, source_id, source_url,
                      text_content, metadata, processed, created_at
            """,
            values=values,
            fetch=True
        )
        return [self._raw_input_from_row(row) for row in rows]

    def get_unprocessed_inputs(
        self,
        account_id: str,
        source_type: str,
        since: Optional[datetime] = None,
    ) -> List[RawInput]:
        query = """
            SELECT id, user_id, account_id, source_type, source_id, source_url,
                   text_content, metadata, processed, created_at
            FROM raw_inputs
            WHERE account_id = %s AND source_type = %s AND NOT processed
        """
        params = [account_id, source_type]
        if since is not None:
            query += f" AND {case_created_at_sql()} >= %s"
            params.append(since)
        query += " ORDER BY created_at DESC"

        rows = self._fetchall(query, tuple(params))
        return [self._raw_input_from_row(row) for row in rows]

    def mark_inputs_processed(self, input_ids: List[str]) -> int:
        if not input_ids:
            return 0
        return self._write(
            "UPDATE raw_inputs SET processed = TRUE WHERE id = ANY(%s::uuid[])",
            (list(input_ids),)
        )

    @staticmethod
    def _raw_input_from_row(row: dict) -> RawInput:
        return RawInput(
            id=str(row["id"]),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            account_id=str(row["account_id"]),
            source_type=row["source_type"],
            source_id=row["source_id"],
            source_url=row.get("source_url"),
            text_content=row["text_content"],
            metadata=row.get("metadata") or {},
            processed=row["processed"],
            created_at=row.get("created_at"),
        )

    # Friction cards

    def insert_friction_cards(self, cards: List[FrictionCard]) -> int:
        if not cards:
            return 0

        values = [
            (c.user_id, c.account_id, c.raw_input_id, c.summary, c.theme_key, c.severity,
             c.sentiment, c.root_cause, c.is_friction, c.confidence_score,
             Json(c.evidence_snippets), c.reasoning)
            for c in cards
        ]
        return self._write(
            """
            INSERT INTO friction_cards (user_id, account_id, raw_input_id, summary, theme_key,
                                        severity, sentiment, root_cause_hypothesis, is_friction,
                                        confidence_score, evidence_snippets, reasoning)
            VALUES %s
            ON CONFLICT (raw_input_id) DO NOTHING
            """,
            values=values
        )

    def get_friction_cards(
        self,
        account_id: str,
        since: Optional[datetime] = None,
        friction_only: bool = True,
    ) -> List[FrictionCard]:
        """
        Cards for an account. With ``since``, only cards whose source case was
        created at or after it, so the cards line up with the fetched case window.
        """
        query = """
            SELECT fc.id, fc.user_id, fc.account_id, fc.raw_input_id, fc.summary, fc.theme_key,
                   fc.severity, fc.sentiment, fc.root_cause_hypothesis, fc.is_friction,
                   fc.confidence_score, fc.evidence_snippets, fc.reasoning, fc.created_at
            FROM friction_cards fc
        """
        params = []
        if since is not None:
            query += " JOIN raw_inputs ri ON ri.id = fc.raw_input_id"
        query += " WHERE fc.account_id = %s"
        params.append(account_id)
        if since is not None:
            query += f" AND {case_created_at_sql('ri')} >= %s"
            params.append(since)
        if friction_only:
            query += " AND fc.is_friction"
        query += " ORDER BY fc.created_at"

        rows = self._fetchall(query, tuple(params))
        return [
            FrictionCard(
                id=str(row["id"]),
                user_id=str(row["user_id"]) if row.get("user_id") else None,
                account_id=str(row["account_id"]),
                raw_input_id=str(row["raw_input_id"]),
                summary=row["summary"],
                theme_key=row["theme_key"],
                severity=row["severity"],
                sentiment=row.get("sentiment") or "neutral",
                root_cause=row.get("root_cause_hypothesis") or "Unknown",
                is_friction=row["is_friction"],
                confidence_score=row["confidence_score"],
                evidence_snippets=row.get("evidence_snippets") or [],
                reasoning=row.get("reasoning"),
                created_at=row.get("created_at"),
            )
            for row in rows
        ]

    # Snapshots

    def get_snapshot_for_date(self, account_id: str, snapshot_date: date) -> Optional[AccountSnapshot]:
        row = self._fetchone(
            f"SELECT {self._SNAPSHOT_COLUMNS} FROM account_snapshots "
            "WHERE account_id = %s AND snapshot_date = %s",
            (account_id, snapshot_date)
        )
        return self._snapshot_from_row(row) if row else None

    def get_latest_snapshot(self, account_id: str, before: Optional[date] = None) -> Optional[AccountSnapshot]:
        """Most recent snapshot, optionally strictly before a date."""
        query = f"SELECT {self._SNAPSHOT_COLUMNS} FROM account_snapshots WHERE account_id = %s"
        params = [account_id]
        if before:
            query += " AND snapshot_date < %s"
            params.append(before)
        query += " ORDER BY snapshot_date DESC LIMIT 1"

        row = self._fetchone(query, tuple(params))
        return self._snapshot_from_row(row) if row else None

    def insert_snapshot(self, snapshot: AccountSnapshot) -> AccountSnapshot:
        """
        Insert a snapshot.

        Raises:
            PersistenceError: the write failed, including a second snapshot for the same day
        """
        rows = self._write(
            f"""
            INSERT INTO account_snapshots (account_id, snapshot_date, ofi_score, friction_card_count,
                                           high_severity_count, case_volume, top_themes, score_breakdown,
                                           trend_vs_prior_period, trend_direction)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {self._SNAPSHOT_COLUMNS}
            """,
            (
                snapshot.account_id,
                snapshot.snapshot_date,
                snapshot.ofi_score,
                snapshot.friction_card_count,
                snapshot.high_severity_count,
                snapshot.case_volume,
                Json([t.model_dump() for t in snapshot.top_themes]),
                Json(snapshot.score_breakdown.model_dump()),
                snapshot.trend_vs_prior_period,
                snapshot.trend_direction,
            ),
            fetch=True
        )
        return self._snapshot_from_row(rows[0]) if rows else snapshot

    _SNAPSHOT_COLUMNS = (
        "id, account_id, snapshot_date, ofi_score, friction_card_count, high_severity_count, "
        "case_volume, top_themes, score_breakdown, trend_vs_prior_period, trend_direction"
    )

    @staticmethod
    def _snapshot_from_row(row: dict) -> AccountSnapshot:
        return AccountSnapshot(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            snapshot_date=row["snapshot_date"],
            ofi_score=row["ofi_score"],
            friction_card_count=row.get("friction_card_count") or 0,
            high_severity_count=row.get("high_severity_count") or 0,
            case_volume=row.get("case_volume") or 0,
            top_themes=row.get("top_themes") or [],
            score_breakdown=row.get("score_breakdown") or {},
            trend_vs_prior_period=row.get("trend_vs_prior_period"),
            trend_direction=row.get("trend_direction") or "stable",
        )

    # Alerts

    def insert_alerts(self, alerts: List[Alert]) -> int:
        if not alerts:
            return 0

        values = [
            (a.user_id, a.account_id, a.alert_type, a.severity, a.title, a.message,
             Json(a.evidence), a.created_at, a.expires_at)
            for a in alerts
        ]
        return self._write(
            """
            INSERT INTO alerts (user_id, account_id, alert_type, severity, title, message,
                                evidence, created_at, expires_at)
            VALUES %s
            """,
            values=values
        )

    def delete_expired_alerts(self, now: datetime) -> int:
        """Delete every alert whose expiry has passed; returns the number removed."""
        return self._write("DELETE FROM alerts WHERE expires_at < %s", (now,))
