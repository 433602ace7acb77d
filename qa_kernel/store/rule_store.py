"""
Rule Store — durable home of every piece of learning state.

Holds policy rules at three scope levels, the ephemeral pipeline-instance
rules, calibration counters, the append-only feedback stream, and the audit
tables (rule changes, overrides).

Behavioral Contract:
- Handlers are short-lived and share nothing in memory; every read goes to
  the database, never to a cache.
- Counters (trigger_count, calibration tallies) are bumped with a single
  atomic UPSERT.
- Policy rules are mutated through `update_rule`, an optimistic
  compare-and-swap on the `version` column that retries on conflict.
- Rule creation is idempotent on (owner, scope, category, rule_text, step):
  concurrent promotions of the same key collapse to one row.
- Rules are never deleted. `disabled` is terminal.
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, NamedTuple, Optional, Set, Tuple

from qa_kernel.errors import ConcurrentUpdateError, RuleNotFoundError, RuleStoreError
from qa_kernel.models.feedback import (
    CalibrationStat,
    FeedbackContext,
    FeedbackEvent,
    OutcomeType,
)
from qa_kernel.models.rule import (
    PipelineInstanceRule,
    PolicyRule,
    RuleChangeRecord,
    RuleOverride,
    RuleStatus,
    ScopeLevel,
)

GLOBAL_OWNER = "__global__"

_MUTABLE_RULE_COLUMNS = (
    "status",
    "violation_count",
    "support_count",
    "strength_stage",
    "escalation_level",
    "health",
    "confidence_score",
    "triggered_count",
    "approved_despite_trigger",
    "rejected_due_to_trigger",
    "user_muted",
    "user_locked",
    "last_triggered_at",
    "last_health_decay_at",
)

_CALIBRATION_COLUMNS = {
    OutcomeType.FALSE_REJECT: "false_reject_count",
    OutcomeType.FALSE_APPROVE: "false_approve_count",
    OutcomeType.CONFIRMED_CORRECT: "confirmed_correct_count",
}


class RuleUpdate(NamedTuple):
    """A committed rule mutation."""
    before: PolicyRule
    after: PolicyRule


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO timestamp so string comparison orders correctly."""
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _rule_params(rule: PolicyRule) -> dict:
    data = rule.model_dump(mode="json")
    data["user_muted"] = int(rule.user_muted)
    data["user_locked"] = int(rule.user_locked)
    data["created_at"] = _ts(rule.created_at)
    data["last_triggered_at"] = _ts(rule.last_triggered_at)
    data["last_health_decay_at"] = _ts(rule.last_health_decay_at)
    return data


class RuleStore:
    """
    SQLite-backed rule store.
    Prototype: SQLite. Production: PostgreSQL with the same statements.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create all tables and indexes if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS policy_rule (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                scope_level TEXT NOT NULL,
                step_id INTEGER,
                category TEXT NOT NULL,
                rule_text TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                violation_count INTEGER NOT NULL DEFAULT 1,
                support_count INTEGER NOT NULL DEFAULT 1,
                strength_stage TEXT NOT NULL DEFAULT 'nudge',
                escalation_level TEXT NOT NULL DEFAULT 'body',
                health INTEGER NOT NULL DEFAULT 100
                    CHECK (health >= 0 AND health <= 100),
                confidence_score REAL NOT NULL DEFAULT 1.0
                    CHECK (confidence_score >= 0 AND confidence_score <= 1),
                triggered_count INTEGER NOT NULL DEFAULT 0,
                approved_despite_trigger INTEGER NOT NULL DEFAULT 0,
                rejected_due_to_trigger INTEGER NOT NULL DEFAULT 0,
                user_muted INTEGER NOT NULL DEFAULT 0,
                user_locked INTEGER NOT NULL DEFAULT 0,
                source_pipeline_id TEXT,
                created_at TEXT NOT NULL,
                last_triggered_at TEXT,
                last_health_decay_at TEXT,
                version INTEGER NOT NULL DEFAULT 0
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_policy_rule_key
                ON policy_rule(owner_id, scope_level, category, rule_text,
                               IFNULL(step_id, -1));

            CREATE INDEX IF NOT EXISTS idx_policy_rule_decay
                ON policy_rule(status, last_health_decay_at);

            CREATE TABLE IF NOT EXISTS pipeline_instance_rule (
                id TEXT PRIMARY KEY,
                pipeline_id TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                step_id INTEGER NOT NULL,
                category TEXT NOT NULL,
                rule_text TEXT NOT NULL,
                trigger_count INTEGER NOT NULL DEFAULT 1,
                first_triggered_at TEXT NOT NULL,
                last_triggered_at TEXT NOT NULL,
                closed_at TEXT,
                UNIQUE (owner_id, pipeline_id, step_id, category, rule_text)
            );

            CREATE INDEX IF NOT EXISTS idx_pipeline_rule_key
                ON pipeline_instance_rule(owner_id, step_id, category, rule_text);

            CREATE TABLE IF NOT EXISTS calibration_stat (
                owner_id TEXT NOT NULL,
                step_id INTEGER NOT NULL,
                category TEXT NOT NULL,
                false_reject_count INTEGER NOT NULL DEFAULT 0,
                false_approve_count INTEGER NOT NULL DEFAULT 0,
                confirmed_correct_count INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (owner_id, step_id, category)
            );

            CREATE TABLE IF NOT EXISTS feedback_event (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                step_id INTEGER NOT NULL,
                pipeline_id TEXT,
                decision TEXT NOT NULL,
                signal TEXT,
                score INTEGER,
                reason_text TEXT NOT NULL DEFAULT '',
                category TEXT NOT NULL DEFAULT 'other',
                qa_original_status TEXT,
                context_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_feedback_event_owner_step
                ON feedback_event(owner_id, step_id, created_at);

            CREATE TABLE IF NOT EXISTS rule_change_log (
                id TEXT PRIMARY KEY,
                rule_id TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                change_type TEXT NOT NULL,
                from_value TEXT,
                to_value TEXT,
                trigger_reason TEXT NOT NULL,
                rule_text TEXT NOT NULL,
                category TEXT NOT NULL,
                violation_count INTEGER NOT NULL DEFAULT 0,
                support_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_rule_change_log_rule
                ON rule_change_log(rule_id, created_at);

            CREATE TABLE IF NOT EXISTS rule_override (
                id TEXT PRIMARY KEY,
                rule_id TEXT NOT NULL,
                pipeline_id TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                step_id INTEGER,
                strength_stage TEXT NOT NULL,
                override_reason TEXT,
                created_at TEXT NOT NULL
            );
        """)
        self._conn.commit()

    # --- Plumbing ---

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize a write on the shared connection and commit it."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise RuleStoreError(str(exc)) from exc
            except BaseException:
                self._conn.rollback()
                raise

    def _fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            with self._lock:
                return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise RuleStoreError(str(exc)) from exc

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        try:
            with self._lock:
                return self._conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise RuleStoreError(str(exc)) from exc

    @staticmethod
    def _to_rule(row: sqlite3.Row) -> PolicyRule:
        data = dict(row)
        data["user_muted"] = bool(data["user_muted"])
        data["user_locked"] = bool(data["user_locked"])
        return PolicyRule.model_validate(data)

    # --- Policy rules ---

    def create_rule(self, rule: PolicyRule) -> Tuple[PolicyRule, bool]:
        """
        Insert a rule unless one with the same key exists.
        Returns the stored rule and whether this call created it.
        """
        params = _rule_params(rule)
        columns = ", ".join(params)
        placeholders = ", ".join(f":{c}" for c in params)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"INSERT OR IGNORE INTO policy_rule ({columns}) VALUES ({placeholders})",
                params,
            )
            created = cursor.rowcount == 1
        stored = self.find_rule(
            rule.owner_id, rule.scope_level, rule.category, rule.rule_text, rule.step_id
        )
        if stored is None:
            raise RuleStoreError(
                "Rule vanished after insert", details={"rule_id": rule.id}
            )
        return stored, created

    def get_rule(self, rule_id: str) -> Optional[PolicyRule]:
        row = self._fetchone("SELECT * FROM policy_rule WHERE id = ?", (rule_id,))
        return self._to_rule(row) if row else None

    def find_rule(
        self,
        owner_id: str,
        scope_level: ScopeLevel,
        category: str,
        rule_text: str,
        step_id: Optional[int],
    ) -> Optional[PolicyRule]:
        """Look a rule up by its natural key."""
        row = self._fetchone(
            """
            SELECT * FROM policy_rule
            WHERE owner_id = ? AND scope_level = ? AND category = ?
              AND rule_text = ? AND IFNULL(step_id, -1) = IFNULL(?, -1)
            """,
            (owner_id, scope_level.value, category, rule_text, step_id),
        )
        return self._to_rule(row) if row else None

    def list_rules(
        self,
        owner_id: Optional[str] = None,
        step_id: Optional[int] = None,
        status: Optional[RuleStatus] = None,
        scope_level: Optional[ScopeLevel] = None,
    ) -> List[PolicyRule]:
        """Filter rules. A step filter also matches step-less rules."""
        clauses, params = [], []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if step_id is not None:
            clauses.append("(step_id = ? OR step_id IS NULL)")
            params.append(step_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if scope_level is not None:
            clauses.append("scope_level = ?")
            params.append(scope_level.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(
            f"SELECT * FROM policy_rule {where} ORDER BY created_at, id",
            tuple(params),
        )
        return [self._to_rule(r) for r in rows]

    def list_active_rules_for_step(
        self, owner_id: str, step_id: int, limit: int = 10
    ) -> List[PolicyRule]:
        """The owner's and the global active rules for a step, strongest support first."""
        rows = self._fetchall(
            """
            SELECT * FROM policy_rule
            WHERE owner_id IN (?, ?)
              AND status = 'active'
              AND (step_id = ? OR step_id IS NULL)
            ORDER BY support_count DESC, violation_count DESC, created_at
            LIMIT ?
            """,
            (owner_id, GLOBAL_OWNER, step_id, limit),
        )
        return [self._to_rule(r) for r in rows]

    def list_rules_due_for_decay(self, cutoff: datetime) -> List[PolicyRule]:
        """Active, unmuted, unlocked rules last decayed at or before `cutoff`."""
        rows = self._fetchall(
            """
            SELECT * FROM policy_rule
            WHERE status = 'active'
              AND user_muted = 0
              AND user_locked = 0
              AND (last_health_decay_at IS NULL OR last_health_decay_at <= ?)
            ORDER BY id
            """,
            (_ts(cutoff),),
        )
        return [self._to_rule(r) for r in rows]

    def update_rule(
        self,
        rule_id: str,
        mutate: Callable[[PolicyRule], Optional[PolicyRule]],
        max_retries: int = 5,
    ) -> Optional[RuleUpdate]:
        """
        Apply `mutate` to the freshest copy of a rule and write it back only if
        nobody else wrote in between. `mutate` must be pure: it may be called
        several times. Returning None (or an unchanged rule) means no-op.
        """
        for _ in range(max_retries):
            before = self.get_rule(rule_id)
            if before is None:
                raise RuleNotFoundError(rule_id)

            after = mutate(before.model_copy(deep=True))
            if after is None or after == before:
                return None

            params = _rule_params(after)
            assignments = ", ".join(f"{c} = :{c}" for c in _MUTABLE_RULE_COLUMNS)
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"""
                    UPDATE policy_rule
                    SET {assignments}, version = version + 1
                    WHERE id = :id AND version = :expected_version
                    """,
                    {
                        **{c: params[c] for c in _MUTABLE_RULE_COLUMNS},
                        "id": rule_id,
                        "expected_version": before.version,
                    },
                )
                committed = cursor.rowcount == 1
            if committed:
                return RuleUpdate(
                    before=before,
                    after=after.model_copy(update={"version": before.version + 1}),
                )
        raise ConcurrentUpdateError(rule_id, max_retries)

    # --- Pipeline instance rules ---

    def upsert_pipeline_rule(
        self,
        rule_id: str,
        owner_id: str,
        pipeline_id: str,
        step_id: int,
        category: str,
        rule_text: str,
        now: datetime,
    ) -> PipelineInstanceRule:
        """Create at trigger_count=1 or atomically increment."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO pipeline_instance_rule (
                    id, pipeline_id, owner_id, step_id, category, rule_text,
                    trigger_count, first_triggered_at, last_triggered_at
                ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT (owner_id, pipeline_id, step_id, category, rule_text)
                DO UPDATE SET
                    trigger_count = trigger_count + 1,
                    last_triggered_at = excluded.last_triggered_at
                """,
                (
                    rule_id, pipeline_id, owner_id, step_id, category, rule_text,
                    _ts(now), _ts(now),
                ),
            )
        row = self._fetchone(
            """
            SELECT * FROM pipeline_instance_rule
            WHERE owner_id = ? AND pipeline_id = ? AND step_id = ?
              AND category = ? AND rule_text = ?
            """,
            (owner_id, pipeline_id, step_id, category, rule_text),
        )
        return PipelineInstanceRule.model_validate(dict(row))

    def count_distinct_pipelines(
        self, owner_id: str, step_id: int, category: str, rule_text: str
    ) -> int:
        """How many different runs recorded this key. Closed runs count too."""
        row = self._fetchone(
            """
            SELECT COUNT(DISTINCT pipeline_id) AS cnt FROM pipeline_instance_rule
            WHERE owner_id = ? AND step_id = ? AND category = ? AND rule_text = ?
            """,
            (owner_id, step_id, category, rule_text),
        )
        return row["cnt"]

    def list_pipeline_rules(
        self,
        pipeline_id: str,
        step_id: Optional[int] = None,
        min_triggers: int = 1,
    ) -> List[PipelineInstanceRule]:
        if step_id is None:
            rows = self._fetchall(
                """
                SELECT * FROM pipeline_instance_rule
                WHERE pipeline_id = ? AND trigger_count >= ?
                ORDER BY trigger_count DESC, first_triggered_at
                """,
                (pipeline_id, min_triggers),
            )
        else:
            rows = self._fetchall(
                """
                SELECT * FROM pipeline_instance_rule
                WHERE pipeline_id = ? AND step_id = ? AND trigger_count >= ?
                ORDER BY trigger_count DESC, first_triggered_at
                """,
                (pipeline_id, step_id, min_triggers),
            )
        return [PipelineInstanceRule.model_validate(dict(r)) for r in rows]

    def triggered_keys(self, pipeline_id: str, step_id: int) -> Set[Tuple[str, str]]:
        """(category, rule_text) pairs that fired during a run."""
        rows = self._fetchall(
            """
            SELECT category, rule_text FROM pipeline_instance_rule
            WHERE pipeline_id = ? AND step_id = ?
            """,
            (pipeline_id, step_id),
        )
        return {(r["category"], r["rule_text"]) for r in rows}

    def close_pipeline_rules(self, pipeline_id: str, now: datetime) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_instance_rule SET closed_at = ?
                WHERE pipeline_id = ? AND closed_at IS NULL
                """,
                (_ts(now), pipeline_id),
            )
            return cursor.rowcount

    # --- Calibration ---

    def increment_calibration(
        self, owner_id: str, step_id: int, category: str, outcome: OutcomeType
    ) -> CalibrationStat:
        column = _CALIBRATION_COLUMNS[outcome]
        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO calibration_stat (owner_id, step_id, category, {column})
                VALUES (?, ?, ?, 1)
                ON CONFLICT (owner_id, step_id, category)
                DO UPDATE SET {column} = {column} + 1
                """,
                (owner_id, step_id, category),
            )
        row = self._fetchone(
            """
            SELECT * FROM calibration_stat
            WHERE owner_id = ? AND step_id = ? AND category = ?
            """,
            (owner_id, step_id, category),
        )
        return CalibrationStat.model_validate(dict(row))

    def list_calibration_stats(self, owner_id: str, step_id: int) -> List[CalibrationStat]:
        rows = self._fetchall(
            """
            SELECT * FROM calibration_stat
            WHERE owner_id = ? AND step_id = ? ORDER BY category
            """,
            (owner_id, step_id),
        )
        return [CalibrationStat.model_validate(dict(r)) for r in rows]

    # --- Feedback events ---

    def append_feedback(self, event: FeedbackEvent) -> FeedbackEvent:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO feedback_event (
                    id, owner_id, step_id, pipeline_id, decision, signal, score,
                    reason_text, category, qa_original_status, context_json,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.owner_id,
                    event.step_id,
                    event.pipeline_id,
                    event.decision.value,
                    event.signal.value if event.signal else None,
                    event.score,
                    event.reason_text,
                    event.category,
                    event.qa_original_status,
                    event.context.model_dump_json(exclude_none=True),
                    _ts(event.created_at),
                ),
            )
        return event

    def recent_feedback(
        self, owner_id: str, step_id: int, limit: int = 20, votes: bool = False
    ) -> List[FeedbackEvent]:
        """
        Most recent events first. `votes=False` returns approve/reject
        decisions, `votes=True` returns like/dislike votes.
        """
        signal_clause = "signal IS NOT NULL" if votes else "signal IS NULL"
        rows = self._fetchall(
            f"""
            SELECT * FROM feedback_event
            WHERE owner_id = ? AND step_id = ? AND {signal_clause}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (owner_id, step_id, limit),
        )
        events = []
        for r in rows:
            data = dict(r)
            data["context"] = FeedbackContext.model_validate_json(data.pop("context_json"))
            events.append(FeedbackEvent.model_validate(data))
        return events

    # --- Audit ---

    def append_change(self, record: RuleChangeRecord) -> RuleChangeRecord:
        data = record.model_dump(mode="json")
        data["created_at"] = _ts(record.created_at)
        columns = ", ".join(data)
        placeholders = ", ".join(f":{c}" for c in data)
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO rule_change_log ({columns}) VALUES ({placeholders})",
                data,
            )
        return record

    def list_changes(
        self,
        rule_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[RuleChangeRecord]:
        clauses, params = [], []
        if rule_id is not None:
            clauses.append("rule_id = ?")
            params.append(rule_id)
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(
            f"SELECT * FROM rule_change_log {where} ORDER BY rowid LIMIT ?",
            tuple(params) + (limit,),
        )
        return [RuleChangeRecord.model_validate(dict(r)) for r in rows]

    def append_override(self, override: RuleOverride) -> RuleOverride:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO rule_override (
                    id, rule_id, pipeline_id, owner_id, step_id,
                    strength_stage, override_reason, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    override.id,
                    override.rule_id,
                    override.pipeline_id,
                    override.owner_id,
                    override.step_id,
                    override.strength_stage.value,
                    override.override_reason,
                    _ts(override.created_at),
                ),
            )
        return override

    def list_overrides(self, rule_id: str) -> List[RuleOverride]:
        rows = self._fetchall(
            "SELECT * FROM rule_override WHERE rule_id = ? ORDER BY rowid",
            (rule_id,),
        )
        return [RuleOverride.model_validate(dict(r)) for r in rows]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
