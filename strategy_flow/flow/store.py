from __future__ import annotations

import json
import sqlite3
from dataclasses import fields
from pathlib import Path
from typing import Any

from strategy_flow.flow.models import (
    NODE_TYPES,
    ExecutionLogEntry,
    ExecutionRecord,
    ExecutionStatus,
    FlowEdge,
    FlowNode,
    NodeKind,
    Strategy,
    StrategyOverview,
    TriggerKind,
)


NODE_TABLES = {
    NodeKind.FETCH: "fetch_nodes",
    NodeKind.GENERATE: "generate_nodes",
    NodeKind.CONDITION: "condition_nodes",
    NodeKind.TRIGGER: "trigger_nodes",
    NodeKind.NOTIFY: "notify_nodes",
}
NODE_KIND_ORDER = list(NODE_TABLES)
BOOL_COLUMNS = {"enabled", "cast_to_number", "include_variables", "wait_for_completion"}
JSON_COLUMNS = {"pass_variables"}
STRATEGY_COLUMNS = {"name", "description", "enabled", "cron", "triggers"}

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS strategies (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT,
        enabled INTEGER NOT NULL DEFAULT 1,
        cron TEXT,
        triggers TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fetch_nodes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        url TEXT NOT NULL,
        method TEXT NOT NULL DEFAULT 'GET',
        headers TEXT,
        body TEXT,
        json_path TEXT,
        cast_to_number INTEGER NOT NULL DEFAULT 0,
        output_variable TEXT NOT NULL,
        order_index INTEGER NOT NULL DEFAULT 0,
        enabled INTEGER NOT NULL DEFAULT 1,
        FOREIGN KEY(strategy_id) REFERENCES strategies(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS generate_nodes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        model_tier TEXT NOT NULL DEFAULT 'cheap' CHECK (model_tier IN ('cheap', 'deep')),
        system_prompt TEXT,
        user_prompt TEXT NOT NULL,
        include_variables INTEGER NOT NULL DEFAULT 0,
        output_variable TEXT NOT NULL,
        order_index INTEGER NOT NULL DEFAULT 0,
        enabled INTEGER NOT NULL DEFAULT 1,
        FOREIGN KEY(strategy_id) REFERENCES strategies(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS condition_nodes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        left_operand TEXT NOT NULL,
        operator TEXT NOT NULL,
        right_operand TEXT NOT NULL,
        true_output_variable TEXT,
        false_output_variable TEXT,
        order_index INTEGER NOT NULL DEFAULT 0,
        enabled INTEGER NOT NULL DEFAULT 1,
        FOREIGN KEY(strategy_id) REFERENCES strategies(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trigger_nodes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        target_strategy_id INTEGER NOT NULL,
        condition_variable TEXT,
        pass_variables TEXT,
        wait_for_completion INTEGER NOT NULL DEFAULT 0,
        output_variable TEXT,
        order_index INTEGER NOT NULL DEFAULT 0,
        enabled INTEGER NOT NULL DEFAULT 1,
        FOREIGN KEY(strategy_id) REFERENCES strategies(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notify_nodes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        chat_id TEXT NOT NULL,
        message_template TEXT NOT NULL,
        include_variables INTEGER NOT NULL DEFAULT 0,
        only_if_variable TEXT,
        message_type TEXT NOT NULL DEFAULT 'info',
        parse_mode TEXT NOT NULL DEFAULT 'Markdown',
        order_index INTEGER NOT NULL DEFAULT 0,
        enabled INTEGER NOT NULL DEFAULT 1,
        FOREIGN KEY(strategy_id) REFERENCES strategies(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS flow_edges (
        id TEXT PRIMARY KEY,
        strategy_id INTEGER NOT NULL,
        source_node_id TEXT NOT NULL,
        target_node_id TEXT NOT NULL,
        source_handle TEXT NOT NULL DEFAULT 'default',
        target_handle TEXT NOT NULL DEFAULT 'default',
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY(strategy_id) REFERENCES strategies(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS strategy_executions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id INTEGER NOT NULL,
        started_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        completed_at TEXT,
        status TEXT NOT NULL CHECK (status IN ('running', 'success', 'failed')),
        error TEXT,
        trigger_kind TEXT NOT NULL CHECK (trigger_kind IN ('scheduled', 'manual')),
        FOREIGN KEY(strategy_id) REFERENCES strategies(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS flow_execution_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_id INTEGER NOT NULL,
        node_kind TEXT NOT NULL,
        node_id INTEGER NOT NULL,
        node_name TEXT NOT NULL,
        input_json TEXT,
        output_json TEXT,
        error TEXT,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY(execution_id) REFERENCES strategy_executions(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_flow_edges_strategy ON flow_edges(strategy_id)",
    """
    CREATE INDEX IF NOT EXISTS idx_strategy_executions_strategy_started
    ON strategy_executions(strategy_id, started_at DESC)
    """,
    "CREATE INDEX IF NOT EXISTS idx_flow_execution_logs_execution ON flow_execution_logs(execution_id)",
)


class StrategyStore:
    """SQLite persistence for strategies, their nodes and edges, executions, and node logs."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()

    # Strategies

    def create_strategy(
        self,
        *,
        name: str,
        cron: str | None = None,
        enabled: bool = True,
        description: str | None = None,
        triggers: object = None,
        strategy_id: int | None = None,
        ignore_conflicts: bool = False,
    ) -> int:
        verb = "INSERT OR IGNORE" if ignore_conflicts else "INSERT"
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                {verb} INTO strategies (id, name, description, enabled, cron, triggers)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    strategy_id,
                    name,
                    description,
                    int(enabled),
                    cron,
                    self._dump_optional(triggers),
                ),
            )
            conn.commit()
        if strategy_id is not None:
            return int(strategy_id)
        return int(cursor.lastrowid)

    def get_strategy(self, strategy_id: int) -> Strategy | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, description, enabled, cron, triggers FROM strategies WHERE id = ?",
                (strategy_id,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_strategy(row)

    def list_strategies(self, enabled_only: bool = False) -> list[Strategy]:
        query = "SELECT id, name, description, enabled, cron, triggers FROM strategies"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY id ASC"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_strategy(row) for row in rows]

    def update_strategy(self, strategy_id: int, **changes: object) -> None:
        unknown = set(changes) - STRATEGY_COLUMNS
        if unknown:
            raise ValueError(f"Unknown strategy fields: {', '.join(sorted(unknown))}")
        if not changes:
            return
        values = []
        for column, value in changes.items():
            if column == "enabled":
                value = int(bool(value))
            elif column == "triggers":
                value = self._dump_optional(value)
            values.append(value)
        assignments = ", ".join(f"{column} = ?" for column in changes)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE strategies SET {assignments} WHERE id = ?",
                (*values, strategy_id),
            )
            conn.commit()

    def delete_strategy(self, strategy_id: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM strategies WHERE id = ?", (strategy_id,))
            conn.commit()

    # Nodes

    def add_node(self, node: FlowNode, *, ignore_conflicts: bool = False) -> int:
        columns = self._node_columns(node.kind)
        values = [self._encode_column(column, getattr(node, column)) for column in columns]
        if node.id:
            columns = ["id", *columns]
            values = [node.id, *values]

        verb = "INSERT OR IGNORE" if ignore_conflicts else "INSERT"
        placeholders = ", ".join("?" for _ in columns)
        with self._connect() as conn:
            cursor = conn.execute(
                f"{verb} INTO {NODE_TABLES[node.kind]} ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
            conn.commit()
        node_id = int(node.id) if node.id else int(cursor.lastrowid)
        node.id = node_id
        return node_id

    def get_node(self, kind: NodeKind | str, node_id: int) -> FlowNode | None:
        node_kind = NodeKind(kind)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {NODE_TABLES[node_kind]} WHERE id = ?",
                (node_id,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_node(node_kind, row)

    def update_node(self, kind: NodeKind | str, node_id: int, **changes: object) -> None:
        node_kind = NodeKind(kind)
        allowed = set(self._node_columns(node_kind))
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown {node_kind.value} node fields: {', '.join(sorted(unknown))}")
        if not changes:
            return
        assignments = ", ".join(f"{column} = ?" for column in changes)
        values = [self._encode_column(column, value) for column, value in changes.items()]
        with self._connect() as conn:
            conn.execute(
                f"UPDATE {NODE_TABLES[node_kind]} SET {assignments} WHERE id = ?",
                (*values, node_id),
            )
            conn.commit()

    def delete_node(self, kind: NodeKind | str, node_id: int) -> None:
        node_kind = NodeKind(kind)
        with self._connect() as conn:
            conn.execute(f"DELETE FROM {NODE_TABLES[node_kind]} WHERE id = ?", (node_id,))
            conn.commit()

    def list_nodes(self, strategy_id: int) -> list[FlowNode]:
        nodes: list[FlowNode] = []
        with self._connect() as conn:
            for kind, table in NODE_TABLES.items():
                rows = conn.execute(
                    f"SELECT * FROM {table} WHERE strategy_id = ? ORDER BY order_index ASC, id ASC",
                    (strategy_id,),
                ).fetchall()
                nodes.extend(self._row_to_node(kind, row) for row in rows)
        nodes.sort(key=lambda node: (node.order_index, NODE_KIND_ORDER.index(node.kind), node.id))
        return nodes

    # Edges

    def add_edge(self, edge: FlowEdge, *, ignore_conflicts: bool = False) -> str:
        edge_id = edge.id or (
            f"{edge.source_node_id}:{edge.source_handle}->{edge.target_node_id}"
        )
        verb = "INSERT OR IGNORE" if ignore_conflicts else "INSERT"
        with self._connect() as conn:
            conn.execute(
                f"""
                {verb} INTO flow_edges (
                    id, strategy_id, source_node_id, target_node_id, source_handle, target_handle
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    edge_id,
                    edge.strategy_id,
                    edge.source_node_id,
                    edge.target_node_id,
                    edge.source_handle,
                    edge.target_handle,
                ),
            )
            conn.commit()
        edge.id = edge_id
        return edge_id

    def list_edges(self, strategy_id: int) -> list[FlowEdge]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, strategy_id, source_node_id, target_node_id, source_handle, target_handle
                FROM flow_edges
                WHERE strategy_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (strategy_id,),
            ).fetchall()
        return [
            FlowEdge(
                id=row["id"],
                strategy_id=int(row["strategy_id"]),
                source_node_id=row["source_node_id"],
                target_node_id=row["target_node_id"],
                source_handle=row["source_handle"] or "default",
                target_handle=row["target_handle"] or "default",
            )
            for row in rows
        ]

    def delete_edge(self, edge_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM flow_edges WHERE id = ?", (edge_id,))
            conn.commit()

    def get_overview(self, strategy_id: int) -> StrategyOverview | None:
        """Strategy row with every node (enabled or not) and edge it owns."""
        strategy = self.get_strategy(strategy_id)
        if strategy is None:
            return None
        return StrategyOverview(
            strategy=strategy,
            nodes=self.list_nodes(strategy_id),
            edges=self.list_edges(strategy_id),
        )

    # Executions

    def start_execution(self, strategy_id: int, trigger: TriggerKind | str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO strategy_executions (strategy_id, trigger_kind, status)
                VALUES (?, ?, 'running')
                """,
                (strategy_id, TriggerKind(trigger).value),
            )
            conn.commit()
        return int(cursor.lastrowid)

    def complete_execution(self, execution_id: int) -> None:
        self._finish_execution(execution_id, ExecutionStatus.SUCCESS, None)

    def fail_execution(self, execution_id: int, error: str | None = None) -> None:
        self._finish_execution(execution_id, ExecutionStatus.FAILED, error)

    def _finish_execution(
        self,
        execution_id: int,
        status: ExecutionStatus,
        error: str | None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE strategy_executions
                SET status = ?, error = ?, completed_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status = 'running'
                """,
                (status.value, error, execution_id),
            )
            conn.commit()

    def get_execution(self, execution_id: int) -> ExecutionRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, strategy_id, status, trigger_kind, started_at, completed_at, error
                FROM strategy_executions
                WHERE id = ?
                """,
                (execution_id,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_execution(row)

    def recent_executions(self, strategy_id: int, limit: int = 10) -> list[ExecutionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, strategy_id, status, trigger_kind, started_at, completed_at, error
                FROM strategy_executions
                WHERE strategy_id = ?
                ORDER BY started_at DESC, id DESC
                LIMIT ?
                """,
                (strategy_id, max(1, limit)),
            ).fetchall()
        return [self._row_to_execution(row) for row in rows]

    def execution_stats(self, strategy_id: int) -> dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    SUM(CASE WHEN status IN ('success', 'failed') THEN 1 ELSE 0 END) AS total,
                    SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END) AS successful,
                    SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                    MAX(CASE WHEN status IN ('success', 'failed') THEN started_at END) AS last_run,
                    AVG(
                        CASE WHEN status = 'success' AND completed_at IS NOT NULL
                        THEN (JULIANDAY(completed_at) - JULIANDAY(started_at)) * 86400.0
                        END
                    ) AS avg_seconds
                FROM strategy_executions
                WHERE strategy_id = ?
                """,
                (strategy_id,),
            ).fetchone()
        return {
            "total": int(row["total"] or 0),
            "successful": int(row["successful"] or 0),
            "failed": int(row["failed"] or 0),
            "last_run": row["last_run"],
            "avg_seconds": row["avg_seconds"],
        }

    # Execution logs

    def add_log_entry(self, execution_id: int, entry: ExecutionLogEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO flow_execution_logs (
                    execution_id, node_kind, node_id, node_name, input_json, output_json,
                    error, duration_ms
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution_id,
                    entry.node_kind,
                    entry.node_id,
                    entry.node_name,
                    self._dump_optional(entry.input),
                    self._dump_optional(entry.output),
                    entry.error,
                    int(entry.duration_ms),
                ),
            )
            conn.commit()

    def list_log_entries(self, execution_id: int) -> list[ExecutionLogEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT execution_id, node_kind, node_id, node_name, input_json, output_json,
                       error, duration_ms, created_at
                FROM flow_execution_logs
                WHERE execution_id = ?
                ORDER BY id ASC
                """,
                (execution_id,),
            ).fetchall()
        return [
            ExecutionLogEntry(
                execution_id=int(row["execution_id"]),
                node_kind=row["node_kind"],
                node_id=int(row["node_id"]),
                node_name=row["node_name"],
                input=self._load(row["input_json"]),
                output=self._load(row["output_json"]),
                error=row["error"],
                duration_ms=int(row["duration_ms"] or 0),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # Row mapping

    def _node_columns(self, kind: NodeKind) -> list[str]:
        return [item.name for item in fields(NODE_TYPES[kind]) if item.name not in {"id", "kind"}]

    def _encode_column(self, column: str, value: object) -> object:
        if column in BOOL_COLUMNS:
            return int(bool(value))
        if column in JSON_COLUMNS:
            return self._dump(list(value or []))
        return value

    def _row_to_node(self, kind: NodeKind, row: sqlite3.Row) -> FlowNode:
        keys = row.keys()
        values: dict[str, object] = {"id": int(row["id"])}
        for column in self._node_columns(kind):
            if column not in keys:
                continue
            value = row[column]
            if column in BOOL_COLUMNS:
                value = bool(value)
            elif column in JSON_COLUMNS:
                loaded = self._load(value)
                value = [str(item) for item in loaded] if isinstance(loaded, list) else []
            values[column] = value
        return NODE_TYPES[kind](**values)

    def _row_to_strategy(self, row: sqlite3.Row) -> Strategy:
        return Strategy(
            id=int(row["id"]),
            name=row["name"],
            description=row["description"],
            enabled=bool(row["enabled"]),
            cron=row["cron"],
            triggers=self._load(row["triggers"]),
        )

    def _row_to_execution(self, row: sqlite3.Row) -> ExecutionRecord:
        return ExecutionRecord(
            id=int(row["id"]),
            strategy_id=int(row["strategy_id"]),
            status=row["status"],
            trigger=row["trigger_kind"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            error=row["error"],
        )

    def _dump_optional(self, value: object) -> str | None:
        if value is None:
            return None
        return self._dump(value)

    def _dump(self, value: object) -> str:
        try:
            return json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError):
            sanitized = self._sanitize_for_json(value)
            return json.dumps(sanitized, ensure_ascii=False)

    def _load(self, value: str | None) -> object:
        if value is None:
            return None
        return json.loads(value)

    def _sanitize_for_json(self, value: object) -> object:
        if isinstance(value, dict):
            return {str(key): self._sanitize_for_json(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._sanitize_for_json(item) for item in value]
        if isinstance(value, (str, int, float, bool)) or value is None:
            return value
        return str(value)
