"""Persistence for API request metadata (api_request_logs table)."""

from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from clients.postgres_client import PostgresClient
from utils.timezone import now_utc


@dataclass
class ApiRequestRecord:
    trace_id: str | None
    user_id: UUID | None
    token_id: UUID | None
    method: str
    path: str
    ip_address: str | None
    status_code: int
    duration_ms: int
    response_bytes: int | None
    user_agent: str | None
    failure_reason: str | None


class ApiRequestLogger:
    """Append-only request log with retention pruning."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    def log(self, record: ApiRequestRecord) -> None:
        self._db.execute_returning(
            """INSERT INTO api_request_logs
               (trace_id, user_id, access_token_id, method, path, ip_address, status_code,
                duration_ms, response_bytes, user_agent, failure_reason, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
               RETURNING id""",
            (
                record.trace_id,
                record.user_id,
                record.token_id,
                record.method,
                record.path,
                record.ip_address,
                record.status_code,
                record.duration_ms,
                record.response_bytes,
                record.user_agent,
                record.failure_reason,
                now_utc(),
            ),
        )

    def prune(self, retention_days: int) -> int:
        """Delete rows older than the retention window. Returns the number deleted."""
        cutoff = now_utc() - timedelta(days=retention_days)
        rows = self._db.execute_returning(
            "DELETE FROM api_request_logs WHERE created_at < %s RETURNING id",
            (cutoff,),
        )
        return len(rows)
