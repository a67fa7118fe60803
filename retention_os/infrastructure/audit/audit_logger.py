"""
Audit trail for operator actions: weight changes, flow edits and
performance rebuilds.

Each event goes to the structured log first and then to the append-only
audit_logs table. A failed insert is logged with the full event and
reported as False; it never fails the operation being audited.

    await audit_logger.log(
        actor="owner-42",
        action="flow_updated",
        resource_type="flow",
        resource_id="7",
        metadata={"ranking_score": 10},
    )
"""

from datetime import UTC, datetime
from typing import Any

from psycopg.types.json import Jsonb

from retention_os.db.pool import db_pool
from retention_os.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

INSERT_AUDIT_SQL = """
    INSERT INTO audit_logs (actor, action, resource_type, resource_id, metadata)
    VALUES (%s, %s, %s, %s, %s)
"""


class AuditLogger:
    @staticmethod
    async def log(
        actor: str,
        action: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Record one audit event.

        Args:
            actor: owner id, "system" or the job name
            action: e.g. "weight_changed", "flow_created"
            resource_type: kind of record touched
            resource_id: id of the record touched
            metadata: JSON-serializable detail

        Returns:
            False when the database insert failed
        """
        event = {
            "actor": actor,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "metadata": metadata,
        }
        logger.info("Audit event", **{("audit_action" if k == "action" else k): v for k, v in event.items()})

        try:
            async with db_pool.connection() as conn:
                await conn.execute(
                    INSERT_AUDIT_SQL,
                    (actor, action, resource_type, resource_id, Jsonb(metadata) if metadata is not None else None),
                )
        except Exception as e:
            logger.error(
                "Audit insert failed",
                error=f"{type(e).__name__}: {e}",
                unrecorded_event={**event, "at": datetime.now(UTC).isoformat()},
            )
            return False
        return True

    @staticmethod
    async def log_weight_change(
        name: str,
        old_value: float,
        new_value: float,
        actor: str,
        reason: str | None = None,
    ) -> bool:
        return await AuditLogger.log(
            actor=actor,
            action="weight_changed",
            resource_type="weight",
            resource_id=name,
            metadata={"old_value": old_value, "new_value": new_value, "reason": reason},
        )


audit_logger = AuditLogger()
