"""Audit trail for back-office actions."""

import logging
from typing import Any
from uuid import UUID

from src.core.supabase import get_supabase_client

logger = logging.getLogger(__name__)


class AuditService:
    """Writes rows to the ``audit_logs`` table.

    An audit write never fails the action it records; errors are logged.
    """

    def __init__(self) -> None:
        self.client = get_supabase_client()

    async def record(
        self,
        actor_id: UUID | None,
        action: str,
        entity_id: UUID | str,
        changes: dict[str, Any] | None = None,
        entity_type: str = "order",
    ) -> None:
        """Record ``action`` taken by ``actor_id`` on an entity.

        Args:
            actor_id: Admin user who acted, None for system actions.
            action: Short verb such as ``order.status_updated``.
            entity_id: Id of the affected entity.
            changes: JSON-serializable before/after values.
            entity_type: Kind of entity, ``order`` by default.
        """
        try:
            self.client.table("audit_logs").insert(
                {
                    "actor_id": str(actor_id) if actor_id else None,
                    "action": action,
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                    "changes": changes or {},
                }
            ).execute()
        except Exception as e:
            logger.error("Failed to write audit log %s for %s %s: %s", action, entity_type, entity_id, str(e))
