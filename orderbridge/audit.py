# orderbridge/audit.py
import asyncio
import logging

from orderbridge.order_store import OrderStore

logger = logging.getLogger("orderbridge")


class AuditLog:
    """Console + table audit trail. A failed insert is logged, never raised."""

    def __init__(self, store: OrderStore) -> None:
        self.store = store

    async def record(self, message: str) -> None:
        logger.info(f"[AUDIT] {message}")
        try:
            await asyncio.to_thread(self.store.add_audit_log, message)
        except Exception as e:
            logger.warning(f"Could not persist audit log entry: {e}")
