"""Writes job progress to the externally owned Call record."""

import logging
from typing import Optional

import asyncpg

from call_pipeline.models import CallStatus


class CallStatusWriter:
    """Updates the status and error_message columns of a Call row.

    The Call table belongs to the application, so a failed write is logged and
    never blocks the job transition that triggered it.
    """

    def __init__(
        self,
        db_pool: asyncpg.Pool,
        table: str = "calls",
        logger: Optional[logging.Logger] = None,
    ):
        self.db_pool = db_pool
        self.table = table
        self.logger = logger or logging.getLogger(__name__)

    async def update(
        self, call_id: str, status: CallStatus, error_message: Optional[str] = None
    ) -> bool:
        """Set the call's processing status. Returns False if the write failed."""
        try:
            async with self.db_pool.acquire() as conn:
                await conn.execute(
                    f"""
                    UPDATE {self.table}
                    SET status = $1, error_message = $2
                    WHERE id::text = $3
                    """,
                    status.value,
                    error_message,
                    call_id,
                )
        except (OSError, asyncpg.exceptions.PostgresError, asyncpg.exceptions.InterfaceError) as e:
            self.logger.warning(
                f"Failed to update call {call_id} status to {status.value}: {e}"
            )
            return False
        return True
