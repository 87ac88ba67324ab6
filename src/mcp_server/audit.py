"""Audit logging for tool executions.

Every tool call the agent makes has external effects or informs a
decision, so each one is recorded: access request, tool, arguments,
timestamp, and result.
"""

import asyncio
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiofiles
from pydantic import BaseModel, Field

from shared.logging import get_logger, redact
from shared.models import ToolResult

logger = get_logger(__name__)


class AuditEntry(BaseModel):
    """Audit log entry for one tool execution."""
    id: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    request_id: Optional[str] = None
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    execution_time_ms: float = 0
    mode: str = "live"


class AuditLogger:
    """
    Audit logger for tool executions.

    Entries go to the structured log immediately and are buffered for
    batch writes to a JSON-lines file.
    """

    def __init__(
        self,
        log_path: str = "logs/audit.log",
        enabled: bool = True,
        buffer_size: int = 100,
        max_pending: int = 10000
    ) -> None:
        self.log_path = Path(log_path)
        self.enabled = enabled
        self.buffer_size = buffer_size
        self.max_pending = max_pending
        self._buffer: list[AuditEntry] = []
        self._lock = asyncio.Lock()

        if self.enabled:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def create_entry(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        result: ToolResult,
        request_id: Optional[str] = None,
        mode: str = "live"
    ) -> AuditEntry:
        """
        Create an audit entry from tool execution data.

        Args:
            tool_name: Executed tool
            arguments: Arguments as received from the model
            result: Tool execution result
            request_id: Access request the call belongs to
            mode: Backend mode (mock or live)

        Returns:
            Audit entry
        """
        return AuditEntry(
            id=str(uuid.uuid4()),
            timestamp=datetime.utcnow(),
            request_id=request_id,
            tool_name=tool_name,
            arguments=redact(arguments),
            success=result.success,
            error=result.error,
            error_code=result.error_code,
            execution_time_ms=result.execution_time_ms,
            mode=mode,
        )

    async def log(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        result: ToolResult,
        request_id: Optional[str] = None,
        mode: str = "live"
    ) -> Optional[AuditEntry]:
        """Record a tool execution."""
        if not self.enabled:
            return None

        entry = self.create_entry(tool_name, arguments, result, request_id, mode)

        logger.info(
            "Tool audited",
            audit_id=entry.id,
            request_id=entry.request_id,
            tool=entry.tool_name,
            success=entry.success,
            error_code=entry.error_code,
            execution_time_ms=entry.execution_time_ms
        )

        async with self._lock:
            self._buffer.append(entry)

            if len(self._buffer) >= self.buffer_size:
                await self._flush()

        return entry

    async def _flush(self) -> None:
        """Flush buffered entries to file."""
        if not self._buffer:
            return

        entries_to_write = self._buffer.copy()
        self._buffer.clear()

        try:
            async with aiofiles.open(self.log_path, "a") as f:
                for entry in entries_to_write:
                    await f.write(entry.model_dump_json() + "\n")
        except OSError as e:
            logger.error("Failed to write audit log", path=str(self.log_path), error=str(e))
            # Keep entries for the next flush, oldest first, up to max_pending
            self._buffer[:0] = entries_to_write
            overflow = len(self._buffer) - self.max_pending
            if overflow > 0:
                del self._buffer[:overflow]
                logger.warning("Dropped unwritten audit entries", count=overflow)

    async def flush(self) -> None:
        """Public method to flush audit buffer."""
        async with self._lock:
            await self._flush()
