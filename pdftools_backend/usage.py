"""
Page visit and tool usage tracking.
"""

from __future__ import annotations

import logging

from pdftools_backend.db import DbClient, ToolUsageRecord, VisitRecord

logger = logging.getLogger(__name__)


class UsageService:
    def __init__(self, db: DbClient):
        self.db = db

    def record_visit(
        self, page: str, user_agent: str | None = None, ip: str | None = None
    ) -> VisitRecord:
        return self.db.record_visit(page, user_agent=user_agent, ip=ip)

    def record_tool_usage(
        self, tool_name: str, user_id: str | None = None
    ) -> ToolUsageRecord:
        record = self.db.increment_tool_usage(tool_name, user_id=user_id)
        logger.debug(
            "Tool %s used (count=%d, user=%s)",
            tool_name,
            record.count,
            user_id or "anonymous",
        )
        return record

    def get_usage_stats(self) -> list[ToolUsageRecord]:
        """All tool counters, highest count first."""
        # sorted() is stable, so ties keep the order the store returned.
        return sorted(self.db.list_tool_usage(), key=lambda r: r.count, reverse=True)
