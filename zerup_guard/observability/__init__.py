"""zerup-guard observability: audit journal and exporters."""

from zerup_guard.observability.audit_log import AuditLog
from zerup_guard.observability.exporters import JsonlExporter

__all__ = ["AuditLog", "JsonlExporter"]
