"""Audit exporters."""

from zerup_guard.observability.exporters.jsonl_exporter import JsonlExporter

__all__ = ["JsonlExporter"]
