"""Target adapters — per-kind read/write/validate/reload capabilities."""

from zerup_guard.adapters.base import TargetAdapter
from zerup_guard.adapters.file_adapter import FileAdapter
from zerup_guard.adapters.registry import AdapterRegistry
from zerup_guard.adapters.ruleset_adapter import RulesetAdapter
from zerup_guard.adapters.service_adapter import ServiceAdapter

__all__ = [
    "TargetAdapter",
    "FileAdapter",
    "ServiceAdapter",
    "RulesetAdapter",
    "AdapterRegistry",
]
