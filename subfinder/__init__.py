"""SQLite-backed substitute finder service built on coverage_core."""

from .config import load_env, runtime_config, tenant_context
from .service import SubFinder
from .store import Store

__all__ = [
    "Store",
    "SubFinder",
    "load_env",
    "runtime_config",
    "tenant_context",
]
