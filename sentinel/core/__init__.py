"""
Core Infrastructure

Essential components for the Sentinel agent:
- Configuration management
- Domain models
- Persistence (SQLite or Supabase) and the audit trail
- Signing credentials
- Completion providers
"""

from .config import ConfigurationError, EnvironmentConfig, load_config, check_startup_requirements
from .database import Database
from .supabase_db import SupabaseStore
from .audit import AuditLog
from .wallet import resolve_signer, resolve_address

__all__ = [
    'ConfigurationError',
    'EnvironmentConfig',
    'load_config',
    'check_startup_requirements',
    'Database',
    'SupabaseStore',
    'AuditLog',
    'resolve_signer',
    'resolve_address',
]
