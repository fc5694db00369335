"""Storage layer for compilations, their checkpoints and compiled books."""

from .base import CompilationStore, StoreError
from .postgres import PostgresCompilationStore, conninfo_from_url

__all__ = ["CompilationStore", "PostgresCompilationStore", "StoreError", "conninfo_from_url"]
