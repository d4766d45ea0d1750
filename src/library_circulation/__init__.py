"""
Library Circulation Package.

A circulation engine for a small library: users borrow, return and renew
books, availability never drifts from the loan ledger, and overdue fines are
derived on read.

Key Components:
- service: the circulation operations (the public API)
- database: SQLAlchemy schema, sessions, catalog store and loan ledger
- models: Pydantic models returned to callers
- config: Configuration management with pydantic-settings
- tools / resources: the MCP surface over the service
"""

__version__ = "0.1.0"

from .errors import CirculationError
from .service import CirculationService

__all__ = [
    "CirculationError",
    "CirculationService",
    "__version__",
]
