"""
Database Infrastructure Package for the Box Billing Engine

Exports database utilities and dependency providers.
"""

from app.infrastructure.db.database import (
    DatabaseManager,
    get_db_manager,
    get_session,
    get_session_context,
    init_db,
    close_db,
)

from app.infrastructure.db.dependencies import (
    SessionDep,
    BillingStoreDep,
    EngineDep,
    get_billing_store,
    get_billing_engine,
)


__all__ = [
    # Database management
    "DatabaseManager",
    "get_db_manager",
    "get_session",
    "get_session_context",
    "init_db",
    "close_db",
    # Dependencies
    "SessionDep",
    "BillingStoreDep",
    "EngineDep",
    "get_billing_store",
    "get_billing_engine",
]
