"""Startup module for application initialization.

Contains modular initialization functions for various services.
"""

from .container import initialize_container
from .database import initialize_database_schema
from .redis import initialize_redis_client

__all__ = [
    "initialize_container",
    "initialize_database_schema",
    "initialize_redis_client",
]
