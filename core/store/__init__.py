"""Persistence for tickets, parts orders, events, delivery attempts and daily reports."""

from core.store.base import ServiceDeskRepository
from core.store.memory import InMemoryRepository
from core.store.postgres import PostgresRepository, SCHEMA_SQL

__all__ = [
    "ServiceDeskRepository",
    "InMemoryRepository",
    "PostgresRepository",
    "SCHEMA_SQL",
]
