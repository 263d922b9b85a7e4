"""Persistence for the server store and the device replica."""

from fieldsync.storage.database import Database, make_engine
from fieldsync.storage.repository import EntityRepository, SqlAlchemyEntityRepository

__all__ = ["Database", "EntityRepository", "SqlAlchemyEntityRepository", "make_engine"]
