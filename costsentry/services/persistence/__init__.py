from costsentry.services.persistence.memory import InMemoryCostRepository
from costsentry.services.persistence.ports import CostRepository
from costsentry.services.persistence.sql import SQLAlchemyCostRepository

__all__ = ["CostRepository", "InMemoryCostRepository", "SQLAlchemyCostRepository"]
