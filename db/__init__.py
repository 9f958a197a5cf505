from .client import get_pool, query_one, query_many, execute, transaction, close_pool, check_health

__all__ = ["get_pool", "query_one", "query_many", "execute", "transaction", "close_pool", "check_health"]
