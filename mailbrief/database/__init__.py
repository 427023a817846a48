# Database module
from mailbrief.database.local_store import LocalStore

__all__ = ["LocalStore"]
