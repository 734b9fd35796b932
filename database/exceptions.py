"""Database exception types."""

class DatabaseError(Exception):
    """Base exception for database errors."""
    pass

class DatabaseSchemaError(DatabaseError):
    """Raised when the schema cannot be loaded or migrated."""
    pass

class DatabaseNotInitializedError(DatabaseError):
    """Raised when the connection pool could not be created."""
    pass

__all__ = ['DatabaseError', 'DatabaseSchemaError', 'DatabaseNotInitializedError']
