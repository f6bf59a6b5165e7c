from typing import Optional


class CatalogException(Exception):
    """Base exception for all catalog-related errors."""
    pass

class DatabaseException(CatalogException):
    """Raised when a database operation fails."""
    pass

class ConflictException(DatabaseException):
    """
    Raised on a uniqueness violation, a generation mismatch, or a write that
    cannot be read back. Callers may re-read the current state and retry.
    """
    pass

class NotFoundException(DatabaseException):
    """Raised when a referenced location or entity does not exist."""
    pass

class InvalidInputException(CatalogException):
    """Raised when a request cannot be acted upon as given."""
    pass

class ParserException(CatalogException):
    """Raised when a raw descriptor cannot be turned into an Entity."""
    def __init__(self, message: str, entity_name: Optional[str] = None):
        self.entity_name = entity_name
        super().__init__(message)

class LocationReadException(CatalogException):
    """Raised when a location as a whole cannot be read."""
    pass
