"""Listing exception types."""

from typing import Dict

class ListingError(Exception):
    """Base exception for listing operations."""
    pass

class ListingNotFoundError(ListingError):
    """Raised when a listing is not found."""
    pass

class ListingPermissionError(ListingError):
    """Raised when a user acts on a listing they do not own."""
    pass

class InvalidListingError(ListingError):
    """Raised when listing fields fail validation.

    Attributes:
        errors: Field name to message
    """

    def __init__(self, errors: Dict[str, str]):
        self.errors = errors
        super().__init__(
            "Invalid listing: " + "; ".join(f"{field}: {msg}" for field, msg in errors.items())
        )

class DraftValidationError(InvalidListingError):
    """Raised when a draft cannot advance past its current step."""
    pass

class InvalidCategoryError(ListingError):
    """Raised when the category does not exist."""
    pass

class InvalidSubcategoryError(ListingError):
    """Raised when the subcategory does not exist or belongs to another category."""
    pass

class InvalidPlanError(ListingError):
    """Raised when the chosen plan does not exist."""
    pass

class PaymentRequiredError(ListingError):
    """Raised when a paid plan has no completed payment behind it."""
    pass

__all__ = [
    'ListingError',
    'ListingNotFoundError',
    'ListingPermissionError',
    'InvalidListingError',
    'DraftValidationError',
    'InvalidCategoryError',
    'InvalidSubcategoryError',
    'InvalidPlanError',
    'PaymentRequiredError'
]
