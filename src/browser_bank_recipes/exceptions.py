"""Custom exceptions for browser-bank-recipes."""


class BankRecipesError(Exception):
    """Base exception for browser-bank-recipes errors."""

    pass


class PageError(BankRecipesError):
    """Raised when a CDP command against the live page fails."""

    pass


class RecipeNotFoundError(BankRecipesError):
    """Raised when a recipe id does not exist in the store."""

    def __init__(self, recipe_id: str):
        super().__init__(f"Recipe not found: {recipe_id}")
        self.recipe_id = recipe_id


class EmptyRecordingError(BankRecipesError):
    """Raised when saving a recording that captured no steps."""

    pass


class RecordingStateError(BankRecipesError):
    """Raised when the recorder is used outside of an active recording."""

    pass
