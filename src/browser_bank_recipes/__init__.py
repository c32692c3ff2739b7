"""Record, replay and extract bank transaction data with browser-use."""

from .config import settings
from .exceptions import BankRecipesError, EmptyRecordingError, PageError, RecipeNotFoundError, RecordingStateError

__all__ = [
    "settings",
    "BankRecipesError",
    "PageError",
    "RecipeNotFoundError",
    "EmptyRecordingError",
    "RecordingStateError",
]
