from .journal import RunJournal
from .settings import StorageSettings

__all__ = [
    "RunJournal",
    "StorageSettings",
]
