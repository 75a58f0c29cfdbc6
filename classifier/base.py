from abc import ABC, abstractmethod
from typing import List

from models.email import Classification


class BaseClassifier(ABC):
    """Pluggable scorer assigning category, priority and confidence to an email."""

    @property
    @abstractmethod
    def categories(self) -> List[str]:
        """Category names this classifier can produce, excluding `uncategorized`."""

    @abstractmethod
    def classify(self, from_address: str, subject: str, body: str) -> Classification:
        pass
