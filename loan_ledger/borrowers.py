"""
Borrower Directory Module

Lookup of borrower display names. The engine only checks that a borrower
exists and never owns borrower data.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional


class BorrowerDirectory(ABC):
    """Abstract borrower lookup supplied by the surrounding application"""

    @abstractmethod
    def get_name(self, borrower_id: str) -> Optional[str]:
        """Display name for a borrower, or None if unknown"""
        pass

    def exists(self, borrower_id: str) -> bool:
        return self.get_name(borrower_id) is not None


class InMemoryBorrowerDirectory(BorrowerDirectory):
    """Dictionary-backed directory for tests and embedding"""

    def __init__(self, borrowers: Optional[Dict[str, str]] = None):
        self._borrowers: Dict[str, str] = dict(borrowers or {})

    def add(self, borrower_id: str, name: str) -> None:
        self._borrowers[borrower_id] = name

    def get_name(self, borrower_id: str) -> Optional[str]:
        return self._borrowers.get(borrower_id)
