from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence


class StorageBackend(ABC):
    """
    Backend-agnostic storage interface for release targets, policies,
    triggers and jobs.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        raise NotImplementedError

    @property
    def row_lock_clause(self) -> str:
        """
        Suffix appended to a SELECT that must hold the selected rows until
        the surrounding transaction ends.
        """
        return ""

    @contextmanager
    @abstractmethod
    def connect(self) -> Iterator[Any]:
        raise NotImplementedError

    @abstractmethod
    def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        raise NotImplementedError

    @abstractmethod
    def fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def fetchall(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @contextmanager
    @abstractmethod
    def transaction(self) -> Iterator["StorageBackend"]:
        """
        Execute multiple statements atomically.
        Inside this context, execute()/fetch*() must use the same connection and
        must not auto-commit per statement.
        """
        raise NotImplementedError

    @abstractmethod
    def is_transient_error(self, exc: BaseException) -> bool:
        """
        True when exc is a lock/serialization conflict that a retry of the
        whole transaction can resolve.
        """
        raise NotImplementedError
