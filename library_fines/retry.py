"""
Bounded retry for optimistic read-modify-write units.
"""

import logging
from typing import Callable, TypeVar

from .errors import PersistenceConflict


T = TypeVar("T")


def run_with_retry(operation: Callable[[], T], max_attempts: int,
                   logger: logging.Logger, description: str = "operation") -> T:
    """
    Call ``operation`` until it stops raising PersistenceConflict.

    ``operation`` must re-read every record it modifies, so each attempt works
    on fresh versions. The last conflict is re-raised once ``max_attempts``
    is exhausted.
    """
    attempts = 0
    while True:
        try:
            return operation()
        except PersistenceConflict as e:
            attempts += 1
            if attempts >= max_attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            logger.debug(f"Retrying {description} ({attempts}/{max_attempts}): {e}")
