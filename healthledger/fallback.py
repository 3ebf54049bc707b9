"""
Ordered fallback chains.

A chain is a list of ``(name, callable)`` strategies tried in order. The
first strategy that returns wins; a strategy that raises one of the
recoverable exception types hands over to the next one; anything else
propagates immediately.
"""

import logging
from typing import Any, Callable, Iterable, Tuple, Type

from healthledger.errors import Unavailable

logger = logging.getLogger(__name__)

Strategy = Tuple[str, Callable[[], Any]]


def first_success(strategies: Iterable[Strategy], recoverable: Tuple[Type[BaseException], ...] = (Unavailable,)):
    """
    Run strategies in order and return the first result.

    Args:
        strategies: (name, zero-argument callable) pairs
        recoverable: exception types that move on to the next strategy

    Returns:
        The value returned by the first strategy that did not fail

    Raises:
        The exception raised by the last strategy when all of them fail
    """
    last_error = None
    for name, strategy in strategies:
        try:
            return strategy()
        except recoverable as e:
            logger.warning(f"Strategy '{name}' failed: {e}")
            last_error = e
    if last_error is None:
        raise ValueError("No strategies to try")
    raise last_error
