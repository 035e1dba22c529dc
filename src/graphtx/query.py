"""
Query text with transaction options, and the ``unit_of_work`` decorator.
"""

import functools
from typing import Any, Callable, Dict, Optional, Tuple, Union

from .config import TransactionConfig, build_transaction_config


class Query:
    """
    Query text carrying the options of its auto-commit transaction.

    Only ``Session.run`` and ``Driver.execute_query`` honour ``metadata``
    and ``timeout``; inside an explicit or managed transaction the options
    of the transaction itself apply.

    Example:
        >>> session.run(Query("MATCH (n) RETURN count(n)", timeout=5))
    """

    def __init__(
        self,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ):
        if not isinstance(text, str):
            raise TypeError(f"Query text must be a str, got {type(text).__name__}")
        self.text = text
        self.config = build_transaction_config(metadata, timeout)

    @property
    def metadata(self) -> Optional[Dict[str, Any]]:
        return self.config.metadata

    @property
    def timeout(self) -> Optional[float]:
        return self.config.timeout

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return (
            f"Query({self.text!r}, metadata={self.metadata!r}, "
            f"timeout={self.timeout!r})"
        )


def split_query(
    query: Union[str, Query],
) -> Tuple[str, Optional[TransactionConfig]]:
    """Return the text of ``query`` and its transaction options, if any."""
    if isinstance(query, Query):
        return query.text, query.config
    if isinstance(query, str):
        return query, None
    raise TypeError(f"Query must be a str or Query, got {type(query).__name__}")


def unit_of_work(
    metadata: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Attach transaction options to a transaction function.

    Example:
        >>> @unit_of_work(timeout=10, metadata={"app": "billing"})
        ... def count_people(tx):
        ...     return tx.run("MATCH (p:Person) RETURN count(p)").single().value()
        >>> session.execute_read(count_people)
    """
    config = build_transaction_config(metadata, timeout)

    def wrapper(f):
        @functools.wraps(f)
        def wrapped(*args, **kwargs):
            return f(*args, **kwargs)

        wrapped.transaction_config = config
        return wrapped

    return wrapper


__all__ = ["Query", "split_query", "unit_of_work"]
