"""
Idempotent upserts of synced records by natural key.

Writing the same (key, fields) any number of times leaves exactly one row
holding those fields. The insert runs inside a SAVEPOINT so a concurrent
writer winning the race on the same key turns into an update instead of
poisoning the caller's transaction.
"""

import logging
from typing import Any, Dict, Type, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")

MAX_UPSERT_ATTEMPTS = 2


def upsert(
    db_session: Session,
    model: Type[ModelT],
    key: Dict[str, Any],
    fields: Dict[str, Any],
) -> ModelT:
    """
    Insert or update the row of `model` identified by `key`.

    Args:
        db_session: Database session
        model: Declarative model whose primary key is exactly `key`'s columns
        key: Natural key column values
        fields: Non-key column values to write

    Returns:
        The persisted instance

    Raises:
        IntegrityError: If the insert keeps conflicting and no row can be found
    """
    overlap = set(key) & set(fields)
    if overlap:
        raise ValueError(f"Key columns must not be repeated in fields: {sorted(overlap)}")

    last_error = None
    for _ in range(MAX_UPSERT_ATTEMPTS):
        instance = db_session.get(model, key, populate_existing=True)

        if instance is not None:
            for name, value in fields.items():
                setattr(instance, name, value)
            db_session.flush()
            return instance

        try:
            with db_session.begin_nested():
                instance = model(**key, **fields)
                db_session.add(instance)
            return instance
        except IntegrityError as e:
            # Another writer inserted the same key first
            last_error = e
            logger.debug(
                "Upsert insert conflicted, retrying as update",
                extra={"model": model.__name__, "key": key},
            )

    raise last_error
