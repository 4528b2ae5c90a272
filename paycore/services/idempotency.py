"""Idempotency helpers."""
from typing import Callable, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

T = TypeVar("T")


def get_existing_by_key(
    db: Session,
    model: Type[T],
    key_value: object | None,
    *,
    key_field: str,
) -> Optional[T]:
    """Return the record whose ``key_field`` equals ``key_value`` if present."""
    if key_value is None or key_value == "":
        return None
    if not hasattr(model, key_field):
        raise AttributeError(f"{model.__name__} has no field '{key_field}'")

    column = getattr(model, key_field)
    stmt = select(model).where(column == key_value).limit(1)
    return db.scalars(stmt).first()


def get_or_create_idempotent(
    db: Session,
    model: Type[T],
    key_value: object,
    build_instance: Callable[[], T],
    *,
    key_field: str,
    commit: bool = True,
) -> tuple[T, bool]:
    """Return ``(record, created)`` for ``key_value``, inserting when absent.

    A concurrent insert of the same key surfaces as an ``IntegrityError`` on
    the unique constraint; the winner's row is then re-read.
    """
    existing = get_existing_by_key(db, model, key_value, key_field=key_field)
    if existing is not None:
        return existing, False
    instance = build_instance()
    try:
        db.add(instance)
        db.flush()
    except IntegrityError:
        db.rollback()
        # Lost the insert race; re-read the winning row.
        existing = get_existing_by_key(db, model, key_value, key_field=key_field)
        if existing is None:
            raise
        return existing, False
    if commit:
        db.commit()
        db.refresh(instance)
    return instance, True
