# Overview: ORM guard that makes audit tables insert-only.

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.orm import object_session


class ImmutableRecordError(RuntimeError):
    """Raised when code tries to update or delete an append-only audit row."""


def append_only(model_cls):
    """
    Class decorator: reject UPDATE and DELETE of rows of model_cls at flush time.

    Corrections to audit trails are made by appending compensating rows.
    """
    table = model_cls.__tablename__

    @event.listens_for(model_cls, "before_update")
    def _reject_update(mapper, connection, target):
        session = object_session(target)
        if session is None or session.is_modified(target, include_collections=False):
            raise ImmutableRecordError(f"{table} rows are append-only (id={target.id})")

    @event.listens_for(model_cls, "before_delete")
    def _reject_delete(mapper, connection, target):
        raise ImmutableRecordError(f"{table} rows cannot be deleted (id={target.id})")

    return model_cls
