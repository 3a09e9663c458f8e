# Overview: Unit-of-work helpers shared by every service that writes more than one row.

from __future__ import annotations

from contextlib import contextmanager

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Rows that also carry version_id are protected by optimistic locking there.
    """
    return query.with_for_update()


@contextmanager
def atomic(commit: bool = True):
    """
    All-or-nothing unit of work on db.session.

    Callers flush while building rows; nothing is visible to other sessions
    until the single commit at the end. Any exception rolls back everything
    written inside the block and is re-raised unchanged.

    commit=False lets a caller that already owns a unit of work compose this
    block into its own transaction; rollback on error still happens here.
    """
    try:
        yield db.session
        if commit:
            db.session.commit()
        else:
            db.session.flush()
    except Exception:
        db.session.rollback()
        raise
