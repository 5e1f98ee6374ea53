# Overview: Atomic per-store document numbering for vouchers.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from .concurrency import run_with_retry


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _current_number(store_id: int, document_type: str) -> int:
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(store_id=store_id, document_type=document_type)
        .scalar()
    )
    return current - 1


def next_document_number(
    *,
    store_id: int,
    document_type: str,
    prefix: str,
    pad: int = 6,
) -> str:
    """
    Atomically allocate the next document number for a store/type.

    Uses an UPDATE ... SET next_number = next_number + 1 so concurrent
    allocations serialize on the sequence row. Returns e.g. "NK-000012".
    """
    def _op() -> str:
        if not store_id:
            raise DocumentSequenceError("store_id is required")
        if not document_type:
            raise DocumentSequenceError("document_type is required")

        stmt = (
            update(DocumentSequence)
            .where(
                DocumentSequence.store_id == store_id,
                DocumentSequence.document_type == document_type,
            )
            .values(next_number=DocumentSequence.next_number + 1)
        )

        result = db.session.execute(stmt)
        if result.rowcount:
            db.session.flush()
            next_num = _current_number(store_id, document_type)
        else:
            try:
                with db.session.begin_nested():
                    db.session.add(
                        DocumentSequence(store_id=store_id, document_type=document_type, next_number=2)
                    )
                    db.session.flush()
                next_num = 1
            except IntegrityError:
                # Another writer created the row first
                result = db.session.execute(stmt)
                if not result.rowcount:
                    raise
                db.session.flush()
                next_num = _current_number(store_id, document_type)

        return f"{prefix}-{next_num:0{pad}d}"

    return run_with_retry(_op)
