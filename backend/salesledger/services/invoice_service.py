# Overview: Service-layer operations for invoice numbering; allocates INV{YY}{MM}{seq} numbers atomically.

from __future__ import annotations

import re
from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import InvoiceCounter, Transaction
from salesledger.time_utils import year_month_code
from .concurrency import execute_atomic

INVOICE_PREFIX = "INV"
SEQUENCE_PAD = 4

_INVOICE_RE = re.compile(r"^INV(\d{4})(\d+)$")


def invoice_prefix(when: datetime | None = None) -> str:
    """INV + two-digit year + two-digit month of the accounting date."""
    return f"{INVOICE_PREFIX}{year_month_code(when)}"


def format_invoice_number(prefix: str, seq: int) -> str:
    return f"{prefix}{seq:0{SEQUENCE_PAD}d}"


def _current_seq(session, prefix: str) -> int:
    return session.query(InvoiceCounter.seq).filter(InvoiceCounter.prefix == prefix).scalar()


def allocate_invoice_number(session, when: datetime | None = None) -> str:
    """
    Allocate the next invoice number inside the caller's unit of work.

    The counter row is bumped with a single UPDATE ... SET seq = seq + 1, so
    the increment commits or rolls back together with the transaction that
    uses the number. The row is created on first use for a month; a
    concurrent creation surfaces as IntegrityError and is resolved by running
    the UPDATE again.
    """
    prefix = invoice_prefix(when)
    stmt = (
        update(InvoiceCounter)
        .where(InvoiceCounter.prefix == prefix)
        .values(seq=InvoiceCounter.seq + 1)
        .execution_options(synchronize_session=False)
    )

    result = session.execute(stmt)
    if result.rowcount:
        seq = _current_seq(session, prefix)
    else:
        try:
            with session.begin_nested():
                session.add(InvoiceCounter(prefix=prefix, seq=1))
            seq = 1
        except IntegrityError:
            result = session.execute(stmt)
            if not result.rowcount:
                raise
            seq = _current_seq(session, prefix)

    return format_invoice_number(prefix, seq)


def generate_invoice_number(when: datetime | None = None, session=None) -> str:
    """
    Public entry point.

    With a session the number is allocated inside that caller's unit.
    Without one it is allocated in its own atomic unit and committed
    immediately (the number is then consumed even if never used).
    """
    if session is not None:
        return allocate_invoice_number(session, when)
    return execute_atomic(lambda s: allocate_invoice_number(s, when), label="generate_invoice_number")


def parse_invoice_number(invoice_number: str) -> tuple[str, int] | None:
    match = _INVOICE_RE.match(invoice_number or "")
    if not match:
        return None
    return f"{INVOICE_PREFIX}{match.group(1)}", int(match.group(2))


def sync_invoice_counters() -> dict[str, int]:
    """
    Raise every counter to at least the highest sequence already used.

    Needed after importing historical transactions whose numbers were not
    allocated through the counter table. Counters are never lowered.
    """
    def _op(session) -> dict[str, int]:
        highest: dict[str, int] = {}
        for (number,) in session.query(Transaction.invoice_number).all():
            parsed = parse_invoice_number(number)
            if not parsed:
                continue
            prefix, seq = parsed
            if seq > highest.get(prefix, 0):
                highest[prefix] = seq

        synced = {}
        for prefix, seq in sorted(highest.items()):
            counter = session.query(InvoiceCounter).filter_by(prefix=prefix).first()
            if counter is None:
                session.add(InvoiceCounter(prefix=prefix, seq=seq))
                synced[prefix] = seq
            elif counter.seq < seq:
                counter.seq = seq
                synced[prefix] = seq
        return synced

    synced = execute_atomic(_op, label="sync_invoice_counters")
    if synced:
        current_app.logger.info("Invoice counters synced: %s", synced)
    return synced
