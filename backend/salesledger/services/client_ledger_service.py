# Overview: Service-layer operations for client balances; owns the append-only client ledger.

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable

from flask import current_app

from ..extensions import db
from ..models import Client, ClientLedgerEntry
from ..models.transactions import (
    TYPE_DEPOSIT,
    TYPE_PICKUP,
    TYPE_PURCHASE,
    TYPE_RETURN,
    TYPE_WHOLESALE,
)
from salesledger import decimal_utils as D
from salesledger.errors import InvalidTransactionError, NotFoundError, SuspendedClientError
from salesledger.identity import Actor
from salesledger.time_utils import utcnow
from .audit_service import record_audit
from .concurrency import execute_atomic, lock_for_update
from . import event_service

"""
SalesLedger Client Balance Invariants (authoritative)

Sign convention:
- balance > 0 is credit held for the client, balance < 0 is debt.

Entry rules (amount is always >= 0):
- DEPOSIT, RETURN: balance += amount.
- PURCHASE, WHOLESALE: the positive part of the balance is drawn down by at
  most `amount`; the rest was paid in cash at the counter. These entries
  never create or deepen debt.
- PICKUP: balance -= amount; may go negative.

Client.balance is a cache of compute_balance() over the client's entries.
Entries are append-only; nothing here updates or deletes them.
"""

CREDIT_TYPES = frozenset({TYPE_DEPOSIT, TYPE_RETURN})
PURCHASE_TYPES = frozenset({TYPE_PURCHASE, TYPE_WHOLESALE})
DEBIT_TYPES = frozenset({TYPE_PICKUP})
LEDGER_TYPES = CREDIT_TYPES | PURCHASE_TYPES | DEBIT_TYPES


def next_balance(balance: Decimal, entry_type: str, amount: Decimal) -> Decimal:
    """Balance after applying one entry."""
    if entry_type in CREDIT_TYPES:
        return D.add(balance, amount)
    if entry_type in PURCHASE_TYPES:
        used = D.minimum(D.maximum(balance, 0), amount)
        return D.subtract(balance, used)
    if entry_type in DEBIT_TYPES:
        return D.subtract(balance, amount)
    raise InvalidTransactionError(f"Unknown ledger entry type: {entry_type}", details={"type": entry_type})


def compute_balance(entries: Iterable) -> Decimal:
    """Fold entries (objects with .type/.amount or (type, amount) pairs) from zero."""
    balance = D.ZERO
    for entry in entries:
        if isinstance(entry, tuple):
            entry_type, amount = entry
        else:
            entry_type, amount = entry.type, entry.amount
        balance = next_balance(balance, entry_type, D.to_decimal(amount))
    return D.round_money(balance)


def get_client(client_id: int) -> Client:
    client = db.session.get(Client, client_id)
    if client is None:
        raise NotFoundError(f"Client {client_id} not found", details={"client_id": client_id})
    return client


def get_active_client(session, client_id: int, lock: bool = True) -> Client:
    """Load a client for a balance-affecting operation; rejects missing and suspended clients."""
    query = session.query(Client).filter(Client.id == client_id)
    if lock:
        query = lock_for_update(query)
    client = query.first()
    if client is None:
        raise NotFoundError(f"Client {client_id} not found", details={"client_id": client_id})
    if not client.is_active:
        raise SuspendedClientError(
            f"Client {client.name} is suspended",
            details={"client_id": client.id},
        )
    return client


def apply_ledger_entry(
    session,
    client: Client,
    entry_type: str,
    amount,
    *,
    description: str | None = None,
    reference: str | None = None,
    date: datetime | None = None,
) -> ClientLedgerEntry:
    """
    Append one ledger entry and move the cached balance with it.

    Must run inside the caller's atomic unit; never commits.
    """
    if entry_type not in LEDGER_TYPES:
        raise InvalidTransactionError(f"Unknown ledger entry type: {entry_type}", details={"type": entry_type})
    amount = D.round_money(D.ensure_non_negative(amount, "amount"))
    date = date or utcnow()

    before = D.to_decimal(client.balance or 0)
    after = D.round_money(next_balance(before, entry_type, amount))

    entry = ClientLedgerEntry(
        client_id=client.id,
        type=entry_type,
        amount=amount,
        balance_before=before,
        balance_after=after,
        description=description,
        reference=reference,
        date=date,
    )
    session.add(entry)

    client.balance = after
    client.last_transaction_date = date
    return entry


def record_deposit(client_id: int, amount, actor: Actor, description: str | None = None) -> ClientLedgerEntry:
    """Manual deposit outside of a sale, in its own unit."""
    amount = D.validate_money(amount, "amount")
    if D.is_zero(amount):
        raise InvalidTransactionError("Deposit amount must be greater than 0", details={"amount": D.to_display(amount)})

    def _op(session):
        client = get_active_client(session, client_id)
        now = utcnow()
        entry = apply_ledger_entry(
            session,
            client,
            TYPE_DEPOSIT,
            amount,
            description=description or "Manual deposit",
            reference=f"TXN{now:%Y%m%d%H%M%S%f}",
            date=now,
        )
        session.flush()
        return entry

    entry = execute_atomic(_op, label="record_deposit")
    current_app.logger.info(
        "Deposit of %s recorded for client %s (balance %s)", amount, client_id, entry.balance_after
    )
    payload = {
        "client_id": client_id,
        "amount": D.to_display(amount),
        "balance": D.to_display(entry.balance_after),
        "reference": entry.reference,
    }
    record_audit(
        "CLIENT_DEPOSIT_RECORDED",
        actor=actor,
        entity_type="client",
        entity_id=client_id,
        details=f"Deposit of {D.to_display(amount)} for client {client_id}",
        payload=payload,
    )
    event_service.emit(event_service.DEPOSIT_RECORDED, payload)
    return entry


def recompute_balance(client_id: int, *, fix: bool = False) -> dict:
    """
    Fold the ledger and compare to the cached balance.

    With fix=True a drifting cache is overwritten with the folded figure.
    """
    def _op(session):
        query = session.query(Client).filter(Client.id == client_id)
        client = (lock_for_update(query) if fix else query).first()
        if client is None:
            raise NotFoundError(f"Client {client_id} not found", details={"client_id": client_id})

        entries = (
            session.query(ClientLedgerEntry.type, ClientLedgerEntry.amount)
            .filter(ClientLedgerEntry.client_id == client_id)
            .order_by(ClientLedgerEntry.id.asc())
            .all()
        )
        computed = compute_balance((t, a) for t, a in entries)
        cached = D.round_money(client.balance or 0)
        drift = D.subtract(cached, computed)
        fixed = False
        if fix and not D.is_zero(drift):
            client.balance = computed
            fixed = True
        return {
            "client_id": client_id,
            "cached_balance": D.to_display(cached),
            "computed_balance": D.to_display(computed),
            "drift": D.to_display(drift),
            "fixed": fixed,
        }

    result = execute_atomic(_op, label="recompute_balance")
    if result["fixed"]:
        current_app.logger.warning(
            "Client %s balance repaired: cached %s, ledger %s",
            client_id, result["cached_balance"], result["computed_balance"],
        )
    return result


def recompute_all_balances(*, fix: bool = False) -> list[dict]:
    client_ids = [cid for (cid,) in db.session.query(Client.id).order_by(Client.id).all()]
    return [recompute_balance(cid, fix=fix) for cid in client_ids]


def get_transaction_history(
    client_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    per_page: int = 50,
) -> dict:
    """Paginated ledger view (newest first) with per-type totals over the whole range."""
    client = get_client(client_id)
    page = max(1, int(page))
    per_page = min(max(1, int(per_page)), 500)

    query = db.session.query(ClientLedgerEntry).filter(ClientLedgerEntry.client_id == client_id)
    if start:
        query = query.filter(ClientLedgerEntry.date >= start)
    if end:
        query = query.filter(ClientLedgerEntry.date <= end)

    totals = {entry_type: D.ZERO for entry_type in sorted(LEDGER_TYPES)}
    for entry_type, amount in query.with_entities(ClientLedgerEntry.type, ClientLedgerEntry.amount).all():
        totals[entry_type] = D.add(totals.get(entry_type, D.ZERO), amount)

    total = query.count()
    entries = (
        query.order_by(ClientLedgerEntry.date.desc(), ClientLedgerEntry.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )

    return {
        "client_id": client.id,
        "client_name": client.name,
        "current_balance": D.to_display(client.balance),
        "totals": {
            "deposits": D.to_display(totals[TYPE_DEPOSIT]),
            "purchases": D.to_display(totals[TYPE_PURCHASE]),
            "pickups": D.to_display(totals[TYPE_PICKUP]),
            "returns": D.to_display(totals[TYPE_RETURN]),
            "wholesale": D.to_display(totals[TYPE_WHOLESALE]),
        },
        "entries": [entry.to_dict() for entry in entries],
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "pages": (total + per_page - 1) // per_page,
        },
    }


def find_debtors(min_amount=0, branch_id: int | None = None) -> list[Client]:
    """Clients owing more than min_amount, most indebted first."""
    threshold = D.ensure_non_negative(min_amount, "min_amount")
    query = db.session.query(Client).filter(Client.balance < -threshold)
    if branch_id is not None:
        query = query.filter(Client.branch_id == branch_id)
    return query.order_by(Client.balance.asc(), Client.id.asc()).all()


def get_lifetime_value(client_id: int) -> dict:
    """Purchase-class spend plus the absolute current balance."""
    client = get_client(client_id)
    spent = D.ZERO
    rows = (
        db.session.query(ClientLedgerEntry.amount)
        .filter(
            ClientLedgerEntry.client_id == client_id,
            ClientLedgerEntry.type.in_((TYPE_PURCHASE, TYPE_PICKUP, TYPE_WHOLESALE)),
        )
        .all()
    )
    for (amount,) in rows:
        spent = D.add(spent, amount)

    balance = D.to_decimal(client.balance)
    return {
        "client_id": client.id,
        "lifetime_value": D.to_display(D.add(spent, D.absolute(balance))),
        "total_spent": D.to_display(spent),
        "current_balance": D.to_display(balance),
    }
