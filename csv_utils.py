from datetime import datetime, time
from decimal import Decimal, InvalidOperation
from typing import Sequence

from rapidfuzz.distance import Levenshtein

from ledger import (
    CUSTOM_PREFIX,
    Builtin,
    Category,
    Custom,
    Transaction,
    category_from_key,
)
from models import BuiltinCategory, PaymentMethod, TransactionType
from schemas import ColumnMapping

DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%d/%m/%Y", "%Y/%m/%d")

TYPE_ALIASES = {
    "expense": TransactionType.expense,
    "out": TransactionType.expense,
    "debit": TransactionType.expense,
    "income": TransactionType.income,
    "in": TransactionType.income,
    "credit": TransactionType.income,
}

PAYMENT_ALIASES = {
    "cash": PaymentMethod.cash,
    "card": PaymentMethod.card,
    "credit card": PaymentMethod.card,
    "debit card": PaymentMethod.card,
}


class AmbiguousCategory(ValueError):
    pass


def parse_date(value: str) -> datetime:
    """Parse an import date; bare dates land at noon local time."""
    value = value.strip()
    if not value:
        raise ValueError("Missing date")
    for fmt in DATE_FORMATS:
        try:
            return datetime.combine(datetime.strptime(value, fmt).date(), time(12, 0))
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(value).replace(tzinfo=None)
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value!r}") from exc


def parse_amount(value: str) -> int:
    clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
        if not amount.is_finite():
            raise ValueError(f"Invalid amount: {value!r}")
        cents = int((amount * 100).quantize(Decimal("1")))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    if cents <= 0:
        raise ValueError("Amount must be positive")
    return cents


def parse_type(value: str) -> TransactionType:
    clean = value.strip().lower()
    if not clean:
        return TransactionType.expense
    try:
        return TYPE_ALIASES[clean]
    except KeyError as exc:
        raise ValueError(f"Invalid type: {value!r}") from exc


def parse_payment_method(value: str) -> PaymentMethod:
    clean = value.strip().lower()
    if not clean:
        return PaymentMethod.card
    try:
        return PAYMENT_ALIASES[clean]
    except KeyError as exc:
        raise ValueError(f"Invalid payment method: {value!r}") from exc


def resolve_category(value: str, custom_names: Sequence[str]) -> Category:
    raw = value.strip()
    if not raw:
        return Builtin(BuiltinCategory.other)
    lowered = raw.lower()
    if raw.startswith(CUSTOM_PREFIX):
        category = category_from_key(raw)
        for name in custom_names:
            if name.lower() == category.title.lower():
                return Custom(name)
        return category

    for tag in BuiltinCategory:
        if tag.value == lowered:
            return Builtin(tag)
    for name in custom_names:
        if name.lower() == lowered:
            return Custom(name)

    candidates: list[Category] = [Builtin(tag) for tag in BuiltinCategory]
    candidates.extend(Custom(name) for name in custom_names)
    best_distance = None
    best: list[Category] = []
    for candidate in candidates:
        dist = int(Levenshtein.distance(lowered, candidate.title.lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [candidate]
        elif dist == best_distance:
            best.append(candidate)

    if best_distance is not None and best_distance <= 1:
        if len(best) > 1:
            options = ", ".join(sorted(c.title for c in best))
            raise AmbiguousCategory(
                f"Category '{raw}' is ambiguous; matches: {options}"
            )
        return best[0]
    return Custom(raw)


def _cell(row: Sequence[str], index: int) -> str:
    if index >= len(row):
        raise ValueError(f"Missing column {index}")
    return row[index] or ""


def row_to_transaction(
    row: Sequence[str], mapping: ColumnMapping, custom_names: Sequence[str]
) -> Transaction:
    occurred = parse_date(_cell(row, mapping.date))
    amount = parse_amount(_cell(row, mapping.amount))
    category = resolve_category(_cell(row, mapping.category), custom_names)
    txn_type = (
        parse_type(_cell(row, mapping.type))
        if mapping.type is not None
        else TransactionType.expense
    )
    payment = (
        parse_payment_method(_cell(row, mapping.payment))
        if mapping.payment is not None
        else PaymentMethod.card
    )
    note = _cell(row, mapping.note).strip() if mapping.note is not None else ""
    return Transaction(
        amount=amount,
        date=occurred,
        category=category,
        note=note,
        payment_method=payment,
        type=txn_type,
    )


def parse_rows(
    rows: Sequence[Sequence[str]],
    mapping: ColumnMapping,
    custom_names: Sequence[str],
) -> tuple[list[Transaction], list[str]]:
    body = rows[1:] if mapping.has_header else rows
    offset = 2 if mapping.has_header else 1
    # Names first seen in this batch must resolve for the rows after them.
    known = list(custom_names)
    known_lower = {name.lower() for name in known}
    parsed: list[Transaction] = []
    errors: list[str] = []
    for idx, raw in enumerate(body, start=offset):
        if not any((cell or "").strip() for cell in raw):
            continue
        try:
            txn = row_to_transaction(raw, mapping, known)
        except ValueError as exc:
            errors.append(f"Row {idx}: {exc}")
            continue
        if isinstance(txn.category, Custom):
            name = txn.category.name
            if name.lower() not in known_lower:
                known.append(name)
                known_lower.add(name.lower())
        parsed.append(txn)
    return parsed, errors
