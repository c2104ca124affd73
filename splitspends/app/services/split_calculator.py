"""
services/split_calculator.py — Turns (amount, strategy, participants, weights)
into per-participant owed shares.

This file is the SINGLE SOURCE OF TRUTH for how an expense amount is divided.
Every strategy ends in the same guarantee:

    sum(share.share_amount for share in compute(...)) == amount   (exactly)

Strategies:
  EQUAL       amount / n, rounded half-up to the currency's minor unit
  CUSTOM      explicit amounts; must already sum to amount, returned verbatim
  PERCENTAGE  amount * pct / 100 per participant; percentages sum to 100
  SHARE       amount * count / total_count per participant; counts are positive ints

Remainder policy (EQUAL, PERCENTAGE, SHARE):
  Per-share rounding leaves delta = amount - sum(rounded shares), a whole
  number of minor units (positive or negative). The delta is handed out one
  minor unit per split per pass, walking participants in sorted id order with
  the payer (when given and participating) moved to the front. A negative unit
  never takes a share below zero.

  Example: 100.00 EQUAL over [A, B, C] -> A 33.34, B 33.33, C 33.33.

Layer rules:
  - No Flask imports and no database access. Pure Decimal arithmetic.
  - Never float. Floats are rejected at the boundary, not converted.
  - Output order is the sorted participant order, so identical input always
    yields identical output.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Hashable, Iterable, Mapping

from splitspends.app.errors import AppError, ErrorCode, InvalidSplitError, UnsupportedCurrencyError
from splitspends.app.models.expense_split import SplitType

log = logging.getLogger(__name__)

_HUNDRED = Decimal("100")
# ExpenseSplit.percentage is NUMERIC(7, 4).
_PERCENTAGE_QUANTUM = Decimal("0.0001")


@dataclass(frozen=True)
class SplitShare:
    """One participant's computed share. Immutable."""

    participant_id: Hashable
    share_amount: Decimal
    percentage: Decimal | None = None
    share_count: int | None = None


# ── Public helpers ─────────────────────────────────────────────────────────

def resolve_places(currency: str, minor_units: Mapping[str, int]) -> int:
    """
    Returns the minor-unit exponent for an ISO 4217 code.

    Raises UnsupportedCurrencyError for codes missing from the registry;
    the calculator never guesses a precision.
    """
    code = (currency or "").strip().upper()
    if code not in minor_units:
        raise UnsupportedCurrencyError(currency)
    return int(minor_units[code])


def shares_by_participant(shares: Iterable[SplitShare]) -> dict:
    """{participant_id: share_amount}, preserving the computed order."""
    return {s.participant_id: s.share_amount for s in shares}


def compute(
        amount,
        strategy,
        participants: Iterable[Hashable],
        weights: Mapping | None = None,
        *,
        payer_id: Hashable | None = None,
        allow_external_payer: bool = False,
        places: int = 2,
) -> list[SplitShare]:
    """
    Computes the shares of `amount` owed by each participant.

    Args:
        amount:               Decimal, int or numeric string. Strictly positive,
                              at most `places` decimals. Floats are rejected.
        strategy:             SplitType or its value ("equal", "custom", ...).
        participants:         Non-empty, duplicate-free participant ids.
        weights:              None for EQUAL; {participant_id: weight} otherwise.
        payer_id:             Optional payer. Receives remainder units first.
        allow_external_payer: When False, payer_id must be a participant.
        places:               Minor-unit exponent of the currency (2 for cents).

    Returns:
        list[SplitShare] ordered by participant id.

    Raises:
        InvalidSplitError for any malformed or inconsistent request.
    """
    split_type = _coerce_strategy(strategy)
    quantum = _quantum(places)
    amount = _coerce_amount(amount, quantum)
    ordered = _validate_participants(participants)
    _validate_payer(payer_id, ordered, allow_external_payer)

    if split_type == SplitType.EQUAL:
        if weights:
            raise InvalidSplitError(
                ErrorCode.WEIGHTS_SENT_FOR_EQUAL,
                "Do not send weights for an equal split.",
                field="weights",
            )
        result = _compute_equal(amount, ordered, payer_id, quantum)
    elif split_type == SplitType.CUSTOM:
        _validate_weight_keys(weights, ordered)
        result = _compute_custom(amount, ordered, weights, quantum)
    elif split_type == SplitType.PERCENTAGE:
        _validate_weight_keys(weights, ordered)
        result = _compute_percentage(amount, ordered, weights, payer_id, quantum)
    else:
        _validate_weight_keys(weights, ordered)
        result = _compute_share(amount, ordered, weights, payer_id, quantum)

    _assert_reconciled(result, amount)
    return result


# ── Strategies ─────────────────────────────────────────────────────────────

def _compute_equal(
        amount: Decimal,
        ordered: list,
        payer_id,
        quantum: Decimal,
) -> list[SplitShare]:
    base = (amount / Decimal(len(ordered))).quantize(quantum, rounding=ROUND_HALF_UP)
    naive = {pid: base for pid in ordered}
    reconciled = _distribute_remainder(naive, amount, _remainder_order(ordered, payer_id), quantum)
    return [SplitShare(pid, reconciled[pid]) for pid in ordered]


def _compute_custom(
        amount: Decimal,
        ordered: list,
        weights: Mapping,
        quantum: Decimal,
) -> list[SplitShare]:
    values = {}
    for pid in ordered:
        value = _coerce_weight(weights[pid], pid)
        if value < 0:
            raise InvalidSplitError(
                ErrorCode.INVALID_SPLIT_WEIGHT,
                f"Amount for participant {pid} must not be negative.",
                field="weights",
            )
        scaled = _scaled(value, quantum)
        if scaled is None:
            raise InvalidSplitError(
                ErrorCode.INVALID_AMOUNT_PRECISION,
                f"Amount for participant {pid} has more decimal places than the currency allows.",
                field="weights",
            )
        values[pid] = scaled

    # Exact equality. No tolerance, no rounding.
    total = sum(values.values(), Decimal("0"))
    if total != amount:
        raise InvalidSplitError(
            ErrorCode.SPLIT_SUM_MISMATCH,
            f"Split amounts ({total}) do not equal expense amount ({amount}).",
            field="weights",
        )

    return [SplitShare(pid, values[pid]) for pid in ordered]


def _compute_percentage(
        amount: Decimal,
        ordered: list,
        weights: Mapping,
        payer_id,
        quantum: Decimal,
) -> list[SplitShare]:
    percentages = {}
    for pid in ordered:
        pct = _coerce_weight(weights[pid], pid)
        if pct < 0 or pct > _HUNDRED:
            raise InvalidSplitError(
                ErrorCode.INVALID_SPLIT_WEIGHT,
                f"Percentage for participant {pid} must be between 0 and 100.",
                field="weights",
            )
        if _scaled(pct, _PERCENTAGE_QUANTUM) is None:
            raise InvalidSplitError(
                ErrorCode.INVALID_SPLIT_WEIGHT,
                f"Percentage for participant {pid} has more than 4 decimal places.",
                field="weights",
            )
        percentages[pid] = pct

    total = sum(percentages.values(), Decimal("0"))
    if total != _HUNDRED:
        raise InvalidSplitError(
            ErrorCode.PERCENTAGE_SUM_MISMATCH,
            f"Percentages sum to {total}, expected exactly 100.",
            field="weights",
        )

    naive = {
        pid: (amount * pct / _HUNDRED).quantize(quantum, rounding=ROUND_HALF_UP)
        for pid, pct in percentages.items()
    }
    reconciled = _distribute_remainder(naive, amount, _remainder_order(ordered, payer_id), quantum)
    return [
        SplitShare(pid, reconciled[pid], percentage=percentages[pid])
        for pid in ordered
    ]


def _compute_share(
        amount: Decimal,
        ordered: list,
        weights: Mapping,
        payer_id,
        quantum: Decimal,
) -> list[SplitShare]:
    counts = {}
    for pid in ordered:
        count = weights[pid]
        # bool is an int subclass; True is not a share count.
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise InvalidSplitError(
                ErrorCode.INVALID_SPLIT_WEIGHT,
                f"Share count for participant {pid} must be a positive integer.",
                field="weights",
            )
        counts[pid] = count

    total_shares = Decimal(sum(counts.values()))
    naive = {
        pid: (amount * Decimal(count) / total_shares).quantize(quantum, rounding=ROUND_HALF_UP)
        for pid, count in counts.items()
    }
    reconciled = _distribute_remainder(naive, amount, _remainder_order(ordered, payer_id), quantum)
    return [
        SplitShare(pid, reconciled[pid], share_count=counts[pid])
        for pid in ordered
    ]


# ── Remainder distribution ─────────────────────────────────────────────────

def _remainder_order(ordered: list, payer_id) -> list:
    """Sorted participants, payer first when the payer participates."""
    if payer_id is not None and payer_id in ordered:
        return [payer_id] + [pid for pid in ordered if pid != payer_id]
    return list(ordered)


def _distribute_remainder(
        naive: dict,
        amount: Decimal,
        order: list,
        quantum: Decimal,
) -> dict:
    """
    Hands out amount - sum(naive) one minor unit per split per pass over `order`.

    Returns a new dict; `naive` is not mutated.
    """
    shares = dict(naive)
    delta = amount - sum(shares.values(), Decimal("0"))
    units = int((delta / quantum).to_integral_value())
    if units == 0:
        return shares

    step = quantum if units > 0 else -quantum
    remaining = abs(units)
    log.debug("Distributing %s minor unit(s) of %s over %d split(s)", units, quantum, len(order))

    while remaining:
        applied = False
        for pid in order:
            if remaining == 0:
                break
            if step < 0 and shares[pid] + step < 0:
                continue
            shares[pid] += step
            remaining -= 1
            applied = True
        if not applied:
            # Only reachable if every share is already zero while the sum
            # still exceeds a positive amount, which rounding cannot produce.
            raise AppError(
                ErrorCode.INTERNAL_ERROR,
                f"Could not reconcile {delta} across {len(order)} split(s). "
                f"This is a bug — please report it.",
                500,
            )
    return shares


def _assert_reconciled(result: list[SplitShare], amount: Decimal) -> None:
    # Must always hold; a failure here is a programming error.
    computed = sum((s.share_amount for s in result), Decimal("0"))
    if computed != amount:
        raise AppError(
            ErrorCode.INTERNAL_ERROR,
            f"Split computation produced sum {computed} for amount {amount}. "
            f"This is a bug — please report it.",
            500,
        )


# ── Input coercion and validation ──────────────────────────────────────────

def _quantum(places: int) -> Decimal:
    if isinstance(places, bool) or not isinstance(places, int) or places < 0:
        raise AppError(
            ErrorCode.INTERNAL_ERROR,
            f"Minor-unit places must be a non-negative integer, got {places!r}.",
            500,
        )
    return Decimal(1).scaleb(-places)


def _coerce_strategy(strategy) -> SplitType:
    if isinstance(strategy, SplitType):
        return strategy
    if isinstance(strategy, str):
        key = strategy.strip().lower()
        for member in SplitType:
            if member.value == key:
                return member
    raise InvalidSplitError(
        ErrorCode.INVALID_SPLIT_TYPE,
        f"Unknown split strategy {strategy!r}. "
        f"Expected one of: {', '.join(m.value for m in SplitType)}.",
        field="strategy",
    )


def _to_decimal(value) -> Decimal | None:
    """Decimal for Decimal/int/str input; None for anything else (float included)."""
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            return None
    else:
        return None
    if not result.is_finite():
        return None
    return result


def _coerce_amount(amount, quantum: Decimal) -> Decimal:
    value = _to_decimal(amount)
    if value is None:
        raise InvalidSplitError(
            ErrorCode.INVALID_AMOUNT,
            f"Amount must be a Decimal, integer or numeric string, got {amount!r}.",
            field="amount",
        )
    if value <= 0:
        raise InvalidSplitError(
            ErrorCode.INVALID_AMOUNT,
            "Amount must be greater than zero.",
            field="amount",
        )
    # Rejected, never rounded.
    scaled = _scaled(value, quantum)
    if scaled is None:
        raise InvalidSplitError(
            ErrorCode.INVALID_AMOUNT_PRECISION,
            f"Amount {value} has more decimal places than the currency allows.",
            field="amount",
        )
    return scaled


def _scaled(value: Decimal, quantum: Decimal) -> Decimal | None:
    """`value` at the currency's scale, or None if that would change it."""
    try:
        scaled = value.quantize(quantum)
    except InvalidOperation:
        return None
    return scaled if scaled == value else None


def _coerce_weight(value, participant_id) -> Decimal:
    result = _to_decimal(value)
    if result is None:
        raise InvalidSplitError(
            ErrorCode.INVALID_SPLIT_WEIGHT,
            f"Weight for participant {participant_id} must be a Decimal, integer "
            f"or numeric string, got {value!r}.",
            field="weights",
        )
    return result


def _validate_participants(participants) -> list:
    """Returns the participants sorted; raises on empty, duplicate or unsortable ids."""
    if participants is None:
        participants = []
    items = list(participants)
    if not items:
        raise InvalidSplitError(
            ErrorCode.EMPTY_PARTICIPANTS,
            "At least one participant is required.",
            field="participants",
        )
    if any(pid is None for pid in items):
        raise InvalidSplitError(
            ErrorCode.INVALID_PARTICIPANT,
            "Participant ids must not be null.",
            field="participants",
        )
    try:
        unique = set(items)
        ordered = sorted(items)
    except TypeError:
        raise InvalidSplitError(
            ErrorCode.INVALID_PARTICIPANT,
            "Participant ids must be hashable and all of one comparable type.",
            field="participants",
        ) from None
    if len(unique) != len(items):
        raise InvalidSplitError(
            ErrorCode.DUPLICATE_SPLIT_USER,
            "The same participant appears more than once.",
            field="participants",
        )
    return ordered


def _validate_payer(payer_id, ordered: list, allow_external_payer: bool) -> None:
    if payer_id is None or allow_external_payer:
        return
    if payer_id not in ordered:
        raise InvalidSplitError(
            ErrorCode.PAYER_NOT_PARTICIPANT,
            f"Payer {payer_id} is not one of the participants.",
            field="payer_id",
        )


def _validate_weight_keys(weights: Mapping | None, ordered: list) -> None:
    if not weights:
        raise InvalidSplitError(
            ErrorCode.MISSING_SPLIT_WEIGHT,
            "Weights are required for this split strategy.",
            field="weights",
        )
    participant_set = set(ordered)
    for pid in ordered:
        if pid not in weights:
            raise InvalidSplitError(
                ErrorCode.MISSING_SPLIT_WEIGHT,
                f"No weight given for participant {pid}.",
                field="weights",
            )
    extra = [key for key in weights if key not in participant_set]
    if extra:
        raise InvalidSplitError(
            ErrorCode.UNEXPECTED_SPLIT_WEIGHT,
            f"Weights given for non-participants: {extra}.",
            field="weights",
        )
