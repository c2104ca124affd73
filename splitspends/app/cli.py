"""
app/cli.py — `flask ledger ...` commands.

  flask ledger init-db
  flask ledger preview 100.00 --strategy equal -p 1 -p 2 -p 3 --payer 1
  flask ledger preview 45.50 --strategy percentage -w 1=50 -w 2=50
  flask ledger settle 42 --by 7 --note "Paid via UPI"
  flask ledger settle 42 --by 7 --at 2026-03-01T18:30:00+05:30

preview never touches the database. settle runs the same capability checks
as any other caller and commits on success.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

import click
from flask import current_app
from flask.cli import with_appcontext
from marshmallow import ValidationError

from splitspends.app.errors import AppError
from splitspends.app.extensions import db
from splitspends.app.models.expense_split import SplitType
from splitspends.app.schemas.expense_schema import (
    ExpenseSplitSchema,
    SettleSplitSchema,
    SplitRequestSchema,
    SplitShareSchema,
)
from splitspends.app.services import expense_service
from splitspends.app.services.split_calculator import compute, resolve_places

log = logging.getLogger(__name__)


@click.group("ledger")
def ledger_cli() -> None:
    """Expense splitting and settlement tools."""


@ledger_cli.command("init-db")
@with_appcontext
def init_db() -> None:
    """Create all ledger tables."""
    db.create_all()
    click.echo("Ledger tables created.")


def _parse_weights(raw_weights: tuple[str, ...], strategy: str) -> dict[str, object]:
    """("1=50", "2=50") → {"1": "50", "2": "50"}; SHARE counts become ints."""
    weights: dict[str, object] = {}
    for raw in raw_weights:
        key, sep, value = raw.partition("=")
        if not sep or not key.strip() or not value.strip():
            raise click.BadParameter(f"Expected ID=VALUE, got {raw!r}.", param_hint="--weight")
        if strategy == SplitType.SHARE.value:
            try:
                weights[key.strip()] = int(value)
            except ValueError:
                raise click.BadParameter(
                    f"Share counts must be integers, got {value!r}.", param_hint="--weight"
                ) from None
        else:
            weights[key.strip()] = value.strip()
    return weights


@ledger_cli.command("preview")
@click.argument("amount")
@click.option(
    "--strategy",
    type=click.Choice([m.value for m in SplitType], case_sensitive=False),
    default=SplitType.EQUAL.value,
    show_default=True,
)
@click.option("--participant", "-p", "participants", type=int, multiple=True)
@click.option("--weight", "-w", "weights", multiple=True, help="ID=VALUE, repeatable.")
@click.option("--payer", type=int, default=None, help="Receives remainder units first.")
@click.option("--currency", default=None, help="ISO 4217 code; DEFAULT_CURRENCY if omitted.")
@with_appcontext
def preview(amount, strategy, participants, weights, payer, currency) -> None:
    """Print the shares AMOUNT would be split into, as JSON."""
    strategy = strategy.lower()
    settings = current_app.extensions["ledger_settings"]

    try:
        value = Decimal(amount)
    except InvalidOperation:
        raise click.BadParameter(f"{amount!r} is not a number.", param_hint="AMOUNT") from None

    try:
        request = SplitRequestSchema().load({
            "strategy": strategy,
            "participants": list(participants) or None,
            "weights": _parse_weights(weights, strategy) or None,
        })
        ordered = request["participants"] or list((request["weights"] or {}).keys())
        shares = compute(
            value,
            request["strategy"],
            ordered,
            request["weights"],
            payer_id=payer,
            allow_external_payer=settings.allow_external_payer,
            places=resolve_places(currency or settings.default_currency, settings.currency_minor_units),
        )
    except ValidationError as err:
        raise click.UsageError(str(err.messages)) from err
    except AppError as err:
        raise click.ClickException(f"{err.code}: {err.message}") from err

    click.echo(current_app.json.dumps(SplitShareSchema(many=True).dump(shares)))


@ledger_cli.command("settle")
@click.argument("split_id", type=int)
@click.option("--by", "caller_id", type=int, required=True, help="Acting user id.")
@click.option("--note", default=None)
@click.option("--at", "occurred_at", default=None, help="ISO 8601 time with offset; now if omitted.")
@with_appcontext
def settle(split_id, caller_id, note, occurred_at) -> None:
    """Mark SPLIT_ID as settled on behalf of --by."""
    settings = current_app.extensions["ledger_settings"]
    try:
        details = SettleSplitSchema().load({"note": note, "occurred_at": occurred_at})
    except ValidationError as err:
        raise click.UsageError(str(err.messages)) from err

    try:
        split = expense_service.settle_split(
            split_id,
            caller_id,
            db.session,
            settings=settings,
            note=details["note"],
            occurred_at=details["occurred_at"],
        )
        db.session.commit()
    except AppError as err:
        db.session.rollback()
        raise click.ClickException(f"{err.code}: {err.message}") from err

    log.info("Split %s settled from the command line by user %s", split_id, caller_id)
    click.echo(current_app.json.dumps(ExpenseSplitSchema().dump(split)))
