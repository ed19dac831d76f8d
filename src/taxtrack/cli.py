"""Click CLI entry point for the taxtrack command.

Handles argument parsing, config loading, and error display. All business
logic is delegated to ``pipeline``, ``categorizer``, ``exclusions``,
``config`` and ``store``.
"""

from __future__ import annotations

import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path

import click

from taxtrack import __version__
from taxtrack.models import BUSINESS_TYPES, CLEARED, PENDING, TRANSACTION_TYPES


def _configure_logging(verbose: bool, debug: bool) -> None:
    """Set up logging based on verbosity flags."""
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
        force=True,
    )


def _output_options(func):
    """Add the ``--json``, ``--verbose`` and ``--debug`` flags."""
    func = click.option("--debug", is_flag=True, default=False, help="Developer-level diagnostics.")(func)
    func = click.option("--verbose", is_flag=True, default=False, help="Detailed progress output.")(func)
    func = click.option("--json", "as_json", is_flag=True, default=False, help="Print the result as JSON.")(func)
    return func


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _open(root: Path):
    """Load config and open the ledger store, exiting on failure."""
    from taxtrack.config import database_url, load_config
    from taxtrack.store import SqlLedgerStore

    try:
        config = load_config(root)
    except FileNotFoundError as exc:
        _fail(f"{exc}. Run 'taxtrack init' to create the project files.")
    except Exception as exc:
        _fail(f"loading configuration: {exc}")

    try:
        store = SqlLedgerStore(database_url(config, root))
    except Exception as exc:
        _fail(f"cannot open database: {exc}")
    return config, store


def _echo_json(data: dict | list) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(version=__version__, prog_name="taxtrack")
def cli() -> None:
    """Import bank transactions into a categorized, duplicate-free ledger."""


# ---------------------------------------------------------------------------
# Project setup
# ---------------------------------------------------------------------------


@cli.command()
@click.option(
    "--dir", "target_dir", default=".", type=click.Path(), help="Directory to initialize."
)
def init(target_dir: str) -> None:
    """Create config.toml, rules.toml and categories.toml."""
    from taxtrack.config import initialize

    target = Path(target_dir).resolve()

    try:
        initialize(target)
    except OSError as exc:
        _fail(f"initializing project: {exc}")

    click.echo(f"Initialized taxtrack project in {target}")


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


@cli.command("import-csv")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@_output_options
def import_csv(file: str, as_json: bool, verbose: bool, debug: bool) -> None:
    """Import a Starling Bank statement CSV."""
    _configure_logging(verbose, debug)
    from taxtrack.parsers.starling import StatementFormatError
    from taxtrack.pipeline import import_csv as run_import
    from taxtrack.summary import print_import_summary

    config, store = _open(Path.cwd())
    try:
        text = Path(file).read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as exc:
        _fail(f"reading {file}: {exc}")

    try:
        result = run_import(store, text, fuzzy_window_days=config.fuzzy_window_days)
    except StatementFormatError as exc:
        _fail(str(exc))
    finally:
        store.close()

    if as_json:
        _echo_json(result.to_dict(config.max_reported_errors))
    else:
        print_import_summary(result, config.max_reported_errors)


@cli.command()
@_output_options
def sync(as_json: bool, verbose: bool, debug: bool) -> None:
    """Pull recent transactions from the Starling Bank API."""
    _configure_logging(verbose, debug)
    from taxtrack.pipeline import sync_bank_feed
    from taxtrack.starling import StarlingAPIError, StarlingClient
    from taxtrack.summary import print_sync_summary

    config, store = _open(Path.cwd())
    try:
        client = StarlingClient.from_config(config.starling)
        result = sync_bank_feed(
            store,
            client,
            lookback_days=config.starling.lookback_days,
            fuzzy_window_days=config.fuzzy_window_days,
        )
    except ValueError as exc:
        _fail(str(exc))
    except StarlingAPIError as exc:
        _fail(f"failed to fetch accounts, the token may be invalid: {exc}")
    finally:
        store.close()

    if as_json:
        _echo_json(result.to_dict())
    else:
        print_sync_summary(result)


@cli.command("sync-status")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the result as JSON.")
def sync_status(as_json: bool) -> None:
    """Show when the bank feed was last synced."""
    from taxtrack.pipeline import sync_status as get_status

    _config, store = _open(Path.cwd())
    try:
        status = get_status(store)
    finally:
        store.close()

    if as_json:
        _echo_json(status)
        return
    click.echo(f"Last sync:     {status['lastSyncAt'] or 'never'}")
    click.echo(f"Transactions:  {status['transactions']} ({status['pending']} pending)")
    click.echo(f"From feed:     {status['feedCorrelated']}")
    click.echo(f"Excluded:      {status['excluded']}")


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@cli.command()
@click.option(
    "--date",
    "txn_date",
    required=True,
    type=click.DateTime(formats=["%Y-%m-%d", "%d/%m/%Y"]),
    help="Transaction date (YYYY-MM-DD or DD/MM/YYYY).",
)
@click.option("--description", required=True, help="Counterparty or description.")
@click.option("--amount", required=True, help="Signed amount; negative for money out.")
@click.option("--merchant", default="", help="Merchant name, if different.")
@click.option("--reference", default=None, help="Payment reference.")
@click.option("--type", "txn_type", type=click.Choice(TRANSACTION_TYPES), default=None)
@click.option("--business-type", type=click.Choice(BUSINESS_TYPES), default=None)
@click.option("--category", default=None)
@click.option("--pending", is_flag=True, default=False, help="Record as not yet cleared.")
def add(txn_date, description, amount, merchant, reference, txn_type, business_type, category, pending) -> None:
    """Record a transaction by hand."""
    from taxtrack.models import Classification
    from taxtrack.pipeline import DuplicateTransactionError, add_manual_transaction

    try:
        value = Decimal(amount.replace(",", "").replace("£", ""))
    except InvalidOperation:
        _fail(f"invalid amount: {amount!r}")

    classification = None
    if txn_type is not None:
        classification = Classification(txn_type, business_type, category)
    elif business_type or category:
        _fail("--business-type and --category require --type")

    _config, store = _open(Path.cwd())
    try:
        txn = add_manual_transaction(
            store,
            txn_date.date(),
            description,
            value,
            merchant=merchant,
            reference=reference,
            classification=classification,
            status=PENDING if pending else CLEARED,
        )
    except DuplicateTransactionError as exc:
        _fail(str(exc))
    except ValueError as exc:
        _fail(str(exc))
    finally:
        store.close()

    click.echo(f"Added {txn.description} {txn.amount:.2f} on {txn.date.isoformat()} [{txn.id}]")


@cli.command()
@click.argument("txn_id")
@click.option("--exclude", is_flag=True, default=False, help="Never re-import this transaction.")
@click.option("--reason", default="User deleted", help="Why it was excluded.")
def delete(txn_id: str, exclude: bool, reason: str) -> None:
    """Delete a transaction, optionally excluding it from future imports."""
    from taxtrack.exclusions import delete_transaction

    _config, store = _open(Path.cwd())
    try:
        txn = delete_transaction(store, txn_id, exclude_future=exclude, reason=reason)
    except KeyError as exc:
        _fail(str(exc.args[0]))
    finally:
        store.close()

    suffix = " and excluded it from future imports" if exclude else ""
    click.echo(f"Deleted {txn.description} {txn.amount:.2f} on {txn.date.isoformat()}{suffix}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, default=False, help="Print as JSON.")
def transactions(as_json: bool) -> None:
    """List ledger transactions, newest first."""
    from taxtrack.summary import print_transactions

    _config, store = _open(Path.cwd())
    try:
        txns = store.list_transactions()
    finally:
        store.close()

    if as_json:
        _echo_json(
            [
                {
                    "id": t.id,
                    "date": t.date.isoformat(),
                    "description": t.description,
                    "amount": str(t.amount),
                    "merchant": t.merchant,
                    "reference": t.reference,
                    "type": t.type,
                    "businessType": t.business_type,
                    "category": t.category,
                    "status": t.status,
                    "tags": t.tags,
                    "fingerprint": t.fingerprint,
                }
                for t in txns
            ]
        )
    else:
        print_transactions(txns)


# ---------------------------------------------------------------------------
# Exclusions
# ---------------------------------------------------------------------------


@cli.group()
def exclusions() -> None:
    """Manage transactions excluded from import."""


@exclusions.command("list")
def exclusions_list() -> None:
    """List excluded transactions."""
    from taxtrack.exclusions import list_exclusions
    from taxtrack.summary import print_exclusions

    _config, store = _open(Path.cwd())
    try:
        entries = list_exclusions(store)
    finally:
        store.close()
    print_exclusions(entries)


@exclusions.command("remove")
@click.argument("fingerprint")
def exclusions_remove(fingerprint: str) -> None:
    """Allow an excluded transaction to be imported again."""
    from taxtrack.exclusions import remove_exclusion

    _config, store = _open(Path.cwd())
    try:
        removed = remove_exclusion(store, fingerprint)
    finally:
        store.close()
    if not removed:
        _fail(f"no exclusion with fingerprint {fingerprint}")
    click.echo(f"Removed exclusion {fingerprint}")


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@cli.group()
def rules() -> None:
    """Manage categorization rules."""


@rules.command("list")
def rules_list() -> None:
    """List rules in precedence order."""
    from taxtrack.summary import print_rules

    _config, store = _open(Path.cwd())
    try:
        print_rules(store.list_rules())
    finally:
        store.close()


@rules.command("add")
@click.argument("keyword")
@click.option("--type", "rule_type", required=True, type=click.Choice(TRANSACTION_TYPES))
@click.option("--business-type", type=click.Choice(BUSINESS_TYPES), default=None)
@click.option("--category", default=None)
@click.option("--position", type=click.IntRange(min=1), default=None, help="1-based position; default last.")
def rules_add(keyword: str, rule_type: str, business_type: str | None, category: str | None, position: int | None) -> None:
    """Add a rule matching KEYWORD."""
    from taxtrack.categorizer import unknown_categories
    from taxtrack.config import load_categories
    from taxtrack.models import CategorizationRule

    rule = CategorizationRule(keyword=keyword, type=rule_type, business_type=business_type, category=category)
    _config, store = _open(Path.cwd())
    try:
        stored = store.add_rule(rule, None if position is None else position - 1)
    except ValueError as exc:
        _fail(str(exc))
    finally:
        store.close()

    try:
        unknown = unknown_categories([stored], load_categories(Path.cwd()))
    except FileNotFoundError:
        unknown = []
    for name in unknown:
        click.echo(f"Warning: category {name!r} is not in categories.toml", err=True)
    click.echo(f'Added rule {stored.position + 1}: "{stored.keyword}" [{stored.id}]')


@rules.command("remove")
@click.argument("rule_id")
def rules_remove(rule_id: str) -> None:
    """Delete a rule."""
    _config, store = _open(Path.cwd())
    try:
        removed = store.delete_rule(rule_id)
    finally:
        store.close()
    if not removed:
        _fail(f"rule not found: {rule_id}")
    click.echo(f"Removed rule {rule_id}")


@rules.command("move")
@click.argument("rule_id")
@click.argument("position", type=click.IntRange(min=1))
def rules_move(rule_id: str, position: int) -> None:
    """Move a rule to a 1-based POSITION."""
    _config, store = _open(Path.cwd())
    try:
        moved = store.move_rule(rule_id, position - 1)
    finally:
        store.close()
    if moved is None:
        _fail(f"rule not found: {rule_id}")
    click.echo(f'Moved "{moved.keyword}" to position {moved.position + 1}')


@rules.command("load")
@click.argument("file", default="rules.toml", type=click.Path())
def rules_load(file: str) -> None:
    """Replace all rules with those in FILE (default rules.toml)."""
    from taxtrack.categorizer import unknown_categories
    from taxtrack.config import load_categories, load_rules_file

    try:
        loaded = load_rules_file(Path(file))
    except FileNotFoundError as exc:
        _fail(f"{exc}. Run 'taxtrack init' to create the project files.")
    except ValueError as exc:
        _fail(str(exc))

    _config, store = _open(Path.cwd())
    try:
        stored = store.replace_rules(loaded)
    finally:
        store.close()

    try:
        unknown = unknown_categories(stored, load_categories(Path.cwd()))
    except FileNotFoundError:
        unknown = []
    for name in unknown:
        click.echo(f"Warning: category {name!r} is not in categories.toml", err=True)
    click.echo(f"Loaded {len(stored)} rules from {file}")


@rules.command("export")
@click.argument("file", default="rules.toml", type=click.Path())
def rules_export(file: str) -> None:
    """Write all rules to FILE (default rules.toml)."""
    from taxtrack.config import save_rules_file

    _config, store = _open(Path.cwd())
    try:
        current = store.list_rules()
    finally:
        store.close()

    try:
        save_rules_file(Path(file), current)
    except OSError as exc:
        _fail(f"writing {file}: {exc}")
    click.echo(f"Exported {len(current)} rules to {file}")


@rules.command("apply")
@_output_options
def rules_apply(as_json: bool, verbose: bool, debug: bool) -> None:
    """Re-apply rules to every stored transaction."""
    _configure_logging(verbose, debug)
    from taxtrack.categorizer import apply_rules_to_existing

    _config, store = _open(Path.cwd())
    try:
        result = apply_rules_to_existing(store)
    finally:
        store.close()

    if as_json:
        _echo_json(result.to_dict())
    else:
        click.echo(result.message)


# ---------------------------------------------------------------------------
# Retrofit jobs
# ---------------------------------------------------------------------------


@cli.group()
def backfill() -> None:
    """Repair records written by older versions."""


@backfill.command("fingerprints")
@_output_options
def backfill_fingerprints(as_json: bool, verbose: bool, debug: bool) -> None:
    """Compute fingerprints for transactions that lack one."""
    _configure_logging(verbose, debug)
    from taxtrack.pipeline import backfill_fingerprints as run_backfill

    _config, store = _open(Path.cwd())
    try:
        result = run_backfill(store)
    finally:
        store.close()

    if as_json:
        _echo_json(result.to_dict())
        return
    click.echo(result.message)
    if result.collisions:
        click.echo(f"{result.collisions} transactions left without a fingerprint (already taken)")


@backfill.command("references")
@_output_options
def backfill_references(as_json: bool, verbose: bool, debug: bool) -> None:
    """Fill in payment references from the Starling feed."""
    _configure_logging(verbose, debug)
    from taxtrack.pipeline import backfill_references as run_backfill
    from taxtrack.starling import StarlingAPIError, StarlingClient

    config, store = _open(Path.cwd())
    try:
        client = StarlingClient.from_config(config.starling)
        result = run_backfill(store, client, lookback_days=config.starling.lookback_days)
    except ValueError as exc:
        _fail(str(exc))
    except StarlingAPIError as exc:
        _fail(f"failed to fetch accounts, the token may be invalid: {exc}")
    finally:
        store.close()

    if as_json:
        _echo_json(result.to_dict())
        return
    click.echo(result.message)
    for message in result.errors:
        click.echo(f"Warning: {message}", err=True)
