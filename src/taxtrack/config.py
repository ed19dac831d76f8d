"""Configuration loading, writing, and project initialization.

Reads TOML config files using stdlib ``tomllib`` and writes them using
``tomli_w``.  Depends only on ``models.py``.
"""

from __future__ import annotations

import sys
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

import tomli_w

from taxtrack.models import (
    BUSINESS_TYPES,
    TRANSACTION_TYPES,
    AppConfig,
    CategorizationRule,
    StarlingConfig,
)

# ---------------------------------------------------------------------------
# Default file content
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_TOML = """\
# taxtrack configuration

[database]
path = "taxtrack.db"      # SQLite file, relative to this directory
url = ""                  # Optional SQLAlchemy URL; overrides path when set

[starling]
token_env = "STARLING_TOKEN"  # Name of env var containing the access token
sandbox = false
lookback_days = 90            # Starling allows at most 90
timeout = 30.0

[import]
max_reported_errors = 10

[dedupe]
fuzzy_window_days = 1         # +/- days for "same transaction" matches
"""

_DEFAULT_CATEGORIES_TOML = """\
# Category taxonomy: SA103F self-employment expense boxes and income types

["Cost of Goods"]
kind = "Expense"
box = "17"
description = "Cost of goods bought for resale or goods used"

["Subcontractor Costs"]
kind = "Expense"
box = "18"
description = "Construction industry payments to subcontractors"

["Staff Costs"]
kind = "Expense"
box = "19"
description = "Wages, salaries and other staff costs"

["Travel & Vehicle"]
kind = "Expense"
box = "20"
description = "Car, van and travel expenses"

["Premises Costs"]
kind = "Expense"
box = "21"
description = "Rent, rates, power and insurance costs"

["Repairs & Maintenance"]
kind = "Expense"
box = "22"
description = "Repairs and maintenance of property and equipment"

["Office Costs"]
kind = "Expense"
box = "23"
description = "Phone, fax, stationery and other office costs"

[Advertising]
kind = "Expense"
box = "24"
description = "Advertising and business entertainment costs"

["Loan Interest"]
kind = "Expense"
box = "25"
description = "Interest on bank and other loans"

["Bank Charges"]
kind = "Expense"
box = "26"
description = "Bank, credit card and other financial charges"

["Bad Debts"]
kind = "Expense"
box = "27"
description = "Irrecoverable debts written off"

["Professional Fees"]
kind = "Expense"
box = "28"
description = "Accountancy, legal and other professional fees"

[Depreciation]
kind = "Expense"
box = "29"
description = "Depreciation and loss/profit on sale of assets"

["Other Expenses"]
kind = "Expense"
box = "30"
description = "Other business expenses"

[Sales]
kind = "Income"
description = "Sales of goods or services"

[Consulting]
kind = "Income"
description = "Consulting or freelance income"

[Commission]
kind = "Income"
description = "Commission income"

[Grants]
kind = "Income"
description = "Business grants received"

[Refunds]
kind = "Income"
description = "Business refunds received"

["Other Income"]
kind = "Income"
description = "Other business income"
"""

_DEFAULT_RULES_TOML = """\
# Categorization rules, in precedence order: the first rule whose keyword
# appears (case-insensitively) in the description, merchant or reference
# wins.  Load into the ledger with `taxtrack rules load`.
#
# [[rules]]
# keyword = "tesco"
# type = "Business"           # Business, Personal, Unreviewed or Split
# business_type = "Expense"   # Income, Expense or Transfer (optional)
# category = "Cost of Goods"  # optional
"""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(root: Path) -> AppConfig:
    """Load ``config.toml`` from *root* and return an :class:`AppConfig`.

    Raises:
        FileNotFoundError: If ``config.toml`` does not exist.
        ValueError: If a setting has an invalid value.
    """
    data = _read_toml(root / "config.toml")

    database = data.get("database", {})
    starling = data.get("starling", {})
    imports = data.get("import", {})
    dedupe = data.get("dedupe", {})

    config = AppConfig(
        database_path=database.get("path", "taxtrack.db"),
        database_url=database.get("url", ""),
        max_reported_errors=int(imports.get("max_reported_errors", 10)),
        fuzzy_window_days=int(dedupe.get("fuzzy_window_days", 1)),
        starling=StarlingConfig(
            token_env=starling.get("token_env", "STARLING_TOKEN"),
            sandbox=bool(starling.get("sandbox", False)),
            lookback_days=int(starling.get("lookback_days", 90)),
            timeout=float(starling.get("timeout", 30.0)),
        ),
    )

    if config.fuzzy_window_days < 0:
        raise ValueError("[dedupe] fuzzy_window_days must not be negative")
    if not 1 <= config.starling.lookback_days <= 90:
        raise ValueError("[starling] lookback_days must be between 1 and 90")
    return config


def database_url(config: AppConfig, root: Path) -> str:
    """Return the SQLAlchemy URL for *config*, resolving the file path."""
    if config.database_url:
        return config.database_url
    path = Path(config.database_path)
    if not path.is_absolute():
        path = Path(root) / path
    return f"sqlite+pysqlite:///{path}"


def load_categories(root: Path) -> list[dict]:
    """Load ``categories.toml`` and return the taxonomy.

    Returns:
        A list of ``{"name", "kind", "box", "description"}`` dicts in file
        order.  ``box`` is None for categories without an SA103F box.

    Raises:
        FileNotFoundError: If ``categories.toml`` does not exist.
    """
    data = _read_toml(root / "categories.toml")
    return [
        {
            "name": name,
            "kind": section.get("kind", ""),
            "box": section.get("box"),
            "description": section.get("description", ""),
        }
        for name, section in data.items()
        if isinstance(section, dict)
    ]


def load_rules_file(path: Path) -> list[CategorizationRule]:
    """Read an ordered ``[[rules]]`` TOML file.

    Rules keep file order; their ``position`` is their index in the file.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If an entry is missing a keyword or has an unknown type.
    """
    data = _read_toml(Path(path))
    rules: list[CategorizationRule] = []
    for i, entry in enumerate(data.get("rules", [])):
        keyword = str(entry.get("keyword", "")).strip()
        if not keyword:
            raise ValueError(f"Rule {i + 1} in {path}: keyword is required")
        rule_type = entry.get("type", "")
        if rule_type not in TRANSACTION_TYPES:
            raise ValueError(f"Rule {i + 1} in {path}: invalid type {rule_type!r}")
        business_type = entry.get("business_type") or None
        if business_type is not None and business_type not in BUSINESS_TYPES:
            raise ValueError(f"Rule {i + 1} in {path}: invalid business_type {business_type!r}")
        rules.append(
            CategorizationRule(
                keyword=keyword,
                type=rule_type,
                business_type=business_type,
                category=entry.get("category") or None,
                position=i,
            )
        )
    return rules


def save_rules_file(path: Path, rules: list[CategorizationRule]) -> None:
    """Write *rules* to *path* as an ordered ``[[rules]]`` array.

    Unset optional fields are omitted, since TOML has no null.
    """
    entries: list[dict] = []
    for rule in rules:
        entry = {"keyword": rule.keyword, "type": rule.type}
        if rule.business_type:
            entry["business_type"] = rule.business_type
        if rule.category:
            entry["category"] = rule.category
        entries.append(entry)
    with open(path, "wb") as f:
        tomli_w.dump({"rules": entries}, f)


def initialize(target_dir: Path) -> None:
    """Create the default config files in *target_dir*.

    Idempotent: existing files are **not** overwritten.
    """
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)

    _write_if_missing(target_dir / "config.toml", _DEFAULT_CONFIG_TOML)
    _write_if_missing(target_dir / "categories.toml", _DEFAULT_CATEGORIES_TOML)
    _write_if_missing(target_dir / "rules.toml", _DEFAULT_RULES_TOML)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _read_toml(path: Path) -> dict:
    """Read and parse a TOML file."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def _write_if_missing(path: Path, content: str) -> None:
    """Write *content* to *path* only if the file does not already exist."""
    if not path.exists():
        path.write_text(content, encoding="utf-8")
