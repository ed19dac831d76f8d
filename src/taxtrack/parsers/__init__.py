"""Parser registry for bank statement CSV parsers.

Each parser is a module exposing a ``parse(text)`` function that returns a
:class:`~taxtrack.parsers.starling.StatementParse`.  The ``PARSERS`` dict
maps parser names to parse functions, and ``get_parser()`` provides a
lookup with a clear error on unknown names.
"""

from __future__ import annotations

from collections.abc import Callable

from taxtrack.parsers import starling

PARSERS: dict[str, Callable] = {
    "starling": starling.parse,
}


def get_parser(name: str) -> Callable:
    """Look up a parser by name.

    Raises:
        KeyError: If no parser is registered under the given name.
    """
    try:
        return PARSERS[name]
    except KeyError:
        raise KeyError(
            f"Unknown statement format {name!r}; expected one of {', '.join(sorted(PARSERS))}"
        ) from None
