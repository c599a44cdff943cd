"""Product and country code normalisation.

PRODCOM codes are published as ``28.21.13.30`` and HS codes as ``8418.69``;
both sources also deliver the dense forms ``28211330`` / ``841869``. The dense
form is the join key everywhere downstream.
"""

import re

_SEPARATORS = re.compile(r"[.\s\-_]")


def normalize_product_code(code: str | None) -> str:
    """Strip grouping separators, producing the dense join key.

    >>> normalize_product_code("28.21.13.30")
    '28211330'
    >>> normalize_product_code("")
    ''
    """
    if code is None:
        return ""
    return _SEPARATORS.sub("", str(code))


def denormalize_for_display(code: str | None) -> str:
    """Re-insert separators for presentation.

    Six-digit codes are treated as HS (``NNNN.NN``); anything else is grouped
    in pairs the way PRODCOM codes are published (``NN.NN.NN.NN``).
    """
    dense = normalize_product_code(code)
    if not dense:
        return ""
    if len(dense) == 6:
        return f"{dense[:4]}.{dense[4:]}"
    return ".".join(dense[i : i + 2] for i in range(0, len(dense), 2))


def normalize_country_code(code: str | None) -> str:
    """Trim and upper-case a country or reporter code."""
    if code is None:
        return ""
    return str(code).strip().upper()
