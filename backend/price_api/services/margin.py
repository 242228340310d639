"""Operator margin on NGN prices."""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .providers.base import Quote


class MarginAlreadyApplied(ValueError):
    """Raised when a margin-inclusive quote is margined again."""


@dataclass(frozen=True)
class MarginedQuote(Quote):
    """Quote whose NGN price includes the operator margin."""
    ngn_before_margin: Optional[float] = None


def apply_margin(quotes: Mapping[str, Quote], margin: float) -> Dict[str, MarginedQuote]:
    """Add ``margin`` to every non-null NGN price.

    USD prices and missing NGN prices pass through unchanged. The input is
    not modified.

    Raises:
        MarginAlreadyApplied: If any value already carries a margin.
    """
    result = {}
    for token_id, quote in quotes.items():
        if isinstance(quote, MarginedQuote):
            raise MarginAlreadyApplied(f"Margin already applied to {token_id}")
        ngn = quote.ngn + margin if quote.ngn is not None else None
        result[token_id] = MarginedQuote(usd=quote.usd, ngn=ngn, ngn_before_margin=quote.ngn)
    return result
