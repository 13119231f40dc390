"""
ClientDesk - VAT Return Month Parser

Turns the free-text VAT return months recorded on a client (for example
"Feb May Aug Nov") into a quarterly cycle with four concrete tax periods.
"""

import re
from datetime import date
from typing import Dict, List, Optional

from dateutil.relativedelta import relativedelta

from app.models.client import VatReturnCycle
from app.schemas.client import TaxPeriod


MONTHS = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}


def parse_months(text: Optional[str]) -> List[int]:
    """Recognised month numbers (1-12) in the order they appear."""
    if not text:
        return []
    tokens = re.split(r"[\s,]+", text.strip().lower())
    return [MONTHS[token] for token in tokens if token in MONTHS]


def quarterly_periods(first_month: int, year: int) -> List[TaxPeriod]:
    """
    Four consecutive quarters starting on the 1st of `first_month`.

    Quarters starting late in the year roll over into the next one.
    """
    periods = []
    start = date(year, first_month, 1)
    for _ in range(4):
        end = start + relativedelta(months=3, days=-1)
        periods.append(TaxPeriod(start_date=start, end_date=end))
        start = start + relativedelta(months=3)
    return periods


def parse_vat_return_month(text: Optional[str], year: int) -> Dict[str, object]:
    """
    Parse VAT return months into a cycle and tax periods for `year`.

    The first recognised month picks the quarterly stagger: Jan/Apr/Jul/Oct
    starts quarters in January, Feb/May/Aug/Nov in February, Mar/Jun/Sep/Dec
    in March. Empty or unrecognised input yields no cycle and no periods.
    """
    months = parse_months(text)
    if not months:
        return {"vat_return_cycle": None, "vat_tax_periods": []}

    first_month = (months[0] - 1) % 3 + 1
    return {
        "vat_return_cycle": VatReturnCycle.QUARTERLY,
        "vat_tax_periods": quarterly_periods(first_month, year),
    }
