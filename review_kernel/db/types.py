"""
Module: review_kernel.db.types
Responsibility: Annotated type aliases for column types shared by the models.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - Token amounts are whole numbers.  Tokens is BigInteger; there is no
      fractional token and no rounding anywhere in the ledger.
"""

from typing import Annotated

from sqlalchemy import BigInteger, String

from review_kernel.exceptions import NonPositiveAmountError

# Whole-token amount, signed on ledger entries
Tokens = Annotated[int, BigInteger]

# Monotonic sequence number for ordering
Sequence = Annotated[int, BigInteger]

# Stage keys, template names and other short identifiers
ShortCode = Annotated[str, String(100)]

# Free text for reasons and descriptions
LongText = Annotated[str, String(4000)]


def require_positive(amount: int) -> int:
    """Return amount unchanged if it is a strictly positive integer."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise NonPositiveAmountError(amount)
    return amount
