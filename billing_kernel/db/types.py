"""
Module: billing_kernel.db.types
Responsibility: Column type constants for the ledger tables.  Centralizes
    precision so that every model uses identical column definitions.
Architecture position: Kernel > DB.  May be imported by models/.

Invariants enforced:
    - Money columns are Numeric(14, 2): amounts are stored in cents exactly
      as domain/money.round2 produces them.  (Base.type_annotation_map maps
      a bare ``Mapped[Decimal]`` to the same type.)
    - Percent columns are Numeric(5, 2): 0.00 .. 100.00.
    - No floats anywhere.  All monetary amounts use Decimal.
"""

from sqlalchemy import Numeric

MONEY_PRECISION = 14
MONEY_SCALE = 2

MONEY = Numeric(MONEY_PRECISION, MONEY_SCALE)

PERCENT = Numeric(5, 2)

QUANTITY = Numeric(10, 2)
