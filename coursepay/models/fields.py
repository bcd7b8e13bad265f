from decimal import Decimal
from typing import Annotated, Any

from bson import Decimal128
from pydantic import BeforeValidator


def _from_decimal128(v: Any) -> Any:
    if isinstance(v, Decimal128):
        return v.to_decimal()
    return v


# Decimals come back from Mongo as Decimal128
MongoDecimal = Annotated[Decimal, BeforeValidator(_from_decimal128)]
