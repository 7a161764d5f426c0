from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class Money:
    number: Decimal
    currency_code: str

    def __post_init__(self):
        # Floats would carry binary rounding errors into stored amounts.
        object.__setattr__(self, "number", Decimal(str(self.number)))
        object.__setattr__(self, "currency_code", self.currency_code.upper())

    @classmethod
    def zero(cls, currency_code: str):
        return cls(Decimal("0"), currency_code)

    def __str__(self):
        return f"{self.number} {self.currency_code}"
