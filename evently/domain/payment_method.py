from enum import Enum


class PaymentMethod(str, Enum):
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    NET_BANKING = "NET_BANKING"
    UPI = "UPI"
    WALLET = "WALLET"
    EMI = "EMI"

    @classmethod
    def parse(cls, value: str) -> "PaymentMethod":
        """Case-insensitive lookup. Raises ValueError for unknown methods."""
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unsupported payment method: {value!r}") from None
