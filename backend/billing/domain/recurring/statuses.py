MEMBERSHIP = "membership"
ADDITIONAL_MONTHLY = "additional_monthly"
BALANCE_PAYOFF = "balance_payoff"
GUEST_DONATION = "guest_donation"
GUEST_BALANCE_PAYOFF = "guest_balance_payoff"

PAYMENT_TYPES = {MEMBERSHIP, ADDITIONAL_MONTHLY, BALANCE_PAYOFF, GUEST_DONATION, GUEST_BALANCE_PAYOFF}
PAYOFF_TYPES = {BALANCE_PAYOFF, GUEST_BALANCE_PAYOFF}


def normalize_payment_type(value: str | None) -> str | None:
    if not value:
        return None
    lowered = value.strip().lower()
    if lowered not in PAYMENT_TYPES:
        raise ValueError("Invalid recurring payment type")
    return lowered


def is_payoff(payment_type: str | None) -> bool:
    return payment_type in PAYOFF_TYPES
