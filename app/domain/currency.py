"""
Currency policy - the only place where minor units meet major units.

Inside the core every amount is an integer in the currency's minor unit
(cents for USD, yen for JPY). Conversion happens exactly once, at a boundary,
through ``to_minor_units`` / ``to_major_units``.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from app.core.exceptions import ErrorCode, ValidationError


@dataclass(frozen=True)
class CurrencyPolicy:
    code: str
    decimals: int
    min_amount: int
    max_amount: int
    # סכום אימות הכרטיס לפני ה-hold - מינימום החיוב של הספק לכל מטבע
    verification_amount: int


SUPPORTED_CURRENCIES: dict[str, CurrencyPolicy] = {
    policy.code: policy
    for policy in (
        CurrencyPolicy("usd", 2, 100, 1_000_000, 100),
        CurrencyPolicy("eur", 2, 100, 1_000_000, 100),
        CurrencyPolicy("gbp", 2, 100, 1_000_000, 100),
        CurrencyPolicy("cad", 2, 100, 1_000_000, 100),
        CurrencyPolicy("aud", 2, 100, 1_000_000, 100),
        CurrencyPolicy("chf", 2, 100, 1_000_000, 100),
        CurrencyPolicy("sgd", 2, 100, 1_500_000, 100),
        CurrencyPolicy("sek", 2, 1_000, 10_000_000, 300),
        CurrencyPolicy("nok", 2, 1_000, 10_000_000, 300),
        CurrencyPolicy("hkd", 2, 800, 8_000_000, 400),
        CurrencyPolicy("thb", 2, 3_000, 35_000_000, 1_000),
        CurrencyPolicy("rub", 2, 10_000, 100_000_000, 10_000),
        CurrencyPolicy("jpy", 0, 100, 1_000_000, 50),
    )
}


def get_currency_policy(currency: str) -> CurrencyPolicy:
    code = (currency or "").strip().lower()
    policy = SUPPORTED_CURRENCIES.get(code)
    if policy is None:
        raise ValidationError(
            f"Unsupported currency: {currency!r}",
            field="currency",
            error_code=ErrorCode.UNSUPPORTED_CURRENCY,
        )
    return policy


def validate_hold_amount(amount: int, currency: str) -> int:
    """Reject non-integer or out-of-range hold amounts (minor units)"""
    policy = get_currency_policy(currency)
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(
            "hold_amount must be an integer in minor units",
            field="hold_amount",
            error_code=ErrorCode.INVALID_AMOUNT,
        )
    if amount < policy.min_amount or amount > policy.max_amount:
        raise ValidationError(
            f"hold_amount must be between {policy.min_amount} and {policy.max_amount} "
            f"{policy.code} minor units",
            field="hold_amount",
            error_code=ErrorCode.INVALID_AMOUNT,
            details={"min_amount": policy.min_amount, "max_amount": policy.max_amount},
        )
    return amount


def verification_amount_for(currency: str) -> int:
    return get_currency_policy(currency).verification_amount


def to_minor_units(amount: Decimal | str | int, currency: str) -> int:
    """Major units (e.g. Decimal('150.00')) to integer minor units"""
    policy = get_currency_policy(currency)
    try:
        value = Decimal(str(amount))
    except ArithmeticError:
        raise ValidationError(f"Invalid amount: {amount!r}", field="amount")
    scaled = (value * (Decimal(10) ** policy.decimals)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(scaled)


def to_major_units(amount: int, currency: str) -> Decimal:
    policy = get_currency_policy(currency)
    return (Decimal(amount) / (Decimal(10) ** policy.decimals)).quantize(
        Decimal(1).scaleb(-policy.decimals)
    )
