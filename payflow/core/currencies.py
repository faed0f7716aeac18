# Currencies card networks charge without a fractional unit.
ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}


def normalize_currency_code(value: str) -> str:
    return (value or "").strip().upper()


def is_zero_decimal(currency: str) -> bool:
    return normalize_currency_code(currency) in ZERO_DECIMAL_CURRENCIES
