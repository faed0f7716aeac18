import shortuuid


def generate_short_token(length: int = 12) -> str:
    return shortuuid.ShortUUID().random(length=length)


def generate_transaction_number() -> str:
    return f"TXN-{generate_short_token(14).upper()}"


def generate_order_number() -> str:
    return f"ORD-{generate_short_token(10).upper()}"
