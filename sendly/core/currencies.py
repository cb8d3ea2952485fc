from sendly.core.errors import ValidationError

CURRENCY_CATALOG: list[tuple[str, str]] = [
    ("EUR", "Euro"),
    ("USD", "US Dollar"),
    ("GBP", "British Pound Sterling"),
    ("CHF", "Swiss Franc"),
    ("SEK", "Swedish Krona"),
    ("DKK", "Danish Krone"),
    ("NOK", "Norwegian Krone"),
    ("PLN", "Polish Zloty"),
    ("CAD", "Canadian Dollar"),
    ("AUD", "Australian Dollar"),
]

CURRENCY_CODES = {code for code, _name in CURRENCY_CATALOG}


def normalize_currency_code(value: str) -> str:
    return (value or "").strip().upper()


def resolve_currency(value: str | None, *, allowed: list[str], default: str) -> str:
    """Return a whitelisted ISO code, falling back to `default` when unset."""
    code = normalize_currency_code(value or "") or default
    if code not in allowed or code not in CURRENCY_CODES:
        raise ValidationError(
            f"Unsupported currency '{code}'",
            details={"allowed": sorted(allowed)},
        )
    return code
