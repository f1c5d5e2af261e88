import re

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str | None) -> str:
    """Digits only: '+91 99999-99999' -> '919999999999'."""
    if not phone:
        return ""
    return _NON_DIGITS.sub("", str(phone))
