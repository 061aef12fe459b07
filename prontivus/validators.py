"""Brazilian document validation, input masks and string normalisation."""

from __future__ import annotations

import re
import unicodedata
from decimal import Decimal
from typing import Optional

_NON_DIGIT_RE = re.compile(r"\D")


def only_digits(value: Optional[str]) -> str:
    if not value:
        return ""
    return _NON_DIGIT_RE.sub("", value)


def is_valid_cpf(value: Optional[str]) -> bool:
    """Return ``True`` when ``value`` is a CPF with valid check digits."""

    digits = only_digits(value)
    if len(digits) != 11 or digits == digits[0] * 11:
        return False
    numbers = [int(d) for d in digits]
    for position in (9, 10):
        total = sum(numbers[i] * (position + 1 - i) for i in range(position))
        check = (total * 10) % 11
        if check == 10:
            check = 0
        if check != numbers[position]:
            return False
    return True


_CNPJ_WEIGHTS_FIRST = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_CNPJ_WEIGHTS_SECOND = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)


def is_valid_cnpj(value: Optional[str]) -> bool:
    """Return ``True`` when ``value`` is a CNPJ with valid check digits."""

    digits = only_digits(value)
    if len(digits) != 14 or digits == digits[0] * 14:
        return False
    numbers = [int(d) for d in digits]
    for weights, position in ((_CNPJ_WEIGHTS_FIRST, 12), (_CNPJ_WEIGHTS_SECOND, 13)):
        total = sum(n * w for n, w in zip(numbers, weights))
        remainder = total % 11
        check = 0 if remainder < 2 else 11 - remainder
        if check != numbers[position]:
            return False
    return True


def format_cpf(value: Optional[str]) -> str:
    digits = only_digits(value)
    if len(digits) != 11:
        return value or "-"
    return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"


def format_cnpj(value: Optional[str]) -> str:
    digits = only_digits(value)
    if len(digits) != 14:
        return value or "-"
    return f"{digits[:2]}.{digits[2:5]}.{digits[5:8]}/{digits[8:12]}-{digits[12:]}"


def mask_phone(value: Optional[str]) -> str:
    """Format landlines as ``(00) 0000-0000`` and mobiles as ``(00) 00000-0000``."""

    digits = only_digits(value)
    if len(digits) == 10:
        return f"({digits[:2]}) {digits[2:6]}-{digits[6:]}"
    if len(digits) == 11:
        return f"({digits[:2]}) {digits[2:7]}-{digits[7:]}"
    return value or ""


def mask_cep(value: Optional[str]) -> str:
    digits = only_digits(value)
    if len(digits) == 8:
        return f"{digits[:5]}-{digits[5:]}"
    return value or ""


def format_currency(value: Decimal | float | int | None) -> str:
    """Render ``value`` as Brazilian reais, e.g. ``R$ 1.234,50``."""

    amount = Decimal(str(value or 0)).quantize(Decimal("0.01"))
    rendered = f"{amount:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"R$ {rendered}"


def normalize_string(value: Optional[str]) -> str:
    """Strip accents and keep lowercase alphanumerics, capped at 50 characters."""

    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", value)
    without_marks = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]", "", without_marks.lower())[:50]


def doctor_email(doctor_name: str, clinic_name: str) -> str:
    """Build the generated login e-mail ``<doctor>@<clinic>.prontivus.com``."""

    doctor_part = normalize_string(doctor_name) or "medico"
    clinic_part = normalize_string(clinic_name) or "clinica"
    return f"{doctor_part}@{clinic_part}.prontivus.com"


__all__ = [
    "only_digits",
    "is_valid_cpf",
    "is_valid_cnpj",
    "format_cpf",
    "format_cnpj",
    "mask_phone",
    "mask_cep",
    "format_currency",
    "normalize_string",
    "doctor_email",
]
