import re
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")


def replace_variables(text: Optional[str], variables: Dict[str, Any], now: Optional[datetime] = None) -> Optional[str]:
    """
    Replace {{name}} placeholders with values from variables (case-insensitive).
    Unknown placeholders are left untouched, except {{data}}, {{hora}} and
    {{datahora}} which fall back to the current date/time.
    """
    if not text:
        return text

    lowered = {str(key).lower(): value for key, value in (variables or {}).items()}

    def _lookup(match: re.Match) -> str:
        value = lowered.get(match.group(1).lower())
        return str(value) if value is not None else match.group(0)

    result = VARIABLE_PATTERN.sub(_lookup, text)

    now = now or datetime.now()
    date_str = now.strftime("%d/%m/%Y")
    time_str = now.strftime("%H:%M")
    result = result.replace("{{data}}", date_str)
    result = result.replace("{{hora}}", time_str)
    result = result.replace("{{datahora}}", f"{date_str} às {time_str}")
    return result


def format_phone(contact_number: str) -> Tuple[str, str]:
    """
    Returns (digits, display) for a contact number, e.g.
    "5511987654321" -> ("5511987654321", "+55 (11) 98765-4321").
    """
    digits = re.sub(r"\D", "", contact_number or "")
    if digits.startswith("55"):
        display = re.sub(r"^55(\d{2})(\d{4,5})(\d{4})$", r"+55 (\1) \2-\3", digits)
    else:
        display = re.sub(r"^(\d{2})(\d{4,5})(\d{4})$", r"(\1) \2-\3", digits)
    return digits, display


def normalize_whatsapp_number(contact_number: str) -> str:
    """Digits only, with the Brazilian country code added when missing."""
    digits = re.sub(r"\D", "", contact_number or "")
    return digits if digits.startswith("55") else f"55{digits}"
