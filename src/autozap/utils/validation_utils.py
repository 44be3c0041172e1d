from typing import Dict, List
from pydantic import ValidationError


def validation_fields(error: ValidationError) -> Dict[str, List[str]]:
    """
    Group pydantic error messages by dotted field location
    """
    fields: Dict[str, List[str]] = {}
    for detail in error.errors():
        location = ".".join(str(part) for part in detail.get("loc", ())) or "body"
        fields.setdefault(location, []).append(detail.get("msg", "Invalid value"))
    return fields
