"""Location name rules checked before a room is pushed to Metrc."""
import re
from dataclasses import dataclass, field
from typing import List

MAX_NAME_LENGTH = 100
_SPECIAL_CHARS = re.compile(r"[<>'\"\\]")
_REPEATED_SPACES = re.compile(r"\s{2,}")


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_location_name(name: str) -> ValidationResult:
    """Errors block the push; warnings are only logged."""
    result = ValidationResult()
    trimmed = (name or "").strip()

    if not trimmed:
        result.errors.append("Location name cannot be empty")
        return result
    if len(trimmed) > MAX_NAME_LENGTH:
        result.errors.append(f"Location name cannot exceed {MAX_NAME_LENGTH} characters")

    if len(trimmed) < 3:
        result.warnings.append("Location name is very short")
    if name != trimmed:
        result.warnings.append("Location name has leading or trailing whitespace")
    if _SPECIAL_CHARS.search(trimmed):
        result.warnings.append("Location name contains special characters (<, >, ', \", \\)")
    if _REPEATED_SPACES.search(trimmed):
        result.warnings.append("Location name contains multiple consecutive spaces")

    return result
