"""
Personal Customs Clearance Code (PCCC) validation.

A PCCC is a P or M followed by exactly 12 digits (e.g. P123456789012) and is
required for cross-border personal shipments. Only the format is checked;
nothing here talks to the issuing authority.

Validation never raises: callers get a ClearanceCodeResult with the
human-readable reasons so forms and batch imports can show them directly.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

PREFIXES = ('P', 'M')
DIGIT_COUNT = 12

_FORMAT = re.compile(r'[PM][0-9]{12}')
_BARE_DIGITS = re.compile(r'[0-9]{12}')
_DIGITS_ONLY = re.compile(r'[0-9]*')
_SEPARATORS = re.compile(r'[\s\-_.]')

ERROR_REQUIRED = 'Personal customs clearance code is required'
ERROR_PREFIX = 'Personal customs clearance code must start with P or M'
ERROR_DIGITS = 'Personal customs clearance code may only contain digits after the prefix'
ERROR_LENGTH = 'Personal customs clearance code must be P/M followed by 12 digits'
ERROR_BLOCKED = 'This personal customs clearance code cannot be used'

# Placeholder codes that pass the format check but are never issued
BLOCKED_CODES = frozenset(
    f"{prefix}{digit * DIGIT_COUNT}" for prefix in PREFIXES for digit in '019'
)


@dataclass
class ClearanceCodeResult:
    is_valid: bool
    normalized: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    formatted: Optional[str] = None


def sanitize(code) -> str:
    """Remove spaces, hyphens, underscores and dots; uppercase the rest."""
    if not code or not isinstance(code, str):
        return ''
    return _SEPARATORS.sub('', code).upper()


def is_valid_format(code) -> bool:
    if not code or not isinstance(code, str):
        return False
    return bool(_FORMAT.fullmatch(code.strip().upper()))


def normalize(code) -> Optional[str]:
    """
    Convert user input to the stored form, inferring a missing P prefix for a
    bare 12-digit value. Returns None if the result is still invalid.
    """
    cleaned = sanitize(code)
    if not cleaned:
        return None

    if not cleaned.startswith(PREFIXES) and _BARE_DIGITS.fullmatch(cleaned):
        cleaned = 'P' + cleaned

    return cleaned if is_valid_format(cleaned) else None


def _format_error(cleaned: str) -> str:
    if cleaned.startswith(PREFIXES):
        body = cleaned[1:]
    elif _DIGITS_ONLY.fullmatch(cleaned):
        body = cleaned
    else:
        return ERROR_PREFIX

    if not _DIGITS_ONLY.fullmatch(body):
        return ERROR_DIGITS
    return ERROR_LENGTH


def validate(code) -> ClearanceCodeResult:
    """Format check plus the placeholder denylist."""
    if code is None or (isinstance(code, str) and not code.strip()):
        return ClearanceCodeResult(is_valid=False, errors=[ERROR_REQUIRED])
    if not isinstance(code, str):
        return ClearanceCodeResult(is_valid=False, errors=[ERROR_LENGTH])

    normalized = normalize(code)
    if normalized is None:
        return ClearanceCodeResult(is_valid=False, errors=[_format_error(sanitize(code))])

    if normalized in BLOCKED_CODES:
        return ClearanceCodeResult(
            is_valid=False,
            normalized=normalized,
            errors=[ERROR_BLOCKED]
        )

    return ClearanceCodeResult(
        is_valid=True,
        normalized=normalized,
        formatted=format_for_display(normalized)
    )


def _group(prefix: str, digits: str) -> str:
    return f"{prefix}{digits[0:4]}-{digits[4:8]}-{digits[8:12]}"


def mask(code, show_last: int = 4) -> str:
    """
    Hide all but the last `show_last` digits, keeping the prefix letter.

    mask('P123456789012') -> 'P****-****-9012'

    Input that does not normalize is fully starred instead of blanked, so
    a bad stored value still shows up in listings: a leading P/M is kept
    and every other character becomes '*' (mask('P123') -> 'P***').
    Empty input gives ''.
    """
    normalized = normalize(code)
    if normalized is None:
        cleaned = sanitize(code)
        if cleaned.startswith(PREFIXES):
            return cleaned[0] + '*' * (len(cleaned) - 1)
        return '*' * len(cleaned)

    show_last = max(0, min(show_last, DIGIT_COUNT))
    digits = normalized[1:]
    hidden = DIGIT_COUNT - show_last
    return _group(normalized[0], '*' * hidden + digits[hidden:])


def format_for_display(code) -> str:
    """Hyphenate a code as P1234-5678-9012; invalid input is returned as is."""
    normalized = normalize(code)
    if normalized is None:
        return code if isinstance(code, str) else ''
    return _group(normalized[0], normalized[1:])


def validate_batch(codes: Iterable[str]) -> Dict[str, ClearanceCodeResult]:
    return {code: validate(code) for code in codes}
