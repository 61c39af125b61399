"""
SKU generation and parsing.

Pattern: [CATEGORY]-[MODEL]-[COLOR]-[BRAND]-[TOKEN]
Example: ELEC-iPhone15-Black-Apple-A1B2C

The token mixes the current time and a random value into the hash, so two
calls with identical input produce different SKUs and no uniqueness lookup
is needed.
"""
import hashlib
import random
import re
import time
from typing import Dict, Optional

SEGMENT_MAX_LENGTH = 20
MODEL_MAX_LENGTH = 30
TOKEN_LENGTH = 5

# ASCII letters, digits and Hangul syllables
_DISALLOWED_CHARS = re.compile(r'[^a-zA-Z0-9가-힣]')
_TOKEN_PATTERN = re.compile(r'[A-Z0-9]{5}')


def sanitize_segment(text: Optional[str], max_length: int = SEGMENT_MAX_LENGTH) -> str:
    """Strip separators and symbols, then cap the length."""
    if not text:
        return ''
    return _DISALLOWED_CHARS.sub('', text)[:max_length]


def _uniqueness_token(base: str) -> str:
    unique = f"{base}-{time.time_ns()}-{random.random()}"
    digest = hashlib.sha256(unique.encode('utf-8')).hexdigest().upper()
    return digest[:TOKEN_LENGTH].ljust(TOKEN_LENGTH, '0')


def generate_sku(category: str, model: str, color: Optional[str] = None,
                 brand: Optional[str] = None) -> str:
    """
    Build a new SKU from product attributes.

    Args:
        category: Category code, e.g. 'ELEC'
        model: Model name, e.g. 'iPhone15'
        color: Optional color
        brand: Optional brand

    Returns:
        SKU string with five dash-joined segments
    """
    category = sanitize_segment(category)
    model = sanitize_segment(model, MODEL_MAX_LENGTH)
    color = sanitize_segment(color)
    brand = sanitize_segment(brand)

    token = _uniqueness_token(f"{category}{model}{color}{brand}")
    return '-'.join([category, model, color, brand, token])


def is_valid_sku(sku) -> bool:
    """Check the five-segment structure and the token format."""
    if not sku or not isinstance(sku, str):
        return False

    parts = sku.split('-')
    if len(parts) != 5:
        return False
    # Category and model are required
    if not parts[0] or not parts[1]:
        return False
    return bool(_TOKEN_PATTERN.fullmatch(parts[4]))


def parse_sku(sku) -> Optional[Dict]:
    """Split a valid SKU into its segments, or return None."""
    if not is_valid_sku(sku):
        return None

    category, model, color, brand, token = sku.split('-')
    return {
        'category': category,
        'model': model,
        'color': color or None,
        'brand': brand or None,
        'hash': token,
    }
