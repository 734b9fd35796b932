"""Listing field rules.

Every field a client sends is coerced to its storage type and defaulted
here; raw client input never reaches the database.
"""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import InvalidListingError

CONDITIONS = {'new', 'used', 'refurbished'}
DEFAULT_CONDITION = 'used'
DEFAULT_PLAN = 'free'

TITLE_LENGTH = (5, 100)
DESCRIPTION_LENGTH = (20, 2000)
LOCATION_LENGTH = (2, 100)
MAX_TAGS = 20
MAX_TAG_LENGTH = 30

REQUIRED_FIELDS = ('title', 'description', 'price', 'category_id', 'location')

TRUE_VALUES = {'true', '1', 'yes', 'on'}

def slugify(text: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', text.lower()).strip('-')
    return slug[:80] or 'listing'

def _text(value: Any, bounds, field: str, errors: Dict[str, str], collapse: bool = True) -> Optional[str]:
    text = str(value).strip()
    if collapse:
        text = ' '.join(text.split())
    low, high = bounds
    if not low <= len(text) <= high:
        errors[field] = f"must be between {low} and {high} characters"
        return None
    return text

def _integer(value: Any, field: str, errors: Dict[str, str]) -> Optional[int]:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        errors[field] = "must be an integer id"
        return None
    if number < 1:
        errors[field] = "must be a positive id"
        return None
    return number

def _coordinate(value: Any, limit: float, field: str, errors: Dict[str, str]) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        errors[field] = "must be a number"
        return None
    if not -limit <= number <= limit:
        errors[field] = f"must be between {-limit} and {limit}"
        return None
    return number

def clean_tags(tags: Iterable[Any]) -> List[str]:
    """Strip, drop empties and de-duplicate tags case-insensitively, keeping order."""
    seen = set()
    cleaned = []
    for tag in tags or []:
        tag = ' '.join(str(tag).split())[:MAX_TAG_LENGTH]
        if tag and tag.lower() not in seen:
            seen.add(tag.lower())
            cleaned.append(tag)
    return cleaned[:MAX_TAGS]

def sanitize_listing(raw: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """Coerce and default listing fields.

    Args:
        raw: Client-supplied fields
        partial: Only coerce the fields present, without defaults or
            required-field checks (used for edits)

    Returns:
        Dict of clean fields

    Raises:
        InvalidListingError: With one message per bad field
    """
    errors: Dict[str, str] = {}
    clean: Dict[str, Any] = {}

    def present(field):
        return raw.get(field) is not None and raw.get(field) != ''

    if not partial:
        for field in REQUIRED_FIELDS:
            if not present(field):
                errors[field] = "is required"

    if present('title'):
        clean['title'] = _text(raw['title'], TITLE_LENGTH, 'title', errors)
    if present('description'):
        clean['description'] = _text(
            raw['description'], DESCRIPTION_LENGTH, 'description', errors, collapse=False
        )
    if present('location'):
        clean['location'] = _text(raw['location'], LOCATION_LENGTH, 'location', errors)

    if present('price'):
        try:
            price = Decimal(str(raw['price']).strip())
            if not price.is_finite() or price < 0:
                raise InvalidOperation
            clean['price'] = price.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        except InvalidOperation:
            errors['price'] = "must be a non-negative number"

    if present('category_id'):
        clean['category_id'] = _integer(raw['category_id'], 'category_id', errors)

    if present('subcategory_id'):
        clean['subcategory_id'] = _integer(raw['subcategory_id'], 'subcategory_id', errors)
    elif not partial or 'subcategory_id' in raw:
        clean['subcategory_id'] = None

    if present('condition'):
        condition = str(raw['condition']).strip().lower()
        if condition not in CONDITIONS:
            errors['condition'] = f"must be one of {', '.join(sorted(CONDITIONS))}"
        clean['condition'] = condition
    elif not partial:
        clean['condition'] = DEFAULT_CONDITION

    for field, limit in (('latitude', 90), ('longitude', 180)):
        if present(field):
            clean[field] = _coordinate(raw[field], limit, field, errors)
        elif not partial:
            clean[field] = None

    if 'negotiable' in raw or not partial:
        value = raw.get('negotiable', False)
        clean['negotiable'] = value if isinstance(value, bool) else str(value).lower() in TRUE_VALUES

    if 'tags' in raw or not partial:
        tags = raw.get('tags') or []
        if isinstance(tags, str):
            tags = tags.split(',')
        clean['tags'] = clean_tags(tags)

    if 'images' in raw or not partial:
        images = raw.get('images') or []
        if isinstance(images, str) or not all(isinstance(url, str) for url in images):
            errors['images'] = "must be a list of URLs"
        else:
            clean['images'] = [url.strip() for url in images if url and url.strip()]

    if not partial:
        clean['plan_id'] = str(raw.get('plan_id') or DEFAULT_PLAN).strip()

    if errors:
        raise InvalidListingError(errors)
    return clean
