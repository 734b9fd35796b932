"""Multi-step listing draft.

A draft moves through details, plan, media, preview and method. Each
``advance`` validates the fields owned by the current step and refuses to
move on while any are missing or invalid.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .exceptions import DraftValidationError, InvalidListingError
from .fields import sanitize_listing

class DraftStep(str, Enum):
    DETAILS = "details"
    PLAN = "plan"
    MEDIA = "media"
    PREVIEW = "preview"
    METHOD = "method"

STEP_ORDER = [
    DraftStep.DETAILS,
    DraftStep.PLAN,
    DraftStep.MEDIA,
    DraftStep.PREVIEW,
    DraftStep.METHOD
]

DETAIL_FIELDS = (
    'title', 'description', 'price', 'category_id', 'subcategory_id',
    'condition', 'location', 'latitude', 'longitude', 'negotiable', 'tags'
)

PAYMENT_METHODS = {'paystack', 'mpesa'}

class ListingDraft(BaseModel):
    step: DraftStep = DraftStep.DETAILS
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    condition: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    negotiable: bool = False
    tags: List[str] = Field(default_factory=list)
    plan_id: Optional[str] = None
    plan_price: Decimal = Decimal('0')
    images: List[str] = Field(default_factory=list)
    payment_method: Optional[str] = None
    discount_code_id: Optional[int] = None

    def _check_details(self) -> Dict[str, str]:
        raw = {field: getattr(self, field) for field in DETAIL_FIELDS}
        try:
            clean = sanitize_listing(raw)
        except InvalidListingError as e:
            return e.errors
        for field in DETAIL_FIELDS:
            setattr(self, field, clean[field])
        return {}

    def _check_plan(self) -> Dict[str, str]:
        if not self.plan_id:
            return {'plan_id': "is required"}
        return {}

    def _check_media(self, max_images: int) -> Dict[str, str]:
        if not self.images:
            return {'images': "at least one image is required"}
        if len(self.images) > max_images:
            return {'images': f"at most {max_images} images are allowed"}
        return {}

    def _check_method(self) -> Dict[str, str]:
        if self.requires_payment and self.payment_method not in PAYMENT_METHODS:
            return {'payment_method': f"must be one of {', '.join(sorted(PAYMENT_METHODS))}"}
        return {}

    @property
    def requires_payment(self) -> bool:
        return self.plan_price > 0

    def validate_step(self, step: Optional[DraftStep] = None, max_images: int = 10) -> Dict[str, str]:
        """Return the errors blocking a step, empty if it is complete."""
        step = DraftStep(step or self.step)
        if step == DraftStep.DETAILS:
            return self._check_details()
        if step == DraftStep.PLAN:
            return self._check_plan()
        if step == DraftStep.MEDIA:
            return self._check_media(max_images)
        if step == DraftStep.METHOD:
            return self._check_method()

        # Preview re-checks everything entered so far
        errors = {}
        errors.update(self._check_details())
        errors.update(self._check_plan())
        errors.update(self._check_media(max_images))
        return errors

    def advance(self, max_images: int = 10) -> DraftStep:
        """Move to the next step.

        Raises:
            DraftValidationError: If the current step is incomplete or already last
        """
        errors = self.validate_step(max_images=max_images)
        if errors:
            raise DraftValidationError(errors)

        index = STEP_ORDER.index(self.step)
        if index == len(STEP_ORDER) - 1:
            raise DraftValidationError({'step': "already at the final step"})

        self.step = STEP_ORDER[index + 1]
        return self.step

    def back(self) -> DraftStep:
        """Return to the previous step. Entered fields are kept."""
        index = STEP_ORDER.index(self.step)
        if index > 0:
            self.step = STEP_ORDER[index - 1]
        return self.step

    def is_complete(self, max_images: int = 10) -> bool:
        return all(not self.validate_step(step, max_images) for step in STEP_ORDER)

    def listing_fields(self) -> Dict[str, Any]:
        """Fields for ListingManager.publish."""
        fields = {field: getattr(self, field) for field in DETAIL_FIELDS}
        fields['plan_id'] = self.plan_id
        fields['images'] = list(self.images)
        return fields

__all__ = ['ListingDraft', 'DraftStep', 'STEP_ORDER']
