"""Tests for the multi-step listing draft."""

from decimal import Decimal

import pytest

from listings import ListingDraft, DraftStep, DraftValidationError

DETAILS = {
    'title': '  Mountain   bike ',
    'description': 'Barely used, 21 gears, recently serviced.',
    'price': Decimal('15000'),
    'category_id': 4,
    'location': 'Mombasa'
}

def test_details_must_be_valid_to_advance():
    draft = ListingDraft(title='Bike')

    with pytest.raises(DraftValidationError) as excinfo:
        draft.advance()

    assert 'title' in excinfo.value.errors
    assert 'description' in excinfo.value.errors
    assert draft.step == DraftStep.DETAILS

def test_advance_normalizes_details():
    draft = ListingDraft(**DETAILS)

    assert draft.advance() == DraftStep.PLAN
    assert draft.title == 'Mountain bike'
    assert draft.condition == 'used'
    assert draft.price == Decimal('15000.00')

def test_full_walk_through_free_plan():
    draft = ListingDraft(**DETAILS)
    draft.advance()

    with pytest.raises(DraftValidationError):
        draft.advance()
    draft.plan_id = 'free'
    assert draft.advance() == DraftStep.MEDIA

    with pytest.raises(DraftValidationError):
        draft.advance()
    draft.images = ['https://cdn.example/1.webp']
    assert draft.advance() == DraftStep.PREVIEW
    assert draft.advance() == DraftStep.METHOD

    # Free plans need no payment method
    assert draft.validate_step() == {}
    assert draft.is_complete()

    with pytest.raises(DraftValidationError):
        draft.advance()

def test_paid_plan_needs_payment_method():
    draft = ListingDraft(**DETAILS, plan_id='premium', plan_price=Decimal('500'),
                         images=['https://cdn.example/1.webp'], step=DraftStep.METHOD)

    assert draft.requires_payment
    assert 'payment_method' in draft.validate_step()

    draft.payment_method = 'mpesa'
    assert draft.validate_step() == {}

def test_media_limit():
    draft = ListingDraft(images=['https://cdn.example/x.webp'] * 4, step=DraftStep.MEDIA)

    assert draft.validate_step(max_images=3) == {'images': 'at most 3 images are allowed'}

def test_back_keeps_fields():
    draft = ListingDraft(**DETAILS, step=DraftStep.MEDIA)

    assert draft.back() == DraftStep.PLAN
    assert draft.back() == DraftStep.DETAILS
    assert draft.back() == DraftStep.DETAILS
    assert draft.description == DETAILS['description']

def test_listing_fields():
    draft = ListingDraft(**DETAILS, plan_id='free', images=['https://cdn.example/1.webp'])

    fields = draft.listing_fields()

    assert fields['plan_id'] == 'free'
    assert fields['images'] == ['https://cdn.example/1.webp']
    assert fields['title'] == DETAILS['title']
