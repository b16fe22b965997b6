"""Tests for consultation pricing."""

from datetime import UTC, datetime
from uuid import uuid4

import pytest
from conftest import Factory
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.schemas.pricing import FeeType, PriceRequest, ServicePrice, Tariff
from clinicflow.services.pricing_service import PricingService, compute_consult_price, round_money

# Clinic-local times in Asia/Ho_Chi_Minh (UTC+7)
MONDAY_MORNING = datetime(2026, 3, 2, 2, 0, tzinfo=UTC)  # 09:00
MONDAY_EVENING = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)  # 19:00
SATURDAY_MORNING = datetime(2026, 3, 7, 3, 0, tzinfo=UTC)  # 10:00

GENERAL_EXAM = ServicePrice(code="GEN", name="General exam", price=100_000)


def make_request(**overrides) -> PriceRequest:
    values = {
        "service_code": "GEN",
        "doctor_id": uuid4(),
        "duration_minutes": 30,
        "starts_at": MONDAY_MORNING,
    }
    values.update(overrides)
    return PriceRequest(**values)


def flat_tariff(fee: int, **overrides) -> Tariff:
    return Tariff(id=uuid4(), fee_type=FeeType.FLAT, base_fee=fee, **overrides)


def per_slot_tariff(unit_fee: int, **overrides) -> Tariff:
    return Tariff(id=uuid4(), fee_type=FeeType.PER_15MIN, unit_fee=unit_fee, **overrides)


def assert_balanced(quote) -> None:
    for item in quote.items:
        assert item.amount == item.insurance_amount + item.patient_amount
        assert item.insurance_amount >= 0
        assert item.patient_amount >= 0
    assert quote.total == quote.insurance_total + quote.patient_total
    assert quote.total == sum(item.amount for item in quote.items)


def test_round_money_rounds_half_up():
    assert round_money(0.5) == 1
    assert round_money(1.4999) == 1
    assert round_money(50000.5) == 50001


def test_uninsured_patient_pays_everything():
    """Facility and doctor fee are both on the patient without insurance."""
    quote = compute_consult_price(make_request(), GENERAL_EXAM, flat_tariff(120_000))

    facility, doctor_fee = quote.items
    assert facility.item_type == "facility"
    assert facility.amount == 100_000
    assert facility.insurance_amount == 0
    assert doctor_fee.item_type == "doctor_fee"
    assert doctor_fee.amount == 120_000
    assert quote.total == 220_000
    assert quote.patient_total == 220_000
    assert quote.insurance_total == 0
    assert_balanced(quote)


def test_insurer_covers_facility_minus_copay():
    """The insurer pays base * (1 - copay); the doctor fee stays with the patient."""
    request = make_request(insurance_eligible=True, copay_rate=0.2)
    quote = compute_consult_price(request, GENERAL_EXAM, flat_tariff(120_000))

    facility, doctor_fee = quote.items
    assert facility.insurance_amount == 80_000
    assert facility.patient_amount == 20_000
    assert doctor_fee.insurance_amount == 0
    assert doctor_fee.patient_amount == 120_000
    assert quote.insurance_total == 80_000
    assert quote.patient_total == 140_000
    assert_balanced(quote)


def test_full_copay_means_insurer_pays_nothing():
    request = make_request(insurance_eligible=True, copay_rate=1.0)
    quote = compute_consult_price(request, GENERAL_EXAM, flat_tariff(50_000))

    assert quote.insurance_total == 0
    assert quote.patient_total == 150_000
    assert_balanced(quote)


def test_insurer_share_rounds_half_up():
    service = ServicePrice(code="GEN", name="General exam", price=100_001)
    request = make_request(insurance_eligible=True, copay_rate=0.5)
    quote = compute_consult_price(request, service, None)

    facility = quote.items[0]
    assert facility.insurance_amount == 50_001
    assert facility.patient_amount == 50_000
    assert_balanced(quote)


def test_per_slot_tariff_bills_started_quarters():
    """40 minutes are billed as three 15-minute slots."""
    request = make_request(duration_minutes=40)
    quote = compute_consult_price(request, GENERAL_EXAM, per_slot_tariff(50_000))

    assert quote.slots == 3
    assert quote.doctor_fee == 150_000
    assert_balanced(quote)


def test_after_hours_multiplier_then_max_clamp():
    request = make_request(duration_minutes=40, starts_at=MONDAY_EVENING)
    tariff = per_slot_tariff(50_000, after_hours_multiplier=1.5, max_fee=200_000)
    quote = compute_consult_price(request, GENERAL_EXAM, tariff)

    # 3 * 50,000 * 1.5 = 225,000, clamped to the maximum
    assert quote.doctor_fee == 200_000
    assert_balanced(quote)


def test_weekend_counts_as_after_hours():
    request = make_request(starts_at=SATURDAY_MORNING)
    quote = compute_consult_price(
        request, GENERAL_EXAM, flat_tariff(100_000, after_hours_multiplier=1.2)
    )
    assert quote.doctor_fee == 120_000


def test_min_fee_clamp():
    request = make_request(duration_minutes=10)
    quote = compute_consult_price(request, GENERAL_EXAM, per_slot_tariff(50_000, min_fee=80_000))

    assert quote.slots == 1
    assert quote.doctor_fee == 80_000


def test_flat_fee_fallback_without_tariff():
    quote = compute_consult_price(make_request(), GENERAL_EXAM, None, fallback_doctor_fee=90_000)

    assert quote.doctor_fee == 90_000
    assert quote.tariff_id is None
    assert quote.slots is None


def test_missing_service_prices_facility_at_zero():
    quote = compute_consult_price(make_request(), None, None, fallback_doctor_fee=200_000)

    facility = quote.items[0]
    assert facility.amount == 0
    assert facility.description == "Facility fee"
    assert quote.total == 200_000
    assert_balanced(quote)


def test_doctor_override_replaces_tariff():
    request = make_request(doctor_fee_override=200_000)
    quote = compute_consult_price(request, GENERAL_EXAM, flat_tariff(120_000))

    assert quote.doctor_fee == 200_000
    assert quote.total == 300_000


@pytest.mark.asyncio
async def test_quote_falls_back_to_any_active_service(db_session: AsyncSession, factory: Factory):
    """An unknown service code is priced with the first active catalog service."""
    doctor_id = await factory.doctor(consultation_fee=70_000)
    await factory.service(code="GEN", price=100_000)

    quote = await PricingService(db_session).quote(
        make_request(service_code="UNKNOWN", doctor_id=doctor_id)
    )

    assert quote.base_price == 100_000
    assert quote.doctor_fee == 70_000
    assert quote.total == 170_000


@pytest.mark.asyncio
async def test_quote_uses_doctor_tariff(db_session: AsyncSession, factory: Factory):
    doctor_id = await factory.doctor(consultation_fee=70_000)
    await factory.service(code="GEN", price=100_000)
    tariff_id = await factory.tariff(doctor_id, "GEN", fee_type="per_15min", unit_fee=40_000)

    quote = await PricingService(db_session).quote(
        make_request(doctor_id=doctor_id, duration_minutes=30)
    )

    assert quote.tariff_id == tariff_id
    assert quote.slots == 2
    assert quote.doctor_fee == 80_000


@pytest.mark.asyncio
async def test_quote_without_catalog_never_fails(db_session: AsyncSession):
    quote = await PricingService(db_session).quote(make_request(service_code=None))

    assert quote.total == 0
    assert_balanced(quote)


@pytest.mark.asyncio
async def test_quote_borrows_another_doctors_tariff(db_session: AsyncSession, factory: Factory):
    """Without a tariff of their own a doctor is priced by any active tariff for the code."""
    tariffed = await factory.doctor(consultation_fee=70_000)
    untariffed = await factory.doctor(consultation_fee=70_000, full_name="Dr. Nguyen")
    tariff_id = await factory.tariff(tariffed, "GEN", fee_type="flat", base_fee=150_000)

    quote = await PricingService(db_session).quote(make_request(doctor_id=untariffed))

    assert quote.tariff_id == tariff_id
    assert quote.doctor_fee == 150_000
    assert_balanced(quote)


@pytest.mark.asyncio
async def test_own_tariff_beats_shared_one(db_session: AsyncSession, factory: Factory):
    other = await factory.doctor(full_name="Dr. Nguyen")
    doctor_id = await factory.doctor()
    await factory.tariff(other, "GEN", fee_type="flat", base_fee=150_000)
    own = await factory.tariff(doctor_id, "GEN", fee_type="flat", base_fee=90_000)

    tariff = await PricingService(db_session).resolve_tariff(doctor_id, "GEN")

    assert tariff.id == own
    assert tariff.base_fee == 90_000
