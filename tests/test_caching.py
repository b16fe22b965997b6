"""Tests for the Redis pricing cache."""

import json
from unittest.mock import MagicMock

import pytest
import redis
from conftest import Factory
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.config import settings
from clinicflow.core.cache import PricingCache
from clinicflow.services.pricing_service import SERVICE_CACHE_KEY, TARIFF_CACHE_KEY, PricingService


def test_get_reads_prefixed_key():
    mock_redis = MagicMock()
    cache = PricingCache(mock_redis)

    mock_redis.get.return_value = None
    assert cache.get("pricing:service:GEN") is None
    mock_redis.get.assert_called_once_with("clinicflow:pricing:service:GEN")

    mock_redis.reset_mock()
    mock_redis.get.return_value = '{"code": "GEN", "price": 100000}'
    assert cache.get("pricing:service:GEN") == {"code": "GEN", "price": 100000}


def test_put_always_expires():
    """Entries get the configured lifetime unless a shorter one is asked for."""
    mock_redis = MagicMock()
    cache = PricingCache(mock_redis)
    data = {"code": "GEN", "price": 100000}

    assert cache.put("pricing:service:GEN", data) is True
    mock_redis.setex.assert_called_once_with(
        "clinicflow:pricing:service:GEN", settings.pricing_cache_ttl_seconds, json.dumps(data)
    )
    mock_redis.set.assert_not_called()

    mock_redis.reset_mock()
    assert PricingCache(mock_redis, ttl_seconds=30).put("k", data) is True
    assert mock_redis.setex.call_args[0][1] == 30


def test_broken_redis_is_a_miss():
    mock_redis = MagicMock()
    mock_redis.get.side_effect = redis.ConnectionError("down")
    mock_redis.setex.side_effect = redis.ConnectionError("down")
    cache = PricingCache(mock_redis)

    assert cache.get("k") is None
    assert cache.put("k", {"a": 1}, ttl_seconds=60) is False


def test_corrupt_entry_is_a_miss():
    mock_redis = MagicMock()
    mock_redis.get.return_value = "{not json"

    assert PricingCache(mock_redis).get("k") is None


@pytest.mark.asyncio
async def test_service_price_cached_after_lookup(db_session: AsyncSession, factory: Factory):
    """A resolved facility service is written to the cache with the pricing TTL."""
    await factory.service(code="GEN", price=150_000)
    mock_redis = MagicMock()
    mock_redis.get.return_value = None

    service = PricingService(db_session, PricingCache(mock_redis))
    resolved = await service.resolve_service("GEN")

    assert resolved is not None
    assert resolved.price == 150_000
    key = PricingCache.key(SERVICE_CACHE_KEY.format(code="GEN"))
    mock_redis.get.assert_called_once_with(key)
    args = mock_redis.setex.call_args[0]
    assert args[0] == key
    assert json.loads(args[2])["price"] == 150_000


@pytest.mark.asyncio
async def test_cached_service_skips_database(db_session: AsyncSession):
    """A cache hit is served even when the catalog table is empty."""
    mock_redis = MagicMock()
    mock_redis.get.return_value = json.dumps({"code": "XRAY", "name": "X-ray", "price": 90_000})

    service = PricingService(db_session, PricingCache(mock_redis))
    resolved = await service.resolve_service("XRAY")

    assert resolved is not None
    assert resolved.name == "X-ray"
    assert resolved.price == 90_000
    mock_redis.setex.assert_not_called()


@pytest.mark.asyncio
async def test_tariff_cached_after_lookup(db_session: AsyncSession, factory: Factory):
    """Doctor tariffs are cached per doctor and service code."""
    doctor_id = await factory.doctor()
    await factory.tariff(doctor_id, "GEN", fee_type="flat", base_fee=120_000)
    mock_redis = MagicMock()
    mock_redis.get.return_value = None

    service = PricingService(db_session, PricingCache(mock_redis))
    tariff = await service.resolve_tariff(doctor_id, "GEN")

    assert tariff is not None
    assert tariff.base_fee == 120_000
    key = PricingCache.key(TARIFF_CACHE_KEY.format(doctor_id=doctor_id, code="GEN"))
    assert mock_redis.setex.call_args[0][0] == key
