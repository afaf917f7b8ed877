"""
PersistentLeadStore against the async FakeRedis, including outages.
"""
import asyncio
import json

import pytest

from app.core.errors import LeadNotFoundError
from app.models.lead import Lead, LeadStatus
from app.storage.lead_store import PersistentLeadStore
from tests.utils.fakes import FakeRedis

PHONE = "573001112233"


@pytest.fixture
def redis_fake():
    return FakeRedis()


@pytest.fixture
def lead_store(redis_fake):
    return PersistentLeadStore(redis_fake, ttl_seconds=60)


@pytest.mark.asyncio
async def test_create_writes_primary_with_ttl(lead_store, redis_fake):
    lead = await lead_store.create(Lead.new(PHONE))

    assert f"lead:{PHONE}" in redis_fake.store
    assert f"lead:{PHONE}" in redis_fake.ttl
    assert json.loads(redis_fake.store[f"lead:{PHONE}"])["id"] == lead.id
    assert lead_store.fallback == {}


@pytest.mark.asyncio
async def test_find_or_create_is_idempotent_under_concurrency(lead_store):
    leads = await asyncio.gather(*(lead_store.find_or_create(PHONE) for _ in range(5)))

    assert len({lead.id for lead in leads}) == 1
    assert leads[0].id.startswith("LEAD_")


@pytest.mark.asyncio
async def test_update_merges_process_and_replaces_interest(lead_store):
    await lead_store.create(Lead.new(PHONE))
    await lead_store.update(PHONE, {"interest": {"marca_interes": "Mazda"}})
    updated = await lead_store.update(
        PHONE,
        {"interest": {"tipo_vehiculo": "SUV"}, "process": {"status": "appointment_scheduled"}},
    )

    assert updated.interest == {"tipo_vehiculo": "SUV"}
    assert updated.process.status == LeadStatus.APPOINTMENT_SCHEDULED
    assert updated.process.current_step == "saludo_inicial"

    stored = await lead_store.find_by_sender(PHONE)
    assert stored.process.status == LeadStatus.APPOINTMENT_SCHEDULED


@pytest.mark.asyncio
async def test_update_unknown_lead_raises(lead_store):
    with pytest.raises(LeadNotFoundError):
        await lead_store.update(PHONE, {"interest": {}})


@pytest.mark.asyncio
async def test_outage_falls_back_to_memory(lead_store, redis_fake):
    redis_fake.down = True

    lead = await lead_store.find_or_create(PHONE)
    assert PHONE in lead_store.fallback

    found = await lead_store.find_by_sender(PHONE)
    assert found.id == lead.id

    health = await lead_store.health_check()
    assert health == {"primary_available": False, "fallback_count": 1, "total_count": 1}


@pytest.mark.asyncio
async def test_fallback_entries_are_not_copied_back(lead_store, redis_fake):
    redis_fake.down = True
    await lead_store.create(Lead.new(PHONE))
    redis_fake.down = False

    assert redis_fake.store == {}
    assert (await lead_store.find_by_sender(PHONE)) is not None


@pytest.mark.asyncio
async def test_list_all_prefers_primary_copy(lead_store, redis_fake):
    stale = Lead.new(PHONE)
    lead_store.fallback[PHONE] = stale.to_storage()
    fresh = await lead_store.create(Lead.new(PHONE))
    other = Lead.new("573004445566")
    lead_store.fallback[other.phone] = other.to_storage()

    leads = {lead.phone: lead for lead in await lead_store.list_all()}

    assert leads[PHONE].id == fresh.id
    assert other.phone in leads


@pytest.mark.asyncio
async def test_corrupted_primary_record_reads_fallback(lead_store, redis_fake):
    lead = Lead.new(PHONE)
    lead_store.fallback[PHONE] = lead.to_storage()
    redis_fake.store[f"lead:{PHONE}"] = "{not json"

    found = await lead_store.find_by_sender(PHONE)
    assert found.id == lead.id


@pytest.mark.asyncio
async def test_delete_removes_both_tiers(lead_store, redis_fake):
    await lead_store.create(Lead.new(PHONE))
    lead_store.fallback[PHONE] = Lead.new(PHONE).to_storage()

    assert await lead_store.delete(PHONE) is True
    assert await lead_store.find_by_sender(PHONE) is None
    assert await lead_store.delete(PHONE) is False


@pytest.mark.asyncio
async def test_memory_only_store():
    memory = PersistentLeadStore(None)
    lead = await memory.find_or_create(PHONE)

    assert (await memory.find_by_sender(PHONE)).id == lead.id
    assert (await memory.health_check())["primary_available"] is False
