"""
Persistent lead store: Redis primary with an in-process fallback.

Any operation that cannot reach Redis is served by the fallback map for that
call only. Entries written to the fallback are never copied back to Redis.
"""
import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from redis.exceptions import RedisError

from app.core.clock import utcnow
from app.core.errors import LeadNotFoundError, StoreUnavailableError
from app.core.phone import mask_phone
from app.models.lead import Lead

logger = logging.getLogger(__name__)

_PRIMARY_ERRORS = (RedisError, OSError, asyncio.TimeoutError)
_MERGED_SECTIONS = ("client", "process")

_DOWN = object()


class PersistentLeadStore:
    def __init__(self, redis_client=None, ttl_seconds: int = 86400, key_prefix: str = "lead:"):
        """
        Args:
            redis_client: redis.asyncio client (decode_responses=True), None for memory-only
            ttl_seconds: Expiry for primary records, 0 disables expiry
            key_prefix: Primary key prefix, the canonical phone is appended
        """
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self.fallback: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _key(self, phone: str) -> str:
        return f"{self.key_prefix}{phone}"

    async def _primary(self, op: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run a primary-tier call, returning _DOWN when Redis is unreachable"""
        if self.redis is None:
            return _DOWN
        try:
            return await call()
        except _PRIMARY_ERRORS as e:
            logger.warning(f"LEAD_STORE|primary_unavailable|op={op}|error={type(e).__name__}: {e}")
            return _DOWN

    async def _write(self, record: Dict[str, Any]) -> str:
        """Persist a serialized lead, returns the tier that accepted it"""
        phone = record["client"]["phone"]
        payload = json.dumps(record, ensure_ascii=False)
        ex = self.ttl_seconds if self.ttl_seconds > 0 else None
        result = await self._primary("set", lambda: self.redis.set(self._key(phone), payload, ex=ex))
        if result is _DOWN:
            self.fallback[phone] = record
            return "fallback"
        return "primary"

    async def _read(self, phone: str) -> Tuple[Optional[Dict[str, Any]], str]:
        raw = await self._primary("get", lambda: self.redis.get(self._key(phone)))
        if raw is not _DOWN and raw:
            try:
                return json.loads(raw), "primary"
            except json.JSONDecodeError:
                logger.warning(f"LEAD_STORE|corrupted_json|phone={mask_phone(phone)}|using_fallback")
        record = self.fallback.get(phone)
        return (record, "fallback") if record is not None else (None, "none")

    async def find_by_sender(self, phone: str) -> Optional[Lead]:
        record, _ = await self._read(phone)
        return Lead.model_validate(record) if record else None

    async def create(self, lead: Lead) -> Lead:
        tier = await self._write(lead.to_storage())
        logger.info(f"LEAD_STORE|created|id={lead.id}|phone={mask_phone(lead.phone)}|tier={tier}")
        return lead

    async def find_or_create(self, phone: str) -> Lead:
        """Idempotent lookup: concurrent callers for one phone get the same lead"""
        async with self._locks[phone]:
            lead = await self.find_by_sender(phone)
            if lead is None:
                lead = await self.create(Lead.new(phone))
            return lead

    async def update(self, phone: str, partial: Dict[str, Any]) -> Lead:
        """
        Merge partial into the stored lead.

        client and process are merged key by key, every other section is
        replaced. process.last_activity_at is always stamped.

        Raises:
            LeadNotFoundError: No record exists in either tier
        """
        record, source = await self._read(phone)
        if record is None:
            raise LeadNotFoundError(f"No lead for {mask_phone(phone)}", reason="lead_not_found")

        merged = dict(record)
        for section, value in partial.items():
            if section in _MERGED_SECTIONS and isinstance(value, dict):
                merged[section] = {**record.get(section, {}), **value}
            else:
                merged[section] = value

        lead = Lead.model_validate(merged)
        lead.process.last_activity_at = utcnow()
        tier = await self._write(lead.to_storage())
        logger.info(
            f"LEAD_STORE|updated|phone={mask_phone(phone)}|read={source}|write={tier}|"
            f"sections={','.join(sorted(partial))}"
        )
        return lead

    async def list_all(self) -> List[Lead]:
        """Union of both tiers; the primary copy wins on conflicts"""
        records: Dict[str, Dict[str, Any]] = {
            phone: record for phone, record in self.fallback.items()
        }

        async def _scan() -> Dict[str, Dict[str, Any]]:
            found = {}
            async for key in self.redis.scan_iter(match=f"{self.key_prefix}*"):
                raw = await self.redis.get(key)
                if not raw:
                    continue
                try:
                    found[key[len(self.key_prefix):]] = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"LEAD_STORE|corrupted_json|key={key}|skipping")
            return found

        primary = await self._primary("scan", _scan)
        if primary is not _DOWN:
            records.update(primary)
        return [Lead.model_validate(record) for record in records.values()]

    async def delete(self, phone: str) -> bool:
        removed = await self._primary("delete", lambda: self.redis.delete(self._key(phone)))
        in_primary = removed is not _DOWN and bool(removed)
        in_fallback = self.fallback.pop(phone, None) is not None
        self._locks.pop(phone, None)
        logger.info(
            f"LEAD_STORE|deleted|phone={mask_phone(phone)}|primary={in_primary}|fallback={in_fallback}"
        )
        return in_primary or in_fallback

    async def health_check(self) -> Dict[str, Any]:
        ping = await self._primary("ping", lambda: self.redis.ping())
        primary_available = ping is not _DOWN
        leads = await self.list_all()
        return {
            "primary_available": primary_available,
            "fallback_count": len(self.fallback),
            "total_count": len(leads),
        }

    async def close(self) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.aclose()
        except _PRIMARY_ERRORS as e:
            raise StoreUnavailableError("Failed to close Redis client", reason=str(e)) from e
