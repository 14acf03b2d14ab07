"""
Tests for the subscription registry and its persistence.
"""
import asyncio
import json
from datetime import timedelta

import pytest

from subscriptions import (
    NotificationFrequency,
    ReadWriteLock,
    SubscribeResult,
    Subscription,
    SubscriptionRegistry,
)


class TestSubscribePolicy:
    """Location gate and idempotent subscribe/unsubscribe."""

    @pytest.mark.asyncio
    async def test_subscribe_requires_location(self, registry):
        """Subscribing before a location is set is rejected and changes nothing."""
        assert await registry.subscribe(1, "A1") is SubscribeResult.LOCATION_REQUIRED
        sub = await registry.get(1)
        assert sub is None or sub.items == set()
        assert await registry.get_all_subscribed_item_ids() == set()

    @pytest.mark.asyncio
    async def test_frequency_only_subscription_still_requires_location(self, registry):
        await registry.set_frequency(1, NotificationFrequency.DAILY)
        assert await registry.subscribe(1, "A1") is SubscribeResult.LOCATION_REQUIRED

    @pytest.mark.asyncio
    async def test_subscribe_after_location_is_idempotent(self, registry):
        await registry.set_location(1, "north", "North")
        assert await registry.subscribe(1, "A1") is SubscribeResult.OK
        assert await registry.subscribe(1, "A1") is SubscribeResult.ALREADY_SUBSCRIBED
        sub = await registry.get(1)
        assert sub.items == {"A1"}

    @pytest.mark.asyncio
    async def test_unsubscribe(self, registry, clock):
        await registry.set_location(1, "north")
        assert await registry.unsubscribe(1, "A1") is SubscribeResult.NOT_SUBSCRIBED
        await registry.subscribe(1, "A1")
        await registry.update_last_notified(1, "A1", clock())
        assert await registry.unsubscribe(1, "A1") is SubscribeResult.OK
        sub = await registry.get(1)
        assert sub.items == set()
        assert sub.last_notified == {}
        assert await registry.unsubscribe(1, "A1") is SubscribeResult.NOT_SUBSCRIBED

    @pytest.mark.asyncio
    async def test_unsubscribe_unknown_recipient(self, registry):
        assert await registry.unsubscribe(99, "A1") is SubscribeResult.NOT_SUBSCRIBED


class TestPreferences:
    """Location and frequency upserts."""

    @pytest.mark.asyncio
    async def test_set_location_creates_with_default_frequency(self, registry, clock):
        await registry.set_location(1, "gujarat", "Gujarat", "alice")
        sub = await registry.get(1)
        assert sub.store_code == "gujarat"
        assert sub.location == "Gujarat"
        assert sub.display_name == "alice"
        assert sub.frequency is NotificationFrequency.EVERY_30_MIN
        assert sub.created_at == clock()

    @pytest.mark.asyncio
    async def test_set_location_keeps_existing_frequency(self, registry, clock):
        await registry.set_frequency(1, NotificationFrequency.DAILY)
        clock.advance(minutes=5)
        await registry.set_location(1, "punjab")
        sub = await registry.get(1)
        assert sub.frequency is NotificationFrequency.DAILY
        assert sub.location == "punjab"
        assert sub.updated_at == clock()
        assert sub.created_at < sub.updated_at

    @pytest.mark.asyncio
    async def test_set_frequency_creates_subscription(self, registry):
        await registry.set_frequency(7, NotificationFrequency.HOURLY)
        sub = await registry.get(7)
        assert sub.frequency is NotificationFrequency.HOURLY
        assert sub.store_code is None


class TestQueries:
    """Subscriber lookups and target-set aggregation."""

    @pytest.mark.asyncio
    async def test_subscribers_and_targets(self, registry):
        for rid, items in ((1, ["A1", "B2"]), (2, ["B2"]), (3, [])):
            await registry.set_location(rid, "north")
            for item in items:
                await registry.subscribe(rid, item)
        assert await registry.get_all_subscribed_item_ids() == {"A1", "B2"}
        assert sorted(s.recipient_id for s in await registry.get_subscribers_for("B2")) == [1, 2]
        assert [s.recipient_id for s in await registry.get_subscribers_for("A1")] == [1]
        assert await registry.get_subscribers_for("Z9") == []
        assert set(await registry.get_all_subscriptions()) == {1, 2, 3}

    @pytest.mark.asyncio
    async def test_returned_subscriptions_are_copies(self, registry):
        await registry.set_location(1, "north")
        await registry.subscribe(1, "A1")
        sub = await registry.get(1)
        sub.items.add("HACK")
        assert (await registry.get(1)).items == {"A1"}

    @pytest.mark.asyncio
    async def test_update_last_notified_ignores_unsubscribed_item(self, registry, clock):
        await registry.set_location(1, "north")
        await registry.subscribe(1, "A1")
        await registry.update_last_notified(1, "A1", clock())
        await registry.update_last_notified(1, "B2", clock())
        await registry.update_last_notified(42, "A1", clock())
        sub = await registry.get(1)
        assert sub.last_notified == {"A1": clock()}

    @pytest.mark.asyncio
    async def test_concurrent_mutations(self, registry):
        await registry.set_location(1, "north")
        results = await asyncio.gather(*(registry.subscribe(1, f"I{n}") for n in range(20)))
        assert all(r is SubscribeResult.OK for r in results)
        assert len((await registry.get(1)).items) == 20


class TestManualCheckClaim:
    """Per-recipient manual check cooldown."""

    @pytest.mark.asyncio
    async def test_cooldown(self, registry, clock):
        await registry.set_location(1, "north")
        cooldown = timedelta(minutes=2)
        assert await registry.claim_manual_check(1, clock(), cooldown) == (True, timedelta(0))
        clock.advance(seconds=30)
        claimed, remaining = await registry.claim_manual_check(1, clock(), cooldown)
        assert not claimed
        assert remaining == timedelta(seconds=90)
        clock.advance(seconds=90)
        assert (await registry.claim_manual_check(1, clock(), cooldown))[0]

    @pytest.mark.asyncio
    async def test_unknown_recipient_cannot_claim(self, registry, clock):
        assert (await registry.claim_manual_check(5, clock(), timedelta(minutes=2)))[0] is False


class TestPersistence:
    """Full-state JSON document written on every mutation."""

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, tmp_path, registry, clock):
        await registry.set_location(1, "north", "North", "alice")
        await registry.set_frequency(1, NotificationFrequency.DAILY)
        await registry.subscribe(1, "A1")
        await registry.update_last_notified(1, "A1", clock())

        reloaded = SubscriptionRegistry(tmp_path / "subscriptions.json", clock=clock)
        sub = await reloaded.get(1)
        assert sub.items == {"A1"}
        assert sub.store_code == "north"
        assert sub.frequency is NotificationFrequency.DAILY
        assert sub.last_notified == {"A1": clock()}
        assert sub.display_name == "alice"

    @pytest.mark.asyncio
    async def test_document_layout(self, tmp_path, registry):
        await registry.set_location(12345, "gujarat", "Gujarat")
        await registry.subscribe(12345, "HPPCP01_02")
        doc = json.loads((tmp_path / "subscriptions.json").read_text("utf-8"))
        entry = doc["12345"]
        assert entry["recipient_id"] == 12345
        assert entry["items"] == ["HPPCP01_02"]
        assert entry["store_code"] == "gujarat"
        assert entry["frequency"] == "every_30_minutes"

    def test_missing_file_starts_empty(self, tmp_path):
        reg = SubscriptionRegistry(tmp_path / "nope.json")
        assert reg._subs == {}

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "subscriptions.json"
        path.write_text("{not json", encoding="utf-8")
        reg = SubscriptionRegistry(path)
        assert reg._subs == {}

    def test_malformed_entries_are_skipped(self, tmp_path):
        path = tmp_path / "subscriptions.json"
        good = Subscription(recipient_id=2, items={"A1"}, store_code="north").to_dict()
        path.write_text(json.dumps({"1": {"items": ["x"]}, "2": good}), encoding="utf-8")
        reg = SubscriptionRegistry(path)
        assert list(reg._subs) == [2]

    def test_non_object_entries_are_skipped(self, tmp_path):
        path = tmp_path / "subscriptions.json"
        good = Subscription(recipient_id=2, items={"A1"}, store_code="north").to_dict()
        path.write_text(json.dumps({"1": "garbage", "3": ["A1"], "2": good}), encoding="utf-8")
        reg = SubscriptionRegistry(path)
        assert list(reg._subs) == [2]

    def test_bad_last_notified_loads_empty(self, tmp_path):
        path = tmp_path / "subscriptions.json"
        data = Subscription(recipient_id=4, items={"A1"}, store_code="north").to_dict()
        data["last_notified"] = ["A1"]
        path.write_text(json.dumps({"4": data}), encoding="utf-8")
        sub = SubscriptionRegistry(path)._subs[4]
        assert sub.items == {"A1"}
        assert sub.last_notified == {}

    def test_unknown_frequency_loads_as_unset(self, tmp_path):
        path = tmp_path / "subscriptions.json"
        data = Subscription(recipient_id=3).to_dict()
        data["frequency"] = "every_fortnight"
        path.write_text(json.dumps({"3": data}), encoding="utf-8")
        assert SubscriptionRegistry(path)._subs[3].frequency is None

    @pytest.mark.asyncio
    async def test_write_failure_keeps_memory_state(self, tmp_path, clock):
        reg = SubscriptionRegistry(tmp_path / "missing_dir" / "subscriptions.json", clock=clock)
        await reg.set_location(1, "north")
        assert await reg.subscribe(1, "A1") is SubscribeResult.OK
        assert (await reg.get(1)).items == {"A1"}


class TestReadWriteLock:
    """Shared readers, exclusive writers."""

    @pytest.mark.asyncio
    async def test_readers_share(self):
        lock = ReadWriteLock()
        inside = []

        async def reader(n):
            async with lock.read():
                inside.append(n)
                await asyncio.sleep(0.01)
                assert len(inside) == 2

        await asyncio.gather(reader(1), reader(2))

    @pytest.mark.asyncio
    async def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        order = []

        async def writer():
            async with lock.write():
                order.append("w-start")
                await asyncio.sleep(0.01)
                order.append("w-end")

        async def reader():
            await asyncio.sleep(0)
            async with lock.read():
                order.append("r")

        await asyncio.gather(writer(), reader())
        assert order == ["w-start", "w-end", "r"]
