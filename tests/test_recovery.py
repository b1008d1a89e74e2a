import math

import pytest

from esim_sync.models import PendingOrder
from esim_sync.tasks.recovery import RecoveryPass


def parked(code, internal_id=None, order_id="3001"):
    return PendingOrder(
        provider_order_code=code, provider_order_id=internal_id,
        destination_order_id=order_id, customer_email=f"{code.lower()}@example.com", sku="PLAN-3GB-JP",
    )


async def test_empty_store_is_a_no_op(orchestrator, store, provider_stub):
    summary = await RecoveryPass(orchestrator, store).run()

    assert summary.model_dump() == {"processed": 0, "delivered": 0, "still_pending": 0, "failed": 0, "dead_lettered": 0}
    assert provider_stub.calls == []
    assert store.replace_calls == 0


async def test_delivered_entries_are_removed(orchestrator, store, shopify_stub):
    await store.append(parked("MM1", "id-MM1", order_id="11"))
    await store.append(parked("MM2", order_id="12"))

    summary = await RecoveryPass(orchestrator, store).run()

    assert summary.delivered == 2
    assert summary.still_pending == 0
    assert store.rows == {}
    assert sorted(d[0] for d in shopify_stub.deliveries()) == ["11", "12"]


async def test_unresolved_entries_are_kept_with_enrichment(orchestrator, store, provider_stub):
    await store.append(parked("MM1"))
    provider_stub.artifact_pending["id-MM1"] = 100

    summary = await RecoveryPass(orchestrator, store).run()

    assert summary.still_pending == 1
    [entry] = store.rows.values()
    assert entry.provider_order_id == "id-MM1"
    assert entry.attempts == 1
    assert entry.last_error


async def test_failing_entry_does_not_stop_the_pass(orchestrator, store, provider, monkeypatch):
    await store.append(parked("MM1", "id-MM1"))
    await store.append(parked("MM2", "id-MM2"))
    original = provider.get_activation_artifact

    async def flaky(internal_id):
        if internal_id == "id-MM1":
            raise RuntimeError("connection reset")
        return await original(internal_id)

    monkeypatch.setattr(provider, "get_activation_artifact", flaky)

    summary = await RecoveryPass(orchestrator, store).run()

    assert summary.processed == 2
    assert summary.failed == 1
    assert summary.delivered == 1
    [entry] = store.rows.values()
    assert entry.provider_order_code == "MM1"
    assert "connection reset" in entry.last_error


async def test_entries_appended_during_a_pass_survive(orchestrator, store, provider, monkeypatch):
    await store.append(parked("MM1", "id-MM1"))
    original = provider.get_activation_artifact

    async def with_new_order(internal_id):
        await store.append(parked("MM9", order_id="99"))
        return await original(internal_id)

    monkeypatch.setattr(provider, "get_activation_artifact", with_new_order)

    await RecoveryPass(orchestrator, store).run()

    assert [o.provider_order_code for o in store.rows.values()] == ["MM9"]


@pytest.mark.parametrize("count,batch", [(5, 2), (4, 4), (7, 3)])
async def test_repeated_passes_drain_the_store(orchestrator, store, provider_stub, shopify_stub, count, batch):
    for i in range(count):
        code = f"MM{i}"
        await store.append(parked(code, order_id=str(100 + i)))
        provider_stub.lookup_pending[code] = 2
        provider_stub.artifact_pending[f"id-{code}"] = 3

    recovery = RecoveryPass(orchestrator, store, batch_size=batch)
    passes = 0
    while store.rows:
        await recovery.run()
        passes += 1
        assert passes <= count

    assert passes == math.ceil(count / batch)
    delivered = [d[0] for d in shopify_stub.deliveries()]
    assert sorted(delivered) == sorted(str(100 + i) for i in range(count))
    assert len(delivered) == len(set(delivered))


async def test_always_pending_provider_hits_retry_bound(orchestrator, store, provider_stub, settings):
    await store.append(parked("MM1"))
    provider_stub.lookup_pending["MM1"] = 1000

    await RecoveryPass(orchestrator, store).run()

    assert provider_stub.names().count("lookup") == settings.lookup_retry.attempts
    assert len(store.rows) == 1


async def test_stuck_entries_do_not_starve_newer_ones(orchestrator, store, provider_stub, shopify_stub):
    await store.append(parked("BAD1", order_id="41"))
    await store.append(parked("BAD2", order_id="42"))
    await store.append(parked("GOOD", "id-GOOD", order_id="43"))
    provider_stub.complete_statuses.extend([503] * 20)

    recovery = RecoveryPass(orchestrator, store, batch_size=2)
    await recovery.run()
    await recovery.run()

    assert [d[0] for d in shopify_stub.deliveries()] == ["43"]
    assert sorted(o.provider_order_code for o in store.rows.values()) == ["BAD1", "BAD2"]


async def test_entry_reaching_max_attempts_is_dead_lettered(orchestrator, store, provider_stub):
    await store.append(parked("MM1").model_copy(update={"attempts": 2}))
    provider_stub.complete_statuses.append(503)

    summary = await RecoveryPass(orchestrator, store, max_attempts=3).run()

    assert summary.dead_lettered == 1
    assert summary.still_pending == 0
    assert store.rows == {}
    [dead] = store.dead_letters
    assert dead.provider_order_code == "MM1"
    assert dead.attempts == 3
    assert dead.last_error


async def test_rejected_entries_are_dropped(orchestrator, store, provider_stub):
    await store.append(parked("MM1"))
    provider_stub.complete_statuses.append(400)

    summary = await RecoveryPass(orchestrator, store).run()

    assert summary.failed == 1
    assert summary.still_pending == 0
    assert store.rows == {}
    assert store.dead_letters == []
