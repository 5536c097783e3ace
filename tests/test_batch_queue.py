from __future__ import annotations

import threading

import pytest

from api.config import RUN_TIMEOUT_MINUTES, STUCK_RUN_MINUTES
from api.errors import ClaimLost
from db import batch_db
from db.ledger_db import now
from db.models import COMPLETED, FAILED, PENDING, PROCESSING


def _enqueue(tenant_id="t1", n_items=2, sub_tasks=("search_rank",), **kw):
    items = [{"phrase": f"kw {i}", "target_domain": "example.com"} for i in range(n_items)]
    return batch_db.enqueue(tenant_id, items, list(sub_tasks), [], estimated_credits=4,
                            idempotency_key=f"batch:{tenant_id}:x", **kw)


def test_enqueue_creates_pending_run_and_items() -> None:
    run_id = _enqueue(sub_tasks=("search_rank", "review_matching"))
    run = batch_db.get_run(run_id)
    assert run["status"] == PENDING
    assert run["total_items"] == 2
    assert run["sub_tasks"] == {"search_rank": PENDING, "review_matching": PENDING}

    items = batch_db.list_items(run_id)
    assert [i["statuses"] for i in items] == [{"search_rank": PENDING, "review_matching": PENDING}] * 2


def test_enqueue_rejects_unknown_sub_task() -> None:
    with pytest.raises(ValueError):
        _enqueue(sub_tasks=("backlinks",))


def test_claim_flips_pending_to_processing() -> None:
    run_id = _enqueue()
    claim = batch_db.claim_oldest_pending()
    assert claim.run_id == run_id
    run = batch_db.get_run(run_id)
    assert run["status"] == PROCESSING
    assert run["claimed"] is True
    assert run["started_ts"] is not None


def test_second_claim_sees_nothing_while_first_is_live() -> None:
    _enqueue()
    assert batch_db.claim_oldest_pending() is not None
    assert batch_db.claim_oldest_pending() is None


def test_released_processing_run_is_claimable_again() -> None:
    run_id = _enqueue()
    claim = batch_db.claim_oldest_pending()
    assert batch_db.release_claim(claim) is True

    again = batch_db.claim_oldest_pending()
    assert again.run_id == run_id
    assert again.token != claim.token
    assert batch_db.get_run(run_id)["status"] == PROCESSING


def test_future_scheduled_run_is_not_claimed_early() -> None:
    ts = now()
    run_id = _enqueue(scheduled_for_ts=ts + 3600)
    assert batch_db.claim_oldest_pending(ts) is None
    assert batch_db.claim_oldest_pending(ts + 3601).run_id == run_id


def test_expired_claim_can_be_taken_over() -> None:
    run_id = _enqueue()
    ts = now()
    stale = batch_db.claim_oldest_pending(ts)
    fresh = batch_db.claim_oldest_pending(ts + STUCK_RUN_MINUTES * 60 + 1)
    assert fresh.run_id == run_id

    item = batch_db.list_items(run_id)[0]
    with pytest.raises(ClaimLost):
        batch_db.update_item_status(item["item_id"], "search_rank", COMPLETED, token=stale.token)
    assert batch_db.release_claim(stale) is False


def test_concurrent_claims_have_one_winner() -> None:
    _enqueue()
    barrier = threading.Barrier(6)
    claims = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        c = batch_db.claim_oldest_pending()
        with lock:
            claims.append(c)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len([c for c in claims if c is not None]) == 1


def test_terminal_run_is_never_claimed() -> None:
    run_id = _enqueue()
    claim = batch_db.claim_oldest_pending()
    assert batch_db.mark_run_terminal(run_id, COMPLETED, None, claim.token) is True
    assert batch_db.claim_oldest_pending(now() + 86400) is None


def test_mark_run_terminal_happens_once() -> None:
    run_id = _enqueue()
    claim = batch_db.claim_oldest_pending()
    assert batch_db.mark_run_terminal(run_id, FAILED, "boom", claim.token) is True
    assert batch_db.mark_run_terminal(run_id, COMPLETED, None) is False

    run = batch_db.get_run(run_id)
    assert run["status"] == FAILED
    assert run["error_message"] == "boom"
    assert run["claimed"] is False


def test_mark_run_terminal_requires_terminal_status() -> None:
    run_id = _enqueue()
    with pytest.raises(ValueError):
        batch_db.mark_run_terminal(run_id, PROCESSING, None)


def test_update_item_status_merges_results_and_counts_retries() -> None:
    run_id = _enqueue(n_items=1, sub_tasks=("search_rank", "review_matching"))
    claim = batch_db.claim_oldest_pending()
    item_id = batch_db.list_items(run_id)[0]["item_id"]

    batch_db.update_item_status(item_id, "search_rank", PENDING, error="429", retry=True, token=claim.token)
    batch_db.update_item_status(item_id, "search_rank", COMPLETED, result={"best_position": 3}, token=claim.token)
    batch_db.update_item_status(item_id, "review_matching", COMPLETED, result={"matches_found": 2}, token=claim.token)

    item = batch_db.list_items(run_id)[0]
    assert item["retries"] == {"search_rank": 1}
    assert item["result"] == {"search_rank": {"best_position": 3}, "review_matching": {"matches_found": 2}}
    assert batch_db.refresh_progress(run_id) == {"processed_items": 1, "successful_items": 1, "failed_items": 0}


def test_sweep_releases_expired_claims_and_resets_in_flight_items() -> None:
    run_id = _enqueue(n_items=1)
    ts = now()
    claim = batch_db.claim_oldest_pending(ts)
    item_id = batch_db.list_items(run_id)[0]["item_id"]
    batch_db.update_item_status(item_id, "search_rank", PROCESSING, token=claim.token)

    assert batch_db.sweep_stuck_runs(ts + 60)["released"] == 0
    assert batch_db.sweep_stuck_runs(ts + STUCK_RUN_MINUTES * 60 + 1)["released"] == 1

    run = batch_db.get_run(run_id)
    assert run["status"] == PROCESSING
    assert run["claimed"] is False
    assert batch_db.list_items(run_id)[0]["statuses"]["search_rank"] == PENDING


def test_sweep_times_out_long_running_runs() -> None:
    run_id = _enqueue(n_items=2)
    ts = now()
    claim = batch_db.claim_oldest_pending(ts)
    first = batch_db.list_items(run_id)[0]["item_id"]
    batch_db.update_item_status(first, "search_rank", COMPLETED, result={"best_position": 1}, token=claim.token)
    batch_db.release_claim(claim)

    out = batch_db.sweep_stuck_runs(ts + RUN_TIMEOUT_MINUTES * 60 + 5)
    assert out["timed_out"] == 1

    items = batch_db.list_items(run_id)
    assert items[0]["statuses"]["search_rank"] == COMPLETED
    assert items[1]["statuses"]["search_rank"] == FAILED
    assert items[1]["errors"]["search_rank"] == "Timed out"


def test_sweep_spares_runs_that_keep_progressing() -> None:
    run_id = _enqueue(n_items=20)
    ts = now()
    claim = batch_db.claim_oldest_pending(ts - (RUN_TIMEOUT_MINUTES + 1) * 60)
    for item in batch_db.list_items(run_id)[:15]:
        batch_db.update_item_status(item["item_id"], "search_rank", COMPLETED, result={"best_position": 1}, token=claim.token)
    batch_db.release_claim(claim)

    assert batch_db.sweep_stuck_runs(ts)["timed_out"] == 0
    items = batch_db.list_items(run_id)
    assert [i["statuses"]["search_rank"] for i in items[15:]] == [PENDING] * 5
    assert batch_db.get_run(run_id)["status"] == PROCESSING

    assert batch_db.sweep_stuck_runs(ts + RUN_TIMEOUT_MINUTES * 60 + 5)["timed_out"] == 1


def test_terminal_run_frees_the_active_slot() -> None:
    run_id = _enqueue()
    assert batch_db.find_active_slot("t1")["run_id"] == run_id
    assert batch_db.find_active_slot("t2") is None

    batch_db.mark_run_terminal(run_id, COMPLETED, None)
    assert batch_db.find_active_slot("t1") is None
    assert _enqueue() != run_id


def test_scheduled_run_does_not_take_the_active_slot() -> None:
    _enqueue(scheduled_for_ts=now() + 3600)
    assert batch_db.find_active_slot("t1") is None
    _enqueue()
