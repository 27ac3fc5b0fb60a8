"""Tests for server/store.py -- SQLite request ledger and judge pools."""

import sys
import os
import tempfile

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from protocol import Phase
from server.custody import Lane
from server.judge_pool import JudgePool
from server.ledger import Commit, RequestTerms
from server.store import RequestStore


TERMS = RequestTerms(
    requester="alice", query="Capital of France?", specification="city name",
    reward_amount=10**19, reward_lane=Lane.native(),
    bond_amount=10**18, bond_lane=Lane.token("usdc"), judge_bond_amount=2 * 10**18,
    slots=3, commit_deadline=1000, reveal_window=100,
    judge_signup_deadline=1200, judge_window=50, judge_reward_bps=500,
    capabilities={"web": True},
)


@pytest.fixture
def store():
    return RequestStore(":memory:")


def test_create_assigns_sequential_ids(store):
    a = store.create(TERMS, 1)
    b = store.create(TERMS, 2)
    assert (a.id, b.id) == (1, 2)
    assert store.count() == 2


def test_create_initial_state(store):
    req = store.create(TERMS, 5)
    loaded = store.get(req.id)
    assert loaded.phase == Phase.COMMIT
    assert loaded.reveal_deadline == 1100
    assert loaded.history == [{"phase": "commit", "at": 5}]
    assert loaded.terms == TERMS
    assert len(store.get_pool(req.id)) == 0


def test_get_missing(store):
    assert store.get(99) is None


def test_save_roundtrip(store):
    req = store.create(TERMS, 1)
    req.commits.append(Commit("agent1", "ab" * 32, 3))
    req.reveals["agent1"] = "Paris"
    req.bonds_held["agent1"] = 10**18
    req.reward_held = 10**19
    req.phase = Phase.REVEAL
    req.record_pull(Lane.token("usdc"), 10**18)
    assert store.save(req, 3)

    loaded = store.get(req.id)
    assert loaded.phase == Phase.REVEAL
    assert loaded.commits[0].commitment == "ab" * 32
    assert loaded.reveals == {"agent1": "Paris"}
    assert loaded.bonds_held == {"agent1": 10**18}
    assert loaded.pulled == {"token:usdc": 10**18}
    assert loaded.custody_held() == {"native": 10**19, "token:usdc": 10**18}


def test_list_by_phase(store):
    a = store.create(TERMS, 1)
    store.create(TERMS, 1)
    a.phase = Phase.REVEAL
    store.save(a)
    assert [r.id for r in store.list_by_phase(Phase.REVEAL)] == [a.id]
    assert len(store.list_by_phase(Phase.COMMIT)) == 1
    assert [r.id for r in store.list_by_phase()] == [2, 1]
    assert len(store.list_by_phase(limit=1)) == 1


def test_pool_persistence(store):
    req = store.create(TERMS, 1)
    pool = store.get_pool(req.id)
    pool.add("j1")
    pool.add("j2")
    pool.remove("j1")
    store.save_pool(req.id, pool)
    assert store.get_pool(req.id).members() == ["j2"]


def test_pool_missing_request_is_empty(store):
    assert isinstance(store.get_pool(42), JudgePool)
    assert len(store.get_pool(42)) == 0


def test_transaction_rolls_back(store):
    req = store.create(TERMS, 1)
    with pytest.raises(RuntimeError):
        with store.transaction():
            req.phase = Phase.REVEAL
            store.save(req)
            store.create(TERMS, 2)
            raise RuntimeError("boom")
    assert store.get(req.id).phase == Phase.COMMIT
    assert store.count() == 1


def test_nested_transaction_inner_rollback(store):
    req = store.create(TERMS, 1)
    with store.transaction():
        req.phase = Phase.REVEAL
        store.save(req)
        with pytest.raises(ValueError):
            with store.transaction():
                store.create(TERMS, 2)
                raise ValueError("inner")
    assert store.get(req.id).phase == Phase.REVEAL
    assert store.count() == 1


def test_file_backed_persists():
    with tempfile.TemporaryDirectory() as d:
        path = os.path.join(d, "oracle.db")
        s1 = RequestStore(path)
        req = s1.create(TERMS, 1)
        s1.close()
        s2 = RequestStore(path)
        assert s2.get(req.id).terms.query == "Capital of France?"
        s2.close()
