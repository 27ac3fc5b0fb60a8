"""End-to-end lifecycle scenarios: balances, conservation, atomicity, re-entrancy."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest

from protocol import CUSTODY_ACCOUNT, PHASE_ORDER, Phase
from server.chain import ManualClock
from server.custody import SimCustody
from server.errors import AgentBondTransferFailed, DuplicateAction, JudgeTransferFailed
from server.lifecycle import OracleEngine
from server.store import RequestStore
from conftest import (
    ACCOUNTS, BOND, JUDGES, NATIVE, REQUESTER, START_BALANCE, TOKEN, USDC,
    bond_value, commit_answers, funded_custody, open_request, reveal_answers,
    run_to_judging, total_balance,
)


MAJORITY = {"agent1": "Paris", "agent2": "Paris", "agent3": "Lyon"}
INITIAL_TOTAL = START_BALANCE * len(ACCOUNTS)


def _balances(custody, lane=NATIVE):
    return {a: custody.balance_of(lane, a) for a in [*ACCOUNTS, CUSTODY_ACCOUNT]}


def _assert_conserved(custody):
    for lane in (NATIVE, USDC):
        assert total_balance(custody, lane) == INITIAL_TOTAL
        assert custody.balance_of(lane, CUSTODY_ACCOUNT) == 0


def _assert_monotone(engine, rid):
    history = [Phase(h["phase"]) for h in engine.get_request(rid)["history"]]
    forward = [p for p in history if p != Phase.FAILED]
    indices = [PHASE_ORDER.index(p) for p in forward]
    assert indices == sorted(indices)
    assert len(set(indices)) == len(indices)
    if Phase.FAILED in history:
        assert history[-1] == Phase.FAILED
        assert history.count(Phase.FAILED) == 1


def test_majority_distribution(engine, custody):
    rid = open_request(engine)
    judge = run_to_judging(engine, rid, MAJORITY)
    engine.aggregate(rid, judge, "Paris", "2 of 3 agree", ["agent1", "agent2"])
    plan = engine.distribute_rewards(rid)

    bal = _balances(custody)
    # judge cut 1, remaining 9 split 4.5 / 4.5, loser bond split 0.5 / 0.5
    assert bal["agent1"] == START_BALANCE + 5 * TOKEN
    assert bal["agent2"] == START_BALANCE + 5 * TOKEN
    assert bal["agent3"] == START_BALANCE - BOND
    assert bal[REQUESTER] == START_BALANCE - 10 * TOKEN
    assert bal[judge] == START_BALANCE + TOKEN
    _assert_conserved(custody)

    req = engine.get_request(rid)
    assert req["phase"] == "distributed"
    assert req["reward_held"] == "0"
    assert req["pulled"] == req["pushed"]
    assert plan["totals"] == {"native": str(10 * TOKEN + 3 * BOND + BOND)}
    _assert_monotone(engine, rid)


def test_mixed_lanes(engine, custody):
    rid = open_request(engine, reward_lane=USDC, bond_lane=NATIVE)
    judge = run_to_judging(engine, rid, MAJORITY)
    engine.aggregate(rid, judge, "Paris", winners=["agent1", "agent2"])
    engine.distribute_rewards(rid)
    assert custody.balance_of(USDC, "agent1") == START_BALANCE + 45 * TOKEN // 10
    assert custody.balance_of(NATIVE, "agent1") == START_BALANCE + TOKEN // 2
    assert custody.balance_of(USDC, judge) == START_BALANCE + TOKEN
    assert custody.balance_of(NATIVE, judge) == START_BALANCE
    _assert_conserved(custody)


def test_no_judge_refunds_everyone(engine, custody, clock):
    rid = open_request(engine)
    nonces = commit_answers(engine, rid, MAJORITY)
    reveal_answers(engine, rid, MAJORITY, nonces)
    clock.advance(300)
    engine.refund_if_no_judge(rid)
    for account in ACCOUNTS:
        assert custody.balance_of(NATIVE, account) == START_BALANCE
    _assert_conserved(custody)
    _assert_monotone(engine, rid)


def test_judge_timeout_slashes_judge(engine, custody, clock):
    rid = open_request(engine)
    judge = run_to_judging(engine, rid, MAJORITY)
    clock.advance(101)
    engine.timeout_judge(rid)
    share = BOND // 4  # requester plus three revealed agents
    assert custody.balance_of(NATIVE, judge) == START_BALANCE - BOND
    assert custody.balance_of(NATIVE, REQUESTER) == START_BALANCE + share
    for agent in MAJORITY:
        assert custody.balance_of(NATIVE, agent) == START_BALANCE + share
    _assert_conserved(custody)
    assert engine.get_resolution(rid)["failure_reason"] == "judge_timeout"


def test_judge_timeout_without_bond(engine, custody, clock):
    rid = open_request(engine)
    judge = run_to_judging(engine, rid, MAJORITY, post_bond=False)
    clock.advance(101)
    engine.timeout_judge(rid)
    assert custody.balance_of(NATIVE, judge) == START_BALANCE
    assert custody.balance_of(NATIVE, REQUESTER) == START_BALANCE
    _assert_conserved(custody)


def test_no_quorum_fails_and_refunds(engine, custody):
    rid = open_request(engine, slots=3)
    nonces = commit_answers(engine, rid, MAJORITY)
    # only agent1 reveals; close after the window
    engine.reveal(rid, "agent1", "Paris", nonces["agent1"])
    engine.clock.advance(201)
    engine.close_reveals(rid)
    for j in JUDGES:
        engine.register_judge(rid, j)
    judge = engine.select_judge(rid)
    engine.post_judge_bond(rid, judge, bond_value(engine, rid, judge=True))

    assert engine.aggregate(rid, judge, "Paris", winners=["agent1"]) == Phase.FAILED
    res = engine.get_resolution(rid)
    assert res["failure_reason"] == "no_quorum"
    assert res["finalized"] is False
    for account in ACCOUNTS:
        assert custody.balance_of(NATIVE, account) == START_BALANCE
    _assert_conserved(custody)


@pytest.mark.parametrize("revealed,phase", [
    (1, Phase.FAILED),     # 1 of 2 is exactly half
    (2, Phase.FINALIZED),
])
def test_quorum_boundary(engine, revealed, phase):
    answers = {"agent1": "x", "agent2": "x"}
    rid = open_request(engine, slots=2)
    nonces = commit_answers(engine, rid, answers)
    for agent in list(answers)[:revealed]:
        engine.reveal(rid, agent, "x", nonces[agent])
    if revealed < 2:
        engine.clock.advance(201)
        engine.close_reveals(rid)
    engine.register_judge(rid, "judge1")
    engine.select_judge(rid)
    engine.post_judge_bond(rid, "judge1", BOND)
    assert engine.aggregate(rid, "judge1", "x", winners=["agent1"]) == phase


def test_zero_commits_fail_no_quorum(engine, custody, clock):
    rid = open_request(engine)
    clock.advance(201)
    engine.close_reveals(rid)
    engine.register_judge(rid, "judge1")
    engine.select_judge(rid)
    engine.post_judge_bond(rid, "judge1", BOND)
    assert engine.aggregate(rid, "judge1", "", winners=[]) == Phase.FAILED
    assert custody.balance_of(NATIVE, REQUESTER) == START_BALANCE
    assert custody.balance_of(NATIVE, "judge1") == START_BALANCE
    _assert_conserved(custody)


def test_no_winners_full_refund(engine, custody):
    rid = open_request(engine)
    judge = run_to_judging(engine, rid, MAJORITY)
    engine.aggregate(rid, judge, "unclear", "no answer was acceptable", winners=[])
    plan = engine.distribute_rewards(rid)
    assert plan["action"] == "no_winners"
    res = engine.get_resolution(rid)
    assert res["phase"] == "failed"
    assert res["finalized"] is False
    assert res["distributed"] is False
    for account in ACCOUNTS:
        assert custody.balance_of(NATIVE, account) == START_BALANCE
    _assert_conserved(custody)
    _assert_monotone(engine, rid)


def test_distribute_is_idempotent(engine, custody):
    rid = open_request(engine)
    judge = run_to_judging(engine, rid, MAJORITY)
    engine.aggregate(rid, judge, "Paris", winners=["agent1", "agent2"])
    engine.distribute_rewards(rid)
    before = _balances(custody)
    with pytest.raises(DuplicateAction):
        engine.distribute_rewards(rid)
    assert _balances(custody) == before


def test_push_failure_rolls_back_everything(engine, custody, events):
    rid = open_request(engine)
    judge = run_to_judging(engine, rid, MAJORITY)
    engine.aggregate(rid, judge, "Paris", winners=["agent1", "agent2"])
    before = _balances(custody)
    n_events = len(events)

    custody.refusing.add("agent1")
    with pytest.raises(AgentBondTransferFailed):
        engine.distribute_rewards(rid)
    assert _balances(custody) == before
    assert engine.get_request(rid)["phase"] == "finalized"
    assert engine.get_resolution(rid)["distributed"] is False
    assert len(events) == n_events

    custody.refusing.clear()
    engine.distribute_rewards(rid)
    assert custody.balance_of(NATIVE, "agent1") == START_BALANCE + 5 * TOKEN
    _assert_conserved(custody)


def test_refusing_judge_blocks_distribution(engine, custody, clock):
    rid = open_request(engine)
    judge = run_to_judging(engine, rid, MAJORITY)
    engine.aggregate(rid, judge, "Paris", winners=["agent1"])
    custody.refusing.add(judge)
    with pytest.raises(JudgeTransferFailed):
        engine.distribute_rewards(rid)
    assert engine.get_request(rid)["phase"] == "finalized"


class ReentrantCustody(SimCustody):
    """Calls back into the engine from inside the first push."""

    def __init__(self):
        super().__init__()
        self.engine = None
        self.request_id = None
        self.reentry_errors = []

    def push(self, lane, payee, amount):
        if self.engine is not None and not self.reentry_errors:
            try:
                self.engine.distribute_rewards(self.request_id)
            except DuplicateAction as e:
                self.reentry_errors.append(e)
        super().push(lane, payee, amount)


def test_reentrant_distribute_is_rejected(clock):
    custody = ReentrantCustody()
    for lane in (NATIVE, USDC):
        for account in ACCOUNTS:
            custody.fund(lane, account, START_BALANCE)
    engine = OracleEngine(store=RequestStore(), custody=custody, clock=clock)
    rid = open_request(engine)
    judge = run_to_judging(engine, rid, MAJORITY)
    engine.aggregate(rid, judge, "Paris", winners=["agent1", "agent2"])

    custody.engine, custody.request_id = engine, rid
    engine.distribute_rewards(rid)

    assert len(custody.reentry_errors) == 1
    assert custody.balance_of(NATIVE, "agent1") == START_BALANCE + 5 * TOKEN
    assert custody.balance_of(NATIVE, CUSTODY_ACCOUNT) == 0
    _assert_conserved(custody)


def test_combined_pool_same_lane(clock):
    custody = funded_custody()
    engine = OracleEngine(store=RequestStore(), custody=custody, clock=clock, combine_same_lane=True)
    rid = open_request(engine, reward_amount=101, bond_amount=7)
    judge = run_to_judging(engine, rid, MAJORITY)
    engine.aggregate(rid, judge, "Paris", winners=["agent1", "agent2"])
    engine.distribute_rewards(rid)
    # (91 + 7) / 2 winners, no remainder
    assert custody.balance_of(NATIVE, "agent1") == START_BALANCE + 49
    assert custody.balance_of(NATIVE, REQUESTER) == START_BALANCE - 101
    _assert_conserved(custody)


def test_separate_pools_by_default(engine, custody):
    rid = open_request(engine, reward_amount=101, bond_amount=7)
    judge = run_to_judging(engine, rid, MAJORITY)
    engine.aggregate(rid, judge, "Paris", winners=["agent1", "agent2"])
    engine.distribute_rewards(rid)
    # 45 reward + 3 slashed each; remainders 1 + 1 back to the requester
    assert custody.balance_of(NATIVE, "agent1") == START_BALANCE + 48
    assert custody.balance_of(NATIVE, REQUESTER) == START_BALANCE - 101 + 2
    _assert_conserved(custody)


def test_many_requests_share_custody(engine, custody):
    first = open_request(engine)
    second = open_request(engine, reward_lane=USDC)
    j1 = run_to_judging(engine, first, MAJORITY)
    j2 = run_to_judging(engine, second, {"agent4": "a", "agent5": "a", "agent1": "b"})
    engine.aggregate(first, j1, "Paris", winners=["agent1", "agent2"])
    engine.distribute_rewards(first)
    # the second request's holdings are untouched
    assert engine.custody_held(second) == {"token:usdc": 10 * TOKEN, "native": 3 * BOND + BOND}
    assert custody.balance_of(NATIVE, CUSTODY_ACCOUNT) == 4 * BOND
    engine.aggregate(second, j2, "a", winners=["agent4", "agent5"])
    engine.distribute_rewards(second)
    _assert_conserved(custody)


def test_fresh_engine_over_same_store_resumes(clock):
    custody = funded_custody()
    store = RequestStore()
    first = OracleEngine(store=store, custody=custody, clock=clock)
    rid = open_request(first)
    judge = run_to_judging(first, rid, MAJORITY)

    second = OracleEngine(store=store, custody=custody, clock=ManualClock(start=clock.now()))
    second.aggregate(rid, judge, "Paris", winners=["agent1"])
    second.distribute_rewards(rid)
    assert second.get_request(rid)["phase"] == "distributed"
    _assert_conserved(custody)
