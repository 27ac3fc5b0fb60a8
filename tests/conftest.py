import sys
import os
import json

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from crypto import (
    compute_commitment, new_nonce, generate_ed25519_keypair,
    sign_request_ed25519, pubkey_to_account,
)
from protocol import UNITS_PER_TOKEN
from server.chain import ManualClock
from server.custody import Lane, SimCustody
from server.lifecycle import OracleEngine
from server.store import RequestStore


TOKEN = UNITS_PER_TOKEN
START_BALANCE = 100 * TOKEN
REWARD = 10 * TOKEN
BOND = 1 * TOKEN

NATIVE = Lane.native()
USDC = Lane.token("usdc")

REQUESTER = "alice"
AGENTS = ["agent1", "agent2", "agent3", "agent4", "agent5"]
JUDGES = ["judge1", "judge2", "judge3"]
ACCOUNTS = [REQUESTER, *AGENTS, *JUDGES]


def funded_custody(accounts=ACCOUNTS, lanes=(NATIVE, USDC), amount=START_BALANCE) -> SimCustody:
    custody = SimCustody()
    for lane in lanes:
        for account in accounts:
            custody.fund(lane, account, amount)
    return custody


def seal(answer: str) -> tuple[str, bytes]:
    """Return (commitment, nonce) for an answer."""
    nonce = new_nonce()
    return compute_commitment(answer, nonce), nonce


def open_request(engine: OracleEngine, requester: str = REQUESTER, **overrides) -> int:
    """Create a request with sensible defaults relative to the engine clock."""
    now = engine.clock.now()
    terms = dict(
        query="What is the answer?",
        specification="A single integer.",
        reward_amount=REWARD,
        reward_lane=NATIVE,
        bond_amount=BOND,
        bond_lane=NATIVE,
        slots=3,
        commit_deadline=now + 100,
        reveal_window=100,
        judge_signup_deadline=now + 300,
        judge_window=100,
        judge_reward_bps=1000,
    )
    terms.update(overrides)
    if "value" not in terms:
        terms["value"] = terms["reward_amount"] if terms["reward_lane"].is_native else 0
    return engine.create_request(requester, **terms)


def bond_value(engine: OracleEngine, request_id: int, judge: bool = False) -> int:
    terms = engine.get_terms(request_id)
    if not terms.bond_lane.is_native:
        return 0
    return terms.judge_bond_amount if judge else terms.bond_amount


def commit_answers(engine: OracleEngine, request_id: int, answers: dict[str, str]) -> dict[str, bytes]:
    """Commit each agent's answer. Returns agent -> nonce."""
    nonces = {}
    for agent, answer in answers.items():
        commitment, nonce = seal(answer)
        engine.commit(request_id, agent, commitment, bond_value(engine, request_id))
        nonces[agent] = nonce
    return nonces


def reveal_answers(engine: OracleEngine, request_id: int, answers: dict[str, str], nonces: dict[str, bytes]):
    for agent, answer in answers.items():
        engine.reveal(request_id, agent, answer, nonces[agent])


def run_to_judging(engine: OracleEngine, request_id: int, answers: dict[str, str],
                   judges=JUDGES, post_bond: bool = True) -> str:
    """Commit and reveal every answer, sign up judges, select one. Returns the judge."""
    nonces = commit_answers(engine, request_id, answers)
    reveal_answers(engine, request_id, answers, nonces)
    for judge in judges:
        engine.register_judge(request_id, judge)
    judge = engine.select_judge(request_id)
    if post_bond:
        engine.post_judge_bond(request_id, judge, bond_value(engine, request_id, judge=True))
    return judge


def total_balance(custody: SimCustody, lane: Lane, accounts=ACCOUNTS) -> int:
    from protocol import CUSTODY_ACCOUNT
    return sum(custody.balance_of(lane, a) for a in [*accounts, CUSTODY_ACCOUNT])


# --- Signed HTTP helpers ---

def make_identity():
    """Returns (privkey, pubkey_hex, account)."""
    priv, pub = generate_ed25519_keypair()
    return priv, pub.hex(), pubkey_to_account(pub)


def signed_post(client, privkey: bytes, pubkey_hex: str, path: str, body: dict | None = None):
    raw = json.dumps(body or {})
    headers = sign_request_ed25519(privkey, pubkey_hex, "POST", path, raw)
    headers["Content-Type"] = "application/json"
    return client.post(path, content=raw, headers=headers)


# --- Fixtures ---

@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def custody():
    return funded_custody()


@pytest.fixture
def events():
    return []


@pytest.fixture
def engine(clock, custody, events):
    return OracleEngine(
        store=RequestStore(),
        custody=custody,
        clock=clock,
        publish=lambda event_type, data: events.append((event_type, data)),
    )
