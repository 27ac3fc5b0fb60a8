#!/usr/bin/env python3
"""Oracle server, optionally with a house judge.

Configuration comes from ORACLE_* env vars (see protocol.py). With
ORACLE_HOUSE_JUDGE=1 the server's own account signs up as a judge on every
request awaiting one and, when selected, posts its bond and aggregates by
majority (or by LLM when OPENROUTER_API_KEY is set).
"""

import os, sys, asyncio, logging, threading, time
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from aggregator import Aggregator, LLMAggregator, MajorityAggregator, RevealedAnswers
from crypto import ed25519_privkey_to_pubkey, pubkey_to_account
from protocol import (
    BLOCK_INTERVAL, COMBINE_SAME_LANE, CUSTODY_DB_PATH, DB_PATH, LOG_LEVEL, PORT, Phase,
)
from server.app import create_app, load_server_key
from server.chain import SystemClock
from server.custody import SimCustody
from server.errors import OracleError
from server.lifecycle import OracleEngine
from server.store import RequestStore

HOUSE_JUDGE = os.environ.get("ORACLE_HOUSE_JUDGE", "").lower() in ("1", "true", "yes")
POLL_INTERVAL = 5

logger = logging.getLogger("oracle.server")


def house_judge_step(engine: OracleEngine, account: str, aggregator: Aggregator) -> int:
    """One polling pass of the house judge. Returns the number of actions taken."""
    actions = 0
    for req in engine.list_requests(Phase.AWAITING_JUDGE, limit=200):
        rid = req["id"]
        if engine.is_judge(rid, account):
            continue
        try:
            engine.register_judge(rid, account)
            actions += 1
            logger.info("house judge registered on request %d", rid)
        except OracleError as e:
            logger.debug("house judge skipped request %d: %s", rid, e.detail)

    for req in engine.list_requests(Phase.JUDGING, limit=200):
        rid = req["id"]
        if req["judge"] != account:
            continue
        try:
            if not req["judge_bond_posted"]:
                terms = engine.get_terms(rid)
                value = terms.judge_bond_amount if terms.bond_lane.is_native else 0
                engine.post_judge_bond(rid, account, value)
                actions += 1
            answers = RevealedAnswers.from_request(req)
            try:
                verdict = asyncio.run(aggregator.aggregate(answers))
            except Exception:
                logger.exception("aggregator failed on request %d, using majority", rid)
                verdict = MajorityAggregator.tally(answers)
            phase = engine.aggregate(rid, account, verdict.final_answer, verdict.reasoning, verdict.winners)
            actions += 1
            logger.info("house judge aggregated request %d -> %s (%d winners)",
                        rid, phase.value, len(verdict.winners))
        except OracleError as e:
            logger.warning("house judge failed on request %d: %s", rid, e.detail)
    return actions


def run_house_judge(engine: OracleEngine, account: str, aggregator: Aggregator):
    """Background thread: poll forever."""
    while True:
        time.sleep(POLL_INTERVAL)
        try:
            house_judge_step(engine, account, aggregator)
        except Exception:
            logger.exception("house judge pass failed")


def main():
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for path in (DB_PATH, CUSTODY_DB_PATH):
        if path != ":memory:" and os.path.dirname(path):
            os.makedirs(os.path.dirname(path), exist_ok=True)

    engine = OracleEngine(
        store=RequestStore(DB_PATH),
        custody=SimCustody(CUSTODY_DB_PATH),
        clock=SystemClock(BLOCK_INTERVAL),
        combine_same_lane=COMBINE_SAME_LANE,
    )
    server_privkey = load_server_key(None)
    app = create_app(engine=engine, server_privkey=server_privkey)

    if HOUSE_JUDGE:
        account = pubkey_to_account(ed25519_privkey_to_pubkey(server_privkey))
        aggregator = LLMAggregator() if os.environ.get("OPENROUTER_API_KEY") else MajorityAggregator()
        threading.Thread(target=run_house_judge, args=(engine, account, aggregator), daemon=True).start()
        logger.info("house judge running as %s (%s)", account, type(aggregator).__name__)
    logger.info("listening on :%d (ledger %s, custody %s)", PORT, DB_PATH, CUSTODY_DB_PATH)

    uvicorn.run(app, host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    main()
