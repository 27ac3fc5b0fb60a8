# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the oracle (FastAPI).

Endpoints for the request lifecycle: create, commit, reveal, close reveals,
judge pool, judge selection, judge bond, aggregation, timeouts, refunds,
distribution, disputes, and read-only accessors.

Ed25519 authentication: every mutating request from a party must be signed.
The caller identity is derived from the signing key (acct_<pubkey hex>).
Permissionless triggers (close reveals, select judge, timeout, refund,
distribute) may be sent unsigned.

Lifecycle events are signed by the server and kept in a bounded buffer at
/events for external indexers.
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import itertools
import logging
import threading
from collections import deque
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Optional

from server.custody import Lane
from server.errors import CapacityViolation, OracleError
from server.lifecycle import OracleEngine
from crypto import (
    verify_request_ed25519, generate_ed25519_keypair, load_ed25519_key,
    save_ed25519_key, ed25519_privkey_to_pubkey, ed25519_sign,
    pubkey_to_account, canonical_json, ReplayGuard, REQUEST_MAX_AGE,
    HEADER_PUBKEY, HEADER_SIGNATURE, HEADER_TIMESTAMP,
)
from protocol import (
    BPS_DENOMINATOR, MAX_ANSWER_BYTES, MAX_SLOTS, NONCE_BYTES,
    PROTOCOL_VERSION, SERVER_KEY_PATH, UNITS_PER_TOKEN, Phase,
)

logger = logging.getLogger("oracle.api")

MAX_EVENTS = 1000


# --- Request/Response models ---
# Amounts travel as decimal strings of base units.

class CreateRequestBody(BaseModel):
    query: str
    specification: str = ""
    capabilities: dict = {}
    reward_amount: str
    reward_lane: str = "native"
    bond_amount: str
    bond_lane: str = "native"
    judge_bond_amount: Optional[str] = None
    slots: int
    commit_deadline: int
    reveal_window: int
    judge_signup_deadline: int
    judge_window: int
    judge_reward_bps: int
    value: str = "0"  # native value attached to the call

class CommitBody(BaseModel):
    commitment: str
    value: str = "0"

class RevealBody(BaseModel):
    answer: str
    nonce: str  # hex

class JudgeBondBody(BaseModel):
    value: str = "0"

class AggregateBody(BaseModel):
    final_answer: str
    reasoning: str = ""
    winners: list[str] = []

class DisputeBody(BaseModel):
    reason: str


def _parse_amount(raw: str, field: str) -> int:
    """Base-unit integer from a decimal string. Raises HTTPException(400) on bad values."""
    try:
        value = int(str(raw))
    except (ValueError, TypeError):
        raise HTTPException(400, f"Invalid {field}: must be an integer amount of base units")
    if value < 0:
        raise HTTPException(400, f"Invalid {field}: cannot be negative")
    return value


def _parse_lane(raw: str, field: str) -> Lane:
    try:
        return Lane.parse(raw)
    except ValueError as e:
        raise HTTPException(400, f"Invalid {field}: {e}")


async def _verify_auth(request: Request) -> str | None:
    """Verify an Ed25519-signed request. Returns the caller account, or None if unsigned.

    Requires X-Oracle-Timestamp, X-Oracle-Signature, and X-Oracle-Pubkey headers.
    The signature covers: METHOD\\nPATH\\nTIMESTAMP\\nBODY
    """
    timestamp = request.headers.get(HEADER_TIMESTAMP, "")
    signature = request.headers.get(HEADER_SIGNATURE, "")
    pubkey_hex = request.headers.get(HEADER_PUBKEY, "")

    if not timestamp or not signature or not pubkey_hex:
        return None

    body = (await request.body()).decode("utf-8", errors="replace")
    ok, err = verify_request_ed25519(
        request.method, request.url.path, body,
        timestamp, signature, pubkey_hex,
    )
    if not ok:
        raise HTTPException(401, f"Authentication failed: {err}")

    replay_guard = getattr(request.app.state, "replay_guard", None)
    if replay_guard and not replay_guard.check_and_record(signature):
        raise HTTPException(401, "Replay detected")

    return pubkey_to_account(bytes.fromhex(pubkey_hex))


def _require_auth(caller: str | None) -> str:
    """Raise 401 if request was not authenticated."""
    if not caller:
        raise HTTPException(401, "Signed request required (X-Oracle-Timestamp + X-Oracle-Signature + X-Oracle-Pubkey headers)")
    return caller


def load_server_key(server_privkey: bytes | None) -> bytes:
    if server_privkey:
        return server_privkey
    if SERVER_KEY_PATH and os.path.exists(SERVER_KEY_PATH):
        return load_ed25519_key(SERVER_KEY_PATH)
    privkey, _ = generate_ed25519_keypair()
    if SERVER_KEY_PATH:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(SERVER_KEY_PATH)), exist_ok=True)
            save_ed25519_key(SERVER_KEY_PATH, privkey)
        except OSError as e:
            logger.warning("could not persist server key to %s: %s", SERVER_KEY_PATH, e)
    return privkey


# --- App factory ---

def create_app(
    engine: OracleEngine | None = None,
    server_privkey: bytes | None = None,
    max_events: int = MAX_EVENTS,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    If server_privkey is not provided, loads ORACLE_SERVER_KEY (path to key file)
    or generates one, persisting it there when the path is set.
    """

    app = FastAPI(title="Staked Oracle", version=str(PROTOCOL_VERSION))

    _server_privkey = load_server_key(server_privkey)
    _server_pubkey = ed25519_privkey_to_pubkey(_server_privkey)
    _server_account = pubkey_to_account(_server_pubkey)

    _engine = engine or OracleEngine()
    _replay_guard = ReplayGuard()

    # --- Event sink for indexers ---
    _events: deque[dict] = deque(maxlen=max_events)
    _events_lock = threading.Lock()
    _seq = itertools.count(1)

    def _record_event(event_type: str, data: dict):
        """Sign an engine event with the server key and append it to the buffer."""
        entry = {"seq": next(_seq), "event": event_type, **data}
        entry["signature"] = ed25519_sign(_server_privkey, canonical_json(entry))
        with _events_lock:
            _events.append(entry)
        logger.debug("event %s: %s", event_type, data)

    _engine.subscribe(_record_event)

    # Expose for testing
    app.state.engine = _engine
    app.state.replay_guard = _replay_guard
    app.state.server_privkey = _server_privkey
    app.state.server_pubkey = _server_pubkey
    app.state.events = _events

    @app.exception_handler(OracleError)
    async def oracle_error_handler(request: Request, exc: OracleError):
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.detail)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/server_pubkey")
    async def get_server_pubkey():
        """Server's Ed25519 public key, for verifying signed events."""
        return {"pubkey": _server_pubkey.hex(), "account": _server_account}

    # --- Requests ---

    @app.post("/requests")
    async def create_request(req: CreateRequestBody, request: Request):
        """Open a request. The requester's reward is pulled into custody."""
        caller = _require_auth(await _verify_auth(request))
        if req.slots > MAX_SLOTS:
            raise CapacityViolation(f"At most {MAX_SLOTS} agent slots per request")
        request_id = _engine.create_request(
            caller,
            query=req.query,
            specification=req.specification,
            capabilities=req.capabilities,
            reward_amount=_parse_amount(req.reward_amount, "reward_amount"),
            reward_lane=_parse_lane(req.reward_lane, "reward_lane"),
            bond_amount=_parse_amount(req.bond_amount, "bond_amount"),
            bond_lane=_parse_lane(req.bond_lane, "bond_lane"),
            judge_bond_amount=(
                None if req.judge_bond_amount is None
                else _parse_amount(req.judge_bond_amount, "judge_bond_amount")
            ),
            slots=req.slots,
            commit_deadline=req.commit_deadline,
            reveal_window=req.reveal_window,
            judge_signup_deadline=req.judge_signup_deadline,
            judge_window=req.judge_window,
            judge_reward_bps=req.judge_reward_bps,
            value=_parse_amount(req.value, "value"),
        )
        return {"request_id": request_id, "phase": Phase.COMMIT.value, "requester": caller}

    @app.get("/requests")
    async def list_requests(phase: str = "", limit: int = 50):
        limit = min(limit, 200)  # cap to prevent DB dump
        try:
            wanted = Phase(phase) if phase else None
        except ValueError:
            raise HTTPException(400, f"Unknown phase: {phase}")
        return {"requests": _engine.list_requests(wanted, limit)}

    @app.get("/requests/{request_id}")
    async def get_request(request_id: int):
        return _engine.get_request(request_id)

    @app.get("/requests/{request_id}/commits")
    async def get_commits(request_id: int):
        return {"commits": _engine.get_commits(request_id)}

    @app.get("/requests/{request_id}/reveals")
    async def get_reveals(request_id: int):
        return {"reveals": _engine.get_reveals(request_id)}

    @app.get("/requests/{request_id}/resolution")
    async def get_resolution(request_id: int):
        return _engine.get_resolution(request_id)

    @app.get("/requests/{request_id}/parameters")
    async def get_parameters(request_id: int):
        return _engine.get_parameters(request_id)

    # --- Agents ---

    @app.post("/requests/{request_id}/commit")
    async def commit(request_id: int, req: CommitBody, request: Request):
        """Take a slot with a sealed answer. The agent bond is pulled."""
        caller = _require_auth(await _verify_auth(request))
        phase = _engine.commit(request_id, caller, req.commitment, _parse_amount(req.value, "value"))
        return {"status": "committed", "phase": phase.value}

    @app.post("/requests/{request_id}/reveal")
    async def reveal(request_id: int, req: RevealBody, request: Request):
        caller = _require_auth(await _verify_auth(request))
        if len(req.answer.encode("utf-8")) > MAX_ANSWER_BYTES:
            raise CapacityViolation(f"Answer exceeds {MAX_ANSWER_BYTES} bytes")
        phase = _engine.reveal(request_id, caller, req.answer, req.nonce)
        return {"status": "revealed", "phase": phase.value}

    @app.post("/requests/{request_id}/close_reveals")
    async def close_reveals(request_id: int, request: Request):
        caller = await _verify_auth(request)
        phase = _engine.close_reveals(request_id, caller)
        return {"phase": phase.value}

    # --- Judges ---

    @app.get("/requests/{request_id}/judges")
    async def list_judges(request_id: int):
        judges = _engine.list_judges(request_id)
        return {"judges": judges, "count": len(judges)}

    @app.get("/requests/{request_id}/judges/{account}")
    async def is_judge(request_id: int, account: str):
        return {"account": account, "is_judge": _engine.is_judge(request_id, account)}

    @app.post("/requests/{request_id}/judges/register")
    async def register_judge(request_id: int, request: Request):
        caller = _require_auth(await _verify_auth(request))
        count = _engine.register_judge(request_id, caller)
        return {"status": "registered", "judge_count": count}

    @app.post("/requests/{request_id}/judges/unregister")
    async def unregister_judge(request_id: int, request: Request):
        caller = _require_auth(await _verify_auth(request))
        count = _engine.unregister_judge(request_id, caller)
        return {"status": "unregistered", "judge_count": count}

    @app.post("/requests/{request_id}/select_judge")
    async def select_judge(request_id: int, request: Request):
        caller = await _verify_auth(request)
        judge = _engine.select_judge(request_id, caller)
        params = _engine.get_parameters(request_id)
        return {"judge": judge, "phase": Phase.JUDGING.value, "judge_deadline": params["judge_deadline"]}

    @app.post("/requests/{request_id}/judge_bond")
    async def post_judge_bond(request_id: int, req: JudgeBondBody, request: Request):
        caller = _require_auth(await _verify_auth(request))
        _engine.post_judge_bond(request_id, caller, _parse_amount(req.value, "value"))
        return {"status": "bonded"}

    @app.post("/requests/{request_id}/aggregate")
    async def aggregate(request_id: int, req: AggregateBody, request: Request):
        """Judge posts the final answer and the winner set."""
        caller = _require_auth(await _verify_auth(request))
        if len(req.final_answer.encode("utf-8")) > MAX_ANSWER_BYTES:
            raise CapacityViolation(f"Final answer exceeds {MAX_ANSWER_BYTES} bytes")
        phase = _engine.aggregate(request_id, caller, req.final_answer, req.reasoning, req.winners)
        return {"phase": phase.value, **_engine.get_resolution(request_id)}

    # --- Settlement ---

    @app.post("/requests/{request_id}/timeout_judge")
    async def timeout_judge(request_id: int, request: Request):
        caller = await _verify_auth(request)
        return _engine.timeout_judge(request_id, caller)

    @app.post("/requests/{request_id}/refund")
    async def refund(request_id: int, request: Request):
        caller = await _verify_auth(request)
        return _engine.refund_if_no_judge(request_id, caller)

    @app.post("/requests/{request_id}/distribute")
    async def distribute(request_id: int, request: Request):
        caller = await _verify_auth(request)
        return _engine.distribute_rewards(request_id, caller)

    @app.post("/requests/{request_id}/dispute")
    async def dispute(request_id: int, req: DisputeBody, request: Request):
        """Record a dispute. No arbitration happens; distribution is not blocked."""
        caller = _require_auth(await _verify_auth(request))
        count = _engine.open_dispute(request_id, caller, req.reason)
        return {"status": "recorded", "disputes": count}

    # --- Feeds ---

    @app.get("/events")
    async def get_events(since: int = 0, limit: int = 100):
        """Signed lifecycle events with seq > since, oldest first."""
        limit = min(limit, MAX_EVENTS)
        with _events_lock:
            events = [e for e in _events if e["seq"] > since]
        return {"events": events[:limit], "server_pubkey": _server_pubkey.hex()}

    @app.get("/platform_info")
    async def platform_info():
        """Advertised protocol constants."""
        return {
            "protocol_version": PROTOCOL_VERSION,
            "bps_denominator": BPS_DENOMINATOR,
            "units_per_token": str(UNITS_PER_TOKEN),
            "max_slots": MAX_SLOTS,
            "max_answer_bytes": MAX_ANSWER_BYTES,
            "nonce_bytes": NONCE_BYTES,
            "request_max_age": REQUEST_MAX_AGE,
            "combine_same_lane": _engine.combine_same_lane,
            "phases": [p.value for p in Phase],
        }

    return app
