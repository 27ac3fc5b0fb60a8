"""Oracle API client.

Thin HTTP client with a pluggable transport interface.
Default transport: HTTP with Ed25519 authentication.

Agents keep their own secrets: ``commit_answer`` generates the nonce,
sends only the commitment, and remembers (answer, nonce) locally until
``reveal_answer`` opens it.
"""

import json
from abc import ABC, abstractmethod

import httpx

from crypto import (
    sign_request_ed25519, ed25519_privkey_to_pubkey, pubkey_to_account,
    compute_commitment, new_nonce,
)
from aggregator import Aggregator, MajorityAggregator, RevealedAnswers


class OracleAPIError(Exception):
    """Server rejected a call. ``kind`` is the error taxonomy name from the response body."""

    def __init__(self, status_code: int, kind: str, detail: str):
        super().__init__(f"{status_code} {kind}: {detail}")
        self.status_code = status_code
        self.kind = kind
        self.detail = detail


class Transport(ABC):
    """Override this to talk to the oracle some other way."""

    @abstractmethod
    async def post(self, path: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None) -> dict:
        ...


class HTTPTransport(Transport):
    """Default. Talks to the oracle API over HTTP with Ed25519 auth."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        privkey_bytes: bytes | None = None,
        timeout: float = 30.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            http_transport: Optional httpx transport, e.g. httpx.ASGITransport(app)
                to talk to an in-process app.
        """
        self.base_url = base_url.rstrip("/")
        self.http_transport = http_transport
        self.privkey_bytes = privkey_bytes
        self.timeout = timeout
        if privkey_bytes:
            self.pubkey_hex = ed25519_privkey_to_pubkey(privkey_bytes).hex()
        else:
            self.pubkey_hex = ""

    def _headers(self, method: str = "GET", path: str = "", body: str = "") -> dict:
        h = {"Content-Type": "application/json"}
        if self.privkey_bytes:
            auth = sign_request_ed25519(
                self.privkey_bytes, self.pubkey_hex, method, path, body
            )
            h.update(auth)
        return h

    @staticmethod
    def _check(resp: httpx.Response) -> dict:
        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {}
            if isinstance(payload, dict) and "error" in payload:
                raise OracleAPIError(resp.status_code, payload["error"], payload.get("detail", ""))
        resp.raise_for_status()
        return resp.json()

    async def post(self, path: str, data: dict) -> dict:
        body = json.dumps(data)
        async with httpx.AsyncClient(transport=self.http_transport) as client:
            resp = await client.post(
                f"{self.base_url}{path}",
                content=body,
                headers=self._headers("POST", path, body),
                timeout=self.timeout,
            )
            return self._check(resp)

    async def get(self, path: str, params: dict | None = None) -> dict:
        async with httpx.AsyncClient(transport=self.http_transport) as client:
            resp = await client.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self._headers("GET", path),
                timeout=self.timeout,
            )
            return self._check(resp)


class OracleClient:
    """High-level client for the oracle."""

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000",
                 privkey_bytes: bytes | None = None):
        self.privkey_bytes = privkey_bytes
        if privkey_bytes:
            self.account = pubkey_to_account(ed25519_privkey_to_pubkey(privkey_bytes))
        else:
            self.account = ""
        if transport:
            self.transport = transport
        else:
            self.transport = HTTPTransport(base_url, privkey_bytes=privkey_bytes)
        self._sealed: dict[int, tuple[str, bytes]] = {}  # request_id -> (answer, nonce)

    # --- Requester ---

    async def create_request(self, query: str, *, reward_amount: int, bond_amount: int,
                             slots: int, commit_deadline: int, reveal_window: int,
                             judge_signup_deadline: int, judge_window: int,
                             judge_reward_bps: int, specification: str = "",
                             capabilities: dict | None = None,
                             reward_lane: str = "native", bond_lane: str = "native",
                             judge_bond_amount: int | None = None, value: int = 0) -> int:
        """Open a request. Returns request_id."""
        body = {
            "query": query,
            "specification": specification,
            "capabilities": capabilities or {},
            "reward_amount": str(reward_amount),
            "reward_lane": reward_lane,
            "bond_amount": str(bond_amount),
            "bond_lane": bond_lane,
            "slots": slots,
            "commit_deadline": commit_deadline,
            "reveal_window": reveal_window,
            "judge_signup_deadline": judge_signup_deadline,
            "judge_window": judge_window,
            "judge_reward_bps": judge_reward_bps,
            "value": str(value),
        }
        if judge_bond_amount is not None:
            body["judge_bond_amount"] = str(judge_bond_amount)
        resp = await self.transport.post("/requests", body)
        return resp["request_id"]

    async def list_requests(self, phase: str = "", limit: int = 50) -> list[dict]:
        resp = await self.transport.get("/requests", {"phase": phase, "limit": limit})
        return resp["requests"]

    async def get_request(self, request_id: int) -> dict:
        return await self.transport.get(f"/requests/{request_id}")

    async def get_commits(self, request_id: int) -> list[dict]:
        resp = await self.transport.get(f"/requests/{request_id}/commits")
        return resp["commits"]

    async def get_reveals(self, request_id: int) -> list[dict]:
        resp = await self.transport.get(f"/requests/{request_id}/reveals")
        return resp["reveals"]

    async def get_resolution(self, request_id: int) -> dict:
        return await self.transport.get(f"/requests/{request_id}/resolution")

    async def get_parameters(self, request_id: int) -> dict:
        return await self.transport.get(f"/requests/{request_id}/parameters")

    # --- Agent ---

    async def commit(self, request_id: int, commitment: str, value: int = 0) -> dict:
        """Send a precomputed commitment."""
        return await self.transport.post(f"/requests/{request_id}/commit", {
            "commitment": commitment,
            "value": str(value),
        })

    async def commit_answer(self, request_id: int, answer: str, value: int = 0) -> dict:
        """Seal ``answer`` under a fresh nonce and commit it. The nonce stays local."""
        nonce = new_nonce()
        resp = await self.commit(request_id, compute_commitment(answer, nonce), value)
        self._sealed[request_id] = (answer, nonce)
        return resp

    async def reveal(self, request_id: int, answer: str, nonce: bytes) -> dict:
        return await self.transport.post(f"/requests/{request_id}/reveal", {
            "answer": answer,
            "nonce": nonce.hex(),
        })

    async def reveal_answer(self, request_id: int) -> dict:
        """Reveal the answer sealed by ``commit_answer``."""
        if request_id not in self._sealed:
            raise KeyError(f"No sealed answer for request {request_id}")
        answer, nonce = self._sealed[request_id]
        resp = await self.reveal(request_id, answer, nonce)
        del self._sealed[request_id]
        return resp

    async def close_reveals(self, request_id: int) -> dict:
        return await self.transport.post(f"/requests/{request_id}/close_reveals", {})

    # --- Judge ---

    async def list_judges(self, request_id: int) -> list[str]:
        resp = await self.transport.get(f"/requests/{request_id}/judges")
        return resp["judges"]

    async def is_judge(self, request_id: int, account: str) -> bool:
        resp = await self.transport.get(f"/requests/{request_id}/judges/{account}")
        return resp["is_judge"]

    async def register_judge(self, request_id: int) -> dict:
        return await self.transport.post(f"/requests/{request_id}/judges/register", {})

    async def unregister_judge(self, request_id: int) -> dict:
        return await self.transport.post(f"/requests/{request_id}/judges/unregister", {})

    async def select_judge(self, request_id: int) -> str:
        resp = await self.transport.post(f"/requests/{request_id}/select_judge", {})
        return resp["judge"]

    async def post_judge_bond(self, request_id: int, value: int = 0) -> dict:
        return await self.transport.post(f"/requests/{request_id}/judge_bond", {"value": str(value)})

    async def aggregate(self, request_id: int, final_answer: str, reasoning: str = "",
                        winners: list[str] | None = None) -> dict:
        """Post the final answer and winner set (selected judge only)."""
        return await self.transport.post(f"/requests/{request_id}/aggregate", {
            "final_answer": final_answer,
            "reasoning": reasoning,
            "winners": winners or [],
        })

    async def judge(self, request_id: int, aggregator: Aggregator | None = None) -> dict:
        """Aggregate the revealed answers locally and post the verdict."""
        aggregator = aggregator or MajorityAggregator()
        verdict = await aggregator.aggregate(RevealedAnswers.from_request(await self.get_request(request_id)))
        return await self.aggregate(request_id, verdict.final_answer, verdict.reasoning, verdict.winners)

    # --- Settlement ---

    async def timeout_judge(self, request_id: int) -> dict:
        return await self.transport.post(f"/requests/{request_id}/timeout_judge", {})

    async def refund(self, request_id: int) -> dict:
        return await self.transport.post(f"/requests/{request_id}/refund", {})

    async def distribute(self, request_id: int) -> dict:
        return await self.transport.post(f"/requests/{request_id}/distribute", {})

    async def dispute(self, request_id: int, reason: str) -> dict:
        return await self.transport.post(f"/requests/{request_id}/dispute", {"reason": reason})

    # --- Feeds ---

    async def get_events(self, since: int = 0, limit: int = 100) -> list[dict]:
        resp = await self.transport.get("/events", {"since": since, "limit": limit})
        return resp["events"]

    async def platform_info(self) -> dict:
        return await self.transport.get("/platform_info")

    async def get_server_pubkey(self) -> dict:
        return await self.transport.get("/server_pubkey")
