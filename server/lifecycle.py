"""Request lifecycle engine for the oracle.

Phase graph (see protocol.PHASE_TRANSITIONS):

    commit -> reveal -> awaiting_judge -> judging -> finalized -> distributed
                              |               |           |
                              +---------------+-----------+--> failed

Every public operation is one atomic transition: it runs under the engine
lock inside nested savepoints on the ledger store and the custody backend,
so a failing guard or transfer leaves no trace. Deadlines are checked lazily
against the injected clock when a call arrives. Phase and flags are written
to the store before any value is pushed, so a call re-entering the engine
from inside a push sees the new state and is turned away by the guards.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterable

from crypto import commitment_matches, normalize_commitment
from protocol import (
    BPS_DENOMINATOR, COMBINE_SAME_LANE, EVENT_TYPES, FAIL_JUDGE_TIMEOUT, FAIL_NO_JUDGE,
    FAIL_NO_QUORUM, FAIL_NO_WINNERS, LEG_AGENT_BOND, LEG_JUDGE, LEG_REWARD,
    PHASE_TRANSITIONS, Phase,
)
from server.chain import Clock, SystemClock
from server.custody import Lane, StubCustody, TransferAdapter, TransferRejected
from server.errors import (
    TRANSFER_ERRORS, AuthorizationViolation, CapacityViolation, DuplicateAction,
    EmptyJudgePool, IntegrityViolation, NotCommitted, NotFound, PhaseViolation,
    TimingViolation, ValueMismatch,
)
from server.judge_pool import select_judge
from server.ledger import Commit, Request, RequestTerms
from server.settlement import (
    SettlementPlan, execute, plan_distribution, plan_full_refund,
    plan_judge_timeout, plan_refund, settle_holdings,
)
from server.store import RequestStore

logger = logging.getLogger("oracle.lifecycle")


class OracleEngine:
    """Per-request phase automaton + settlement, over a ledger store and a custody backend."""

    def __init__(
        self,
        store: RequestStore | None = None,
        custody: TransferAdapter | None = None,
        clock: Clock | None = None,
        combine_same_lane: bool = COMBINE_SAME_LANE,
        publish: Callable[[str, dict], None] | None = None,
        dispute_hook: Callable[[Request, str, str], None] | None = None,
    ):
        """
        Args:
            store: Ledger storage. Defaults to an in-memory RequestStore.
            custody: Value transfer backend. Defaults to StubCustody.
            clock: Time and block-hash source. Defaults to SystemClock.
            combine_same_lane: Split reward and slashed bonds as one pool when
                both lanes hold the same asset.
            publish: Called as publish(event_type, data) after each successful call,
                once per lifecycle event.
            dispute_hook: Called as dispute_hook(request, caller, reason) when a
                dispute is opened. No arbitration happens here.
        """
        self.store = store or RequestStore()
        self.custody = custody or StubCustody()
        self.clock = clock or SystemClock()
        self.combine_same_lane = combine_same_lane
        self._subscribers: list[Callable[[str, dict], None]] = [publish] if publish else []
        self._dispute_hook = dispute_hook
        self._lock = threading.RLock()
        self._depth = 0
        self._events: list[tuple[str, dict]] = []

    # --- Call plumbing ---

    @contextmanager
    def _call(self):
        with self._lock:
            mark = len(self._events)
            self._depth += 1
            try:
                with self.store.transaction(), self.custody.atomic():
                    yield
            except BaseException:
                del self._events[mark:]
                raise
            finally:
                self._depth -= 1
            if self._depth == 0:
                self._flush_events()

    def subscribe(self, publish: Callable[[str, dict], None]):
        """Register another publish(event_type, data) callback."""
        self._subscribers.append(publish)

    def _flush_events(self):
        events, self._events = self._events, []
        for event_type, data in events:
            for publish in self._subscribers:
                try:
                    publish(event_type, data)
                except Exception:
                    logger.exception("event subscriber failed for %s", event_type)

    def _emit(self, event_type: str, request: Request, **data):
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        self._events.append((event_type, {"request_id": request.id, **data}))

    def _load(self, request_id: int) -> Request:
        request = self.store.get(request_id)
        if request is None:
            raise NotFound(f"Request {request_id} not found")
        return request

    def _save(self, request: Request):
        self.store.save(request, self.clock.now())

    def _advance(self, request: Request, phase: Phase):
        if phase not in PHASE_TRANSITIONS[request.phase]:
            raise PhaseViolation(f"Invalid phase transition: {request.phase.value} -> {phase.value}")
        logger.info("request %d: %s -> %s", request.id, request.phase.value, phase.value)
        request.phase = phase
        request.history.append({"phase": phase.value, "at": self.clock.now()})

    @staticmethod
    def _require_phase(request: Request, phase: Phase):
        if request.phase != phase:
            raise PhaseViolation(
                f"Request {request.id} is {request.phase.value}, not {phase.value}"
            )

    def _observe_deadlines(self, request: Request, now: int):
        """Apply the deadline-triggered commit -> reveal transition on first touch."""
        if request.phase == Phase.COMMIT and now >= request.terms.commit_deadline:
            self._advance(request, Phase.REVEAL)

    def _pull(self, request: Request, lane: Lane, payer: str, amount: int, value: int, leg: str):
        """Pull ``amount`` from ``payer``, reconciling native value attached to the call."""
        if lane.is_native:
            if value != amount:
                raise ValueMismatch(f"Expected exactly {amount} native value attached, got {value}")
        elif value:
            raise ValueMismatch(f"Native value attached to a call on token lane {lane}")
        if amount == 0:
            return
        try:
            self.custody.pull(lane, payer, amount)
        except TransferRejected as e:
            logger.warning("request %d: %s pull of %s %s from %s failed: %s",
                           request.id, leg, amount, lane, payer, e)
            raise TRANSFER_ERRORS[leg](f"Pull from {payer} failed: {e}", payee=payer, amount=amount) from e
        request.record_pull(lane, amount)

    def _settle(self, request: Request, plan: SettlementPlan) -> SettlementPlan:
        settle_holdings(request, plan)
        self._save(request)
        execute(plan, self.custody)
        return plan

    def _fail(self, request: Request, reason: str):
        request.failure_reason = reason
        self._advance(request, Phase.FAILED)
        self._emit("failed", request, reason=reason)

    # --- Create ---

    def create_request(
        self,
        caller: str,
        *,
        query: str,
        specification: str,
        reward_amount: int,
        reward_lane: Lane,
        bond_amount: int,
        bond_lane: Lane,
        slots: int,
        commit_deadline: int,
        reveal_window: int,
        judge_signup_deadline: int,
        judge_window: int,
        judge_reward_bps: int,
        capabilities: dict | None = None,
        judge_bond_amount: int | None = None,
        value: int = 0,
    ) -> int:
        """Open a request and pull its reward from the requester. Returns the new id."""
        if slots <= 0:
            raise CapacityViolation("At least one agent slot is required")
        if not 0 <= judge_reward_bps <= BPS_DENOMINATOR:
            raise CapacityViolation(f"Judge reward share must be within 0..{BPS_DENOMINATOR} bps")
        if judge_bond_amount is None:
            judge_bond_amount = bond_amount
        if min(reward_amount, bond_amount, judge_bond_amount) < 0:
            raise CapacityViolation("Amounts cannot be negative")

        with self._call():
            now = self.clock.now()
            if commit_deadline <= now:
                raise TimingViolation("Commit deadline must be in the future")
            if reveal_window <= 0:
                raise CapacityViolation("Reveal window must be positive")
            if judge_window <= 0:
                raise CapacityViolation("Judge aggregation window must be positive")
            if judge_signup_deadline <= now:
                raise TimingViolation("Judge signup deadline must be in the future")
            if judge_signup_deadline < commit_deadline + reveal_window:
                raise CapacityViolation("Judge signup deadline must not precede the reveal deadline")

            terms = RequestTerms(
                requester=caller,
                query=query,
                specification=specification,
                capabilities=dict(capabilities or {}),
                reward_amount=reward_amount,
                reward_lane=reward_lane,
                bond_amount=bond_amount,
                bond_lane=bond_lane,
                judge_bond_amount=judge_bond_amount,
                slots=slots,
                commit_deadline=commit_deadline,
                reveal_window=reveal_window,
                judge_signup_deadline=judge_signup_deadline,
                judge_window=judge_window,
                judge_reward_bps=judge_reward_bps,
            )
            request = self.store.create(terms, now)
            self._pull(request, reward_lane, caller, reward_amount, value, LEG_REWARD)
            request.reward_held = reward_amount
            self._save(request)
            logger.info("request %d created by %s: reward %d %s, %d slots",
                        request.id, caller, reward_amount, reward_lane, slots)
            self._emit("request_created", request, requester=caller, reward=str(reward_amount))
            return request.id

    # --- Agents ---

    def commit(self, request_id: int, caller: str, commitment: str, value: int = 0) -> Phase:
        """Take an agent slot with a sealed answer and pull the agent bond."""
        with self._call():
            request = self._load(request_id)
            if caller in self.store.get_pool(request_id):
                raise AuthorizationViolation("Registered judges cannot commit as agents")
            self._require_phase(request, Phase.COMMIT)
            now = self.clock.now()
            if now >= request.terms.commit_deadline:
                raise TimingViolation("Commit deadline has passed")
            if request.commit_count >= request.terms.slots:
                raise CapacityViolation("All agent slots are taken")
            if request.has_committed(caller):
                raise DuplicateAction("Already committed")
            try:
                commitment = normalize_commitment(commitment)
            except ValueError as e:
                raise IntegrityViolation(f"Malformed commitment: {e}") from e

            self._pull(request, request.terms.bond_lane, caller, request.terms.bond_amount, value, LEG_AGENT_BOND)
            request.commits.append(Commit(caller, commitment, now))
            request.bonds_held[caller] = request.bonds_held.get(caller, 0) + request.terms.bond_amount
            self._emit("committed", request, agent=caller, slot=request.commit_count)
            if request.commit_count == request.terms.slots:
                self._advance(request, Phase.REVEAL)
            self._save(request)
            return request.phase

    def reveal(self, request_id: int, caller: str, answer: str, nonce: bytes | str) -> Phase:
        """Open a commitment. ``nonce`` is raw bytes or hex."""
        with self._call():
            request = self._load(request_id)
            now = self.clock.now()
            self._observe_deadlines(request, now)
            self._require_phase(request, Phase.REVEAL)
            commitment = request.commitment_of(caller)
            if commitment is None:
                raise NotCommitted("Caller has not committed to this request")
            if caller in request.reveals:
                raise DuplicateAction("Already revealed")
            if now > request.reveal_deadline:
                raise TimingViolation("Reveal deadline has passed")
            if isinstance(nonce, str):
                try:
                    nonce = bytes.fromhex(nonce)
                except ValueError as e:
                    raise IntegrityViolation("Nonce is not valid hex") from e
            if not commitment_matches(commitment, answer, nonce):
                raise IntegrityViolation("Answer and nonce do not match the commitment")

            request.reveals[caller] = answer
            self._emit("revealed", request, agent=caller)
            if request.reveal_count == request.commit_count:
                self._advance(request, Phase.AWAITING_JUDGE)
                self._emit("reveals_closed", request, revealed=request.reveal_count)
            self._save(request)
            return request.phase

    def close_reveals(self, request_id: int, caller: str | None = None) -> Phase:
        """Move reveal -> awaiting_judge once everyone revealed or the reveal window is over."""
        with self._call():
            request = self._load(request_id)
            now = self.clock.now()
            self._observe_deadlines(request, now)
            self._require_phase(request, Phase.REVEAL)
            if request.reveal_count < request.commit_count and now <= request.reveal_deadline:
                raise TimingViolation("Reveal window still open and reveals outstanding")
            self._advance(request, Phase.AWAITING_JUDGE)
            self._emit("reveals_closed", request, revealed=request.reveal_count, by=caller)
            self._save(request)
            return request.phase

    # --- Judges ---

    def _check_pool_open(self, request: Request):
        self._require_phase(request, Phase.AWAITING_JUDGE)
        if request.judge is not None:
            raise PhaseViolation("A judge has already been selected")
        if self.clock.now() >= request.terms.judge_signup_deadline:
            raise TimingViolation("Judge signup deadline has passed")

    def register_judge(self, request_id: int, caller: str) -> int:
        """Join the judge pool. Returns the pool size."""
        with self._call():
            request = self._load(request_id)
            self._check_pool_open(request)
            if request.has_committed(caller):
                raise AuthorizationViolation("Committed agents cannot judge their own request")
            pool = self.store.get_pool(request_id)
            if not pool.add(caller):
                raise DuplicateAction("Already registered as judge")
            self.store.save_pool(request_id, pool)
            self._emit("judge_registered", request, judge=caller)
            return len(pool)

    def unregister_judge(self, request_id: int, caller: str) -> int:
        """Leave the judge pool. Unknown callers are a no-op. Returns the pool size."""
        with self._call():
            request = self._load(request_id)
            self._check_pool_open(request)
            pool = self.store.get_pool(request_id)
            if pool.remove(caller):
                self.store.save_pool(request_id, pool)
                self._emit("judge_unregistered", request, judge=caller)
            return len(pool)

    def select_judge(self, request_id: int, caller: str | None = None) -> str:
        """Sample the judge from the pool and open the aggregation window."""
        with self._call():
            request = self._load(request_id)
            self._check_pool_open(request)
            pool = self.store.get_pool(request_id)
            if not len(pool):
                raise EmptyJudgePool("No judges registered")
            judge = select_judge(pool, self.clock.recent_block_hash(), request)
            request.judge = judge
            request.judge_bond_posted = False
            request.judge_bond_held = 0
            request.judge_deadline = self.clock.now() + request.terms.judge_window
            self._advance(request, Phase.JUDGING)
            self._emit("judge_selected", request, judge=judge, pool_size=len(pool),
                       judge_deadline=request.judge_deadline)
            self._save(request)
            return judge

    def post_judge_bond(self, request_id: int, caller: str, value: int = 0):
        with self._call():
            request = self._load(request_id)
            self._require_phase(request, Phase.JUDGING)
            if caller != request.judge:
                raise AuthorizationViolation("Only the selected judge can post the judge bond")
            if request.judge_bond_posted:
                raise DuplicateAction("Judge bond already posted")
            amount = request.terms.judge_bond_amount
            self._pull(request, request.terms.bond_lane, caller, amount, value, LEG_JUDGE)
            request.judge_bond_posted = True
            request.judge_bond_held = amount
            self._emit("judge_bond_posted", request, judge=caller, amount=str(amount))
            self._save(request)

    def aggregate(self, request_id: int, caller: str, final_answer: str,
                  reasoning: str = "", winners: Iterable[str] = ()) -> Phase:
        """Judge posts the final answer and winners.

        Without quorum (no commits, or at most half revealed) the request fails
        and every held amount is refunded; this returns normally with Phase.FAILED.
        """
        winners = list(winners)
        with self._call():
            request = self._load(request_id)
            self._require_phase(request, Phase.JUDGING)
            if request.finalized:
                raise DuplicateAction("Already finalized")
            if caller != request.judge:
                raise AuthorizationViolation("Only the selected judge can aggregate")
            if not request.judge_bond_posted:
                raise AuthorizationViolation("Judge bond must be posted before aggregating")

            committed, revealed = request.commit_count, request.reveal_count
            if committed == 0 or 2 * revealed <= committed:
                logger.info("request %d: no quorum (%d of %d revealed)", request.id, revealed, committed)
                self._fail(request, FAIL_NO_QUORUM)
                self._settle(request, plan_full_refund(request, FAIL_NO_QUORUM))
                return request.phase

            if len(set(winners)) != len(winners):
                raise IntegrityViolation("Winners must be distinct")
            for winner in winners:
                if winner not in request.reveals:
                    raise IntegrityViolation(f"Winner {winner} did not reveal an answer")

            request.winners = winners
            request.final_answer = final_answer
            request.reasoning = reasoning
            request.finalized = True
            self._advance(request, Phase.FINALIZED)
            self._emit("finalized", request, final_answer=final_answer, winners=winners)
            self._save(request)
            return request.phase

    # --- Timeouts and refunds ---

    def timeout_judge(self, request_id: int, caller: str | None = None) -> dict:
        """Unwind a request whose judge let the aggregation window lapse."""
        with self._call():
            request = self._load(request_id)
            self._require_phase(request, Phase.JUDGING)
            if request.finalized:
                raise DuplicateAction("Already finalized")
            if self.clock.now() <= request.judge_deadline:
                raise TimingViolation("Judge aggregation window has not elapsed")
            plan = plan_judge_timeout(request)
            self._fail(request, FAIL_JUDGE_TIMEOUT)
            return self._settle(request, plan).to_dict()

    def refund_if_no_judge(self, request_id: int, caller: str | None = None) -> dict:
        """Unwind a request nobody judged before the signup deadline."""
        with self._call():
            request = self._load(request_id)
            self._require_phase(request, Phase.AWAITING_JUDGE)
            if request.judge is not None:
                raise PhaseViolation("A judge has already been selected")
            if self.clock.now() < request.terms.judge_signup_deadline:
                raise TimingViolation("Judge signup deadline has not passed")
            plan = plan_refund(request, FAIL_NO_JUDGE)
            self._fail(request, FAIL_NO_JUDGE)
            return self._settle(request, plan).to_dict()

    # --- Distribution ---

    def distribute_rewards(self, request_id: int, caller: str | None = None) -> dict:
        """Pay out a finalized request.

        An empty winner set fails the request and refunds everyone in full,
        judge bond included.
        """
        with self._call():
            request = self._load(request_id)
            if request.distributed:
                raise DuplicateAction("Rewards already distributed")
            self._require_phase(request, Phase.FINALIZED)

            if not request.winners:
                plan = plan_full_refund(request, FAIL_NO_WINNERS)
                request.finalized = False
                self._fail(request, FAIL_NO_WINNERS)
                return self._settle(request, plan).to_dict()

            plan = plan_distribution(request, self.combine_same_lane)
            request.distributed = True
            self._advance(request, Phase.DISTRIBUTED)
            self._emit("distributed", request, totals={k: str(v) for k, v in plan.totals().items()})
            return self._settle(request, plan).to_dict()

    # --- Disputes (stub) ---

    def open_dispute(self, request_id: int, caller: str, reason: str) -> int:
        """Record a dispute against a finalized answer. No arbitration; does not block payout."""
        with self._call():
            request = self._load(request_id)
            self._require_phase(request, Phase.FINALIZED)
            if caller != request.terms.requester and not request.has_committed(caller):
                raise AuthorizationViolation("Only the requester or a committed agent can dispute")
            if any(d["by"] == caller for d in request.disputes):
                raise DuplicateAction("Already disputed")
            request.disputes.append({"by": caller, "reason": reason, "at": self.clock.now()})
            if self._dispute_hook:
                self._dispute_hook(request, caller, reason)
            self._emit("dispute_opened", request, by=caller)
            self._save(request)
            return len(request.disputes)

    # --- Read-only accessors ---

    def get_request(self, request_id: int) -> dict:
        with self._lock:
            return self._load(request_id).to_dict()

    def get_terms(self, request_id: int) -> RequestTerms:
        with self._lock:
            return self._load(request_id).terms

    def get_commits(self, request_id: int) -> list[dict]:
        with self._lock:
            return [c.to_dict() for c in self._load(request_id).commits]

    def get_reveals(self, request_id: int) -> list[dict]:
        with self._lock:
            request = self._load(request_id)
            return [{"agent": a, "answer": ans} for a, ans in request.reveals.items()]

    def get_resolution(self, request_id: int) -> dict:
        with self._lock:
            request = self._load(request_id)
            return {
                "phase": request.phase.value,
                "final_answer": request.final_answer,
                "reasoning": request.reasoning,
                "finalized": request.finalized,
                "distributed": request.distributed,
                "winners": list(request.winners),
                "failure_reason": request.failure_reason,
            }

    def is_judge(self, request_id: int, account: str) -> bool:
        with self._lock:
            self._load(request_id)
            return account in self.store.get_pool(request_id)

    def judge_count(self, request_id: int) -> int:
        with self._lock:
            self._load(request_id)
            return len(self.store.get_pool(request_id))

    def list_judges(self, request_id: int) -> list[str]:
        with self._lock:
            self._load(request_id)
            return self.store.get_pool(request_id).members()

    def get_parameters(self, request_id: int) -> dict:
        with self._lock:
            request = self._load(request_id)
            terms = request.terms
            return {
                "bond_amount": str(terms.bond_amount),
                "judge_bond_amount": str(terms.judge_bond_amount),
                "reward_amount": str(terms.reward_amount),
                "reward_lane": str(terms.reward_lane),
                "bond_lane": str(terms.bond_lane),
                "slots": terms.slots,
                "commit_deadline": terms.commit_deadline,
                "reveal_window": terms.reveal_window,
                "reveal_deadline": request.reveal_deadline,
                "judge_signup_deadline": terms.judge_signup_deadline,
                "judge_window": terms.judge_window,
                "judge_deadline": request.judge_deadline,
                "judge_reward_bps": terms.judge_reward_bps,
            }

    def list_requests(self, phase: Phase | None = None, limit: int = 50) -> list[dict]:
        with self._lock:
            return [r.to_dict() for r in self.store.list_by_phase(phase, limit)]

    def custody_held(self, request_id: int) -> dict[str, int]:
        with self._lock:
            return self._load(request_id).custody_held()
