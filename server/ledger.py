"""Request ledger records.

A Request is created once and mutated through its lifecycle; nothing is ever
deleted. ``to_dict``/``from_dict`` round-trip through the SQLite store.
"""

from dataclasses import dataclass, field

from protocol import Phase
from server.custody import Lane


@dataclass(frozen=True)
class RequestTerms:
    """Static terms, immutable after creation."""
    requester: str
    query: str
    specification: str
    reward_amount: int
    reward_lane: Lane
    bond_amount: int
    bond_lane: Lane
    judge_bond_amount: int
    slots: int
    commit_deadline: int
    reveal_window: int
    judge_signup_deadline: int
    judge_window: int
    judge_reward_bps: int
    capabilities: dict = field(default_factory=dict)

    @property
    def reveal_deadline(self) -> int:
        return self.commit_deadline + self.reveal_window

    def to_dict(self) -> dict:
        return {
            "requester": self.requester,
            "query": self.query,
            "specification": self.specification,
            "capabilities": self.capabilities,
            "reward_amount": str(self.reward_amount),
            "reward_lane": str(self.reward_lane),
            "bond_amount": str(self.bond_amount),
            "bond_lane": str(self.bond_lane),
            "judge_bond_amount": str(self.judge_bond_amount),
            "slots": self.slots,
            "commit_deadline": self.commit_deadline,
            "reveal_window": self.reveal_window,
            "judge_signup_deadline": self.judge_signup_deadline,
            "judge_window": self.judge_window,
            "judge_reward_bps": self.judge_reward_bps,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "RequestTerms":
        return cls(
            requester=d["requester"],
            query=d["query"],
            specification=d["specification"],
            capabilities=d.get("capabilities", {}),
            reward_amount=int(d["reward_amount"]),
            reward_lane=Lane.parse(d["reward_lane"]),
            bond_amount=int(d["bond_amount"]),
            bond_lane=Lane.parse(d["bond_lane"]),
            judge_bond_amount=int(d["judge_bond_amount"]),
            slots=d["slots"],
            commit_deadline=d["commit_deadline"],
            reveal_window=d["reveal_window"],
            judge_signup_deadline=d["judge_signup_deadline"],
            judge_window=d["judge_window"],
            judge_reward_bps=d["judge_reward_bps"],
        )


@dataclass
class Commit:
    agent: str
    commitment: str
    committed_at: int = 0

    def to_dict(self) -> dict:
        return {"agent": self.agent, "commitment": self.commitment, "committed_at": self.committed_at}


@dataclass
class Request:
    """Durable per-request record: the state the lifecycle engine operates on."""
    id: int
    terms: RequestTerms
    phase: Phase = Phase.COMMIT
    reveal_deadline: int = 0
    judge_deadline: int | None = None
    commits: list[Commit] = field(default_factory=list)
    reveals: dict[str, str] = field(default_factory=dict)  # agent -> answer, in reveal order
    judge: str | None = None
    judge_bond_posted: bool = False
    judge_bond_held: int = 0
    reward_held: int = 0
    bonds_held: dict[str, int] = field(default_factory=dict)  # agent -> escrowed bond
    final_answer: str = ""
    reasoning: str = ""
    finalized: bool = False
    distributed: bool = False
    winners: list[str] = field(default_factory=list)
    failure_reason: str | None = None
    history: list[dict] = field(default_factory=list)
    disputes: list[dict] = field(default_factory=list)
    pulled: dict[str, int] = field(default_factory=dict)  # lane -> total pulled in
    pushed: dict[str, int] = field(default_factory=dict)  # lane -> total pushed out
    created_at: int = 0

    @classmethod
    def open(cls, request_id: int, terms: RequestTerms, now: int) -> "Request":
        return cls(
            id=request_id,
            terms=terms,
            reveal_deadline=terms.reveal_deadline,
            history=[{"phase": Phase.COMMIT.value, "at": now}],
            created_at=now,
        )

    @property
    def commit_count(self) -> int:
        return len(self.commits)

    @property
    def reveal_count(self) -> int:
        return len(self.reveals)

    def has_committed(self, agent: str) -> bool:
        return any(c.agent == agent for c in self.commits)

    def commitment_of(self, agent: str) -> str | None:
        for c in self.commits:
            if c.agent == agent:
                return c.commitment
        return None

    def committed_agents(self) -> list[str]:
        return [c.agent for c in self.commits]

    def custody_held(self) -> dict[str, int]:
        """Amounts this request currently has in custody, per lane."""
        held: dict[str, int] = {}
        reward_lane = str(self.terms.reward_lane)
        bond_lane = str(self.terms.bond_lane)
        held[reward_lane] = held.get(reward_lane, 0) + self.reward_held
        held[bond_lane] = held.get(bond_lane, 0) + sum(self.bonds_held.values()) + self.judge_bond_held
        return held

    def record_pull(self, lane: Lane, amount: int):
        key = str(lane)
        self.pulled[key] = self.pulled.get(key, 0) + amount

    def record_push(self, lane: Lane, amount: int):
        key = str(lane)
        self.pushed[key] = self.pushed.get(key, 0) + amount

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "terms": self.terms.to_dict(),
            "phase": self.phase.value,
            "reveal_deadline": self.reveal_deadline,
            "judge_deadline": self.judge_deadline,
            "commits": [c.to_dict() for c in self.commits],
            "reveals": [{"agent": a, "answer": ans} for a, ans in self.reveals.items()],
            "judge": self.judge,
            "judge_bond_posted": self.judge_bond_posted,
            "judge_bond_held": str(self.judge_bond_held),
            "reward_held": str(self.reward_held),
            "bonds_held": {a: str(v) for a, v in self.bonds_held.items()},
            "final_answer": self.final_answer,
            "reasoning": self.reasoning,
            "finalized": self.finalized,
            "distributed": self.distributed,
            "winners": list(self.winners),
            "failure_reason": self.failure_reason,
            "history": list(self.history),
            "disputes": list(self.disputes),
            "pulled": {k: str(v) for k, v in self.pulled.items()},
            "pushed": {k: str(v) for k, v in self.pushed.items()},
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Request":
        return cls(
            id=d["id"],
            terms=RequestTerms.from_dict(d["terms"]),
            phase=Phase(d["phase"]),
            reveal_deadline=d["reveal_deadline"],
            judge_deadline=d.get("judge_deadline"),
            commits=[Commit(**c) for c in d.get("commits", [])],
            reveals={r["agent"]: r["answer"] for r in d.get("reveals", [])},
            judge=d.get("judge"),
            judge_bond_posted=d.get("judge_bond_posted", False),
            judge_bond_held=int(d.get("judge_bond_held", "0")),
            reward_held=int(d.get("reward_held", "0")),
            bonds_held={a: int(v) for a, v in d.get("bonds_held", {}).items()},
            final_answer=d.get("final_answer", ""),
            reasoning=d.get("reasoning", ""),
            finalized=d.get("finalized", False),
            distributed=d.get("distributed", False),
            winners=list(d.get("winners", [])),
            failure_reason=d.get("failure_reason"),
            history=list(d.get("history", [])),
            disputes=list(d.get("disputes", [])),
            pulled={k: int(v) for k, v in d.get("pulled", {}).items()},
            pushed={k: int(v) for k, v in d.get("pushed", {}).items()},
            created_at=d.get("created_at", 0),
        )
