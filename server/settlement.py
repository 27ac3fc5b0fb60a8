"""Settlement engine for the oracle.

Planning is pure: each ``plan_*`` function turns a request into a list of
payments that moves out exactly what the request holds in custody, with
every integer-division remainder swept to the requester. ``execute`` then
pushes the legs through the custody backend.

Payout schedule on a successful distribution:
  - winners get their bond back, losers' bonds form the slashed pool
  - judge takes floor(reward * bps / 10000) from the reward lane
  - winners split the rest of the reward and the slashed pool
  - a posted judge bond is refunded
"""

import logging
from dataclasses import dataclass, field

from protocol import BPS_DENOMINATOR, LEG_AGENT_BOND, LEG_JUDGE, LEG_REWARD
from server.custody import Lane, TransferAdapter, TransferRejected
from server.errors import TRANSFER_ERRORS
from server.ledger import Request

logger = logging.getLogger("oracle.settlement")


@dataclass
class Payment:
    leg: str  # LEG_REWARD, LEG_AGENT_BOND or LEG_JUDGE
    lane: Lane
    payee: str
    amount: int
    label: str

    def to_dict(self) -> dict:
        return {
            "leg": self.leg,
            "lane": str(self.lane),
            "payee": self.payee,
            "amount": str(self.amount),
            "label": self.label,
        }


@dataclass
class SettlementPlan:
    action: str
    payments: list[Payment] = field(default_factory=list)
    details: dict = field(default_factory=dict)

    def pay(self, leg: str, lane: Lane, payee: str, amount: int, label: str):
        if amount < 0:
            raise ValueError(f"negative payment {label}: {amount}")
        if amount:
            self.payments.append(Payment(leg, lane, payee, amount, label))

    def totals(self) -> dict[str, int]:
        """Total paid out per lane."""
        out: dict[str, int] = {}
        for p in self.payments:
            key = str(p.lane)
            out[key] = out.get(key, 0) + p.amount
        return out

    def paid_to(self, payee: str) -> dict[str, int]:
        out: dict[str, int] = {}
        for p in self.payments:
            if p.payee == payee:
                key = str(p.lane)
                out[key] = out.get(key, 0) + p.amount
        return out

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "payments": [p.to_dict() for p in self.payments],
            "totals": {k: str(v) for k, v in self.totals().items()},
            **self.details,
        }


def _refund_held(plan: SettlementPlan, request: Request):
    terms = request.terms
    plan.pay(LEG_REWARD, terms.reward_lane, terms.requester, request.reward_held, "reward_refund")
    for agent in request.committed_agents():
        plan.pay(LEG_AGENT_BOND, terms.bond_lane, agent, request.bonds_held.get(agent, 0), "bond_refund")


def plan_refund(request: Request, action: str = "refund") -> SettlementPlan:
    """Reward back to the requester, every held agent bond back to its agent."""
    plan = SettlementPlan(action)
    _refund_held(plan, request)
    return plan


def plan_full_refund(request: Request, action: str) -> SettlementPlan:
    """Refund everything, including a posted judge bond."""
    plan = plan_refund(request, action)
    if request.judge and request.judge_bond_posted:
        plan.pay(LEG_JUDGE, request.terms.bond_lane, request.judge,
                 request.judge_bond_held, "judge_bond_refund")
    return plan


def plan_judge_timeout(request: Request) -> SettlementPlan:
    """Refund reward and agent bonds; slash a posted judge bond.

    The slashed bond is split evenly among the requester and every revealed
    agent, remainder to the requester.
    """
    plan = plan_refund(request, "judge_timeout")
    slashed = request.judge_bond_held if request.judge_bond_posted else 0
    recipients = [request.terms.requester] + list(request.reveals)
    share, remainder = divmod(slashed, len(recipients))
    lane = request.terms.bond_lane
    for recipient in recipients:
        plan.pay(LEG_JUDGE, lane, recipient, share, "judge_bond_share")
    plan.pay(LEG_JUDGE, lane, request.terms.requester, remainder, "judge_bond_remainder")
    plan.details["judge_bond_slashed"] = str(slashed)
    plan.details["slash_recipients"] = len(recipients)
    return plan


def plan_distribution(request: Request, combine_same_lane: bool = False) -> SettlementPlan:
    """Plan the payout for a finalized request with a non-empty winner set."""
    if not request.winners:
        raise ValueError("plan_distribution needs at least one winner")
    terms = request.terms
    plan = SettlementPlan("distribute")
    winners = set(request.winners)

    slashed_pool = 0
    for agent in request.committed_agents():
        held = request.bonds_held.get(agent, 0)
        if not held:
            continue
        if agent in winners:
            plan.pay(LEG_AGENT_BOND, terms.bond_lane, agent, held, "bond_refund")
        else:
            slashed_pool += held

    reward = request.reward_held
    judge_cut = reward * terms.judge_reward_bps // BPS_DENOMINATOR
    plan.pay(LEG_JUDGE, terms.reward_lane, request.judge, judge_cut, "judge_cut")
    remaining = reward - judge_cut

    count = len(request.winners)
    combined = combine_same_lane and terms.reward_lane == terms.bond_lane
    if combined:
        share, remainder = divmod(remaining + slashed_pool, count)
        for winner in request.winners:
            plan.pay(LEG_REWARD, terms.reward_lane, winner, share, "reward_share")
        plan.pay(LEG_REWARD, terms.reward_lane, terms.requester, remainder, "reward_remainder")
        plan.details.update(reward_share=str(share), slashed_share="0")
    else:
        share, remainder = divmod(remaining, count)
        for winner in request.winners:
            plan.pay(LEG_REWARD, terms.reward_lane, winner, share, "reward_share")
        plan.pay(LEG_REWARD, terms.reward_lane, terms.requester, remainder, "reward_remainder")

        slashed_share, slashed_remainder = divmod(slashed_pool, count)
        for winner in request.winners:
            plan.pay(LEG_AGENT_BOND, terms.bond_lane, winner, slashed_share, "slashed_share")
        plan.pay(LEG_AGENT_BOND, terms.bond_lane, terms.requester, slashed_remainder, "slashed_remainder")
        plan.details.update(reward_share=str(share), slashed_share=str(slashed_share))

    if request.judge_bond_posted:
        plan.pay(LEG_JUDGE, terms.bond_lane, request.judge, request.judge_bond_held, "judge_bond_refund")

    plan.details.update(
        judge_cut=str(judge_cut),
        slashed_pool=str(slashed_pool),
        winners=list(request.winners),
        combined_pool=combined,
    )
    return plan


def settle_holdings(request: Request, plan: SettlementPlan):
    """Zero the request's custody holdings and book the plan's pushes.

    Raises RuntimeError if the plan would not move out exactly what is held.
    """
    held = {k: v for k, v in request.custody_held().items() if v}
    totals = plan.totals()
    if held != totals:
        raise RuntimeError(
            f"settlement for request {request.id} does not conserve value: "
            f"held={held} planned={totals}"
        )
    request.reward_held = 0
    request.judge_bond_held = 0
    for agent in request.bonds_held:
        request.bonds_held[agent] = 0
    for p in plan.payments:
        request.record_push(p.lane, p.amount)


def execute(plan: SettlementPlan, custody: TransferAdapter) -> int:
    """Push every leg. Raises the leg-specific TransferFailed on the first failure."""
    for p in plan.payments:
        try:
            custody.push(p.lane, p.payee, p.amount)
        except TransferRejected as e:
            logger.warning("%s push of %s %s to %s failed: %s",
                           p.leg, p.amount, p.lane, p.payee, e)
            raise TRANSFER_ERRORS[p.leg](
                f"{p.label} to {p.payee} failed: {e}", payee=p.payee, amount=p.amount,
            ) from e
    logger.info("%s: pushed %d payments %s", plan.action, len(plan.payments), plan.totals())
    return len(plan.payments)
