"""Typed errors for the oracle lifecycle.

Every guard failure raises exactly one of these. The HTTP layer maps
``status_code`` onto the response and ``kind`` into the JSON body.
"""

from protocol import LEG_AGENT_BOND, LEG_JUDGE, LEG_REWARD


class OracleError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.detail}


class NotFound(OracleError):
    kind = "not_found"
    status_code = 404


class PhaseViolation(OracleError):
    kind = "phase_violation"
    status_code = 409


class TimingViolation(OracleError):
    kind = "timing_violation"
    status_code = 409


class ValueMismatch(OracleError):
    kind = "value_mismatch"
    status_code = 400


class DuplicateAction(OracleError):
    kind = "duplicate_action"
    status_code = 409


class IntegrityViolation(OracleError):
    kind = "integrity_violation"
    status_code = 422


class AuthorizationViolation(OracleError):
    kind = "authorization_violation"
    status_code = 403


class NotCommitted(AuthorizationViolation):
    kind = "not_committed"


class CapacityViolation(OracleError):
    kind = "capacity_violation"
    status_code = 422


class EmptyJudgePool(CapacityViolation):
    kind = "empty_judge_pool"


class TransferFailed(OracleError):
    """A pull or push on the custody backend failed. ``leg`` names which."""
    kind = "transfer_failed"
    status_code = 502
    leg = ""

    def __init__(self, detail: str = "", payee: str = "", amount: int = 0):
        super().__init__(detail)
        self.payee = payee
        self.amount = amount

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.detail, "leg": self.leg, "account": self.payee}


class RewardTransferFailed(TransferFailed):
    kind = "reward_transfer_failed"
    leg = LEG_REWARD


class AgentBondTransferFailed(TransferFailed):
    kind = "agent_bond_transfer_failed"
    leg = LEG_AGENT_BOND


class JudgeTransferFailed(TransferFailed):
    kind = "judge_transfer_failed"
    leg = LEG_JUDGE


TRANSFER_ERRORS = {
    LEG_REWARD: RewardTransferFailed,
    LEG_AGENT_BOND: AgentBondTransferFailed,
    LEG_JUDGE: JudgeTransferFailed,
}
