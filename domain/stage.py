"""
Domain: Stage Registry and Transition Validator.

Contract excerpts implemented here:
- The set of deal stages is closed; each stage has display metadata and a
  declared `order`.
- Legal moves are exactly the declared allowed-successor sets. `completed` is
  terminal; `declined` is terminal except for the single reopen path back to
  `submitted`.
- The actions offered at a stage depend on the acting role, which is always
  passed explicitly (no ambient session state).

Everything in this module is immutable and computed once at import time.
Every lookup table is checked for completeness against `DealStage`, so adding
a stage without registering it fails on import rather than at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, List, Mapping, Optional, Tuple


class DealStage(str, Enum):
    SUBMITTED = "submitted"
    QUOTE_REQUEST_RECEIVED = "quote_request_received"
    QUOTE_SENT = "quote_sent"
    QUOTE_APPROVED = "quote_approved"
    SIGNUP_SUBMITTED = "signup_submitted"
    AGREEMENT_SENT = "agreement_sent"
    SIGNED_AWAITING_DOCS = "signed_awaiting_docs"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    LIVE_CONFIRM_LTR = "live_confirm_ltr"
    INVOICE_RECEIVED = "invoice_received"
    COMPLETED = "completed"
    DECLINED = "declined"


class Role(str, Enum):
    PARTNER = "partner"
    ADMIN = "admin"


class ActionVariant(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    WARNING = "warning"
    DANGER = "danger"


@dataclass(frozen=True, slots=True)
class StageInfo:
    """Display metadata for a single stage."""

    stage: DealStage
    admin_label: str
    partner_label: str
    short_label: str
    description: str
    color: str
    order: int


@dataclass(frozen=True, slots=True)
class StageAction:
    """A call-to-action offered to a role at a stage."""

    label: str
    action: str
    variant: ActionVariant = ActionVariant.PRIMARY


def _info(
    stage: DealStage,
    admin_label: str,
    partner_label: str,
    short_label: str,
    description: str,
    color: str,
    order: int,
) -> Tuple[DealStage, StageInfo]:
    return stage, StageInfo(stage, admin_label, partner_label, short_label, description, color, order)


STAGE_REGISTRY: Mapping[DealStage, StageInfo] = MappingProxyType(dict([
    _info(DealStage.SUBMITTED, "Submitted", "Submitted", "Submitted",
          "New deal submitted", "blue", 0),
    _info(DealStage.QUOTE_REQUEST_RECEIVED, "Quote Requests", "Quote Requested", "Requested",
          "New submissions requiring review", "cyan", 1),
    _info(DealStage.QUOTE_SENT, "Sent Quotes", "Quote Received", "Received",
          "Quotes sent to clients", "purple", 2),
    _info(DealStage.QUOTE_APPROVED, "Quote Approved - Awaiting Signup", "Approved - Awaiting Signup",
          "Approved", "Client ready to proceed", "green", 3),
    _info(DealStage.SIGNUP_SUBMITTED, "Signup Submitted", "Application Submitted", "Applied",
          "Signup form completed by partner", "lime", 4),
    _info(DealStage.AGREEMENT_SENT, "Agreement Sent", "Application Sent to Client", "Agreement",
          "Contract sent to client", "yellow", 5),
    _info(DealStage.SIGNED_AWAITING_DOCS, "Signed - Awaiting Documents", "Signed - Awaiting Documents",
          "Documents", "Contract signed, waiting for docs", "orange", 6),
    _info(DealStage.UNDER_REVIEW, "Under Review", "Under Review by Provider", "Review",
          "Application under provider review", "amber", 7),
    _info(DealStage.APPROVED, "Approved", "Approved (Terminals on the way)", "Approved",
          "Provider approved, terminals dispatched", "teal", 8),
    _info(DealStage.LIVE_CONFIRM_LTR, "Live - Confirm LTR", "Live", "Live",
          "Deal is live, confirm long-term relationship", "indigo", 9),
    _info(DealStage.INVOICE_RECEIVED, "Invoice Received - Awaiting Payment", "Awaiting Payment", "Payment",
          "Partner invoice submitted", "pink", 10),
    _info(DealStage.COMPLETED, "Complete", "Completed", "Complete",
          "Fully closed deals", "emerald", 11),
    _info(DealStage.DECLINED, "Declined", "Declined", "Declined",
          "Deals that did not proceed", "gray", 12),
]))


_D = DealStage

ALLOWED_TRANSITIONS: Mapping[DealStage, FrozenSet[DealStage]] = MappingProxyType({
    _D.SUBMITTED: frozenset({_D.QUOTE_REQUEST_RECEIVED, _D.DECLINED}),
    _D.QUOTE_REQUEST_RECEIVED: frozenset({_D.QUOTE_SENT, _D.DECLINED}),
    _D.QUOTE_SENT: frozenset({_D.QUOTE_APPROVED, _D.DECLINED}),
    _D.QUOTE_APPROVED: frozenset({_D.SIGNUP_SUBMITTED, _D.DECLINED}),
    _D.SIGNUP_SUBMITTED: frozenset({_D.AGREEMENT_SENT, _D.DECLINED}),
    _D.AGREEMENT_SENT: frozenset({_D.SIGNED_AWAITING_DOCS, _D.DECLINED}),
    _D.SIGNED_AWAITING_DOCS: frozenset({_D.UNDER_REVIEW, _D.DECLINED}),
    _D.UNDER_REVIEW: frozenset({_D.APPROVED, _D.DECLINED}),
    _D.APPROVED: frozenset({_D.LIVE_CONFIRM_LTR, _D.DECLINED}),
    _D.LIVE_CONFIRM_LTR: frozenset({_D.INVOICE_RECEIVED, _D.COMPLETED, _D.DECLINED}),
    _D.INVOICE_RECEIVED: frozenset({_D.COMPLETED, _D.DECLINED}),
    _D.COMPLETED: frozenset(),
    _D.DECLINED: frozenset({_D.SUBMITTED}),
})

# Entering one of these stages triggers commission attribution.
QUALIFYING_STAGES: FrozenSet[DealStage] = frozenset({_D.LIVE_CONFIRM_LTR, _D.COMPLETED})

TERMINAL_STAGES: FrozenSet[DealStage] = frozenset({_D.COMPLETED, _D.DECLINED})


_P = Role.PARTNER
_A = Role.ADMIN

_ACTIONS: dict[DealStage, dict[Role, Tuple[StageAction, ...]]] = {
    _D.SUBMITTED: {
        _A: (StageAction("Create Quote", "create_quote"),),
    },
    _D.QUOTE_REQUEST_RECEIVED: {
        _A: (StageAction("Generate Quote", "generate_quote"),),
    },
    _D.QUOTE_SENT: {
        _P: (
            StageAction("Approve Quote", "approve_quote"),
            StageAction("Request Lower Rates", "request_rates", ActionVariant.WARNING),
        ),
        _A: (StageAction("Resend Quote", "resend_quote", ActionVariant.SECONDARY),),
    },
    _D.QUOTE_APPROVED: {
        _P: (StageAction("Complete Sign Up", "complete_signup"),),
        _A: (StageAction("Awaiting Signup", "view_details", ActionVariant.SECONDARY),),
    },
    _D.SIGNUP_SUBMITTED: {
        _A: (StageAction("Send Agreement", "send_agreement"),),
    },
    _D.AGREEMENT_SENT: {
        _A: (StageAction("Mark Signed", "mark_signed"),),
    },
    _D.SIGNED_AWAITING_DOCS: {
        _P: (StageAction("Upload Documents", "upload_docs"),),
        _A: (StageAction("Move to Review", "move_to_review"),),
    },
    _D.UNDER_REVIEW: {
        _A: (StageAction("Approve Application", "approve_application"),),
    },
    _D.APPROVED: {
        _A: (StageAction("Confirm Live", "confirm_live"),),
    },
    _D.LIVE_CONFIRM_LTR: {
        _A: (
            StageAction("Record Invoice", "record_invoice"),
            StageAction("Mark Complete", "mark_complete", ActionVariant.SECONDARY),
        ),
    },
    _D.INVOICE_RECEIVED: {
        _A: (StageAction("Confirm Payment", "confirm_payment"),),
    },
    _D.COMPLETED: {},
    _D.DECLINED: {
        _A: (StageAction("Reopen Deal", "reopen", ActionVariant.SECONDARY),),
    },
}

STAGE_ACTIONS: Mapping[DealStage, Mapping[Role, Tuple[StageAction, ...]]] = MappingProxyType(
    {stage: MappingProxyType(by_role) for stage, by_role in _ACTIONS.items()}
)


# ---------------------------------------------------------------------------
# Partner progress (simplified view shown to partners)
# ---------------------------------------------------------------------------

class PartnerProgressStep(str, Enum):
    SUBMITTED = "submitted"
    QUOTE_RECEIVED = "quote_received"
    APPLICATION_SUBMITTED = "application_submitted"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    LIVE = "live"
    COMPLETE = "complete"
    DECLINED = "declined"


PARTNER_PROGRESS_LABELS: Mapping[PartnerProgressStep, str] = MappingProxyType({
    PartnerProgressStep.SUBMITTED: "Submitted",
    PartnerProgressStep.QUOTE_RECEIVED: "Quote Received",
    PartnerProgressStep.APPLICATION_SUBMITTED: "Application Submitted",
    PartnerProgressStep.IN_PROGRESS: "In Progress",
    PartnerProgressStep.APPROVED: "Approved",
    PartnerProgressStep.LIVE: "Live",
    PartnerProgressStep.COMPLETE: "Complete",
    PartnerProgressStep.DECLINED: "Declined",
})

_PROGRESS_BY_STAGE: Mapping[DealStage, PartnerProgressStep] = MappingProxyType({
    _D.SUBMITTED: PartnerProgressStep.SUBMITTED,
    _D.QUOTE_REQUEST_RECEIVED: PartnerProgressStep.SUBMITTED,
    _D.QUOTE_SENT: PartnerProgressStep.QUOTE_RECEIVED,
    _D.QUOTE_APPROVED: PartnerProgressStep.QUOTE_RECEIVED,
    _D.SIGNUP_SUBMITTED: PartnerProgressStep.APPLICATION_SUBMITTED,
    _D.AGREEMENT_SENT: PartnerProgressStep.IN_PROGRESS,
    _D.SIGNED_AWAITING_DOCS: PartnerProgressStep.IN_PROGRESS,
    _D.UNDER_REVIEW: PartnerProgressStep.IN_PROGRESS,
    _D.APPROVED: PartnerProgressStep.APPROVED,
    _D.LIVE_CONFIRM_LTR: PartnerProgressStep.LIVE,
    _D.INVOICE_RECEIVED: PartnerProgressStep.COMPLETE,
    _D.COMPLETED: PartnerProgressStep.COMPLETE,
    _D.DECLINED: PartnerProgressStep.DECLINED,
})


def _check_complete(name: str, table: Mapping[DealStage, object]) -> None:
    missing = set(DealStage) - set(table)
    if missing:
        raise RuntimeError(
            f"{name} is missing stages: {sorted(s.value for s in missing)}"
        )


for _name, _table in (
    ("STAGE_REGISTRY", STAGE_REGISTRY),
    ("ALLOWED_TRANSITIONS", ALLOWED_TRANSITIONS),
    ("STAGE_ACTIONS", STAGE_ACTIONS),
    ("_PROGRESS_BY_STAGE", _PROGRESS_BY_STAGE),
):
    _check_complete(_name, _table)


# ---------------------------------------------------------------------------
# Pure lookups
# ---------------------------------------------------------------------------

def is_valid_transition(from_stage: DealStage, to_stage: DealStage) -> bool:
    """True only if `to_stage` is in the declared successor set of `from_stage`."""

    return to_stage in ALLOWED_TRANSITIONS[DealStage(from_stage)]


def next_stages(stage: DealStage) -> List[DealStage]:
    """Allowed successors of `stage`, in registry order."""

    return sorted(ALLOWED_TRANSITIONS[DealStage(stage)], key=lambda s: STAGE_REGISTRY[s].order)


def is_terminal(stage: DealStage) -> bool:
    return DealStage(stage) in TERMINAL_STAGES


def is_qualifying(stage: DealStage) -> bool:
    return DealStage(stage) in QUALIFYING_STAGES


def actions_for(stage: DealStage, role: Role) -> List[StageAction]:
    """Role-specific actions available at `stage`. Pure lookup."""

    return list(STAGE_ACTIONS[DealStage(stage)].get(Role(role), ()))


def stage_label(stage: DealStage, role: Role) -> str:
    info = STAGE_REGISTRY[DealStage(stage)]
    return info.admin_label if Role(role) is Role.ADMIN else info.partner_label


def stages_for(role: Role) -> List[StageInfo]:
    """
    Stage catalogue visible to a role, sorted by declared order.

    Partners never see `invoice_received`; it is an internal admin step.
    """

    hidden = {DealStage.INVOICE_RECEIVED} if Role(role) is Role.PARTNER else set()
    return sorted(
        (info for stage, info in STAGE_REGISTRY.items() if stage not in hidden),
        key=lambda info: info.order,
    )


def partner_progress(stage: DealStage, signup_completed_at: Optional[datetime] = None) -> PartnerProgressStep:
    """
    Map a deal stage to the simplified partner progress step.

    `signup_completed_at` marks a sub-milestone inside the quote-approved /
    signup-submitted window: once the signup is completed, a deal still in
    `quote_approved` is already shown as "Application Submitted".
    Display only; it never affects transitions or commissions.
    """

    stage = DealStage(stage)
    if stage is DealStage.QUOTE_APPROVED and signup_completed_at is not None:
        return PartnerProgressStep.APPLICATION_SUBMITTED
    return _PROGRESS_BY_STAGE[stage]


__all__ = [
    "DealStage",
    "Role",
    "ActionVariant",
    "StageInfo",
    "StageAction",
    "PartnerProgressStep",
    "STAGE_REGISTRY",
    "ALLOWED_TRANSITIONS",
    "QUALIFYING_STAGES",
    "TERMINAL_STAGES",
    "STAGE_ACTIONS",
    "PARTNER_PROGRESS_LABELS",
    "is_valid_transition",
    "next_stages",
    "is_terminal",
    "is_qualifying",
    "actions_for",
    "stage_label",
    "stages_for",
    "partner_progress",
]
