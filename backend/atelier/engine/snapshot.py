# backend/atelier/engine/snapshot.py
"""
Listing snapshot and option selection schemas.

A snapshot is copied by value into every proposal and contract, so these
models are the frozen commercial terms the engine prices and enforces.
Selections are tagged variants keyed by `kind`.
"""
from typing import Annotated, List, Literal, Optional, Union, get_args

from pydantic import BaseModel, Field

from ..core.logging import get_logger
from .errors import ConsistencyViolation

logger = get_logger(__name__)

ChangeAspect = Literal["deadline", "description", "generalOptions", "subjectOptions", "referenceImages"]
CHANGEABLE_ASPECTS = get_args(ChangeAspect)


# =========================
# Option trees
# =========================
class PricedChoice(BaseModel):
    id: str
    label: str
    price: int = Field(0, ge=0)


class OptionGroup(BaseModel):
    id: str
    title: str
    selections: List[PricedChoice] = Field(default_factory=list)


class Addon(BaseModel):
    id: str
    label: str
    price: int = Field(0, ge=0)


class Question(BaseModel):
    id: str
    text: str


class OptionSet(BaseModel):
    option_groups: List[OptionGroup] = Field(default_factory=list)
    addons: List[Addon] = Field(default_factory=list)
    questions: List[Question] = Field(default_factory=list)


class SubjectDefinition(OptionSet):
    id: str
    title: str
    limit: int = Field(-1, ge=-1)  # -1 unbounded, 0 disallowed
    discount_percent: int = Field(0, ge=0, le=100)


# =========================
# Policies
# =========================
class RevisionPolicy(BaseModel):
    limit: bool = True
    free: int = Field(0, ge=0)
    extra_allowed: bool = False
    fee: int = Field(0, ge=0)


class RevisionRules(BaseModel):
    type: Literal["none", "standard", "milestone"] = "none"
    policy: Optional[RevisionPolicy] = None


class RushFee(BaseModel):
    kind: Literal["flat", "perDay"]
    amount: int = Field(..., ge=0)


class DeadlinePolicy(BaseModel):
    mode: Literal["standard", "withDeadline", "withRush"] = "standard"
    min_days: int = Field(1, ge=1)
    max_days: int = Field(30, ge=1)
    rush_fee: Optional[RushFee] = None


class CancellationFee(BaseModel):
    kind: Literal["flat", "percentage"] = "flat"
    amount: int = Field(0, ge=0)


class MilestoneTemplate(BaseModel):
    title: str
    percent: int = Field(..., ge=0, le=100)
    policy: Optional[RevisionPolicy] = None


class ListingSnapshot(BaseModel):
    base_price: int = Field(0, ge=0)
    currency: str = "IDR"
    flow: Literal["standard", "milestone"] = "standard"

    general_options: OptionSet = Field(default_factory=OptionSet)
    subjects: List[SubjectDefinition] = Field(default_factory=list)

    revisions: RevisionRules = Field(default_factory=RevisionRules)
    deadline: DeadlinePolicy = Field(default_factory=DeadlinePolicy)
    cancellation_fee: CancellationFee = Field(default_factory=CancellationFee)
    late_penalty_percent: int = Field(10, ge=0, le=100)
    grace_days: int = Field(7, ge=0)

    allow_contract_change: bool = True
    changeable: List[ChangeAspect] = Field(default_factory=list)

    milestones: List[MilestoneTemplate] = Field(default_factory=list)


# =========================
# Selections (tagged variants)
# =========================
class OptionGroupSelection(BaseModel):
    kind: Literal["optionGroup"] = "optionGroup"
    group_id: str
    selection_id: str


class AddonSelection(BaseModel):
    kind: Literal["addon"] = "addon"
    addon_id: str


class Answer(BaseModel):
    kind: Literal["answer"] = "answer"
    question_id: str
    text: str = ""


SelectionItem = Annotated[
    Union[OptionGroupSelection, AddonSelection, Answer],
    Field(discriminator="kind"),
]


class InstanceSelection(BaseModel):
    items: List[SelectionItem] = Field(default_factory=list)


class SubjectSelection(BaseModel):
    subject_id: str
    instances: List[InstanceSelection] = Field(default_factory=list)


class Selection(BaseModel):
    general: List[SelectionItem] = Field(default_factory=list)
    subjects: List[SubjectSelection] = Field(default_factory=list)
    deadline_days: Optional[int] = None


class Adjustment(BaseModel):
    """Artist-side price adjustment applied on top of the computed price."""
    surcharge: int = Field(0, ge=0)
    discount: int = Field(0, ge=0)
    reason: Optional[str] = None


# =========================
# Consistency
# =========================
def _violation(reason: str, **details) -> ConsistencyViolation:
    logger.error("listing snapshot rejected: %s %s", reason, details or "")
    return ConsistencyViolation(reason, details)


def _check_unique(ids: List[str], where: str) -> None:
    seen = set()
    for i in ids:
        if i in seen:
            raise _violation(f"duplicate id '{i}' in {where}", where=where, id=i)
        seen.add(i)


def _check_option_set(opts: OptionSet, where: str) -> None:
    _check_unique([g.id for g in opts.option_groups], f"{where}.option_groups")
    for g in opts.option_groups:
        _check_unique([s.id for s in g.selections], f"{where}.option_groups[{g.id}]")
    _check_unique([a.id for a in opts.addons], f"{where}.addons")
    _check_unique([q.id for q in opts.questions], f"{where}.questions")


def validate_snapshot(snapshot: ListingSnapshot) -> ListingSnapshot:
    """
    Reject snapshots that break listing invariants.

    Raises ConsistencyViolation (logged at ERROR); nothing may be created
    from a snapshot that fails here.
    """
    _check_option_set(snapshot.general_options, "general_options")
    _check_unique([s.id for s in snapshot.subjects], "subjects")
    for s in snapshot.subjects:
        _check_option_set(s, f"subjects[{s.id}]")

    d = snapshot.deadline
    if d.min_days > d.max_days:
        raise _violation("deadline.min_days exceeds deadline.max_days", min_days=d.min_days, max_days=d.max_days)
    if d.mode == "withRush" and d.rush_fee is None:
        raise _violation("withRush deadline mode requires a rush_fee")

    if snapshot.flow == "milestone":
        if not snapshot.milestones:
            raise _violation("milestone flow requires at least one milestone")
        total = sum(m.percent for m in snapshot.milestones)
        if total != 100:
            raise _violation("milestone percentages must sum to 100", total=total)
    elif snapshot.revisions.type == "milestone":
        raise _violation("milestone revision policy requires milestone flow")

    if snapshot.revisions.type == "standard" and snapshot.revisions.policy is None:
        raise _violation("standard revision type requires a revision policy")

    if snapshot.cancellation_fee.kind == "percentage" and snapshot.cancellation_fee.amount > 100:
        raise _violation("percentage cancellation fee cannot exceed 100", amount=snapshot.cancellation_fee.amount)

    return snapshot
