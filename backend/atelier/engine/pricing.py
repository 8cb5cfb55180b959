# backend/atelier/engine/pricing.py
"""
Price engine.

compute_price() is the single authority for a commission price: the
listing preview, proposal creation, the artist's adjustment and change
ticket re-pricing all call it. It is pure (no DB, no clock) and works in
integer minor units; the only rounding step is the multi-instance
discount, done half-up through Decimal.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from .errors import SelectionInvalid
from .snapshot import (
    Adjustment,
    AddonSelection,
    Answer,
    ListingSnapshot,
    OptionGroupSelection,
    OptionSet,
    Selection,
    SelectionItem,
)


# =========================
# Breakdown schema
# =========================
class PriceLine(BaseModel):
    scope: str                      # "general" | "subject"
    kind: str                       # "optionGroup" | "addon"
    ref: str                        # group_id/selection_id or addon_id
    label: str
    amount: int
    subject_id: Optional[str] = None
    instance: Optional[int] = None


class InstanceLine(BaseModel):
    index: int
    gross: int
    discount_percent: int
    net: int

    @property
    def discounted(self) -> bool:
        return self.net != self.gross


class SubjectLine(BaseModel):
    subject_id: str
    title: str
    instances: List[InstanceLine] = Field(default_factory=list)
    gross: int = 0
    total: int = 0


class PriceBreakdown(BaseModel):
    currency: str
    base: int
    option_groups: int = 0
    addons: int = 0
    rush: int = 0
    rush_days: int = 0
    deadline_days: int
    discount: int = 0
    surcharge: int = 0
    artist_discount: int = 0
    total: int
    subjects: List[SubjectLine] = Field(default_factory=list)
    lines: List[PriceLine] = Field(default_factory=list)

    def recomputed_total(self) -> int:
        return (
            self.base + self.option_groups + self.addons + self.rush
            - self.discount + self.surcharge - self.artist_discount
        )


# =========================
# Helpers
# =========================
def discounted_price(gross: int, percent: int) -> int:
    """round(gross * (100 - percent) / 100), half-up."""
    if not percent:
        return gross
    value = Decimal(gross) * Decimal(100 - percent) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _price_items(
    opts: OptionSet,
    items: Sequence[SelectionItem],
    field: str,
    scope: str,
    subject_id: Optional[str] = None,
    instance: Optional[int] = None,
) -> Tuple[int, int, List[PriceLine]]:
    """Validate one option-set selection; returns (option_group_sum, addon_sum, lines)."""
    groups = {g.id: g for g in opts.option_groups}
    addons = {a.id: a for a in opts.addons}
    questions = {q.id for q in opts.questions}

    picked_groups: set = set()
    picked_addons: set = set()
    answered: set = set()
    og_sum = 0
    addon_sum = 0
    lines: List[PriceLine] = []

    for i, item in enumerate(items):
        where = f"{field}[{i}]"
        if isinstance(item, OptionGroupSelection):
            group = groups.get(item.group_id)
            if group is None:
                raise SelectionInvalid(f"{where}.group_id", f"unknown option group '{item.group_id}'")
            if item.group_id in picked_groups:
                raise SelectionInvalid(f"{where}.group_id", f"option group '{item.group_id}' picked twice")
            choice = next((s for s in group.selections if s.id == item.selection_id), None)
            if choice is None:
                raise SelectionInvalid(f"{where}.selection_id", f"unknown selection '{item.selection_id}'")
            picked_groups.add(item.group_id)
            og_sum += choice.price
            lines.append(PriceLine(
                scope=scope, kind="optionGroup", ref=f"{group.id}/{choice.id}",
                label=f"{group.title}: {choice.label}", amount=choice.price,
                subject_id=subject_id, instance=instance,
            ))
        elif isinstance(item, AddonSelection):
            addon = addons.get(item.addon_id)
            if addon is None:
                raise SelectionInvalid(f"{where}.addon_id", f"unknown addon '{item.addon_id}'")
            if item.addon_id in picked_addons:
                raise SelectionInvalid(f"{where}.addon_id", f"addon '{item.addon_id}' picked twice")
            picked_addons.add(item.addon_id)
            addon_sum += addon.price
            lines.append(PriceLine(
                scope=scope, kind="addon", ref=addon.id, label=addon.label, amount=addon.price,
                subject_id=subject_id, instance=instance,
            ))
        elif isinstance(item, Answer):
            if item.question_id not in questions:
                raise SelectionInvalid(f"{where}.question_id", f"unknown question '{item.question_id}'")
            if item.question_id in answered:
                raise SelectionInvalid(f"{where}.question_id", f"question '{item.question_id}' answered twice")
            answered.add(item.question_id)
        else:
            raise SelectionInvalid(where, f"unsupported selection kind {type(item).__name__}")

    return og_sum, addon_sum, lines


def resolve_deadline(snapshot: ListingSnapshot, days: Optional[int]) -> Tuple[int, int, int]:
    """Returns (deadline_days, rush_fee, rush_days) for the listing's deadline policy."""
    policy = snapshot.deadline
    if days is None:
        if policy.mode == "standard":
            return policy.max_days, 0, 0
        raise SelectionInvalid("deadline_days", "a deadline is required for this listing")

    if days < 1:
        raise SelectionInvalid("deadline_days", "deadline must be at least one day")
    if days > policy.max_days:
        raise SelectionInvalid("deadline_days", f"deadline exceeds the maximum of {policy.max_days} days")

    if days >= policy.min_days:
        return days, 0, 0

    if policy.mode == "withRush":
        rush_days = policy.min_days - days
        fee = policy.rush_fee
        amount = fee.amount if fee.kind == "flat" else fee.amount * rush_days
        return days, amount, rush_days
    if policy.mode == "withDeadline":
        raise SelectionInvalid("deadline_days", f"deadline is shorter than the minimum of {policy.min_days} days")
    # standard listings only quote the artist's own turnaround
    return days, 0, 0


# =========================
# Entry point
# =========================
def compute_price(
    snapshot: ListingSnapshot,
    selection: Selection,
    adjustment: Optional[Adjustment] = None,
) -> PriceBreakdown:
    lines: List[PriceLine] = []

    og_total, addon_total, general_lines = _price_items(
        snapshot.general_options, selection.general, "general", "general"
    )
    lines.extend(general_lines)

    subjects_by_id = {s.id: s for s in snapshot.subjects}
    seen_subjects: Dict[str, int] = {}
    subject_lines: List[SubjectLine] = []
    instance_discount = 0

    for si, pick in enumerate(selection.subjects):
        field = f"subjects[{si}]"
        subject = subjects_by_id.get(pick.subject_id)
        if subject is None:
            raise SelectionInvalid(f"{field}.subject_id", f"unknown subject '{pick.subject_id}'")
        if pick.subject_id in seen_subjects:
            raise SelectionInvalid(f"{field}.subject_id", f"subject '{pick.subject_id}' selected twice")
        seen_subjects[pick.subject_id] = si

        count = len(pick.instances)
        if subject.limit == 0 and count:
            raise SelectionInvalid(f"{field}.instances", f"subject '{subject.id}' does not accept instances")
        if subject.limit > 0 and count > subject.limit:
            raise SelectionInvalid(
                f"{field}.instances", f"at most {subject.limit} instances of '{subject.id}' allowed, got {count}"
            )

        sline = SubjectLine(subject_id=subject.id, title=subject.title)
        for idx, inst in enumerate(pick.instances):
            og, ad, inst_lines = _price_items(
                subject, inst.items, f"{field}.instances[{idx}].items", "subject",
                subject_id=subject.id, instance=idx,
            )
            lines.extend(inst_lines)
            og_total += og
            addon_total += ad

            gross = og + ad
            pct = subject.discount_percent if idx >= 1 else 0
            net = discounted_price(gross, pct)
            instance_discount += gross - net
            sline.instances.append(InstanceLine(index=idx, gross=gross, discount_percent=pct, net=net))
            sline.gross += gross
            sline.total += net
        subject_lines.append(sline)

    deadline_days, rush, rush_days = resolve_deadline(snapshot, selection.deadline_days)

    adj = adjustment or Adjustment()
    subtotal = snapshot.base_price + og_total + addon_total + rush - instance_discount
    if adj.discount > subtotal + adj.surcharge:
        raise SelectionInvalid("adjustment.discount", "discount is larger than the price")

    breakdown = PriceBreakdown(
        currency=snapshot.currency,
        base=snapshot.base_price,
        option_groups=og_total,
        addons=addon_total,
        rush=rush,
        rush_days=rush_days,
        deadline_days=deadline_days,
        discount=instance_discount,
        surcharge=adj.surcharge,
        artist_discount=adj.discount,
        total=subtotal + adj.surcharge - adj.discount,
        subjects=subject_lines,
        lines=lines,
    )
    return breakdown
