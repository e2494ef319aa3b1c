"""Release eligibility for custody funds.

``can_release`` is the one predicate behind manual release, the auto-release
sweep and bulk release. It is pure: it reads the order snapshot and the
supplied clock, nothing else.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from stockyard.services.order_status import (
    ACTIVE_DISPUTE_STATUSES,
    MARKETPLACE_CLEARABLE_HOLD_REASONS,
    REGULATORY_HOLD_REASONS,
    LegacyStatus,
    PayoutHoldReason,
    TransactionStatus,
    buyer_confirmed,
    delivery_marked,
    dispute_status,
    effective_status,
    explicitly_confirmed,
    hold_reason,
    legacy_status,
)

RELEASE_READY_STATUSES = frozenset(
    {
        TransactionStatus.DELIVERED_PENDING_CONFIRMATION,
        TransactionStatus.PICKED_UP,
        TransactionStatus.COMPLETED,
    }
)

# Machine reason codes returned when release is blocked
ALREADY_RELEASED = "already_released"
ORDER_CLOSED = "order_closed"
ADMIN_HOLD = "admin_hold"
DISPUTE_OPEN = "dispute_open"
CHARGEBACK = "chargeback"
REVIEW_REQUIRED = "review_required"
COMPLIANCE_DOCUMENT_REQUIRED = "compliance_document_required"
PROTECTION_WINDOW = "protection_window"
DISPUTE_WINDOW = "dispute_window"
DELIVERY_NOT_CONFIRMED = "delivery_not_confirmed"
BUYER_NOT_CONFIRMED = "buyer_not_confirmed"
INVALID_STATUS = "invalid_status"


@dataclass
class ReleaseDecision:
    eligible: bool
    reason: str | None = None
    earliest_release_at: datetime | None = None
    hold_reason: str = PayoutHoldReason.NONE.value
    explanation: str = ""
    blockers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "eligible": bool(self.eligible),
            "reason": self.reason,
            "earliest_release_at": self.earliest_release_at.isoformat() if self.earliest_release_at else None,
            "hold_reason": self.hold_reason,
            "explanation": self.explanation,
            "blockers": list(self.blockers),
        }


def _fmt(ts: datetime | None) -> str:
    return ts.strftime("%Y-%m-%d %H:%M UTC") if ts else "unknown"


def regulatory_hold(order) -> str:
    """The regulatory code still blocking release, or an empty string."""
    reason = hold_reason(order)
    code = reason if reason in REGULATORY_HOLD_REASONS else (getattr(order, "compliance_hold_code", None) or "")
    if code not in REGULATORY_HOLD_REASONS:
        return ""
    if code in MARKETPLACE_CLEARABLE_HOLD_REASONS and getattr(order, "admin_payout_approval", None) is True:
        return ""
    return code


def protection_active(order, now: datetime) -> bool:
    if getattr(order, "protection_waived_at", None) is not None:
        return False
    ends_at = getattr(order, "protection_ends_at", None)
    return ends_at is not None and now < ends_at


def derive_hold_reason(order, now: datetime) -> str:
    """Recompute the payout hold reason from the flags it summarises.

    Precedence: admin hold, open dispute, open chargeback, running protection
    window, outstanding regulatory code.
    """
    if getattr(order, "admin_hold", False):
        return PayoutHoldReason.ADMIN_HOLD.value
    if dispute_status(order) in ACTIVE_DISPUTE_STATUSES:
        return PayoutHoldReason.DISPUTE_OPEN.value
    if (getattr(order, "chargeback_status", None) or "none") == "open":
        return PayoutHoldReason.CHARGEBACK.value
    if protection_active(order, now):
        return PayoutHoldReason.PROTECTION_WINDOW.value
    return regulatory_hold(order) or PayoutHoldReason.NONE.value


def _blocker_messages(order, now: datetime) -> list[tuple[str, str, datetime | None]]:
    """Every failing condition as ``(code, message, earliest)``, most severe first."""
    out: list[tuple[str, str, datetime | None]] = []

    if getattr(order, "admin_hold", False):
        note = (getattr(order, "admin_hold_reason", None) or "").strip()
        out.append((ADMIN_HOLD, f"Admin hold{': ' + note if note else ''}", None))

    legacy = legacy_status(order)
    if getattr(order, "transfer_id", None) or legacy == LegacyStatus.COMPLETED:
        out.append((ALREADY_RELEASED, "Funds were already released to the seller", None))
    elif legacy in (LegacyStatus.REFUNDED, LegacyStatus.CANCELLED):
        out.append((ORDER_CLOSED, f"Order is {legacy.value}; nothing to release", None))

    if dispute_status(order) in ACTIVE_DISPUTE_STATUSES:
        out.append((DISPUTE_OPEN, "Open dispute must be resolved before release", None))

    if (getattr(order, "chargeback_status", None) or "none") == "open":
        out.append((CHARGEBACK, "Active chargeback on the payment", None))

    reason = hold_reason(order)
    regulatory = regulatory_hold(order)
    if regulatory in MARKETPLACE_CLEARABLE_HOLD_REASONS:
        out.append((REVIEW_REQUIRED, f"Marketplace review required ({regulatory})", None))
    elif regulatory:
        out.append((COMPLIANCE_DOCUMENT_REQUIRED, f"Compliance document required ({regulatory})", None))

    ends_at = getattr(order, "protection_ends_at", None)
    waived = getattr(order, "protection_waived_at", None) is not None
    if protection_active(order, now):
        out.append((PROTECTION_WINDOW, f"Protection window open until {_fmt(ends_at)}", ends_at))
    elif not waived and ends_at is None and reason == PayoutHoldReason.PROTECTION_WINDOW.value:
        out.append((PROTECTION_WINDOW, "Protection window hold without an end time", None))

    if not delivery_marked(order):
        out.append((DELIVERY_NOT_CONFIRMED, "Delivery or pickup has not been confirmed", None))

    if not buyer_confirmed(order):
        out.append((BUYER_NOT_CONFIRMED, "Buyer has not confirmed receipt", None))

    deadline = getattr(order, "dispute_deadline_at", None)
    if deadline is not None and now < deadline and not (waived or explicitly_confirmed(order)):
        out.append((DISPUTE_WINDOW, f"Buyer dispute window open until {_fmt(deadline)}", deadline))

    status = effective_status(order)
    if status not in RELEASE_READY_STATUSES:
        out.append((INVALID_STATUS, f"Order status {status.value} is not ready for release", None))

    return out


def can_release(order, now: datetime | None = None) -> ReleaseDecision:
    now = now or datetime.utcnow()
    blockers = _blocker_messages(order, now)
    current_hold = hold_reason(order)
    if not blockers:
        return ReleaseDecision(
            eligible=True,
            reason=None,
            earliest_release_at=None,
            hold_reason=current_hold,
            explanation="Eligible for release",
            blockers=[],
        )
    code, message, _ = blockers[0]
    time_bound = [b[2] for b in blockers if b[2] is not None]
    if time_bound and len(time_bound) == len(blockers):
        earliest = max(time_bound)
    else:
        earliest = blockers[0][2]
    return ReleaseDecision(
        eligible=False,
        reason=code,
        earliest_release_at=earliest,
        hold_reason=current_hold,
        explanation=message,
        blockers=[b[0] for b in blockers],
    )


def hold_info(order, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    decision = can_release(order, now)
    blockers = _blocker_messages(order, now)
    return {
        "order_id": int(getattr(order, "id", 0) or 0),
        "can_release": decision.eligible,
        "reason": decision.reason,
        "hold_reason": decision.hold_reason,
        "earliest_release_at": decision.earliest_release_at.isoformat() if decision.earliest_release_at else None,
        "effective_status": effective_status(order).value,
        "blockers": [
            {"code": code, "message": message, "until": until.isoformat() if until else None}
            for code, message, until in blockers
        ],
    }


def payout_explanation(order, now: datetime | None = None) -> str:
    """Plain text suitable for pasting into buyer/seller support replies."""
    now = now or datetime.utcnow()
    decision = can_release(order, now)
    lines = [f"Order #{getattr(order, 'id', '?')}"]
    try:
        seller_amount = float(getattr(order, "seller_amount", 0.0) or 0.0)
    except (TypeError, ValueError):
        seller_amount = 0.0
    lines.append(f"Seller payout: {seller_amount:.2f} {(getattr(order, 'currency', None) or 'usd').upper()}")
    lines.append(f"Order status: {effective_status(order).value}")
    if decision.eligible:
        lines.append("Payout status: ready to release")
        return "\n".join(lines)
    if decision.reason == ALREADY_RELEASED:
        released_at = getattr(order, "released_at", None)
        lines.append(f"Payout status: released{' on ' + _fmt(released_at) if released_at else ''}")
        return "\n".join(lines)
    lines.append("Payout status: on hold")
    for _code, message, _until in _blocker_messages(order, now):
        lines.append(f"- {message}")
    if decision.earliest_release_at:
        lines.append(f"Earliest possible release: {_fmt(decision.earliest_release_at)}")
    return "\n".join(lines)
