"""
Transition table for the order lifecycle.

Two tracks share one closed set of statuses:

    online : waiting_deposit -> pickup_scheduled -> pickup_progress -> inspection
             -> waiting_payment -> in_process -> process_completed -> delivery -> completed
    offline:                                                          inspection
             -> waiting_payment -> in_process -> process_completed -> delivery -> completed

Any non-terminal status may move to ``cancelled``. ``completed`` and
``cancelled`` are terminal. The single backwards edge
``pickup_progress -> pickup_scheduled`` exists only for releasing a pickup claim.
"""
from __future__ import annotations

from typing import Optional

from shoe_service.db.models import OrderStatus, OrderType, Stage

__all__ = [
    "TRACKS",
    "TERMINAL_STATUSES",
    "CLAIM_RELEASE_REVERSIONS",
    "STAGE_CLAIM_STATUS",
    "STAGE_WORK_STATUS",
    "track_for",
    "initial_status",
    "successor",
    "is_terminal",
    "is_legal",
    "is_on_track",
]

S = OrderStatus

TRACKS: dict[OrderType, tuple[OrderStatus, ...]] = {
    OrderType.ONLINE: (
        S.WAITING_DEPOSIT,
        S.PICKUP_SCHEDULED,
        S.PICKUP_PROGRESS,
        S.INSPECTION,
        S.WAITING_PAYMENT,
        S.IN_PROCESS,
        S.PROCESS_COMPLETED,
        S.DELIVERY,
        S.COMPLETED,
    ),
    OrderType.OFFLINE: (
        S.INSPECTION,
        S.WAITING_PAYMENT,
        S.IN_PROCESS,
        S.PROCESS_COMPLETED,
        S.DELIVERY,
        S.COMPLETED,
    ),
}

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.CANCELLED})

CLAIM_RELEASE_REVERSIONS: dict[OrderStatus, OrderStatus] = {
    S.PICKUP_PROGRESS: S.PICKUP_SCHEDULED,
}

# Status in which a stage may be claimed, and the status it is worked in.
STAGE_CLAIM_STATUS: dict[Stage, OrderStatus] = {
    Stage.PICKUP: S.PICKUP_SCHEDULED,
    Stage.INSPECTION: S.INSPECTION,
    Stage.DELIVERY: S.DELIVERY,
}
STAGE_WORK_STATUS: dict[Stage, OrderStatus] = {
    Stage.PICKUP: S.PICKUP_PROGRESS,
    Stage.INSPECTION: S.INSPECTION,
    Stage.DELIVERY: S.DELIVERY,
}


def _build_successors() -> dict[OrderType, dict[OrderStatus, Optional[OrderStatus]]]:
    table: dict[OrderType, dict[OrderStatus, Optional[OrderStatus]]] = {}
    for order_type in OrderType:
        track = TRACKS[order_type]
        mapping: dict[OrderStatus, Optional[OrderStatus]] = {}
        for status in OrderStatus:
            if status in track:
                idx = track.index(status)
                mapping[status] = track[idx + 1] if idx + 1 < len(track) else None
            else:
                mapping[status] = None
        table[order_type] = mapping
    return table


def _check_table() -> None:
    # Adding a status or an order type without updating the tracks fails at import.
    missing = set(OrderType) - set(TRACKS)
    if missing:
        raise RuntimeError(f"no track defined for order types: {sorted(t.value for t in missing)}")
    covered = set().union(*TRACKS.values()) | {S.CANCELLED}
    orphaned = set(OrderStatus) - covered
    if orphaned:
        raise RuntimeError(f"statuses outside every track: {sorted(s.value for s in orphaned)}")
    for order_type, track in TRACKS.items():
        if track[-1] is not S.COMPLETED:
            raise RuntimeError(f"{order_type.value} track must end in completed")
        if S.CANCELLED in track:
            raise RuntimeError("cancelled is reachable from every track, not part of one")
    for stage in Stage:
        if stage not in STAGE_CLAIM_STATUS or stage not in STAGE_WORK_STATUS:
            raise RuntimeError(f"stage {stage.value} has no claim/work status")


_check_table()
_SUCCESSORS = _build_successors()


def track_for(order_type: OrderType) -> tuple[OrderStatus, ...]:
    return TRACKS[OrderType(order_type)]


def initial_status(order_type: OrderType) -> OrderStatus:
    return track_for(order_type)[0]


def successor(order_type: OrderType, current: OrderStatus) -> Optional[OrderStatus]:
    return _SUCCESSORS[OrderType(order_type)][OrderStatus(current)]


def is_terminal(status: OrderStatus) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def is_on_track(order_type: OrderType, status: OrderStatus) -> bool:
    return OrderStatus(status) in track_for(order_type) or status == S.CANCELLED


def is_legal(
    order_type: OrderType,
    current: Optional[OrderStatus],
    target: OrderStatus,
    *,
    allow_reversion: bool = False,
) -> bool:
    """Whether *target* may be appended after *current* for this order type.

    ``current=None`` means the order has no ledger entries yet; only the
    track's initial status is accepted then.
    """
    target = OrderStatus(target)
    if current is None:
        return target == initial_status(order_type)
    current = OrderStatus(current)
    if not is_on_track(order_type, current) or is_terminal(current):
        return False
    if target == S.CANCELLED:
        return True
    if allow_reversion and CLAIM_RELEASE_REVERSIONS.get(current) == target:
        return True
    return successor(order_type, current) == target
