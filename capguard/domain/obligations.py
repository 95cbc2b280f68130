"""Obligation batching - turns unsettled accruals into per-borrower transfers"""

from typing import Dict, Iterable, List, Set, Tuple

from capguard.domain.models import AccrualCandidate, AccrualKey, Contribution, ObligationBatch


def build_obligation_batches(
    candidates: Iterable[AccrualCandidate],
    settled_keys: Set[AccrualKey],
) -> List[ObligationBatch]:
    """
    Group unsettled excess by (borrower address, settlement asset).

    Requirements:
    - Accruals whose (position, date) key already has an active settlement are
      dropped, so repeated passes never pay the same key twice
    - One batch per borrower per asset: the borrower's address is shared by all
      of their positions, so one transfer covers all outstanding excess
    - Batches with a non-positive total are dropped

    Ordering is deterministic: earliest contributing date first, then address,
    then asset. Contributions within a batch are ordered by (date, position).
    """
    groups: Dict[Tuple[str, str], List[AccrualCandidate]] = {}

    for candidate in candidates:
        if candidate.key in settled_keys:
            continue
        if candidate.excess_amount <= 0:
            continue

        group_key = (candidate.borrower_address.lower(), candidate.settlement_asset)
        groups.setdefault(group_key, []).append(candidate)

    batches = []
    for (_, asset), members in groups.items():
        members.sort(key=lambda c: (c.date, str(c.position_id)))
        total = sum(c.excess_amount for c in members)
        if total <= 0:
            continue

        market_names = sorted({c.market_name for c in members})
        batches.append(
            ObligationBatch(
                borrower_address=members[0].borrower_address,
                asset=asset,
                total_amount=total,
                contributions=[Contribution(c.position_id, c.date, c.excess_amount) for c in members],
                market_names=market_names,
            )
        )

    batches.sort(key=lambda b: (b.contributions[0].date, b.borrower_address.lower(), b.asset))
    return batches
