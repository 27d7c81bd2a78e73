"""
Round Schedule Logic

A sale's rounds are an ordered list of start times. Round i (1-based) is the tier id
admitted from its start time until the next round starts; the last round runs until the
sale ends. Outside the window [first start, sale end) no round is open and the current
round is 0.
"""
from bisect import bisect_right
from typing import List, Sequence

from mcp_sale_escrow.errors import ValidationError
from mcp_sale_escrow.schemas import Round


def validate_schedule(start_times: Sequence[int], now: int, sale_end: int) -> None:
    """
    Checks a proposed schedule against the sale window.

    Raises:
        ValidationError: If the schedule is empty, not strictly ascending, has an entry
            that is not in the future, or has an entry at or after sale_end.
    """
    if not start_times:
        raise ValidationError("Rounds can not be empty.")
    previous = None
    for start in start_times:
        if start <= now:
            raise ValidationError(f"Round start time {start} is not in the future.")
        if start >= sale_end:
            raise ValidationError(f"Round start time {start} is not before sale end {sale_end}.")
        if previous is not None and start <= previous:
            raise ValidationError("Round start times must be strictly ascending.")
        previous = start


def build_schedule(start_times: Sequence[int]) -> List[Round]:
    return [Round(tier_id=index + 1, start_time=start) for index, start in enumerate(start_times)]


def current_round(rounds: Sequence[Round], sale_end: int, now: int) -> int:
    """Returns the tier id of the round open at `now`, or 0 when none is."""
    if not rounds or now >= sale_end:
        return 0
    starts = [r.start_time for r in rounds]
    index = bisect_right(starts, now)
    if index == 0:
        return 0
    return rounds[index - 1].tier_id
