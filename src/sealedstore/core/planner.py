"""Single-request vs. multipart decision and part sizing."""

from __future__ import annotations

from typing import Optional

from .exceptions import MissingSizeHintError
from .models import TransferMode, TransferPlan


def decide(size_estimate: Optional[int], threshold: int, force_single: bool = False) -> TransferMode:
    """DIRECT when forced or when the estimate is at or below ``threshold``."""
    if force_single:
        return TransferMode.DIRECT
    if size_estimate is None:
        raise MissingSizeHintError(
            "unknown content length, must set content_length or estimated_content_length"
        )
    if size_estimate <= threshold:
        return TransferMode.DIRECT
    return TransferMode.MULTIPART


def part_size(size_estimate: int, min_part_size: int, max_parts: int) -> int:
    """Smallest part size that fits ``size_estimate`` in ``max_parts`` parts, floored at ``min_part_size``."""
    return max(-(-size_estimate // max_parts), min_part_size)


class TransferPlanner:
    """Applies a TransferConfig's thresholds to a write."""

    def __init__(self, config):
        self.config = config

    def plan(
        self,
        content_length: Optional[int] = None,
        estimated_content_length: Optional[int] = None,
        single_request: bool = False,
    ) -> TransferPlan:
        # an exact length wins over an estimate
        estimate = content_length if content_length is not None else estimated_content_length
        mode = decide(estimate, self.config.multipart_threshold, single_request)
        if mode is TransferMode.DIRECT:
            return TransferPlan(mode)
        size = part_size(
            estimate,
            self.config.multipart_min_part_size,
            self.config.multipart_max_parts,
        )
        return TransferPlan(mode, size)
