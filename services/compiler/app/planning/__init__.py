"""Phase B1 citation planning."""

from .engine import PlanDecodeError, available_message_ids, create_citation_plan, decode_plan

__all__ = ["create_citation_plan", "decode_plan", "available_message_ids", "PlanDecodeError"]
