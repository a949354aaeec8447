"""
Stageflow - Stage transitions and fractional positioning for shared boards.

Cards sit in ordered stages on a board. Stageflow keeps that order consistent
across many concurrent viewers without locking the board:
- Fractional position allocation between neighbours
- Atomic stage + position transitions
- Broadcast of committed moves to every board subscriber
- Client-side optimistic moves with confirm/rollback reconciliation
"""

__version__ = "0.1.0"
