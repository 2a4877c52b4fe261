"""Anchor submission and record state transitions."""

from held.anchoring.service import AnchoringService
from held.anchoring.state_machine import AnchoringStateMachine

__all__ = ["AnchoringService", "AnchoringStateMachine"]
