"""Binding state machine.

Loads binding_transitions.json and provides can_transition() for the
association engine. The file is the single definition of the lifecycle
UNBOUND -> BOUND | BINDING_FAILED | SKIPPED_ALREADY_BOUND | NO_RESERVATION.
"""

from __future__ import annotations

import hashlib
import json
from enum import Enum
from pathlib import Path

_TRANSITIONS_PATH = Path(__file__).resolve().parent / "binding_transitions.json"


class BindingState(str, Enum):
    UNBOUND = "UNBOUND"
    BOUND = "BOUND"
    BINDING_FAILED = "BINDING_FAILED"
    SKIPPED_ALREADY_BOUND = "SKIPPED_ALREADY_BOUND"
    NO_RESERVATION = "NO_RESERVATION"


def _load_transitions(path: Path | None = None) -> dict:
    """Load and return the transitions definition."""
    p = path or _TRANSITIONS_PATH
    with open(p) as f:
        return json.load(f)


_DEFINITION = _load_transitions()

TERMINAL_STATES = frozenset(BindingState(s) for s in _DEFINITION["terminal"])

# Report bucket per terminal state
SUMMARY_BUCKETS = {BindingState(s): bucket for s, bucket in _DEFINITION["summary"].items()}


def transitions_hash(path: Path | None = None) -> str:
    """SHA-256 hash of the transitions file for version logging."""
    p = path or _TRANSITIONS_PATH
    return hashlib.sha256(p.read_bytes()).hexdigest()


def can_transition(
    from_state: BindingState | str,
    to_state: BindingState | str,
    transitions: dict | None = None,
) -> bool:
    """Validate a binding state transition.

    Args:
        from_state: Current state.
        to_state: Target state.
        transitions: Pre-loaded transitions dict (optional, the packaged file if None).

    Returns:
        True if transition is allowed.

    Raises:
        ValueError: If either state is unknown or the transition is not allowed.
    """
    from_key = BindingState(from_state).value
    to_key = BindingState(to_state).value

    if transitions is None:
        transitions = _DEFINITION

    allowed_targets = transitions.get("edges", {}).get(from_key, [])
    if to_key not in allowed_targets:
        raise ValueError(f"Transition {from_key} → {to_key} not allowed")
    return True


def is_terminal(state: BindingState | str) -> bool:
    """Check if a binding state is final for this run."""
    return BindingState(state) in TERMINAL_STATES


def summary_bucket(state: BindingState | str) -> str:
    """Map a terminal state to its bound/skipped/failed report bucket."""
    state = BindingState(state)
    if not is_terminal(state):
        raise ValueError(f"State {state.value} has no summary bucket (not terminal)")
    return SUMMARY_BUCKETS[state]
