"""
Unit tests for the status graph.
"""
import random

import pytest

from models import ISSUE_STATUSES, TERMINAL_STATUSES
from utils.state_machine import ALLOWED_TRANSITIONS, allowed_transitions, is_allowed

LEGAL_EDGES = {
    ("submitted", "assigned"),
    ("submitted", "rejected"),
    ("assigned", "in_progress"),
    ("assigned", "rejected"),
    ("in_progress", "resolved"),
    ("in_progress", "rejected"),
    ("resolved", "closed"),
}
ILLEGAL_EDGES = [
    (source, target)
    for source in ISSUE_STATUSES
    for target in ISSUE_STATUSES
    if (source, target) not in LEGAL_EDGES
]


def test_every_status_has_an_entry():
    assert set(ALLOWED_TRANSITIONS) == set(ISSUE_STATUSES)


@pytest.mark.parametrize("status", TERMINAL_STATUSES)
def test_terminal_statuses_have_no_exits(status):
    assert allowed_transitions(status) == []


@pytest.mark.parametrize("from_status,to_status", sorted(LEGAL_EDGES))
def test_documented_edges_are_allowed(from_status, to_status):
    assert is_allowed(from_status, to_status)


@pytest.mark.parametrize("from_status,to_status", ILLEGAL_EDGES)
def test_other_edges_are_refused(from_status, to_status):
    assert not is_allowed(from_status, to_status)


def test_random_walks_never_revisit_a_status():
    """The graph is acyclic, so every walk ends in a terminal status."""
    rng = random.Random(20240514)
    for _ in range(500):
        status = "submitted"
        seen = [status]
        while allowed_transitions(status):
            status = rng.choice(allowed_transitions(status))
            assert status not in seen
            seen.append(status)
        assert status in TERMINAL_STATUSES
