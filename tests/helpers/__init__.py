"""Test helpers for the derivatives engine test suite"""

from tests.helpers.mock_venue import MockVenue, make_position, make_state

__all__ = [
    "MockVenue",
    "make_position",
    "make_state",
]
