import re

from baccarat_feed.groups import SessionGroupTracker, short_uuid


def test_short_uuid_is_compact_urlsafe():
    value = short_uuid()
    assert len(value) == 22
    assert re.fullmatch(r"[A-Za-z0-9_-]{22}", value)


def test_rotations_are_distinct():
    tracker = SessionGroupTracker()
    seen = {tracker.current()}
    for _ in range(5000):
        seen.add(tracker.rotate())
    assert len(seen) == 5001
    assert tracker.rotations == 5000


def test_current_is_stable_until_rotate():
    tracker = SessionGroupTracker(initial="A")
    assert tracker.current() == "A"
    assert tracker.current() == "A"
    new_id = tracker.rotate()
    assert new_id != "A"
    assert tracker.current() == new_id
