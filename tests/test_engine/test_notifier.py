"""Tests for notification batching."""

import pytest
from structlog.testing import capture_logs

from sheetcalc.engine.notifier import DirtyFlag, Notifier, key_matches


class Producer:
    """Stand-in notification source."""


@pytest.fixture
def flushes():
    return []


@pytest.fixture
def touches():
    return []


@pytest.fixture
def notifier(flushes, touches):
    return Notifier(Producer(), flush=flushes.append, touch=lambda: touches.append(True))


class TestKeyMatching:
    """Tests for listener key matching."""

    def test_exact_match(self):
        assert key_matches("attr.st", "attr.st")

    def test_prefix_match(self):
        assert key_matches("attr.", "attr.st")
        assert key_matches("attr.", "attr.st.lifting")

    def test_non_dot_key_is_not_a_prefix(self):
        assert not key_matches("attr.st", "attr.st.lifting")
        assert not key_matches("attr", "attr.st")


class TestDelivery:
    """Tests for delivering notifications to listeners."""

    def test_notify_delivers_to_matching_listener(self, notifier, recorder):
        notifier.add_target(recorder, "attr.st")
        notifier.notify("attr.st", 12)
        notifier.notify("attr.dx", 11)
        assert recorder.events == [("attr.st", 12)]

    def test_listener_receives_producer(self, notifier):
        received = []
        notifier.add_target(lambda producer, key, value: received.append(producer), "x")
        notifier.notify("x", 1)
        assert isinstance(received[0], Producer)

    def test_notify_inside_batch_is_immediate(self, notifier, recorder):
        """Events are not queued until the batch closes."""
        notifier.add_target(recorder, "attr.")
        notifier.start_notify()
        notifier.notify("attr.st", 12)
        assert recorder.ids == ["attr.st"]
        notifier.end_notify()

    def test_add_target_accumulates_keys(self, notifier, recorder):
        notifier.add_target(recorder, "a")
        notifier.add_target(recorder, "b", "a")
        notifier.notify("a", 1)
        notifier.notify("b", 2)
        assert recorder.ids == ["a", "b"]

    def test_remove_target(self, notifier, recorder):
        notifier.add_target(recorder, "attr.")
        notifier.remove_target(recorder)
        notifier.notify("attr.st", 12)
        assert recorder.events == []

    def test_reset_detaches_everything(self, notifier, recorder):
        notifier.add_target(recorder, "attr.")
        notifier.add_target(lambda *args: None, "hp.")
        notifier.reset()
        assert notifier.target_count == 0

    def test_listener_may_detach_itself_during_delivery(self, notifier):
        calls = []

        def once(producer, key, value):
            calls.append(key)
            notifier.remove_target(once)

        notifier.add_target(once, "x")
        notifier.notify("x", 1)
        notifier.notify("x", 2)
        assert calls == ["x"]


class TestBatching:
    """Tests for nested batches and deferred recomputation."""

    def test_depth_counts_nesting(self, notifier):
        notifier.start_notify()
        notifier.start_notify()
        assert notifier.depth == 2
        notifier.end_notify()
        assert notifier.depth == 1
        notifier.end_notify()
        assert notifier.depth == 0
        assert notifier.batch is None

    def test_new_batch_has_clear_flags(self, notifier):
        notifier.start_notify()
        assert notifier.batch.dirty == DirtyFlag.NONE
        assert notifier.batch.modified is False
        notifier.end_notify()

    def test_flush_runs_once_at_outermost_end(self, notifier, flushes):
        notifier.start_notify()
        notifier.mark_dirty(DirtyFlag.ATTRIBUTE_POINTS)
        notifier.start_notify()
        notifier.mark_dirty(DirtyFlag.SKILL_POINTS)
        notifier.end_notify()
        assert flushes == []
        notifier.end_notify()
        assert flushes == [DirtyFlag.ATTRIBUTE_POINTS | DirtyFlag.SKILL_POINTS]

    def test_no_flush_without_dirty_flags(self, notifier, flushes):
        notifier.start_notify()
        notifier.end_notify()
        assert flushes == []

    def test_flags_marked_during_flush_are_flushed_again(self, touches):
        calls = []

        def flush(dirty):
            calls.append(dirty)
            if dirty & DirtyFlag.EQUIPMENT:
                notifier.mark_dirty(DirtyFlag.ATTRIBUTE_POINTS)

        notifier = Notifier(Producer(), flush=flush)
        notifier.start_notify()
        notifier.mark_dirty(DirtyFlag.EQUIPMENT)
        notifier.end_notify()
        assert calls == [DirtyFlag.EQUIPMENT, DirtyFlag.ATTRIBUTE_POINTS]

    def test_touch_once_when_anything_was_notified(self, notifier, touches):
        notifier.start_notify()
        notifier.notify("a", 1)
        notifier.start_notify()
        notifier.notify("b", 2)
        notifier.end_notify()
        notifier.end_notify()
        assert touches == [True]

    def test_no_touch_without_notifications(self, notifier, touches):
        notifier.start_notify()
        notifier.end_notify()
        assert touches == []

    def test_notify_single(self, notifier, recorder, touches):
        notifier.add_target(recorder, "a")
        notifier.notify_single("a", 1)
        assert recorder.events == [("a", 1)]
        assert touches == [True]
        assert notifier.depth == 0

    def test_mark_dirty_outside_batch_raises(self, notifier):
        with pytest.raises(RuntimeError):
            notifier.mark_dirty(DirtyFlag.ATTRIBUTE_POINTS)

    def test_unbalanced_end_is_logged(self, notifier):
        with capture_logs() as logs:
            notifier.end_notify()
        assert notifier.depth == 0
        assert any(log["event"] == "end_notify_without_start" for log in logs)

    def test_batch_closes_even_if_flush_fails(self):
        def flush(dirty):
            raise ValueError("boom")

        notifier = Notifier(Producer(), flush=flush)
        notifier.start_notify()
        notifier.mark_dirty(DirtyFlag.ALL)
        with pytest.raises(ValueError):
            notifier.end_notify()
        assert notifier.depth == 0
        assert notifier.batch is None
