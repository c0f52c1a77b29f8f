"""Tests for progress reporting and cancellation."""

from sheetsage.progress import CancellationToken, ProgressEvent, ProgressTracker, is_cancelled


def test_percentage_is_clamped():
    assert ProgressEvent(step=1, total=4, message="").percentage == 25.0
    assert ProgressEvent(step=9, total=4, message="").percentage == 100.0
    assert ProgressEvent(step=0, total=0, message="").percentage == 100.0


def test_tracker_reports_each_step():
    events = []
    tracker = ProgressTracker(3, events.append)

    tracker.advance("one")
    tracker.advance("two")
    tracker.finish()

    assert [e.step for e in events] == [1, 2, 3]
    assert events[-1].message == "Analysis complete"
    assert events[-1].percentage == 100.0


def test_observer_errors_do_not_interrupt():
    def broken(event):
        raise RuntimeError("observer bug")

    tracker = ProgressTracker(2, broken)

    event = tracker.advance("still going")

    assert event.step == 1


def test_cancellation_token():
    token = CancellationToken()
    assert not is_cancelled(token)
    assert not is_cancelled(None)

    token.cancel()

    assert token.cancelled
    assert is_cancelled(token)
