"""Tests for the in-process notifier."""

from scenescore.services.events import Event, Notifier


def test_emit_reaches_subscribers():
    notifier = Notifier()
    seen = []
    notifier.subscribe(Event.GENERATION_FAILED, lambda **payload: seen.append(payload))

    notifier.emit(Event.GENERATION_FAILED, job_id="j1", reason="timeout", kind="timeout")

    assert seen == [{"job_id": "j1", "reason": "timeout", "kind": "timeout"}]


def test_raising_handler_does_not_block_others():
    notifier = Notifier()
    seen = []

    def broken(**payload):
        raise RuntimeError("handler bug")

    notifier.subscribe(Event.PRESET_GENERATED, broken)
    notifier.subscribe(Event.PRESET_GENERATED, lambda entry: seen.append(entry))

    notifier.emit(Event.PRESET_GENERATED, entry="preset_x")
    assert seen == ["preset_x"]


def test_unsubscribe_removes_handler():
    notifier = Notifier()
    seen = []

    def handler(**payload):
        seen.append(payload)

    notifier.subscribe(Event.PRESET_SELECTED, handler)
    notifier.unsubscribe(Event.PRESET_SELECTED, handler)
    notifier.emit(Event.PRESET_SELECTED, entry=None, score=0.0)

    assert seen == []
