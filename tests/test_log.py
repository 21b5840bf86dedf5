import pytest

from bindexer.log import ThrottledLogger, format_duration


class _Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class _Recorder:
    def __init__(self):
        self.calls = []

    def __getattr__(self, level):
        return lambda event, **kw: self.calls.append((level, event, kw))


def test_throttle_emits_first_then_summarises():
    clock, rec = _Clock(), _Recorder()
    t = ThrottledLogger(rec, interval_s=5.0, clock=clock)
    assert t.log("db", "error", "insert_failed", tx="a") is True
    assert t.log("db", "error", "insert_failed", tx="b") is False
    clock.now += 2
    assert t.log("db", "error", "insert_failed", tx="c") is False
    clock.now += 4
    assert t.log("db", "error", "insert_failed", tx="d") is True
    assert rec.calls == [
        ("error", "insert_failed", {"tx": "a"}),
        ("error", "insert_failed", {"occurrences": 3, "window_s": 5.0, "tx": "d"}),
    ]


def test_throttle_keys_are_independent():
    rec = _Recorder()
    t = ThrottledLogger(rec, clock=_Clock())
    t.log("a", "warning", "x")
    t.log("b", "debug", "y")
    assert [c[:2] for c in rec.calls] == [("warning", "x"), ("debug", "y")]
    assert t.log("a", "warning", "x") is False


@pytest.mark.parametrize("seconds,text", [(3.0, "3.0s"), (75, "1m 15s"), (3 * 3600 + 120, "3h 2m")])
def test_format_duration(seconds, text):
    assert format_duration(seconds) == text
