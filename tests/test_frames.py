from kvwatch.frames import (
    ALL_KEYS,
    Event,
    EventType,
    KeyRange,
    cancel_frame,
    create_frame,
    parse_response,
    prefix_range_end,
    replay_frames,
)
from kvwatch.registry import Subscription


def test_prefix_range_end():
    assert prefix_range_end(b"foo") == b"fop"
    assert prefix_range_end("a/") == b"a0"
    assert prefix_range_end(b"a\xff") == b"b"
    assert prefix_range_end(b"a\xfe\xff\xff") == b"a\xff"
    assert prefix_range_end(b"\xff\xff") == ALL_KEYS
    assert prefix_range_end(b"") == ALL_KEYS


def test_key_range():
    kr = KeyRange.single("k")
    assert kr.is_single
    assert "k" in kr
    assert b"k2" not in kr

    kr = KeyRange.prefix("app/")
    assert not kr.is_single
    assert kr.contains(b"app/")
    assert kr.contains(b"app/x/y")
    assert not kr.contains(b"app")
    assert not kr.contains(b"app0")
    assert not kr.contains(b"apq/")

    kr = KeyRange.all()
    assert kr.contains(b"")
    assert kr.contains(b"\xff\xff")

    kr = KeyRange(b"b", b"d")
    assert kr.contains(b"b")
    assert kr.contains(b"c\xff")
    assert not kr.contains(b"d")
    assert not kr.contains(b"a")


def test_create_frame():
    f = create_frame(KeyRange.prefix("p"), prev_kv=True, filters=[EventType.DELETE])
    assert f == dict(
        action="create",
        key=b"p",
        range_end=b"q",
        prev_kv=True,
        progress_notify=False,
        filters=["delete"],
    )
    f = create_frame(KeyRange("k"), start_revision=7)
    assert f["start_revision"] == 7
    assert f["range_end"] == b""
    assert cancel_frame(3) == dict(action="cancel", watch_id=3)


def test_parse_response():
    r = parse_response(dict(watch_id=2, created=True, revision=5))
    assert r.created and not r.canceled
    assert r.watch_id == 2
    assert r.revision == 5
    assert r.events == []

    r = parse_response(
        dict(
            watch_id=2,
            revision=9,
            events=[
                dict(type="put", key=b"k", value=b"v", mod_revision=8),
                dict(type="delete", key=b"k", prev_value=b"v", mod_revision=9),
            ],
        )
    )
    assert r.events == [
        Event(EventType.PUT, b"k", b"v", None, 8),
        Event(EventType.DELETE, b"k", None, b"v", 9),
    ]

    r = parse_response(dict(created=True, canceled=True, compact_revision=4, reason="gone"))
    assert r.watch_id == -1
    assert r.compact_revision == 4
    assert r.cancel_reason == "gone"

    r = parse_response(dict(progress=True, revision=12))
    assert r.progress
    assert r.revision == 12


def test_replay_frames():
    a = Subscription(1, KeyRange("a"), print)
    b = Subscription(2, KeyRange.prefix("b"), print, start_revision=5, prev_kv=True)
    c = Subscription(3, KeyRange("c"), print, start_revision=5)
    c.last_revision = 11

    res = replay_frames([a, b, c])
    assert [h for h, _ in res] == [1, 2, 3]
    fa, fb, fc = (f for _, f in res)
    assert "start_revision" not in fa
    assert fb["start_revision"] == 5
    assert fb["prev_kv"] is True
    assert fb["range_end"] == b"c"
    assert fc["start_revision"] == 12

    assert replay_frames([]) == []
