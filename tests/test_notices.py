from relay_console.services.notices import NOTICE_ERROR, NOTICE_SUCCESS, Notifier


def test_subscribers_see_every_notice():
    seen = []
    n = Notifier()
    n.subscribe(lambda notice: seen.append((notice.kind, notice.message)))
    n.success("User created successfully")
    n.error("User not found")
    assert seen == [(NOTICE_SUCCESS, "User created successfully"), (NOTICE_ERROR, "User not found")]


def test_broken_subscriber_does_not_block_others():
    seen = []
    n = Notifier()

    def broken(notice):
        raise RuntimeError("render failed")

    n.subscribe(broken)
    n.subscribe(seen.append)
    n.success("ok")
    assert len(seen) == 1


def test_dismiss_and_pop():
    n = Notifier(maxlen=2)
    first = n.success("a")
    n.success("b")
    n.success("c")
    # oldest notice fell off the bounded queue
    n.dismiss(first)
    assert [x.message for x in n.pop_all()] == ["b", "c"]
    assert n.pop_all() == []
