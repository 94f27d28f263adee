from relay_console.models import ConfigArtifact, Inbound, RealitySettings, User
from relay_console.services.store import (
    STATE_LOADED,
    STATE_LOADING,
    STATE_NOT_LOADED,
    STATE_STALE,
    Collection,
    ConfigView,
    EntityStore,
)


def user(uid, inbound_ids=None):
    return User(id=uid, name=f"u{uid}", inbound_ids=inbound_ids)


def inbound(iid, node_id):
    return Inbound(id=iid, node_id=node_id, name=f"in{iid}", protocol="reality", listen_port=443, settings=RealitySettings())


def test_collection_lifecycle():
    c = Collection("users")
    assert c.state == STATE_NOT_LOADED
    seq = c.begin_fetch()
    assert c.state == STATE_LOADING
    assert c.apply(seq, [user(1), user(2)])
    assert c.state == STATE_LOADED
    assert [u.id for u in c.values()] == [1, 2]
    c.mark_stale()
    assert c.state == STATE_STALE
    seq = c.begin_fetch()
    assert c.state == STATE_LOADING
    assert c.apply(seq, [user(3)])
    assert [u.id for u in c.values()] == [3]


def test_older_fetch_never_overwrites_newer():
    c = Collection("users")
    first = c.begin_fetch()
    second = c.begin_fetch()
    assert c.apply(second, [user(2)])
    assert not c.apply(first, [user(1)])
    assert [u.id for u in c.values()] == [2]


def test_stale_marking_invalidates_inflight_fetch():
    c = Collection("users")
    c.apply(c.begin_fetch(), [user(1)])
    inflight = c.begin_fetch()
    c.mark_stale()
    assert not c.apply(inflight, [user(1)])
    assert c.state == STATE_STALE


def test_mark_stale_on_never_loaded_is_noop():
    c = Collection("nodes")
    c.mark_stale()
    assert c.state == STATE_NOT_LOADED
    assert c.latest_seq == 0


def test_failed_fetch_state():
    c = Collection("nodes")
    seq = c.begin_fetch()
    assert c.fail(seq, RuntimeError("boom"))
    assert c.state == STATE_NOT_LOADED
    c.apply(c.begin_fetch(), [])
    seq = c.begin_fetch()
    c.fail(seq, RuntimeError("boom"))
    assert c.state == STATE_STALE
    assert c.items == {}


def test_outdated_failure_ignored():
    c = Collection("nodes")
    old = c.begin_fetch()
    new = c.begin_fetch()
    c.apply(new, [])
    assert not c.fail(old, RuntimeError("late"))
    assert c.state == STATE_LOADED
    assert c.error is None


def test_drop_inbounds_ignores_late_results():
    store = EntityStore()
    coll = store.inbounds(7)
    seq = coll.begin_fetch()
    store.drop_inbounds(7)
    assert not store.has_inbounds(7)
    assert not coll.apply(seq, [inbound(1, 7)])
    assert store.find_inbound(1) is None


def test_find_inbound_across_nodes():
    store = EntityStore()
    store.inbounds(1).apply(store.inbounds(1).begin_fetch(), [inbound(10, 1)])
    store.inbounds(2).apply(store.inbounds(2).begin_fetch(), [inbound(20, 2)])
    assert store.find_inbound(20).node_id == 2
    assert store.inbound_ids_on_node(1) == {10}
    assert store.inbound_ids_on_node(3) is None


def test_mark_configs_stale_targets_attached_users():
    store = EntityStore()
    store.users.apply(store.users.begin_fetch(), [user(1, [10]), user(2, [20]), user(3, None)])
    for uid in (1, 2, 3):
        store.configs[uid] = ConfigView(user_id=uid, artifact=ConfigArtifact(singbox={}, share_url=""))
    flagged = store.mark_configs_stale({10})
    # user 3 has no known attachments and is flagged conservatively
    assert sorted(flagged) == [1, 3]
    assert not store.configs[2].stale


def test_mark_all_configs_stale():
    store = EntityStore()
    store.configs[1] = ConfigView(user_id=1, artifact=ConfigArtifact(singbox={}, share_url=""))
    assert store.mark_configs_stale(None) == [1]


def test_close_drops_everything():
    store = EntityStore()
    seq = store.users.begin_fetch()
    store.configs[1] = ConfigView(user_id=1, artifact=ConfigArtifact(singbox={}, share_url=""))
    store.close()
    assert not store.users.apply(seq, [user(1)])
    assert store.configs == {}
    late = store.inbounds(4)
    assert late.dropped


def test_deleted_node_inbounds_are_never_recreated():
    store = EntityStore()
    store.drop_inbounds(7)
    coll = store.inbounds(7)
    coll.upsert(inbound(1, 7))
    assert coll.dropped
    assert not store.has_inbounds(7)
    assert store.find_inbound(1) is None
    assert store.inbounds(8) is store.inbounds(8)
