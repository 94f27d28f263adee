import os
import stat

from relay_console.core.session import KEY_FILE, TOKEN_FILE, Session, TokenStore
from relay_console.models import Identity


def test_token_persisted_encrypted(tmp_path):
    store = TokenStore(str(tmp_path))
    store.save("secret-token")
    with open(tmp_path / TOKEN_FILE, "rb") as f:
        assert b"secret-token" not in f.read()
    assert TokenStore(str(tmp_path)).load() == "secret-token"


def test_state_files_private(tmp_path):
    TokenStore(str(tmp_path)).save("t")
    for name in (KEY_FILE, TOKEN_FILE):
        mode = stat.S_IMODE(os.stat(tmp_path / name).st_mode)
        assert mode == 0o600


def test_unreadable_token_discarded(tmp_path):
    store = TokenStore(str(tmp_path))
    store.save("t")
    (tmp_path / TOKEN_FILE).write_bytes(b"garbage")
    assert store.load() == ""
    assert not (tmp_path / TOKEN_FILE).exists()


def test_load_without_files(tmp_path):
    assert TokenStore(str(tmp_path / "missing")).load() == ""


def test_restore_and_invalidate(tmp_path):
    first = Session(TokenStore(str(tmp_path)))
    first.establish("tok", Identity(1, "admin"))

    second = Session(TokenStore(str(tmp_path)))
    assert second.restore()
    assert second.token == "tok"
    # identity is only known after whoami
    assert second.identity is None

    reasons = []
    second.on_teardown(reasons.append)
    second.invalidate("expired")
    assert not second.authenticated
    assert reasons == ["expired"]
    assert not Session(TokenStore(str(tmp_path))).restore()


def test_listener_crash_does_not_stop_teardown():
    s = Session()
    s.establish("tok")
    seen = []

    def broken(reason):
        raise RuntimeError("listener bug")

    s.on_teardown(broken)
    s.on_teardown(seen.append)
    s.invalidate("logout")
    assert seen == ["logout"]
    assert s.token == ""


def test_session_without_store_does_not_restore():
    assert not Session().restore()
